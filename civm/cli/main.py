"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..errors import StepFailedError
from ..util import CmdError
from ._common import _load_cfg, log
from .config import ConfigModalCLI, InitCLI
from .help import HelpModalCLI
from .host import CheckCLI, FixPermissionsCLI, InstallCLI, SSHKeyCLI
from .steps import (
    BuildSeedCLI,
    ConvertRawCLI,
    CreateDomainCLI,
    FetchBaseImageCLI,
    FullResetCLI,
    MaterializeDiskCLI,
    StatusCLI,
    TeardownCLI,
    UpCLI,
)


class CIVMModalCLI(scfg.ModalCLI):
    """Provision a single cloud-init VM on local libvirt/KVM."""

    help = HelpModalCLI
    init = InitCLI
    config = ConfigModalCLI
    check = CheckCLI
    install = InstallCLI
    ssh_key = SSHKeyCLI
    fetch_base_image = FetchBaseImageCLI
    convert_raw = ConvertRawCLI
    materialize_disk = MaterializeDiskCLI
    build_seed = BuildSeedCLI
    create_domain = CreateDomainCLI
    up = UpCLI
    status = StatusCLI
    teardown = TeardownCLI
    full_reset = FullResetCLI
    fix_permissions = FixPermissionsCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    config_value = _option_value(argv, '--config')
    try:
        verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1
    _setup_logging(_count_verbose(argv), verbosity)

    try:
        rc = CIVMModalCLI.main(argv=argv, _noexit=True)
    except StepFailedError as ex:
        _report_failure(ex.step, ex.error)
        sys.exit(2)
    except Exception as ex:
        _report_failure('', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _report_failure(step: str, error: Exception) -> None:
    prefix = f'ERROR: {step}: ' if step else 'ERROR: '
    print(f'{prefix}{error}', file=sys.stderr)
    if isinstance(error, CmdError) and not error.result.stderr.strip():
        # Output was streamed rather than captured; the tool already printed it.
        print('(see tool output above)', file=sys.stderr)
    log.debug('civm failure step={} error={!r}', step or '-', error)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _option_value(argv: list[str], flag: str) -> str | None:
    for idx, item in enumerate(argv):
        if item == flag and idx + 1 < len(argv):
            return argv[idx + 1]
        if item.startswith(flag + '='):
            return item.split('=', 1)[1]
    return None


def _normalize_argv(argv: list[str]) -> list[str]:
    """Accept hyphenated command names (``full-reset``) and ``clean`` aliases."""
    if not argv or argv[0].startswith('-'):
        return argv
    aliases = {
        'download': 'fetch_base_image',
        'disk_image': 'convert_raw',
        'vm_image': 'materialize_disk',
        'iso': 'build_seed',
        'create_vm': 'create_domain',
        'clean': 'teardown',
        'clean_all': 'full_reset',
    }
    head = argv[0].replace('-', '_')
    head = aliases.get(head, head)
    rest = list(argv[1:])
    if head == 'config' and rest and not rest[0].startswith('-'):
        rest[0] = rest[0].replace('-', '_')
    return [head, *rest]


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count


__all__ = ['CIVMModalCLI', 'main']
