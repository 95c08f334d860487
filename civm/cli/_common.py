"""Shared CLI options, config resolution, confirmations, and step wrapping."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, TypeVar

import scriptconfig as scfg
from loguru import logger

from ..config import DEFAULT_CONFIG_NAME, CIVMConfig, load
from ..errors import CIVMError, PreconditionError, StepFailedError
from ..pipeline import Step, missing_tools
from ..util import CmdError

log = logger

T = TypeVar('T')


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help=f'Path to config TOML (default: {DEFAULT_CONFIG_NAME}).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Auto-approve privileged (sudo) and destructive operations.',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p or DEFAULT_CONFIG_NAME).resolve()


def _load_cfg_with_path(
    config_path: str | None, *, vm_opt: str = ''
) -> tuple[CIVMConfig, Path]:
    """Load config; a missing default file means built-in defaults."""
    path = _cfg_path(config_path)
    if path.exists():
        cfg = load(path)
    elif config_path is not None:
        raise FileNotFoundError(
            f'Config not found: {path}. Run: civm config init --config {path}'
        )
    else:
        log.debug('No config at {}; using defaults', path)
        cfg = CIVMConfig()
    if vm_opt:
        cfg.vm.name = vm_opt
    return cfg, path


def _load_cfg(config_path: str | None, *, vm_opt: str = '') -> CIVMConfig:
    cfg, _ = _load_cfg_with_path(config_path, vm_opt=vm_opt)
    return cfg


def _confirm(*, yes: bool, header: str, purpose: str) -> None:
    if yes:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            f'{header} requires confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print(f'About to run {header.lower()}:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')


def _confirm_sudo_block(*, yes: bool, purpose: str) -> None:
    if os.geteuid() == 0:
        return
    _confirm(yes=yes, header='Privileged host operations', purpose=purpose)


def _confirm_destructive(*, yes: bool, purpose: str) -> None:
    _confirm(yes=yes, header='Irreversible operations', purpose=purpose)


def _preflight(step: Step, *, dry_run: bool) -> None:
    """Refuse to run a step whose host tools are not installed."""
    if dry_run:
        return
    missing = missing_tools(step)
    if missing:
        raise StepFailedError(
            step.name,
            PreconditionError(
                f'Missing required tools: {", ".join(missing)}. '
                'Run `civm check` or `civm install`.'
            ),
        )


def _run_step(step: Step, fn: Callable[[], T]) -> T:
    """Run one step, tagging any failure with the step name."""
    log.debug('Step {}: {}', step.name, step.title)
    try:
        return fn()
    except StepFailedError:
        raise
    except (CmdError, CIVMError) as ex:
        raise StepFailedError(step.name, ex) from ex
