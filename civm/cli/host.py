"""CLI commands for host preflight, installation, SSH keys, and permissions."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import scriptconfig as scfg

from ..cloudinit import (
    detect_ssh_pubkey,
    generate_ssh_key,
    inject_ssh_key,
    validate_config_files,
)
from ..config import artifact_paths
from ..host import (
    check_commands,
    check_system,
    host_is_debian_like,
    install_deps_debian,
    setup_libvirt,
)
from ..sequencer import fix_permissions
from ..status import status_line
from ._common import _BaseCommand, _confirm_sudo_block, _load_cfg, log


def _print_findings(findings) -> bool:
    ok = True
    for flag, label, detail in findings:
        print(status_line(flag, label, detail))
        if flag is False:
            ok = False
    return ok


def _print_tools() -> bool:
    missing, missing_opt = check_commands()
    if missing:
        print(status_line(False, 'Missing required tools', ', '.join(missing)))
        print('💡 On Debian/Ubuntu you can run: civm install')
    else:
        print(status_line(True, 'Required tools present'))
    if missing_opt:
        print(status_line(None, 'Missing optional tools', ', '.join(missing_opt)))
    return not missing


class CheckCLI(_BaseCommand):
    """Check system requirements, required tools, and seed config files."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        sys_ok = _print_findings(check_system())
        tools_ok = _print_tools()
        files_ok = _print_findings(validate_config_files(cfg))
        if sys_ok and tools_ok and files_ok:
            print('✅ Ready to provision.')
            return 0
        return 2


class InstallCLI(_BaseCommand):
    """Install host dependencies, set up libvirt, then run the checks."""

    skip_deps = scfg.Value(
        False, isflag=True, help='Skip apt package installation.'
    )
    deps_only = scfg.Value(
        False,
        isflag=True,
        help='Only install packages and set up libvirt; skip the checks.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if os.geteuid() == 0:
            print(
                '❌ Do not run the installer as root; use a regular user '
                'with sudo privileges.',
                file=sys.stderr,
            )
            return 2
        _print_findings(check_system())
        if not args.skip_deps:
            if not host_is_debian_like():
                print(
                    '❌ Host not detected as Debian/Ubuntu. '
                    'Install dependencies manually.',
                    file=sys.stderr,
                )
                return 2
            _confirm_sudo_block(
                yes=bool(args.yes),
                purpose='Install virtualization packages with apt and configure libvirtd.',
            )
            installed = install_deps_debian()
            log.info('Installed packages: {}', ', '.join(installed) or '(none)')
            setup_libvirt(cfg)
        if args.deps_only:
            return 0
        tools_ok = _print_tools()
        files_ok = _print_findings(validate_config_files(cfg))
        if not (tools_ok and files_ok):
            return 2
        print('✅ Installation complete. Next: civm up (or the individual steps).')
        return 0


class SSHKeyCLI(_BaseCommand):
    """Add your SSH public key to user-data (backup kept as user-data.backup)."""

    pubkey = scfg.Value('', help='Public key file (default: ~/.ssh/id_ed25519.pub or id_rsa.pub).')
    generate = scfg.Value(
        False,
        isflag=True,
        help='Generate an ed25519 key pair when none is found.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        user_data = artifact_paths(cfg).user_data
        if not user_data.exists():
            raise FileNotFoundError(
                f'{user_data} not found. Run: civm init'
            )
        pub = Path(args.pubkey).expanduser() if args.pubkey else detect_ssh_pubkey()
        if pub is None:
            if not args.generate:
                raise RuntimeError(
                    'No SSH public key found. Re-run with --generate or --pubkey.'
                )
            pub = generate_ssh_key()
        key_text = pub.read_text(encoding='utf-8').strip()
        print(f'Your SSH public key ({pub}):')
        print(key_text)
        inject_ssh_key(user_data, key_text)
        print(status_line(True, 'SSH key added to user-data', str(user_data)))
        return 0


class FixPermissionsCLI(_BaseCommand):
    """Give the hypervisor user access to local disk/seed files in $HOME."""

    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        _confirm_sudo_block(
            yes=bool(args.yes),
            purpose='chmod/setfacl your home directory for libvirt-qemu access.',
        )
        fix_permissions(cfg, dry_run=args.dry_run)
        print('✅ Permissions fixed. Set paths.use_managed_storage = false to use local files.')
        return 0
