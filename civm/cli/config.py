"""CLI commands for creating and inspecting the config and seed templates."""

from __future__ import annotations

import scriptconfig as scfg

from ..cloudinit import detect_ssh_pubkey, write_seed_templates
from ..config import CIVMConfig, dump_toml, save
from ._common import _BaseCommand, _cfg_path, _load_cfg_with_path, log


class ConfigInitCLI(_BaseCommand):
    """Write a config file with default settings."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )
    vm = scfg.Value('', help='VM (domain) name to record.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            raise FileExistsError(
                f'Config already exists: {path}. Use --force to overwrite.'
            )
        cfg = CIVMConfig()
        if args.vm:
            cfg.vm.name = args.vm
        path.parent.mkdir(parents=True, exist_ok=True)
        save(path, cfg)
        log.info('Wrote config {}', path)
        print(path)
        return 0


class ConfigShowCLI(_BaseCommand):
    """Print the effective config as TOML."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        print(f'# {path}' if path.exists() else '# (defaults; no config file)')
        print(dump_toml(cfg), end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management."""

    init = ConfigInitCLI
    show = ConfigShowCLI


class InitCLI(_BaseCommand):
    """Create starter user-data and meta-data (and config with --write_config)."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite existing user-data/meta-data.'
    )
    write_config = scfg.Value(
        False, isflag=True, help='Also write a default config file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if args.write_config and not _cfg_path(args.config).exists():
            ConfigInitCLI.main(argv=False, config=args.config)
        cfg, _ = _load_cfg_with_path(args.config)
        pub = detect_ssh_pubkey()
        pubkey = pub.read_text(encoding='utf-8').strip() if pub else ''
        written = write_seed_templates(cfg, pubkey=pubkey, force=args.force)
        for path in written:
            print(path)
        if not pubkey:
            log.warning(
                'No SSH public key found; run `civm ssh_key --generate` before building the seed.'
            )
        return 0
