"""CLI commands for each provisioning step, status, and cleanup."""

from __future__ import annotations

import scriptconfig as scfg

from .. import sequencer
from ..config import artifact_paths
from ..pipeline import (
    BUILD_SEED,
    CONVERT_RAW,
    CREATE_DOMAIN,
    FETCH_BASE_IMAGE,
    FULL_RESET,
    MATERIALIZE_DISK,
    PIPELINE,
    TEARDOWN,
)
from ..results import TeardownResult
from ..status import render_status
from ._common import (
    _BaseCommand,
    _confirm_destructive,
    _confirm_sudo_block,
    _load_cfg,
    _load_cfg_with_path,
    _preflight,
    _run_step,
    log,
)


class _StepCommand(_BaseCommand):
    vm = scfg.Value('', help='VM (domain) name override.')
    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )


class FetchBaseImageCLI(_StepCommand):
    """Download the base cloud image unless it is already present."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(FETCH_BASE_IMAGE, dry_run=args.dry_run)
        out = _run_step(
            FETCH_BASE_IMAGE,
            lambda: sequencer.fetch_base_image(cfg, dry_run=args.dry_run),
        )
        print(out)
        return 0


class ConvertRawCLI(_StepCommand):
    """Convert the base cloud image to a raw disk image (if missing)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(CONVERT_RAW, dry_run=args.dry_run)
        out = _run_step(
            CONVERT_RAW,
            lambda: sequencer.convert_raw_image(cfg, dry_run=args.dry_run),
        )
        print(out)
        return 0


class MaterializeDiskCLI(_StepCommand):
    """Create the copy-on-write VM disk backed by the base image."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(MATERIALIZE_DISK, dry_run=args.dry_run)
        out = _run_step(
            MATERIALIZE_DISK,
            lambda: sequencer.materialize_vm_disk(cfg, dry_run=args.dry_run),
        )
        print(out)
        return 0


class BuildSeedCLI(_StepCommand):
    """Rebuild the cloud-init seed ISO from user-data and meta-data."""

    user_data = scfg.Value('', help='Override path to the user-data file.')
    meta_data = scfg.Value('', help='Override path to the meta-data file.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(BUILD_SEED, dry_run=args.dry_run)
        out = _run_step(
            BUILD_SEED,
            lambda: sequencer.build_seed_image(
                cfg,
                args.user_data or None,
                args.meta_data or None,
                dry_run=args.dry_run,
            ),
        )
        print(out)
        return 0


class CreateDomainCLI(_StepCommand):
    """Define and start the VM; fails if a VM of that name already exists."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(CREATE_DOMAIN, dry_run=args.dry_run)
        if cfg.paths.use_managed_storage:
            _confirm_sudo_block(
                yes=bool(args.yes),
                purpose=f'Copy VM disk and seed ISO into {artifact_paths(cfg).managed_dir}.',
            )
        _run_step(
            CREATE_DOMAIN,
            lambda: sequencer.create_domain(cfg, dry_run=args.dry_run),
        )
        return 0


class UpCLI(_StepCommand):
    """Run fetch, disk, seed, and create steps in order (fail-fast)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        for step in PIPELINE:
            _preflight(step, dry_run=args.dry_run)
        if cfg.paths.use_managed_storage:
            _confirm_sudo_block(
                yes=bool(args.yes),
                purpose=f'Copy VM disk and seed ISO into {artifact_paths(cfg).managed_dir}.',
            )
        actions = {
            FETCH_BASE_IMAGE.name: sequencer.fetch_base_image,
            MATERIALIZE_DISK.name: sequencer.materialize_vm_disk,
            BUILD_SEED.name: sequencer.build_seed_image,
            CREATE_DOMAIN.name: sequencer.create_domain,
        }
        for step in PIPELINE:
            fn = actions[step.name]
            _run_step(step, lambda: fn(cfg, dry_run=args.dry_run))
        return 0


class StatusCLI(_BaseCommand):
    """Show artifacts, VM registry membership/state, and libvirt networks."""

    vm = scfg.Value('', help='VM (domain) name override.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config, vm_opt=args.vm)
        print(render_status(cfg, path if path.exists() else None))
        return 0


def _report_cleanup(result: TeardownResult) -> int:
    for item in result.failed:
        print(f'❌ {item}')
    if result.failed:
        log.warning('Some cleanup steps failed; inspect and re-run.')
        return 1
    return 0


class TeardownCLI(_StepCommand):
    """Stop and undefine the VM and delete the seed ISO and storage copies."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(TEARDOWN, dry_run=args.dry_run)
        _confirm_sudo_block(
            yes=bool(args.yes),
            purpose=f'Remove {cfg.vm.name} disk/seed copies from {artifact_paths(cfg).managed_dir}.',
        )
        result = _run_step(
            TEARDOWN, lambda: sequencer.teardown(cfg, dry_run=args.dry_run)
        )
        return _report_cleanup(result)


class FullResetCLI(_StepCommand):
    """Teardown, then delete base image, raw image, and VM disk as well."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config, vm_opt=args.vm)
        _preflight(FULL_RESET, dry_run=args.dry_run)
        if not args.dry_run:
            _confirm_destructive(
                yes=bool(args.yes),
                purpose=(
                    f'Delete VM {cfg.vm.name}, its disk, and the downloaded '
                    f'base image under {artifact_paths(cfg).work_dir}.'
                ),
            )
        _confirm_sudo_block(
            yes=bool(args.yes),
            purpose=f'Remove images from {artifact_paths(cfg).managed_dir}.',
        )
        result = _run_step(
            FULL_RESET, lambda: sequencer.full_reset(cfg, dry_run=args.dry_run)
        )
        return _report_cleanup(result)
