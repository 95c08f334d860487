"""CLI help: the step plan, raw tool equivalents, and the command tree."""

from __future__ import annotations

import shlex

import scriptconfig as scfg
import ubelt as ub

from ..config import CIVMConfig, artifact_paths
from ..pipeline import PIPELINE
from ..runtime import virsh_cmd
from ..sequencer import undefine_cmd, virt_install_cmd
from ._common import _BaseCommand, _cfg_path, _load_cfg


class PlanCLI(_BaseCommand):
    """Show the recommended end-to-end command sequence."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        cfg_flag = (
            f' --config {shlex.quote(str(path))}'
            if path != _cfg_path(None)
            else ''
        )
        lines = [
            '🗺️  civm plan',
            f'📄 Config: {path}',
            '',
            '1. Preflight',
            f'   civm check{cfg_flag}',
            '2. Seed inputs (edit user-data / meta-data afterwards)',
            f'   civm init{cfg_flag}',
            f'   civm ssh-key{cfg_flag}',
        ]
        for idx, step in enumerate(PIPELINE, start=3):
            lines.append(f'{idx}. {step.title}')
            lines.append(f'   civm {step.name}{cfg_flag}')
        lines += [
            f'{len(PIPELINE) + 3}. Inspect',
            f'   civm status{cfg_flag}',
            f'{len(PIPELINE) + 4}. Clean up (keeps images) / remove everything',
            f'   civm teardown{cfg_flag}',
            f'   civm full-reset{cfg_flag}',
        ]
        print('\n'.join(lines))
        return 0


class HelpRawCLI(_BaseCommand):
    """Print the direct system-tool commands behind each civm step."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(ub.highlight_code(_raw_commands_text(cfg), lexer_name='bash'))
        return 0


def _raw_commands_text(cfg: CIVMConfig) -> str:
    """Shell equivalents of the steps, built from the same argv as civm."""
    p = artifact_paths(cfg)
    managed = cfg.paths.use_managed_storage
    disk, seed = (
        (p.managed_vm_disk, p.managed_seed_iso)
        if managed
        else (p.vm_disk, p.seed_iso)
    )

    def q(*cmd) -> str:
        return ' '.join(shlex.quote(str(c)) for c in cmd)

    lines = [
        '# civm help raw',
        f'# VM={cfg.vm.name} | work_dir={p.work_dir} | '
        f'managed_storage={str(managed).lower()}',
        '',
        '# fetch-base-image',
        q('wget', '-O', p.base_image, cfg.image.url),
        '',
        '# materialize-disk',
        q(
            'qemu-img', 'create', '-f', 'qcow2', '-F', 'qcow2',
            '-b', p.base_image, p.vm_disk, f'{cfg.vm.disk_gb}G',
        ),
        q('qemu-img', 'info', '--backing-chain', p.vm_disk),
        '',
        '# build-seed',
        q(
            'genisoimage', '-output', p.seed_iso, '-V', cfg.seed.volume_label,
            '-r', '-J', '-graft-points',
            f'user-data={p.user_data}', f'meta-data={p.meta_data}',
        ),
        '',
        '# create-domain',
    ]
    if managed:
        lines += [
            'sudo ' + q('mkdir', '-p', p.managed_dir),
            'sudo ' + q('cp', p.base_image, p.managed_base_image),
            'sudo ' + q(
                'qemu-img', 'create', '-f', 'qcow2', '-F', 'qcow2',
                '-b', p.managed_base_image, p.managed_vm_disk,
                f'{cfg.vm.disk_gb}G',
            ),
            'sudo ' + q('cp', p.seed_iso, p.managed_seed_iso),
        ]
    lines += [
        q(*virt_install_cmd(cfg, disk, seed)),
        '',
        '# status',
        q(*virsh_cmd(cfg, 'list', '--all')),
        q(*virsh_cmd(cfg, 'net-list')),
        '',
        '# teardown',
        q(*virsh_cmd(cfg, 'shutdown', cfg.vm.name)),
        q(*undefine_cmd(cfg)),
        q('rm', '-f', p.seed_iso),
    ]
    if managed:
        lines.append(
            'sudo ' + q('rm', '-f', p.managed_vm_disk, p.managed_seed_iso)
        )
    lines += ['', '# console access', q('virsh', 'console', cfg.vm.name)]
    return '\n'.join(lines)


class HelpTreeCLI(_BaseCommand):
    """Print the expanded civm command tree."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        from .main import CIVMModalCLI

        print(_render_command_tree(CIVMModalCLI))
        return 0


class HelpModalCLI(scfg.ModalCLI):
    """Help and discovery commands."""

    plan = PlanCLI
    raw = HelpRawCLI
    tree = HelpTreeCLI


def _iter_modal_members(
    modal_cls: type[scfg.ModalCLI],
) -> list[tuple[str, type]]:
    members: list[tuple[str, type]] = []
    for name, val in modal_cls.__dict__.items():
        if name.startswith('_'):
            continue
        if not isinstance(val, type):
            continue
        if issubclass(val, scfg.ModalCLI) or issubclass(val, scfg.DataConfig):
            members.append((name, val))
    return members


def _short_help_line(cls: type) -> str:
    doc = (getattr(cls, '__doc__', '') or '').strip()
    if not doc:
        return ''
    return doc.splitlines()[0].strip()


def _render_command_tree(
    modal_cls: type[scfg.ModalCLI], prefix: str = 'civm'
) -> str:
    root_help = _short_help_line(modal_cls)
    lines: list[str] = [f'{prefix} - {root_help}' if root_help else prefix]

    def walk(cls: type[scfg.ModalCLI], parent: str, indent: str) -> None:
        members = _iter_modal_members(cls)
        for idx, (name, subcls) in enumerate(members):
            last = idx == len(members) - 1
            branch = '└── ' if last else '├── '
            path = f'{parent} {name.replace("_", "-")}'
            help_line = _short_help_line(subcls)
            if help_line:
                lines.append(f'{indent}{branch}{path} - {help_line}')
            else:
                lines.append(f'{indent}{branch}{path}')
            if issubclass(subcls, scfg.ModalCLI):
                walk(subcls, path, indent + ('    ' if last else '│   '))

    walk(modal_cls, prefix, '')
    return '\n'.join(lines)
