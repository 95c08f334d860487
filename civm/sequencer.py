"""Provisioning sequencer: base image, disk, seed ISO, domain, and teardown.

Each creation step is guarded by an existence check so re-running the whole
sequence only does the work that is still missing. The seed ISO is the
exception and is rebuilt every time. Domain creation refuses to touch a
domain that is already registered.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from .config import CIVMConfig, artifact_paths
from .errors import DuplicateDomainError, PreconditionError
from .pipeline import (
    BUILD_SEED,
    CONVERT_RAW,
    CREATE_DOMAIN,
    MATERIALIZE_DISK,
    Step,
    missing_prerequisites,
)
from .results import TeardownResult
from .runtime import virsh_cmd, virt_install_prefix
from .util import CmdError, current_user, ensure_dir, run_cmd, shell_join

log = logger


def _check_ready(step: Step, cfg: CIVMConfig, *, dry_run: bool) -> None:
    missing = missing_prerequisites(step, cfg)
    if not missing:
        return
    if dry_run:
        for item in missing:
            log.info('DRYRUN: {} would fail now: {}', step.name, item)
        return
    raise PreconditionError(f'Cannot run {step.name}: ' + '; '.join(missing))


def _managed_file_exists(path: Path) -> bool:
    """Existence check for a file in hypervisor-owned storage.

    Raises CmdError when the answer cannot be determined, e.g. when the
    directory is unreadable and sudo is refused.
    """
    try:
        return path.exists()
    except PermissionError:
        log.debug('No direct access to {}; checking with sudo', path)
    cmd = ['test', '-f', str(path)]
    res = run_cmd(cmd, sudo=True, check=False, capture=True)
    if res.code != 0 and res.stderr.strip():
        raise CmdError(cmd, res)
    return res.code == 0


_DOMAIN_MISSING_MARKERS = ('failed to get domain', 'Domain not found')


def domain_exists(cfg: CIVMConfig) -> bool:
    """True if the domain is registered.

    Only virsh's "no such domain" answer counts as absent; any other failure
    (no connection, permission denied) raises CmdError.
    """
    cmd = virsh_cmd(cfg, 'dominfo', cfg.vm.name)
    res = run_cmd(cmd, check=False, capture=True)
    if res.code == 0:
        return True
    if any(m in res.stderr for m in _DOMAIN_MISSING_MARKERS):
        return False
    raise CmdError(cmd, res)


def domain_state(cfg: CIVMConfig) -> str:
    """Return the lowercased ``virsh domstate`` text, or '' when absent."""
    res = run_cmd(
        virsh_cmd(cfg, 'domstate', cfg.vm.name), check=False, capture=True
    )
    if res.code != 0:
        return ''
    return res.stdout.strip().lower()


def fetch_base_image(cfg: CIVMConfig, *, dry_run: bool = False) -> Path:
    p = artifact_paths(cfg)
    target = p.base_image
    if target.exists():
        log.info('Base cloud image already exists: {}', target)
        return target
    tmp = target.with_name(target.name + '.part')
    url = cfg.image.url
    if dry_run:
        log.info('DRYRUN: wget -O {} {}; mv {} {}', tmp, url, tmp, target)
        return target
    ensure_dir(target.parent)
    log.info('Downloading base cloud image {} -> {}', url, target)
    try:
        run_cmd(
            ['wget', '--progress=dot:giga', '-O', str(tmp), url],
            check=True,
            capture=False,
        )
    except CmdError:
        tmp.unlink(missing_ok=True)
        raise
    tmp.replace(target)
    log.info('Downloaded base cloud image: {}', target)
    return target


def convert_raw_image(cfg: CIVMConfig, *, dry_run: bool = False) -> Path:
    p = artifact_paths(cfg)
    if p.raw_image.exists():
        log.info('Raw disk image already exists: {}', p.raw_image)
        return p.raw_image
    _check_ready(CONVERT_RAW, cfg, dry_run=dry_run)
    cmd = [
        'qemu-img',
        'convert',
        '-f',
        'qcow2',
        '-O',
        'raw',
        str(p.base_image),
        str(p.raw_image),
    ]
    if dry_run:
        log.info('DRYRUN: {}', shell_join(cmd))
        return p.raw_image
    log.info('Converting cloud image to raw format: {}', p.raw_image)
    run_cmd(cmd, check=True, capture=True)
    return p.raw_image


def materialize_vm_disk(cfg: CIVMConfig, *, dry_run: bool = False) -> Path:
    """Create the copy-on-write VM disk unless a file of that name exists.

    An existing file is trusted as-is; its backing chain is not inspected.
    """
    p = artifact_paths(cfg)
    if p.vm_disk.exists():
        log.info('VM disk image already exists: {}', p.vm_disk)
        return p.vm_disk
    _check_ready(MATERIALIZE_DISK, cfg, dry_run=dry_run)
    cmd = [
        'qemu-img',
        'create',
        '-f',
        'qcow2',
        '-F',
        'qcow2',
        '-b',
        str(p.base_image),
        str(p.vm_disk),
        f'{cfg.vm.disk_gb}G',
    ]
    if dry_run:
        log.info('DRYRUN: {}', shell_join(cmd))
        return p.vm_disk
    log.info('Creating VM disk image: {}', p.vm_disk)
    run_cmd(cmd, check=True, capture=True)
    return p.vm_disk


def build_seed_image(
    cfg: CIVMConfig,
    user_data: str | Path | None = None,
    meta_data: str | Path | None = None,
    *,
    dry_run: bool = False,
) -> Path:
    p = artifact_paths(cfg)
    ud = Path(user_data).absolute() if user_data else p.user_data
    md = Path(meta_data).absolute() if meta_data else p.meta_data
    if user_data or meta_data:
        missing = [f'{x} not found' for x in (ud, md) if not x.exists()]
        if missing and not dry_run:
            raise PreconditionError(
                f'Cannot run {BUILD_SEED.name}: ' + '; '.join(missing)
            )
    else:
        _check_ready(BUILD_SEED, cfg, dry_run=dry_run)
    # Graft points keep the on-ISO names fixed regardless of local filenames.
    cmd = [
        'genisoimage',
        '-output',
        str(p.seed_iso),
        '-V',
        cfg.seed.volume_label,
        '-r',
        '-J',
        '-graft-points',
        f'user-data={ud}',
        f'meta-data={md}',
    ]
    if dry_run:
        log.info('DRYRUN: {}', shell_join(cmd))
        return p.seed_iso
    log.info('Creating cloud-init ISO: {}', p.seed_iso)
    run_cmd(cmd, check=True, capture=True)
    return p.seed_iso


def stage_managed_storage(
    cfg: CIVMConfig, *, dry_run: bool = False
) -> tuple[Path, Path]:
    """Place disk and seed where the hypervisor can read them.

    Returns the ``(disk, seed)`` paths to attach to the domain.
    """
    p = artifact_paths(cfg)
    if not cfg.paths.use_managed_storage:
        return p.vm_disk, p.seed_iso
    owner = cfg.paths.storage_owner
    if dry_run:
        log.info(
            'DRYRUN: stage {} / {} / {} into {} (owner={})',
            p.base_image.name,
            p.managed_vm_disk.name,
            p.seed_iso.name,
            p.managed_dir,
            owner,
        )
        return p.managed_vm_disk, p.managed_seed_iso
    log.info('Setting up files for libvirt in {}', p.managed_dir)
    run_cmd(
        ['mkdir', '-p', str(p.managed_dir)], sudo=True, check=True, capture=True
    )
    if not _managed_file_exists(p.managed_base_image):
        log.info('Copying base image to {}', p.managed_base_image)
        run_cmd(
            ['cp', str(p.base_image), str(p.managed_base_image)],
            sudo=True,
            check=True,
            capture=True,
        )
        run_cmd(
            ['chown', owner, str(p.managed_base_image)],
            sudo=True,
            check=True,
            capture=True,
        )
    log.info('Creating VM disk in libvirt storage: {}', p.managed_vm_disk)
    run_cmd(
        [
            'qemu-img',
            'create',
            '-f',
            'qcow2',
            '-F',
            'qcow2',
            '-b',
            str(p.managed_base_image),
            str(p.managed_vm_disk),
            f'{cfg.vm.disk_gb}G',
        ],
        sudo=True,
        check=True,
        capture=True,
    )
    run_cmd(
        ['chown', owner, str(p.managed_vm_disk)],
        sudo=True,
        check=True,
        capture=True,
    )
    run_cmd(
        ['cp', str(p.seed_iso), str(p.managed_seed_iso)],
        sudo=True,
        check=True,
        capture=True,
    )
    run_cmd(
        ['chown', owner, str(p.managed_seed_iso)],
        sudo=True,
        check=True,
        capture=True,
    )
    return p.managed_vm_disk, p.managed_seed_iso


def virt_install_cmd(cfg: CIVMConfig, disk: Path, seed: Path) -> list[str]:
    return [
        *virt_install_prefix(cfg),
        f'--name={cfg.vm.name}',
        f'--ram={cfg.vm.ram_mb}',
        f'--vcpus={cfg.vm.vcpus}',
        '--import',
        '--disk',
        f'path={disk},format=qcow2',
        '--disk',
        f'path={seed},device=cdrom',
        f'--os-variant={cfg.vm.os_variant}',
        '--network',
        f'bridge={cfg.network.bridge},model={cfg.network.model}',
        '--graphics',
        f'{cfg.graphics.kind},listen={cfg.graphics.listen}',
        '--noautoconsole',
    ]


def create_domain(cfg: CIVMConfig, *, dry_run: bool = False) -> None:
    name = cfg.vm.name
    if domain_exists(cfg):
        if not dry_run:
            raise DuplicateDomainError(name)
        log.info(
            'DRYRUN: {} would fail now: VM {} exists', CREATE_DOMAIN.name, name
        )
    _check_ready(CREATE_DOMAIN, cfg, dry_run=dry_run)
    disk, seed = stage_managed_storage(cfg, dry_run=dry_run)
    cmd = virt_install_cmd(cfg, disk, seed)
    if dry_run:
        log.info('DRYRUN: {}', shell_join(cmd))
        return
    log.info('Creating VM {}', name)
    run_cmd(cmd, check=True, capture=True)
    log.info('VM created: {}. Connect via VNC or wait for SSH.', name)


@dataclass(frozen=True)
class DomainStatus:
    name: str
    rows: list[str] = field(default_factory=list)
    state: str = 'absent'
    networks: str = ''
    error: str = ''

    @property
    def defined(self) -> bool:
        return bool(self.rows)

    @property
    def running(self) -> bool:
        return self.state == 'running'


def status(cfg: CIVMConfig) -> DomainStatus:
    """Read-only registry snapshot; absence is reported, never raised."""
    name = cfg.vm.name
    try:
        listing = run_cmd(
            virsh_cmd(cfg, 'list', '--all'), check=False, capture=True
        )
        nets = run_cmd(virsh_cmd(cfg, 'net-list'), check=False, capture=True)
    except OSError as ex:
        log.warning('Cannot query libvirt: {}', ex)
        return DomainStatus(name=name, error=f'virsh not found: {ex}')
    rows: list[str] = []
    state = 'absent'
    for line in listing.stdout.splitlines():
        parts = line.split(None, 2)
        if len(parts) >= 2 and parts[1] == name:
            rows.append(line.strip())
            state = parts[2].strip().lower() if len(parts) == 3 else 'unknown'
    error = ''
    if listing.code != 0:
        error = (listing.stderr or listing.stdout).strip()
    return DomainStatus(
        name=name,
        rows=rows,
        state=state,
        networks=(nets.stdout or nets.stderr).rstrip(),
        error=error,
    )


def _attempt(
    result: TeardownResult, label: str, fn: Callable[[], object]
) -> bool:
    try:
        fn()
    except (CmdError, OSError) as ex:
        log.warning('Cleanup step failed ({}): {}', label, ex)
        result.failed.append(f'{label}: {ex}')
        return False
    result.done.append(label)
    return True


def _wait_after_shutdown(cfg: CIVMConfig) -> None:
    td = cfg.teardown
    if not td.wait_for_shutoff:
        # Fixed grace period; undefine may still race a slow guest shutdown.
        time.sleep(td.shutdown_grace_s)
        return
    deadline = time.monotonic() + td.shutoff_timeout_s
    while time.monotonic() < deadline:
        state = domain_state(cfg)
        if state in ('', 'shut off'):
            return
        time.sleep(1)
    log.warning(
        'VM {} still not shut off after {}s; undefining anyway.',
        cfg.vm.name,
        td.shutoff_timeout_s,
    )


def _remove_local(
    result: TeardownResult, path: Path, *, dry_run: bool
) -> None:
    if not path.exists():
        result.skipped_missing.append(str(path))
        return
    if dry_run:
        log.info('DRYRUN: rm -f {}', path)
        return
    log.info('Removing {}', path)
    _attempt(result, f'remove {path}', path.unlink)


def _remove_managed(
    result: TeardownResult, path: Path, *, dry_run: bool
) -> None:
    try:
        present = _managed_file_exists(path)
    except CmdError as ex:
        log.warning('Cannot check {}: {}', path, ex)
        result.failed.append(f'check {path}: {ex}')
        return
    if not present:
        result.skipped_missing.append(str(path))
        return
    if dry_run:
        log.info('DRYRUN: sudo rm -f {}', path)
        return
    log.info('Removing {} from libvirt storage', path)
    _attempt(
        result,
        f'remove {path}',
        lambda: run_cmd(
            ['rm', '-f', str(path)], sudo=True, check=True, capture=True
        ),
    )


def undefine_cmd(cfg: CIVMConfig) -> list[str]:
    cmd = virsh_cmd(cfg, 'undefine', cfg.vm.name)
    # Local-mode disks live in work_dir and must survive teardown.
    if cfg.paths.use_managed_storage:
        cmd.append('--remove-all-storage')
    return cmd


def _undefine_domain(
    cfg: CIVMConfig, result: TeardownResult, exists: bool, *, dry_run: bool
) -> None:
    name = cfg.vm.name
    if not exists:
        result.skipped_missing.append(f'domain {name}')
        return
    cmd = undefine_cmd(cfg)
    if dry_run:
        log.info('DRYRUN: {}', shell_join(cmd))
        return
    log.info('Removing VM definition {}', name)
    _attempt(
        result,
        f'undefine {name}',
        lambda: run_cmd(cmd, check=True, capture=True),
    )


def teardown(cfg: CIVMConfig, *, dry_run: bool = False) -> TeardownResult:
    """Stop and undefine the VM and delete generated seed/disk copies.

    Every step is independent: a missing artifact is skipped, and a failure
    is recorded in the result without stopping the remaining steps. Local
    base image and VM disk are left alone.
    """
    name = cfg.vm.name
    p = artifact_paths(cfg)
    result = TeardownResult()
    log.info('Cleaning up VM {}', name)

    if domain_state(cfg) == 'running':
        if dry_run:
            log.info('DRYRUN: virsh shutdown {}', name)
        else:
            log.info('Shutting down VM {}', name)
            if _attempt(
                result,
                f'shutdown {name}',
                lambda: run_cmd(
                    virsh_cmd(cfg, 'shutdown', name), check=True, capture=True
                ),
            ):
                _wait_after_shutdown(cfg)

    try:
        exists = domain_exists(cfg)
    except CmdError as ex:
        log.warning('Cannot query VM {}: {}', name, ex)
        result.failed.append(f'query domain {name}: {ex}')
    else:
        _undefine_domain(cfg, result, exists, dry_run=dry_run)

    _remove_local(result, p.seed_iso, dry_run=dry_run)
    _remove_managed(result, p.managed_vm_disk, dry_run=dry_run)
    _remove_managed(result, p.managed_seed_iso, dry_run=dry_run)
    if result.failed:
        log.warning('Cleanup finished with {} failure(s)', len(result.failed))
    else:
        log.info('Cleanup complete')
    return result


def full_reset(cfg: CIVMConfig, *, dry_run: bool = False) -> TeardownResult:
    """Teardown plus removal of base image, raw image, and VM disk."""
    p = artifact_paths(cfg)
    result = teardown(cfg, dry_run=dry_run)
    log.info('Removing all generated files')
    for path in (p.base_image, p.raw_image, p.vm_disk):
        _remove_local(result, path, dry_run=dry_run)
    _remove_managed(result, p.managed_base_image, dry_run=dry_run)
    return result


def fix_permissions(cfg: CIVMConfig, *, dry_run: bool = False) -> list[Path]:
    """Let the hypervisor user traverse $HOME and read local disk/seed files.

    Only needed when ``paths.use_managed_storage`` is false.
    """
    p = artifact_paths(cfg)
    home = Path.home()
    qemu_user = cfg.paths.storage_owner.split(':')[0]
    targets = [x for x in (p.vm_disk, p.seed_iso) if x.exists()]
    cmds = [
        ['chmod', '755', str(home)],
        ['setfacl', '-m', f'u:{qemu_user}:x', str(home)],
    ]
    if targets:
        cmds.append(['chmod', '644', *map(str, targets)])
    log.info(
        'Giving {} access to {} (user={})', qemu_user, home, current_user()
    )
    for cmd in cmds:
        if dry_run:
            log.info('DRYRUN: sudo {}', shell_join(cmd))
            continue
        run_cmd(cmd, sudo=True, check=True, capture=True)
    return targets
