"""Host dependency checks, package installation, and libvirt setup."""

from __future__ import annotations

import os
import platform
import tempfile
from pathlib import Path

from loguru import logger

from .config import CIVMConfig
from .runtime import virsh_cmd
from .util import current_user, run_cmd, which

log = logger

REQUIRED_CMDS = ['qemu-img', 'virt-install', 'genisoimage', 'virsh', 'wget']
OPTIONAL_CMDS = ['setfacl', 'ssh-keygen']

DEBIAN_PACKAGES = [
    'qemu-kvm',
    'qemu-utils',
    'libvirt-daemon-system',
    'libvirt-clients',
    'bridge-utils',
    'virt-manager',
    'virtinst',
    'genisoimage',
    'wget',
    'curl',
    'make',
]

DEFAULT_NETWORK_XML = """<network>
  <name>{name}</name>
  <forward mode='nat'>
    <nat>
      <port start='1024' end='65535'/>
    </nat>
  </forward>
  <bridge name='{bridge}' stp='on' delay='0'/>
  <ip address='192.168.122.1' netmask='255.255.255.0'>
    <dhcp>
      <range start='192.168.122.2' end='192.168.122.254'/>
    </dhcp>
  </ip>
</network>
"""


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def _read_os_release() -> dict[str, str]:
    data = Path('/etc/os-release').read_text(encoding='utf-8')
    out: dict[str, str] = {}
    for line in data.splitlines():
        if '=' not in line:
            continue
        key, val = line.split('=', 1)
        out[key.strip()] = val.strip().strip('"')
    return out


def host_is_debian_like() -> bool:
    try:
        info = _read_os_release()
    except OSError:
        return False
    ids = {info.get('ID', '')} | set(info.get('ID_LIKE', '').split())
    return bool(ids & {'debian', 'ubuntu'})


def _cpu_has_virt_flags() -> bool | None:
    try:
        text = Path('/proc/cpuinfo').read_text(
            encoding='utf-8', errors='ignore'
        )
    except OSError:
        return None
    for line in text.splitlines():
        low = line.strip().lower()
        if low.startswith('flags') or low.startswith('features'):
            flags = set(low.split())
            if flags & {'vmx', 'svm'}:
                return True
    return False


def check_system() -> list[tuple[bool | None, str, str]]:
    """Collect ``(ok, label, detail)`` findings about the host itself.

    ``ok`` is None for advisory findings that do not block anything.
    """
    findings: list[tuple[bool | None, str, str]] = []
    try:
        info = _read_os_release()
        findings.append(
            (True, 'Linux distribution', info.get('PRETTY_NAME', 'unknown'))
        )
    except OSError:
        findings.append(
            (False, 'Linux distribution', 'cannot read /etc/os-release')
        )

    arch = platform.machine()
    if arch == 'x86_64':
        findings.append((True, 'Architecture', arch))
    else:
        findings.append(
            (None, 'Architecture', f'designed for x86_64, found {arch}')
        )

    virt = _cpu_has_virt_flags()
    if virt:
        findings.append((True, 'Hardware virtualization', 'vmx/svm present'))
    else:
        findings.append(
            (
                None,
                'Hardware virtualization',
                'not detected; VMs may not perform optimally',
            )
        )
    return findings


def _package_installed(pkg: str) -> bool:
    res = run_cmd(['dpkg', '-s', pkg], check=False, capture=True)
    return res.code == 0 and 'install ok installed' in res.stdout


def install_deps_debian() -> list[str]:
    """Install the virtualization toolchain; returns packages installed."""
    if not host_is_debian_like():
        raise RuntimeError(
            'Host is not detected as Debian/Ubuntu; install deps manually.'
        )
    run_cmd(['apt-get', 'update', '-y'], sudo=True, check=True, capture=False)
    installed = []
    for pkg in DEBIAN_PACKAGES:
        if _package_installed(pkg):
            log.info('{} is already installed', pkg)
            continue
        log.info('Installing {}', pkg)
        run_cmd(
            ['apt-get', 'install', '-y', pkg],
            sudo=True,
            check=True,
            capture=False,
        )
        installed.append(pkg)
    return installed


def ensure_default_network(cfg: CIVMConfig) -> bool:
    """Define and start the NAT network; returns False on best-effort miss."""
    name = cfg.network.libvirt_network
    listing = run_cmd(
        virsh_cmd(cfg, 'net-list', '--all'), sudo=True, check=False
    )
    defined = any(
        line.split()[:1] == [name] for line in listing.stdout.splitlines()
    )
    if not defined:
        log.info('Creating {} libvirt network', name)
        xml = DEFAULT_NETWORK_XML.format(name=name, bridge=cfg.network.bridge)
        with tempfile.NamedTemporaryFile(
            'w', suffix='.xml', delete=False
        ) as f:
            f.write(xml)
            tmp = f.name
        try:
            res = run_cmd(
                virsh_cmd(cfg, 'net-define', tmp), sudo=True, check=False
            )
        finally:
            os.unlink(tmp)
        if res.code != 0:
            log.warning(
                'Failed to create {} network, continuing: {}',
                name,
                res.stderr.strip(),
            )
            return False

    active = run_cmd(virsh_cmd(cfg, 'net-list'), sudo=True, check=False)
    is_active = any(
        line.split()[:2] == [name, 'active']
        for line in active.stdout.splitlines()
    )
    if is_active:
        return True
    log.info('Starting {} libvirt network', name)
    res = run_cmd(virsh_cmd(cfg, 'net-start', name), sudo=True, check=False)
    if res.code != 0:
        log.warning(
            'Failed to start {} network; configure networking manually: {}',
            name,
            res.stderr.strip(),
        )
        return False
    run_cmd(virsh_cmd(cfg, 'net-autostart', name), sudo=True, check=False)
    log.info('{} network started and enabled', name)
    return True


def setup_libvirt(cfg: CIVMConfig) -> bool:
    user = current_user()
    run_cmd(
        ['usermod', '-a', '-G', 'libvirt', user],
        sudo=True,
        check=True,
        capture=True,
    )
    run_cmd(
        ['systemctl', 'enable', 'libvirtd'], sudo=True, check=True, capture=True
    )
    run_cmd(
        ['systemctl', 'start', 'libvirtd'], sudo=True, check=True, capture=True
    )
    net_ok = ensure_default_network(cfg)
    log.warning(
        'Log out and back in for libvirt group membership to apply '
        '(or run: newgrp libvirt)'
    )
    return net_ok
