"""Helpers for building virsh / virt-install command prefixes."""

from __future__ import annotations

from .config import CIVMConfig


def virsh_cmd(cfg: CIVMConfig, *args: str) -> list[str]:
    uri = (cfg.vm.libvirt_uri or '').strip()
    if uri:
        return ['virsh', '-c', uri, *args]
    return ['virsh', *args]


def virt_install_prefix(cfg: CIVMConfig) -> list[str]:
    uri = (cfg.vm.libvirt_uri or '').strip()
    if uri:
        return ['virt-install', '--connect', uri]
    return ['virt-install']
