"""Provision a single cloud-init VM on local libvirt/KVM.

Wraps wget, qemu-img, genisoimage, virt-install and virsh in an idempotent,
ordered sequence: base image, copy-on-write disk, seed ISO, domain.
"""

__version__ = '0.1.0'
