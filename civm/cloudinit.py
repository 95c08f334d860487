"""Seed input files: starter templates, validation, and SSH key injection."""

from __future__ import annotations

import re
import shutil
import socket
from pathlib import Path

from loguru import logger

from .config import CIVMConfig, artifact_paths
from .util import current_user, ensure_dir, run_cmd

log = logger

SSH_KEY_PATTERN = re.compile(r'ssh-(?:rsa|ed25519)\s+\S+.*')
PUBKEY_CANDIDATES = ('id_ed25519.pub', 'id_rsa.pub')


def default_user_data(cfg: CIVMConfig, pubkey: str = '') -> str:
    keys = f'\n      - {pubkey}' if pubkey else ''
    return f"""#cloud-config
hostname: {cfg.vm.name}
users:
  - name: ubuntu
    groups: [sudo]
    shell: /bin/bash
    sudo: ["ALL=(ALL) NOPASSWD:ALL"]
    ssh_authorized_keys:{keys}
ssh_pwauth: false
disable_root: true
package_update: true
packages:
  - qemu-guest-agent
runcmd:
  - systemctl enable --now qemu-guest-agent
"""


def default_meta_data(cfg: CIVMConfig) -> str:
    return f"""instance-id: {cfg.vm.name}
local-hostname: {cfg.vm.name}
"""


def write_seed_templates(
    cfg: CIVMConfig, *, pubkey: str = '', force: bool = False
) -> list[Path]:
    """Write starter user-data/meta-data; existing files are kept unless forced."""
    p = artifact_paths(cfg)
    written = []
    for path, text in (
        (p.user_data, default_user_data(cfg, pubkey)),
        (p.meta_data, default_meta_data(cfg)),
    ):
        if path.exists() and not force:
            log.info('Keeping existing {}', path)
            continue
        ensure_dir(path.parent)
        path.write_text(text, encoding='utf-8')
        log.info('Wrote {}', path)
        written.append(path)
    return written


def user_data_has_ssh_key(path: Path) -> bool:
    text = path.read_text(encoding='utf-8', errors='ignore')
    return 'ssh-rsa' in text or 'ssh-ed25519' in text


def validate_config_files(
    cfg: CIVMConfig,
) -> list[tuple[bool | None, str, str]]:
    p = artifact_paths(cfg)
    findings: list[tuple[bool | None, str, str]] = []
    for label, path in (('user-data', p.user_data), ('meta-data', p.meta_data)):
        if path.exists():
            findings.append((True, f'Found {label}', str(path)))
        else:
            findings.append((False, f'Required file missing: {label}', str(path)))

    if p.user_data.exists():
        if user_data_has_ssh_key(p.user_data):
            findings.append((True, 'SSH key', 'found in user-data'))
        else:
            findings.append(
                (
                    None,
                    'SSH key',
                    'none in user-data; add one for access (civm ssh_key)',
                )
            )

    extended = p.work_dir / 'init.yaml'
    if extended.exists():
        detail = str(extended)
        text = extended.read_text(encoding='utf-8', errors='ignore')
        if 'ssh-authorized-keys' in text or 'ssh_authorized_keys' in text:
            detail += ' (SSH keys configured)'
        findings.append((True, 'Extended configuration', detail))
    return findings


def detect_ssh_pubkey(ssh_dir: Path | None = None) -> Path | None:
    ssh_dir = ssh_dir or Path.home() / '.ssh'
    for name in PUBKEY_CANDIDATES:
        cand = ssh_dir / name
        if cand.exists():
            return cand
    return None


def generate_ssh_key(ssh_dir: Path | None = None) -> Path:
    ssh_dir = ssh_dir or Path.home() / '.ssh'
    ensure_dir(ssh_dir)
    key = ssh_dir / 'id_ed25519'
    comment = f'{current_user()}@{socket.gethostname()}'
    run_cmd(
        ['ssh-keygen', '-t', 'ed25519', '-C', comment, '-f', str(key), '-N', ''],
        check=True,
        capture=True,
    )
    log.info('SSH key pair generated: {}', key)
    return Path(str(key) + '.pub')


def inject_ssh_key(user_data: Path, pubkey: str) -> Path:
    """Put ``pubkey`` into user-data and return the backup path.

    Existing ssh-rsa / ssh-ed25519 entries are replaced; otherwise the key
    is appended under ``ssh_authorized_keys:``.
    """
    pubkey = pubkey.strip()
    if not pubkey:
        raise ValueError('Empty SSH public key')
    backup = user_data.with_name(user_data.name + '.backup')
    shutil.copy2(user_data, backup)
    lines = user_data.read_text(encoding='utf-8').splitlines()
    if any(SSH_KEY_PATTERN.search(line) for line in lines):
        lines = [SSH_KEY_PATTERN.sub(lambda m: pubkey, line) for line in lines]
    else:
        for idx, line in enumerate(lines):
            if line.strip().startswith('ssh_authorized_keys:'):
                lines.insert(idx + 1, f'      - {pubkey}')
                break
        else:
            raise RuntimeError(
                f'No ssh_authorized_keys section found in {user_data}'
            )
    user_data.write_text('\n'.join(lines) + '\n', encoding='utf-8')
    log.info('SSH key added to {} (backup: {})', user_data, backup)
    return backup
