"""Tests for seed templates, config file checks, and SSH key injection."""

from __future__ import annotations

from pathlib import Path

import pytest

from civm.cloudinit import (
    default_user_data,
    detect_ssh_pubkey,
    generate_ssh_key,
    inject_ssh_key,
    user_data_has_ssh_key,
    validate_config_files,
    write_seed_templates,
)
from civm.config import artifact_paths
from civm.util import CmdResult

KEY = 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFake tester@host'


def test_default_user_data_with_and_without_key(cfg) -> None:
    text = default_user_data(cfg, KEY)
    assert text.startswith('#cloud-config\n')
    assert 'hostname: demo' in text
    assert f'      - {KEY}' in text
    bare = default_user_data(cfg)
    assert 'ssh_authorized_keys:\n' in bare
    assert 'ssh-ed25519' not in bare


def test_write_seed_templates_keeps_existing(cfg) -> None:
    p = artifact_paths(cfg)
    assert write_seed_templates(cfg) == []
    assert 'hostname: one' in p.user_data.read_text()
    written = write_seed_templates(cfg, pubkey=KEY, force=True)
    assert written == [p.user_data, p.meta_data]
    assert KEY in p.user_data.read_text()
    assert p.meta_data.read_text().startswith('instance-id: demo')


def test_validate_config_files(cfg) -> None:
    findings = {label: flag for flag, label, _ in validate_config_files(cfg)}
    assert findings['Found user-data'] is True
    assert findings['Found meta-data'] is True
    assert findings['SSH key'] is None

    p = artifact_paths(cfg)
    p.meta_data.unlink()
    (p.work_dir / 'init.yaml').write_text('ssh_authorized_keys: []\n')
    results = validate_config_files(cfg)
    findings = {label: flag for flag, label, _ in results}
    assert findings['Required file missing: meta-data'] is False
    ext = [d for _, label, d in results if label == 'Extended configuration']
    assert ext and ext[0].endswith('(SSH keys configured)')


def test_inject_ssh_key_appends_under_section(tmp_path: Path) -> None:
    ud = tmp_path / 'user-data'
    ud.write_text('#cloud-config\nusers:\n  - name: ubuntu\n    ssh_authorized_keys:\n')
    backup = inject_ssh_key(ud, KEY + '\n')
    assert backup == tmp_path / 'user-data.backup'
    assert 'ssh-ed25519' not in backup.read_text()
    lines = ud.read_text().splitlines()
    idx = lines.index('    ssh_authorized_keys:')
    assert lines[idx + 1] == f'      - {KEY}'
    assert user_data_has_ssh_key(ud)


def test_inject_ssh_key_replaces_existing(tmp_path: Path) -> None:
    ud = tmp_path / 'user-data'
    ud.write_text(
        '#cloud-config\nssh_authorized_keys:\n  - ssh-rsa AAAAold old@box\n'
    )
    # Backslashes in the key must be written literally.
    new_key = r'ssh-ed25519 AAAA\1new new@box'
    inject_ssh_key(ud, new_key)
    text = ud.read_text()
    assert 'ssh-rsa' not in text
    assert f'  - {new_key}' in text
    assert text.count('ssh-ed25519') == 1


def test_inject_ssh_key_errors(tmp_path: Path) -> None:
    ud = tmp_path / 'user-data'
    ud.write_text('#cloud-config\nhostname: x\n')
    with pytest.raises(ValueError):
        inject_ssh_key(ud, '   ')
    with pytest.raises(RuntimeError, match='ssh_authorized_keys'):
        inject_ssh_key(ud, KEY)


def test_detect_ssh_pubkey_prefers_ed25519(tmp_path: Path) -> None:
    assert detect_ssh_pubkey(tmp_path) is None
    (tmp_path / 'id_rsa.pub').write_text('ssh-rsa AAA x')
    assert detect_ssh_pubkey(tmp_path) == tmp_path / 'id_rsa.pub'
    (tmp_path / 'id_ed25519.pub').write_text(KEY)
    assert detect_ssh_pubkey(tmp_path) == tmp_path / 'id_ed25519.pub'


def test_generate_ssh_key(monkeypatch, tmp_path: Path) -> None:
    calls = []
    monkeypatch.setattr(
        'civm.cloudinit.run_cmd',
        lambda cmd, **kwargs: (calls.append(cmd) or CmdResult(0, '', '')),
    )
    pub = generate_ssh_key(tmp_path / 'ssh')
    assert pub == tmp_path / 'ssh' / 'id_ed25519.pub'
    assert calls[0][:3] == ['ssh-keygen', '-t', 'ed25519']
    assert calls[0][-2:] == ['-N', '']
