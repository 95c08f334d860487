from __future__ import annotations

from pathlib import Path

import pytest
from loguru import logger

from civm.cli import CIVMModalCLI, main
from civm.cli.help import _raw_commands_text
from civm.cli.main import _count_verbose, _normalize_argv
from civm.config import CIVMConfig, artifact_paths, load, save
from civm.util import CmdResult

KEY = 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAICli tester@host'


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger.remove()


def _write_cfg(tmp_path: Path, work: Path | None = None) -> Path:
    cfg_path = tmp_path / '.civm.toml'
    cfg = CIVMConfig()
    cfg.vm.name = 'demo'
    cfg.paths.work_dir = str(work or tmp_path / 'work')
    cfg.paths.managed_dir = str(tmp_path / 'managed')
    cfg.teardown.shutdown_grace_s = 0
    save(cfg_path, cfg)
    return cfg_path


def _run(argv: list[str]) -> int:
    rc = CIVMModalCLI.main(argv=argv, _noexit=True)
    return 0 if rc is None else int(rc)


def test_dryrun_commands_with_yes(tmp_path: Path, fake_host) -> None:
    cfg_path = _write_cfg(tmp_path, tmp_path)
    commands = [
        ['help', 'plan', '--config', str(cfg_path)],
        ['help', 'tree', '--config', str(cfg_path)],
        ['help', 'raw', '--config', str(cfg_path)],
        ['fetch_base_image', '--dry_run', '--config', str(cfg_path)],
        ['convert_raw', '--dry_run', '--config', str(cfg_path)],
        ['materialize_disk', '--dry_run', '--config', str(cfg_path)],
        ['build_seed', '--dry_run', '--config', str(cfg_path)],
        ['create_domain', '--yes', '--dry_run', '--config', str(cfg_path)],
        ['up', '--yes', '--dry_run', '--config', str(cfg_path)],
        ['teardown', '--yes', '--dry_run', '--config', str(cfg_path)],
        ['full_reset', '--yes', '--dry_run', '--config', str(cfg_path)],
    ]
    for argv in commands:
        assert _run(argv) == 0, argv
    assert fake_host.mutating_calls() == []


def test_help_tree_includes_one_line_descriptions(
    tmp_path: Path, capsys
) -> None:
    cfg_path = _write_cfg(tmp_path)
    assert _run(['help', 'tree', '--config', str(cfg_path)]) == 0
    out = capsys.readouterr().out
    assert 'civm help tree - Print the expanded civm command tree.' in out
    assert (
        'civm fetch-base-image - Download the base cloud image unless it is already present.'
        in out
    )
    assert 'civm config init - Write a config file with default settings.' in out


def test_status_command_reports_absent_vm(
    tmp_path: Path, fake_host, monkeypatch, capsys
) -> None:
    monkeypatch.setattr('civm.status.check_commands', lambda: ([], []))
    cfg_path = _write_cfg(tmp_path)
    assert _run(['status', '--config', str(cfg_path)]) == 0
    out = capsys.readouterr().out
    assert "VM 'demo' not found" in out
    assert f'📄 Config: {cfg_path.resolve()}' in out


def test_config_init_and_show(tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'sub' / 'civm.toml'
    assert _run(['config', 'init', '--config', str(cfg_path), '--vm', 'box']) == 0
    assert load(cfg_path).vm.name == 'box'
    with pytest.raises(FileExistsError):
        _run(['config', 'init', '--config', str(cfg_path)])
    capsys.readouterr()
    assert _run(['config', 'show', '--config', str(cfg_path)]) == 0
    out = capsys.readouterr().out
    assert 'name = "box"' in out


def test_init_writes_templates_with_detected_key(
    tmp_path: Path, monkeypatch
) -> None:
    home = tmp_path / 'home'
    (home / '.ssh').mkdir(parents=True)
    (home / '.ssh' / 'id_ed25519.pub').write_text(KEY + '\n')
    monkeypatch.setenv('HOME', str(home))
    cfg_path = _write_cfg(tmp_path)
    assert _run(['init', '--config', str(cfg_path)]) == 0
    p = artifact_paths(load(cfg_path))
    assert KEY in p.user_data.read_text()
    assert p.meta_data.exists()


def test_ssh_key_command_injects_given_key(tmp_path: Path) -> None:
    cfg_path = _write_cfg(tmp_path)
    p = artifact_paths(load(cfg_path))
    p.work_dir.mkdir()
    p.user_data.write_text('#cloud-config\nssh_authorized_keys:\n')
    pub = tmp_path / 'key.pub'
    pub.write_text(KEY + '\n')
    assert _run(['ssh_key', '--config', str(cfg_path), '--pubkey', str(pub)]) == 0
    assert f'      - {KEY}' in p.user_data.read_text()
    assert p.user_data.with_name('user-data.backup').exists()


def test_teardown_reports_failures(tmp_path: Path, fake_host, monkeypatch) -> None:
    monkeypatch.setattr('civm.pipeline.which', lambda cmd: f'/usr/bin/{cmd}')
    cfg_path = _write_cfg(tmp_path, tmp_path)
    fake_host.domains['demo'] = {'state': 'shut off', 'storage': []}
    fake_host.failures['virsh undefine'] = CmdResult(1, '', 'error: busy')
    assert _run(['teardown', '--yes', '--config', str(cfg_path)]) == 1


def test_main_reports_failed_step_and_exits_2(
    tmp_path: Path, monkeypatch, capsys
) -> None:
    monkeypatch.setattr('civm.pipeline.which', lambda cmd: None)
    cfg_path = _write_cfg(tmp_path)
    with pytest.raises(SystemExit) as info:
        main(['create-domain', '--yes', '--config', str(cfg_path)])
    assert info.value.code == 2
    err = capsys.readouterr().err
    assert 'ERROR: create-domain: Missing required tools' in err


def test_main_duplicate_domain_exits_2(
    tmp_path: Path, fake_host, monkeypatch, capsys
) -> None:
    monkeypatch.setattr('civm.pipeline.which', lambda cmd: f'/usr/bin/{cmd}')
    cfg_path = _write_cfg(tmp_path)
    fake_host.domains['demo'] = {'state': 'running', 'storage': []}
    with pytest.raises(SystemExit) as info:
        main(['create-vm', '--yes', '--config', str(cfg_path)])
    assert info.value.code == 2
    err = capsys.readouterr().err
    assert "ERROR: create-domain: VM 'demo' already exists" in err
    assert fake_host.commands('virt-install') == []


def test_normalize_argv() -> None:
    assert _normalize_argv(['full-reset', '--yes']) == ['full_reset', '--yes']
    assert _normalize_argv(['clean']) == ['teardown']
    assert _normalize_argv(['clean-all']) == ['full_reset']
    assert _normalize_argv(['download']) == ['fetch_base_image']
    assert _normalize_argv(['iso', '--dry-run']) == ['build_seed', '--dry-run']
    assert _normalize_argv(['--help']) == ['--help']
    assert _normalize_argv([]) == []


def test_count_verbose() -> None:
    assert _count_verbose(['status', '-vv']) == 2
    assert _count_verbose(['status', '--verbose', '-v']) == 2
    assert _count_verbose(['status', '--vm', 'x']) == 0


def test_help_raw_matches_managed_storage_mode(tmp_path: Path) -> None:
    cfg = load(_write_cfg(tmp_path))
    p = artifact_paths(cfg)
    text = _raw_commands_text(cfg)
    assert f'-graft-points user-data={p.user_data} meta-data={p.meta_data}' in text
    assert '--remove-all-storage' in text
    assert f'path={p.managed_vm_disk},format=qcow2' in text

    cfg.paths.use_managed_storage = False
    text = _raw_commands_text(cfg)
    assert '--remove-all-storage' not in text
    assert 'sudo' not in text
    assert f'path={p.vm_disk},format=qcow2' in text
