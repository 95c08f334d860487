"""Shared fixtures: a config rooted in tmp_path and a fake virtualization host."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from civm.config import CIVMConfig
from civm.util import CmdError, CmdResult

MUTATING_TOOLS = {
    'wget',
    'qemu-img',
    'genisoimage',
    'virt-install',
    'cp',
    'chown',
    'rm',
    'mkdir',
    'chmod',
    'setfacl',
}
MUTATING_VIRSH = {'shutdown', 'undefine', 'destroy', 'start', 'define'}


class FakeHost:
    """Emulates the wrapped tools against real files under tmp_path."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.domains: dict[str, dict] = {}
        # First-token (or 'virsh <sub>') -> CmdResult to return instead.
        self.failures: dict[str, CmdResult] = {}

    # -- helpers used by tests --
    def commands(self, tool: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == tool]

    def virsh_calls(self, sub: str) -> list[list[str]]:
        return [
            c for c in self.calls if c and c[0] == 'virsh' and sub in c
        ]

    def mutating_calls(self) -> list[list[str]]:
        out = []
        for c in self.calls:
            if c[0] in MUTATING_TOOLS:
                out.append(c)
            elif c[0] == 'virsh' and _virsh_args(c)[0] in MUTATING_VIRSH:
                out.append(c)
        return out

    # -- run_cmd replacement --
    def __call__(self, cmd, **kwargs) -> CmdResult:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        key = cmd[0]
        if key == 'virsh':
            key = f'virsh {_virsh_args(cmd)[0]}'
        if key in self.failures:
            res = self.failures[key]
        else:
            res = self._dispatch(cmd)
        if kwargs.get('check', True) and res.code != 0:
            raise CmdError(cmd, res)
        return res

    def _dispatch(self, cmd: list[str]) -> CmdResult:
        tool = cmd[0]
        if tool == 'wget':
            Path(cmd[cmd.index('-O') + 1]).write_bytes(b'QFI\xfb base')
        elif tool == 'qemu-img' and cmd[1] == 'create':
            backing = cmd[cmd.index('-b') + 1]
            Path(cmd[-2]).write_text(f'backing={backing}\n', encoding='utf-8')
        elif tool == 'qemu-img' and cmd[1] == 'convert':
            Path(cmd[-1]).write_bytes(Path(cmd[-2]).read_bytes())
        elif tool == 'genisoimage':
            out = Path(cmd[cmd.index('-output') + 1])
            parts = []
            for arg in cmd:
                if '=' in arg and not arg.startswith('-'):
                    name, src = arg.split('=', 1)
                    parts.append(
                        f'{name}:{Path(src).read_text(encoding="utf-8")}'
                    )
            out.write_text(''.join(parts), encoding='utf-8')
        elif tool == 'test':
            return CmdResult(0 if Path(cmd[-1]).is_file() else 1, '', '')
        elif tool == 'mkdir':
            Path(cmd[-1]).mkdir(parents=True, exist_ok=True)
        elif tool == 'cp':
            shutil.copyfile(cmd[1], cmd[2])
        elif tool == 'rm':
            for arg in cmd[1:]:
                if not arg.startswith('-'):
                    Path(arg).unlink(missing_ok=True)
        elif tool == 'virt-install':
            return self._virt_install(cmd)
        elif tool == 'virsh':
            return self._virsh(_virsh_args(cmd))
        return CmdResult(0, '', '')

    def _virt_install(self, cmd: list[str]) -> CmdResult:
        name = next(a.split('=', 1)[1] for a in cmd if a.startswith('--name='))
        storage = []
        for idx, arg in enumerate(cmd):
            if arg == '--disk':
                spec = dict(
                    kv.split('=', 1) for kv in cmd[idx + 1].split(',')
                )
                storage.append(Path(spec['path']))
        self.domains[name] = {'state': 'running', 'storage': storage}
        return CmdResult(0, f'Domain creation completed: {name}\n', '')

    def _virsh(self, args: list[str]) -> CmdResult:
        sub = args[0]
        missing = CmdResult(
            1, '', f"error: failed to get domain '{args[-1]}'\n"
        )
        if sub == 'dominfo':
            if args[1] not in self.domains:
                return missing
            return CmdResult(0, f'Name: {args[1]}\n', '')
        if sub == 'domstate':
            if args[1] not in self.domains:
                return missing
            return CmdResult(0, self.domains[args[1]]['state'] + '\n', '')
        if sub == 'list':
            rows = [' Id   Name        State', '----------------------------']
            for idx, (name, dom) in enumerate(sorted(self.domains.items())):
                if '--all' not in args and dom['state'] != 'running':
                    continue
                dom_id = str(idx + 1) if dom['state'] == 'running' else '-'
                rows.append(f' {dom_id:<4} {name:<11} {dom["state"]}')
            return CmdResult(0, '\n'.join(rows) + '\n', '')
        if sub == 'net-list':
            return CmdResult(
                0,
                ' Name      State    Autostart   Persistent\n'
                '--------------------------------------------\n'
                ' default   active   yes         yes\n',
                '',
            )
        if sub == 'shutdown':
            if args[1] not in self.domains:
                return missing
            self.domains[args[1]]['state'] = 'shut off'
            return CmdResult(0, f'Domain {args[1]} is being shutdown\n', '')
        if sub == 'undefine':
            dom = self.domains.pop(args[1], None)
            if dom is None:
                return missing
            if '--remove-all-storage' in args:
                for path in dom['storage']:
                    path.unlink(missing_ok=True)
            return CmdResult(0, f'Domain {args[1]} has been undefined\n', '')
        return CmdResult(0, '', '')


def _virsh_args(cmd: list[str]) -> list[str]:
    args = cmd[1:]
    if args[:1] == ['-c']:
        args = args[2:]
    return args or ['']


@pytest.fixture
def fake_host(monkeypatch) -> FakeHost:
    host = FakeHost()
    monkeypatch.setattr('civm.sequencer.run_cmd', host)
    monkeypatch.setattr('civm.sequencer.time.sleep', lambda s: None)
    return host


@pytest.fixture
def cfg(tmp_path: Path) -> CIVMConfig:
    work = tmp_path / 'work'
    work.mkdir()
    (work / 'user-data').write_text('#cloud-config\nhostname: one\n')
    (work / 'meta-data').write_text('instance-id: demo\n')
    cfg = CIVMConfig()
    cfg.vm.name = 'demo'
    cfg.paths.work_dir = str(work)
    cfg.paths.managed_dir = str(tmp_path / 'managed')
    cfg.teardown.shutdown_grace_s = 0
    return cfg
