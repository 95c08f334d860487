"""Rendering for host, artifact, domain, and network status."""

from __future__ import annotations

from pathlib import Path

from .config import CIVMConfig, artifact_paths
from .host import check_commands
from .pipeline import pipeline_progress
from .sequencer import DomainStatus, status


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def clip(text: str, *, max_lines: int = 60) -> str:
    lines = (text or '').strip().splitlines()
    if len(lines) <= max_lines:
        return '\n'.join(lines)
    keep: list[str] = list(lines[:max_lines])
    keep.append(f'... ({len(lines) - max_lines} more lines)')
    return '\n'.join(keep)


def render_domain_status(st: DomainStatus) -> str:
    lines = ['VM Status:']
    if st.rows:
        lines.extend(f'  {row}' for row in st.rows)
        if len(st.rows) > 1:
            lines.append(
                f'  warning: {len(st.rows)} domains named {st.name!r}'
            )
    else:
        lines.append(f"  VM '{st.name}' not found")
        if st.error:
            lines.append(f'  ({clip(st.error, max_lines=3)})')
    lines.append('')
    lines.append('Network Status:')
    net = clip(st.networks) if st.networks else '(unavailable)'
    lines.extend(f'  {line}' for line in net.splitlines())
    return '\n'.join(lines)


def render_status(
    cfg: CIVMConfig,
    path: Path | None = None,
    *,
    st: DomainStatus | None = None,
) -> str:
    if st is None:
        st = status(cfg)
    p = artifact_paths(cfg)
    lines: list[str] = ['🧭 civm status']
    if path is not None:
        lines.append(f'📄 Config: {path}')
    lines.append(f'📁 Work dir: {p.work_dir}')
    lines.append('')

    missing, missing_opt = check_commands()
    host_detail = (
        'all required commands found'
        if not missing
        else f'missing: {", ".join(missing)}'
    )
    if missing_opt:
        host_detail += f' (optional missing: {", ".join(missing_opt)})'
    lines.append(status_line(not missing, 'Host tools', host_detail))

    for step, done in pipeline_progress(cfg):
        if done is None or step.produces is None:
            continue
        lines.append(status_line(done, step.title, str(step.produces(p))))

    if st.defined:
        lines.append(
            status_line(st.running, f'Domain {st.name}', f'state={st.state}')
        )
    else:
        lines.append(status_line(False, f'Domain {st.name}', 'not defined'))
    lines.append('')
    lines.append(render_domain_status(st))
    return '\n'.join(lines)
