"""Ordered provisioning steps and the artifact preconditions each one needs.

The sequencer checks a step's prerequisites here instead of relying on the
caller to invoke steps in the right order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import ArtifactPaths, CIVMConfig, artifact_paths
from .errors import PreconditionError
from .util import which


@dataclass(frozen=True)
class Requirement:
    label: str
    path: Callable[[ArtifactPaths], Path]
    # Step that produces the artifact, or '' for operator-provided inputs.
    produced_by: str = ''


@dataclass(frozen=True)
class Step:
    name: str
    title: str
    tools: tuple[str, ...]
    requires: tuple[Requirement, ...] = ()
    produces: Callable[[ArtifactPaths], Path] | None = None


FETCH_BASE_IMAGE = Step(
    name='fetch-base-image',
    title='Download base cloud image',
    tools=('wget',),
    produces=lambda p: p.base_image,
)

CONVERT_RAW = Step(
    name='convert-raw',
    title='Convert base image to raw format',
    tools=('qemu-img',),
    requires=(
        Requirement('base image', lambda p: p.base_image, 'fetch-base-image'),
    ),
    produces=lambda p: p.raw_image,
)

MATERIALIZE_DISK = Step(
    name='materialize-disk',
    title='Create copy-on-write VM disk',
    tools=('qemu-img',),
    requires=(
        Requirement('base image', lambda p: p.base_image, 'fetch-base-image'),
    ),
    produces=lambda p: p.vm_disk,
)

BUILD_SEED = Step(
    name='build-seed',
    title='Build cloud-init seed ISO',
    tools=('genisoimage',),
    requires=(
        Requirement('user-data', lambda p: p.user_data),
        Requirement('meta-data', lambda p: p.meta_data),
    ),
    produces=lambda p: p.seed_iso,
)

CREATE_DOMAIN = Step(
    name='create-domain',
    title='Define and start the VM domain',
    tools=('virsh', 'virt-install', 'qemu-img'),
    requires=(
        Requirement('base image', lambda p: p.base_image, 'fetch-base-image'),
        Requirement('VM disk', lambda p: p.vm_disk, 'materialize-disk'),
        Requirement('seed ISO', lambda p: p.seed_iso, 'build-seed'),
    ),
)

TEARDOWN = Step(name='teardown', title='Stop and remove the VM', tools=('virsh',))

FULL_RESET = Step(
    name='full-reset', title='Remove the VM and all images', tools=('virsh',)
)

#: The default ``up`` sequence, in dependency order.
PIPELINE: tuple[Step, ...] = (
    FETCH_BASE_IMAGE,
    MATERIALIZE_DISK,
    BUILD_SEED,
    CREATE_DOMAIN,
)

STEPS: dict[str, Step] = {
    s.name: s
    for s in (
        FETCH_BASE_IMAGE,
        CONVERT_RAW,
        MATERIALIZE_DISK,
        BUILD_SEED,
        CREATE_DOMAIN,
        TEARDOWN,
        FULL_RESET,
    )
}


def get_step(name: str) -> Step:
    key = name.replace('_', '-')
    try:
        return STEPS[key]
    except KeyError:
        raise KeyError(
            f'Unknown step {name!r}; expected one of: {", ".join(STEPS)}'
        ) from None


def missing_tools(step: Step | str) -> list[str]:
    if isinstance(step, str):
        step = get_step(step)
    return [t for t in step.tools if which(t) is None]


def missing_prerequisites(step: Step | str, cfg: CIVMConfig) -> list[str]:
    """Describe each unmet artifact prerequisite of ``step``."""
    if isinstance(step, str):
        step = get_step(step)
    paths = artifact_paths(cfg)
    missing = []
    for req in step.requires:
        path = req.path(paths)
        if path.exists():
            continue
        hint = f' (run {req.produced_by} first)' if req.produced_by else ''
        missing.append(f'{req.label} not found: {path}{hint}')
    return missing


def require_ready(step: Step | str, cfg: CIVMConfig) -> None:
    if isinstance(step, str):
        step = get_step(step)
    missing = missing_prerequisites(step, cfg)
    if missing:
        raise PreconditionError(
            f'Cannot run {step.name}: ' + '; '.join(missing)
        )


def pipeline_progress(cfg: CIVMConfig) -> list[tuple[Step, bool | None]]:
    """Report which file-producing pipeline steps already have their output."""
    paths = artifact_paths(cfg)
    out: list[tuple[Step, bool | None]] = []
    for step in PIPELINE:
        if step.produces is None:
            out.append((step, None))
        else:
            out.append((step, step.produces(paths).exists()))
    return out
