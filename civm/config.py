"""Configuration dataclasses, TOML load/save, and derived artifact paths."""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

from .util import expand

DEFAULT_FOCAL_IMG_URL = (
    'http://cloud-images.ubuntu.com/focal/current/'
    'focal-server-cloudimg-amd64.img'
)
DEFAULT_CONFIG_NAME = '.civm.toml'

SECTIONS = ('image', 'vm', 'network', 'graphics', 'seed', 'paths', 'teardown')


@dataclass
class ImageConfig:
    url: str = DEFAULT_FOCAL_IMG_URL
    filename: str = 'focal-server-cloudimg-amd64.img'
    raw_filename: str = 'focal-server-cloudimg-amd64.raw'


@dataclass
class VMConfig:
    name: str = 'hal9000'
    ram_mb: int = 2048
    vcpus: int = 1
    disk_gb: int = 10
    os_variant: str = 'ubuntu20.04'
    libvirt_uri: str = 'qemu:///system'


@dataclass
class NetworkConfig:
    bridge: str = 'virbr0'
    model: str = 'virtio'
    libvirt_network: str = 'default'


@dataclass
class GraphicsConfig:
    kind: str = 'vnc'
    listen: str = '0.0.0.0'


@dataclass
class SeedConfig:
    user_data: str = 'user-data'
    meta_data: str = 'meta-data'
    iso_name: str = 'cidata.iso'
    volume_label: str = 'cidata'


@dataclass
class PathsConfig:
    work_dir: str = '.'
    managed_dir: str = '/var/lib/libvirt/images'
    storage_owner: str = 'libvirt-qemu:libvirt-qemu'
    use_managed_storage: bool = True


@dataclass
class TeardownConfig:
    shutdown_grace_s: int = 5
    wait_for_shutoff: bool = False
    shutoff_timeout_s: int = 60


@dataclass
class CIVMConfig:
    image: ImageConfig = field(default_factory=ImageConfig)
    vm: VMConfig = field(default_factory=VMConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    graphics: GraphicsConfig = field(default_factory=GraphicsConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    teardown: TeardownConfig = field(default_factory=TeardownConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'CIVMConfig':
        """Return a copy with ``~`` and ``$VAR`` expanded in path fields.

        The receiver keeps its raw values, so expansion happens once per copy.
        """
        return replace(
            self,
            paths=replace(
                self.paths,
                work_dir=expand(self.paths.work_dir),
                managed_dir=expand(self.paths.managed_dir),
            ),
            seed=replace(
                self.seed,
                user_data=expand(self.seed.user_data),
                meta_data=expand(self.seed.meta_data),
            ),
        )


@dataclass(frozen=True)
class ArtifactPaths:
    """Every file the sequencer creates, reads, or removes."""

    work_dir: Path
    base_image: Path
    raw_image: Path
    vm_disk: Path
    seed_iso: Path
    user_data: Path
    meta_data: Path
    managed_dir: Path
    managed_base_image: Path
    managed_vm_disk: Path
    managed_seed_iso: Path


def _in_dir(work_dir: Path, value: str) -> Path:
    p = Path(value)
    return p if p.is_absolute() else work_dir / p


def artifact_paths(cfg: CIVMConfig) -> ArtifactPaths:
    cfg = cfg.expanded_paths()
    work_dir = Path(cfg.paths.work_dir).absolute()
    managed = Path(cfg.paths.managed_dir)
    disk_name = f'{cfg.vm.name}.img'
    return ArtifactPaths(
        work_dir=work_dir,
        base_image=work_dir / cfg.image.filename,
        raw_image=work_dir / cfg.image.raw_filename,
        vm_disk=work_dir / disk_name,
        seed_iso=work_dir / cfg.seed.iso_name,
        user_data=_in_dir(work_dir, cfg.seed.user_data),
        meta_data=_in_dir(work_dir, cfg.seed.meta_data),
        managed_dir=managed,
        managed_base_image=managed / cfg.image.filename,
        managed_vm_disk=managed / disk_name,
        managed_seed_iso=managed / cfg.seed.iso_name,
    )


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: CIVMConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    for section, body in d.items():
        if isinstance(body, dict):
            lines.append(f'[{section}]')
            for k, v in body.items():
                if isinstance(v, bool):
                    lines.append(f'{k} = {"true" if v else "false"}')
                elif isinstance(v, int):
                    lines.append(f'{k} = {v}')
                else:
                    lines.append(f'{k} = "{_toml_escape(str(v))}"')
            lines.append('')
        elif section == 'verbosity' and body != 1:
            lines.insert(0, '')
            lines.insert(0, f'{section} = {body}')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> CIVMConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = CIVMConfig()
    for section in SECTIONS:
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: CIVMConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
