from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidDiskSpec, MissingDiskLayout
from .layers import FORCE_PRIORITY, REPLACE, ConfigLayer
from .resolve import ResolvedConfiguration

logger = logging.getLogger(__name__)

DEFAULT_DISK_NAME = "main"
DEFAULT_POOL_NAME = "rpool"

DEFAULT_POOL_OPTIONS: Dict[str, str] = {"ashift": "12"}
DEFAULT_ROOT_FS_OPTIONS: Dict[str, str] = {
    "compression": "zstd",
    "acltype": "posixacl",
    "xattr": "sa",
    "mountpoint": "none",
    "com.sun:auto-snapshot": "false",
}

CONTENT_KINDS = ("filesystem", "zfs", "swap")


@dataclass(frozen=True)
class PartitionSpec:
    name: str
    size: str = "100%"
    content: str = "filesystem"  # filesystem|zfs|swap
    type: Optional[str] = None  # GPT type code, e.g. EF00
    format: Optional[str] = None
    mountpoint: Optional[str] = None
    mount_options: Tuple[str, ...] = ()
    pool: Optional[str] = None

    def to_disko(self, pool_name: str) -> Dict[str, Any]:
        part: Dict[str, Any] = {"size": self.size}
        if self.type:
            part["type"] = self.type

        if self.content == "zfs":
            part["content"] = {"type": "zfs", "pool": self.pool or pool_name}
        elif self.content == "swap":
            part["content"] = {"type": "swap", "randomEncryption": True}
        else:
            content: Dict[str, Any] = {"type": "filesystem", "format": self.format or "ext4"}
            if self.mountpoint:
                content["mountpoint"] = self.mountpoint
            if self.mount_options:
                content["mountOptions"] = list(self.mount_options)
            part["content"] = content
        return part


@dataclass(frozen=True)
class DatasetSpec:
    name: str
    mountpoint: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)

    def to_disko(self) -> Dict[str, Any]:
        ds: Dict[str, Any] = {"type": "zfs_fs"}
        if self.mountpoint:
            ds["mountpoint"] = self.mountpoint
        options = dict(self.options)
        if self.mountpoint:
            options.setdefault("mountpoint", "legacy")
        if options:
            ds["options"] = options
        return ds


@dataclass(frozen=True)
class DiskSpec:
    device: str
    pool_name: str
    partitions: Tuple[PartitionSpec, ...]
    datasets: Tuple[DatasetSpec, ...] = ()
    disk_name: str = DEFAULT_DISK_NAME

    def validate(self) -> None:
        if not self.device:
            raise InvalidDiskSpec("Disk device must not be empty")
        if not self.partitions:
            raise InvalidDiskSpec(f"No partitions given for {self.device}")
        if not self.pool_name:
            raise InvalidDiskSpec("Pool name must not be empty")

        names = [p.name for p in self.partitions]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise InvalidDiskSpec(f"Duplicate partition names: {', '.join(dupes)}")

        for p in self.partitions:
            if p.content not in CONTENT_KINDS:
                raise InvalidDiskSpec(f"Partition {p.name}: unknown content kind {p.content!r}")

        if not any(p.content == "zfs" and (p.pool or self.pool_name) == self.pool_name for p in self.partitions):
            raise InvalidDiskSpec(f"No partition on {self.device} carries pool {self.pool_name!r}")

    def to_disko(self) -> Dict[str, Any]:
        self.validate()
        return {
            "disk": {
                self.disk_name: {
                    "type": "disk",
                    "device": self.device,
                    "content": {
                        "type": "gpt",
                        "partitions": {p.name: p.to_disko(self.pool_name) for p in self.partitions},
                    },
                }
            },
            "zpool": {
                self.pool_name: {
                    "type": "zpool",
                    "options": dict(DEFAULT_POOL_OPTIONS),
                    "rootFsOptions": dict(DEFAULT_ROOT_FS_OPTIONS),
                    "datasets": {d.name: d.to_disko() for d in self.datasets},
                }
            },
        }


def default_partitions(
    pool_name: str = DEFAULT_POOL_NAME,
    *,
    esp_size: str = "1G",
    swap_size: Optional[str] = None,
) -> Tuple[PartitionSpec, ...]:
    """ESP on /boot, optional swap, the rest of the disk for ZFS."""

    parts: List[PartitionSpec] = [
        PartitionSpec(
            name="ESP",
            size=esp_size,
            type="EF00",
            content="filesystem",
            format="vfat",
            mountpoint="/boot",
            mount_options=("umask=0077",),
        )
    ]
    if swap_size:
        parts.append(PartitionSpec(name="swap", size=swap_size, content="swap"))
    parts.append(PartitionSpec(name="zfs", size="100%", content="zfs", pool=pool_name))
    return tuple(parts)


def default_datasets() -> Tuple[DatasetSpec, ...]:
    return (
        DatasetSpec(name="root", mountpoint="/"),
        DatasetSpec(name="nix", mountpoint="/nix", options={"atime": "off"}),
    )


def layout(
    device: str,
    pool_name: str,
    partitions: Sequence[PartitionSpec],
    datasets: Sequence[DatasetSpec] = (),
    *,
    disk_name: str = DEFAULT_DISK_NAME,
) -> ConfigLayer:
    """Encode a disk layout as a force-priority replace layer on ``disko.devices``."""

    spec = DiskSpec(
        device=device,
        pool_name=pool_name,
        partitions=tuple(partitions),
        datasets=tuple(datasets),
        disk_name=disk_name,
    )
    return layout_from_spec(spec)


def layout_from_spec(spec: DiskSpec) -> ConfigLayer:
    devices = spec.to_disko()
    logger.info(
        "Disk layout: device=%s pool=%s partitions=%s",
        spec.device,
        spec.pool_name,
        [p.name for p in spec.partitions],
    )
    return ConfigLayer.of(
        {"disko.devices": devices},
        priority=FORCE_PRIORITY,
        kind=REPLACE,
        name="disk-layout",
    )


def _partlabel(disk_name: str, part_name: str) -> str:
    return f"/dev/disk/by-partlabel/disk-{disk_name}-{part_name}"


def _gpt_partitions(disk: Mapping[str, Any]) -> Mapping[str, Any]:
    content = disk.get("content") or {}
    return content.get("partitions") or {}


def mount_plan(devices: Mapping[str, Any]) -> Dict[str, Any]:
    """Derive ``fileSystems`` and ``swapDevices`` from a ``disko.devices`` tree."""

    file_systems: Dict[str, Dict[str, Any]] = {}
    swap_devices: List[Dict[str, Any]] = []

    for disk_name, disk in (devices.get("disk") or {}).items():
        for part_name, part in _gpt_partitions(disk).items():
            content = part.get("content") or {}
            kind = content.get("type")
            if kind == "filesystem" and content.get("mountpoint"):
                file_systems[content["mountpoint"]] = {
                    "device": _partlabel(disk_name, part_name),
                    "fsType": content.get("format") or "ext4",
                    "options": list(content.get("mountOptions") or ["defaults"]),
                }
            elif kind == "swap":
                swap_devices.append(
                    {
                        "device": _partlabel(disk_name, part_name),
                        "randomEncryption": bool(content.get("randomEncryption", False)),
                    }
                )

    for pool_name, pool in (devices.get("zpool") or {}).items():
        if pool.get("mountpoint"):
            file_systems[pool["mountpoint"]] = {"device": pool_name, "fsType": "zfs", "options": ["zfsutil"]}
        for ds_name, ds in (pool.get("datasets") or {}).items():
            if ds.get("type", "zfs_fs") != "zfs_fs" or not ds.get("mountpoint"):
                continue
            legacy = (ds.get("options") or {}).get("mountpoint") == "legacy"
            file_systems[ds["mountpoint"]] = {
                "device": f"{pool_name}/{ds_name}",
                "fsType": "zfs",
                "options": ["defaults"] if legacy else ["zfsutil"],
            }

    ordered = {mp: file_systems[mp] for mp in sorted(file_systems)}
    return {"fileSystems": ordered, "swapDevices": swap_devices}


def force_merge_layer(resolved: ResolvedConfiguration) -> ConfigLayer:
    """Install the mount plan of the resolved disk layout over everything else."""

    devices = resolved.get("disko.devices")
    if not devices:
        raise MissingDiskLayout("Cannot derive mounts: configuration has no disko.devices")

    plan = mount_plan(devices)
    logger.info("Forcing mount plan for %s", ", ".join(plan["fileSystems"]) or "no mountpoints")
    return ConfigLayer.of(plan, priority=FORCE_PRIORITY, kind=REPLACE, name="disko-mounts")
