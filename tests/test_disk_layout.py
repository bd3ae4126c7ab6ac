import pytest

from zfs_nuke.disk_layout import (
    DatasetSpec,
    PartitionSpec,
    default_datasets,
    default_partitions,
    force_merge_layer,
    layout,
    mount_plan,
)
from zfs_nuke.errors import InvalidDiskSpec, MissingDiskLayout
from zfs_nuke.layers import FORCE_PRIORITY, ConfigLayer
from zfs_nuke.resolve import resolve
from zfs_nuke.sanitize import sanitize


def test_empty_device_is_rejected():
    with pytest.raises(InvalidDiskSpec):
        layout("", "rpool", default_partitions())


def test_empty_partitions_are_rejected():
    with pytest.raises(InvalidDiskSpec) as exc:
        layout("/dev/sdb", "rpool", [])
    assert isinstance(exc.value, ValueError)


def test_pool_must_live_on_a_partition():
    parts = [PartitionSpec(name="root", format="ext4", mountpoint="/")]
    with pytest.raises(InvalidDiskSpec):
        layout("/dev/sdb", "rpool", parts)


def test_duplicate_partition_names_are_rejected():
    parts = [PartitionSpec(name="zfs", content="zfs"), PartitionSpec(name="zfs", content="zfs")]
    with pytest.raises(InvalidDiskSpec):
        layout("/dev/sdb", "rpool", parts)


def test_layout_layer_encodes_disko_devices():
    layer = layout("/dev/sdb", "rpool", default_partitions(), default_datasets())
    assert layer.is_replace
    assert layer.priority == FORCE_PRIORITY

    r = resolve([layer])
    assert r.get("disko.devices.disk.main.device") == "/dev/sdb"
    assert list(r.get("disko.devices.disk.main.content.partitions")) == ["ESP", "zfs"]
    assert r.get("disko.devices.disk.main.content.partitions.zfs.content") == {"type": "zfs", "pool": "rpool"}
    assert list(r.get("disko.devices.zpool")) == ["rpool"]
    assert r.get("disko.devices.zpool.rpool.datasets.root") == {
        "type": "zfs_fs",
        "mountpoint": "/",
        "options": {"mountpoint": "legacy"},
    }


def test_layout_replaces_an_existing_disk_layout():
    old = resolve([ConfigLayer.of({"disko.devices.disk.old": {"type": "disk", "device": "/dev/sda"}})])
    new = old.extend(layout("/dev/sdb", "rpool", default_partitions()))
    assert list(new.get("disko.devices.disk")) == ["main"]


def test_mount_plan_from_default_layout():
    devices = resolve([layout("/dev/sdb", "rpool", default_partitions(swap_size="8G"), default_datasets())]).get(
        "disko.devices"
    )
    plan = mount_plan(devices)

    assert list(plan["fileSystems"]) == ["/", "/boot", "/nix"]
    assert plan["fileSystems"]["/"] == {"device": "rpool/root", "fsType": "zfs", "options": ["defaults"]}
    assert plan["fileSystems"]["/boot"] == {
        "device": "/dev/disk/by-partlabel/disk-main-ESP",
        "fsType": "vfat",
        "options": ["umask=0077"],
    }
    assert plan["swapDevices"] == [{"device": "/dev/disk/by-partlabel/disk-main-swap", "randomEncryption": True}]


def test_non_legacy_datasets_mount_with_zfsutil():
    datasets = [DatasetSpec(name="data", mountpoint="/data", options={"mountpoint": "/data"})]
    devices = resolve([layout("/dev/sdb", "tank", default_partitions("tank"), datasets)]).get("disko.devices")
    assert mount_plan(devices)["fileSystems"]["/data"]["options"] == ["zfsutil"]


def test_force_merge_requires_a_layout():
    with pytest.raises(MissingDiskLayout):
        force_merge_layer(resolve([ConfigLayer.of({"a": 1})]))


def test_force_merge_wins_over_sanitized_mounts(host_config):
    cleaned = host_config.extend(sanitize(host_config))
    staged = cleaned.extend(layout("/dev/sdb", "rpool", default_partitions(), default_datasets()))
    final = staged.extend(force_merge_layer(staged))

    assert set(final.get("fileSystems")) == {"/", "/boot", "/nix"}
    assert final.get("fileSystems./.device") == "rpool/root"
