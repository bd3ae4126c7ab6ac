"""Shared fixtures for zfs-nuke tests."""

import logging
from typing import Any, Callable, Dict, Sequence

import pytest

from zfs_nuke.layers import ConfigLayer
from zfs_nuke.resolve import ResolvedConfiguration, resolve

TOPLEVEL = "/nix/store/0000000000000000000000000000000a-nixos-system-test"
DISKO_SCRIPT = "/nix/store/0000000000000000000000000000000b-disko"


@pytest.fixture(autouse=True)
def reset_root_logging():
    """Drop handlers installed by configure_logging() so each test starts clean."""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    for h in list(root.handlers):
        if h in before or type(h).__module__.startswith("_pytest"):
            continue
        root.removeHandler(h)
        h.close()
    root.setLevel(level)
    for attr in ("_zfs_nuke_configured", "_zfs_nuke_log_path"):
        if hasattr(root, attr):
            delattr(root, attr)


@pytest.fixture
def zfs_devices() -> Callable[..., Dict[str, Any]]:
    def make(device: str = "/dev/sda", pools: Sequence[str] = ("rpool",)) -> Dict[str, Any]:
        return {
            "disk": {
                "main": {
                    "type": "disk",
                    "device": device,
                    "content": {
                        "type": "gpt",
                        "partitions": {
                            "zfs": {"size": "100%", "content": {"type": "zfs", "pool": pools[0]}},
                        },
                    },
                }
            },
            "zpool": {name: {"type": "zpool", "datasets": {}} for name in pools},
        }

    return make


@pytest.fixture
def disko_config(zfs_devices) -> ResolvedConfiguration:
    return resolve(
        [
            ConfigLayer.of(
                {
                    "system.name": "web1",
                    "system.build.toplevel": TOPLEVEL,
                    "system.build.diskoScript": DISKO_SCRIPT,
                    "disko.devices": zfs_devices(),
                },
                name="base",
            )
        ]
    )


@pytest.fixture
def host_config() -> ResolvedConfiguration:
    return resolve(
        [
            ConfigLayer.of(
                {
                    "fileSystems": {"/": {"device": "/dev/sda1", "fsType": "ext4"}},
                    "networking": {"hostName": "web1", "interfaces": {"eth0": {"useDHCP": True}}},
                    "boot.initrd.luks.devices": {"cryptroot": {"device": "/dev/sda2"}},
                    "system.build.toplevel": TOPLEVEL,
                },
                name="base",
            )
        ]
    )
