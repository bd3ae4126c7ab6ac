import pytest

from zfs_nuke import pipeline as pipeline_mod
from zfs_nuke.errors import ExternalStepFailure, MissingDiskLayout, MissingSystemImage
from zfs_nuke.layers import ConfigLayer
from zfs_nuke.lib.command import CmdResult
from zfs_nuke.lib.disko import DiskoPartitioner
from zfs_nuke.pipeline import (
    COPY,
    DETACH,
    EXPORT,
    INSTALL,
    PARTITION,
    ProvisioningPipeline,
    ProvisioningStep,
    build_pipeline,
    run_pipeline,
)
from zfs_nuke.resolve import resolve

from .conftest import DISKO_SCRIPT, TOPLEVEL


def test_pipeline_steps_in_fixed_order(disko_config):
    p = build_pipeline(disko_config, "/dev/sda")

    assert p.phases() == [PARTITION, INSTALL, DETACH, EXPORT]
    assert p.commands() == [
        DISKO_SCRIPT,
        f'nixos-install --no-root-password --option substituters "" --no-channel-copy --system {TOPLEVEL}',
        "umount -R '/mnt'",
        "zpool export 'rpool'",
    ]
    assert all(s.abort_on_failure for s in p.steps)
    assert p.pools == ("rpool",)
    assert p.system_image == TOPLEVEL


def test_missing_layout_for_other_device(disko_config):
    with pytest.raises(MissingDiskLayout):
        build_pipeline(disko_config, "/dev/sdb")


def test_missing_layout_without_disko():
    r = resolve([ConfigLayer.of({"system.build.toplevel": TOPLEVEL})])
    with pytest.raises(MissingDiskLayout):
        build_pipeline(r, "/dev/sda")


def test_missing_layout_without_pool(zfs_devices):
    devices = zfs_devices()
    devices["zpool"] = {}
    r = resolve([ConfigLayer.of({"system.build.toplevel": TOPLEVEL, "disko.devices": devices})])
    with pytest.raises(MissingDiskLayout):
        build_pipeline(r, "/dev/sda")


def test_missing_system_image(zfs_devices):
    r = resolve([ConfigLayer.of({"disko.devices": zfs_devices()})])
    with pytest.raises(MissingSystemImage):
        build_pipeline(r, "/dev/sda", partitioner=DiskoPartitioner(layout_path="/tmp/layout.nix"))

    p = build_pipeline(
        r, "/dev/sda", "/nix/store/x-system", partitioner=DiskoPartitioner(layout_path="/tmp/layout.nix")
    )
    assert p.steps[1].command.endswith("--system /nix/store/x-system")


def test_any_device_when_none_requested(disko_config):
    assert build_pipeline(disko_config, None).phases()[0] == PARTITION


def test_each_pool_gets_its_own_export_step(zfs_devices):
    r = resolve(
        [
            ConfigLayer.of(
                {
                    "system.build.toplevel": TOPLEVEL,
                    "system.build.diskoScript": DISKO_SCRIPT,
                    "disko.devices": zfs_devices(pools=("poolA", "poolB")),
                }
            )
        ]
    )
    p = build_pipeline(r, "/dev/sda")
    exports = [s.command for s in p.steps if s.phase == EXPORT]
    assert exports == ["zpool export 'poolA'", "zpool export 'poolB'"]


def test_custom_root_mount_point(disko_config):
    r = disko_config.extend(ConfigLayer.of({"disko.rootMountPoint": "/target"}))
    p = build_pipeline(r, "/dev/sda")
    assert "--root '/target'" in p.steps[1].command
    assert p.steps[2].command == "umount -R '/target'"
    assert p.mount_root == "/target"


def test_disko_cli_when_no_prebuilt_script(disko_config):
    tool = DiskoPartitioner(layout_path="/tmp/layout.nix", use_prebuilt=False)
    p = build_pipeline(disko_config, "/dev/sda", partitioner=tool)
    assert p.steps[0].command == "disko --mode disko --root-mountpoint '/mnt' '/tmp/layout.nix'"

    inline = build_pipeline(disko_config, "/dev/sda", partitioner=DiskoPartitioner(use_prebuilt=False))
    command = inline.steps[0].command
    assert "\"device\": \"/dev/sda\"" in command
    assert command.splitlines()[-1] == "disko --mode disko --root-mountpoint '/mnt' \"$layout\""
    assert DISKO_SCRIPT not in command


def test_partitioner_without_any_layout_raises():
    r = resolve([ConfigLayer.of({"system.build.toplevel": TOPLEVEL})])
    with pytest.raises(MissingDiskLayout):
        DiskoPartitioner(use_prebuilt=False).commands(r, "/dev/sda")


def test_out_of_order_pipeline_cannot_be_built():
    with pytest.raises(ValueError):
        ProvisioningPipeline(
            steps=(
                ProvisioningStep(INSTALL, "nixos-install"),
                ProvisioningStep(PARTITION, "disko"),
            )
        )


def test_with_step_keeps_phase_order(disko_config):
    p = build_pipeline(disko_config, "/dev/sda").with_step(ProvisioningStep(COPY, "cp -r a b"))
    assert p.phases() == [PARTITION, INSTALL, COPY, DETACH, EXPORT]


def test_step_validation():
    with pytest.raises(ValueError):
        ProvisioningStep("format", "mkfs")
    with pytest.raises(ValueError):
        ProvisioningStep(INSTALL, "   ")


def test_run_pipeline_stops_at_first_failure(disko_config, monkeypatch):
    calls = []

    def fake_run_shell(command, *, dry_run=False):
        calls.append(command)
        rc = 1 if command.startswith("nixos-install") else 0
        return CmdResult(argv=["bash", "-c", command], returncode=rc, output="boom" if rc else "")

    monkeypatch.setattr(pipeline_mod, "run_shell", fake_run_shell)
    p = build_pipeline(disko_config, "/dev/sda")

    with pytest.raises(ExternalStepFailure) as exc:
        run_pipeline(p)

    assert calls == p.commands()[:2]
    assert exc.value.phase == INSTALL
    assert exc.value.returncode == 1
    assert "boom" in str(exc.value)


def test_run_pipeline_continues_past_tolerated_failure(monkeypatch):
    def fake_run_shell(command, *, dry_run=False):
        return CmdResult(argv=["bash", "-c", command], returncode=1 if "export" in command else 0)

    monkeypatch.setattr(pipeline_mod, "run_shell", fake_run_shell)
    p = ProvisioningPipeline(
        steps=(
            ProvisioningStep(DETACH, "umount -R '/mnt'"),
            ProvisioningStep(EXPORT, "zpool export 'rpool'", abort_on_failure=False),
        )
    )
    result = run_pipeline(p)
    assert result.ran_steps == p.commands()
    assert result.ignored_failures == ["zpool export 'rpool'"]


def test_run_pipeline_dry_run_executes_nothing(disko_config, monkeypatch):
    def no_subprocess(*a, **kw):
        raise AssertionError("subprocess must not run in dry-run mode")

    monkeypatch.setattr("subprocess.Popen", no_subprocess)
    p = build_pipeline(disko_config, "/dev/sda")
    assert run_pipeline(p, dry_run=True).ran_steps == p.commands()
