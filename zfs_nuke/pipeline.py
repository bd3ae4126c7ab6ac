from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ExternalStepFailure, MissingDiskLayout, MissingSystemImage
from .lib.command import run_shell, sh_single_quote
from .lib.disko import DEFAULT_ROOT_MOUNT_POINT, DiskoPartitioner, Partitioner, root_mount_point
from .resolve import ResolvedConfiguration

logger = logging.getLogger(__name__)

PARTITION = "partition"
INSTALL = "install"
COPY = "copy"
DETACH = "detach"
EXPORT = "export"
REBOOT = "reboot"

PHASE_ORDER: Tuple[str, ...] = (PARTITION, INSTALL, COPY, DETACH, EXPORT, REBOOT)
_PHASE_RANK = {phase: i for i, phase in enumerate(PHASE_ORDER)}


@dataclass(frozen=True)
class ProvisioningStep:
    phase: str
    command: str
    abort_on_failure: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        if self.phase not in _PHASE_RANK:
            raise ValueError(f"Unknown pipeline phase: {self.phase!r}")
        if not self.command.strip():
            raise ValueError(f"Empty command for {self.phase} step")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "command": self.command,
            "abort_on_failure": self.abort_on_failure,
            "description": self.description,
        }


@dataclass(frozen=True)
class ProvisioningPipeline:
    """Ordered, fail-fast provisioning steps.

    Phases never go backwards: partition, install, copy, detach, export,
    reboot. A pipeline that breaks that order cannot be constructed.
    """

    steps: Tuple[ProvisioningStep, ...]
    mount_root: str = DEFAULT_ROOT_MOUNT_POINT
    pools: Tuple[str, ...] = ()
    system_image: str = ""

    def __post_init__(self) -> None:
        last = -1
        for step in self.steps:
            rank = _PHASE_RANK[step.phase]
            if rank < last:
                raise ValueError(f"{step.phase} step cannot follow {PHASE_ORDER[last]}")
            last = rank

    def commands(self) -> List[str]:
        return [s.command for s in self.steps]

    def phases(self) -> List[str]:
        return [s.phase for s in self.steps]

    def with_step(self, step: ProvisioningStep) -> "ProvisioningPipeline":
        """Return a new pipeline with ``step`` placed after every step of an earlier or equal phase."""

        rank = _PHASE_RANK[step.phase]
        at = 0
        for i, existing in enumerate(self.steps):
            if _PHASE_RANK[existing.phase] <= rank:
                at = i + 1
        steps = self.steps[:at] + (step,) + self.steps[at:]
        return ProvisioningPipeline(
            steps=steps,
            mount_root=self.mount_root,
            pools=self.pools,
            system_image=self.system_image,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mount_root": self.mount_root,
            "pools": list(self.pools),
            "system_image": self.system_image,
            "steps": [s.to_dict() for s in self.steps],
        }


def disks_for(resolved: ResolvedConfiguration, device: Optional[str]) -> List[str]:
    disks = resolved.get("disko.devices.disk") or {}
    if not isinstance(disks, Mapping):
        return []
    names = []
    for name, disk in disks.items():
        if not isinstance(disk, Mapping):
            continue
        if device is None or disk.get("device") == device:
            names.append(name)
    return names


def pool_names(resolved: ResolvedConfiguration) -> List[str]:
    pools = resolved.get("disko.devices.zpool") or {}
    if not isinstance(pools, Mapping):
        return []
    return [str(name) for name in pools]


def install_command(system_image: str, *, mount_root: str = DEFAULT_ROOT_MOUNT_POINT) -> str:
    argv = ["nixos-install"]
    if mount_root != DEFAULT_ROOT_MOUNT_POINT:
        argv += ["--root", sh_single_quote(mount_root)]
    argv += [
        "--no-root-password",
        "--option",
        "substituters",
        '""',
        "--no-channel-copy",
        "--system",
        shlex.quote(system_image),
    ]
    return " ".join(argv)


def build_pipeline(
    resolved: ResolvedConfiguration,
    device: Optional[str],
    install_payload: Optional[str] = None,
    *,
    partitioner: Optional[Partitioner] = None,
) -> ProvisioningPipeline:
    """Build partition -> install -> unmount -> export for ``device``.

    ``device=None`` accepts any disk in the layout (installer images pick up
    whatever the configuration declares).
    """

    disks = disks_for(resolved, device)
    if not disks:
        where = f"device {device}" if device else "any device"
        raise MissingDiskLayout(f"No disko disk layout for {where}")

    pools = pool_names(resolved)
    if not pools:
        raise MissingDiskLayout("Disk layout declares no zpool to export")

    system_image = install_payload or resolved.get("system.build.toplevel")
    if not system_image:
        raise MissingSystemImage("No install payload given and system.build.toplevel is unset")
    system_image = str(system_image)

    mount_root = root_mount_point(resolved)
    tool = partitioner or DiskoPartitioner()

    steps: List[ProvisioningStep] = []
    for cmd in tool.commands(resolved, device):
        steps.append(ProvisioningStep(PARTITION, cmd, description=f"partition {', '.join(disks)}"))
    steps.append(
        ProvisioningStep(INSTALL, install_command(system_image, mount_root=mount_root), description="install system")
    )
    steps.append(
        ProvisioningStep(DETACH, f"umount -R {sh_single_quote(mount_root)}", description=f"unmount {mount_root}")
    )
    for pool in pools:
        steps.append(ProvisioningStep(EXPORT, f"zpool export {sh_single_quote(pool)}", description=f"export {pool}"))

    logger.info(
        "Pipeline for %s: %d steps, pools=%s, system=%s",
        device or ",".join(disks),
        len(steps),
        pools,
        system_image,
    )
    return ProvisioningPipeline(
        steps=tuple(steps),
        mount_root=mount_root,
        pools=tuple(pools),
        system_image=system_image,
    )


@dataclass(frozen=True)
class PipelineResult:
    ran_steps: List[str] = field(default_factory=list)
    ignored_failures: List[str] = field(default_factory=list)


def run_pipeline(pipeline: ProvisioningPipeline, *, dry_run: bool = False) -> PipelineResult:
    """Run steps strictly in order; stop at the first abort-on-failure error.

    Nothing is undone on failure: the disk is left as the failed step left it.
    """

    ran: List[str] = []
    ignored: List[str] = []

    for step in pipeline.steps:
        logger.info("Running %s step: %s", step.phase, step.description or step.command)
        result = run_shell(step.command, dry_run=dry_run)
        if result.returncode != 0:
            if step.abort_on_failure:
                logger.error("%s step failed (%d); remaining steps skipped", step.phase, result.returncode)
                raise ExternalStepFailure(step.phase, step.command, result.returncode, result.output.strip())
            logger.warning("%s step failed (%d); continuing", step.phase, result.returncode)
            ignored.append(step.command)
        ran.append(step.command)

    return PipelineResult(ran_steps=ran, ignored_failures=ignored)
