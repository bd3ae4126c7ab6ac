"""Entry points: resolved machine config in, provisioning artifact out.

Every failure here happens before an artifact object exists, so callers
never see a half-built script or image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .disk_layout import (
    DEFAULT_POOL_NAME,
    DatasetSpec,
    PartitionSpec,
    default_datasets,
    default_partitions,
    force_merge_layer,
    layout,
)
from .emit import DEFAULT_COMMAND_NAME, BootTrigger, ImageArtifact, ScriptArtifact, emit_image, emit_script
from .lib.disko import DiskoPartitioner, Partitioner
from .pipeline import ProvisioningPipeline, build_pipeline
from .resolve import ResolvedConfiguration
from .sanitize import sanitize

logger = logging.getLogger(__name__)


def script_name(resolved: ResolvedConfiguration, device: str) -> str:
    system = resolved.get("system.name") or "nixos"
    return f"install-{system}-to-{device.strip('/').replace('/', '-')}"


def build_script(
    resolved: ResolvedConfiguration,
    device: str,
    *,
    install_payload: Optional[str] = None,
    partitioner: Optional[Partitioner] = None,
) -> ScriptArtifact:
    """Script for a configuration that already carries a disko layout for ``device``."""

    pipeline = build_pipeline(resolved, device, install_payload, partitioner=partitioner)
    return emit_script(pipeline, name=script_name(resolved, device))


@dataclass(frozen=True)
class OpinionatedResult:
    resolved: ResolvedConfiguration
    pipeline: ProvisioningPipeline
    script: ScriptArtifact


def opinionated_configuration(
    resolved: ResolvedConfiguration,
    device: str,
    *,
    pool_name: str = DEFAULT_POOL_NAME,
    partitions: Optional[Sequence[PartitionSpec]] = None,
    datasets: Optional[Sequence[DatasetSpec]] = None,
) -> ResolvedConfiguration:
    """Sanitize, inject the disk layout, then force its mount plan, one stage at a time."""

    cleaned = resolved.extend(sanitize(resolved))
    parts = partitions if partitions is not None else default_partitions(pool_name)
    dsets = datasets if datasets is not None else default_datasets()
    extended = cleaned.extend(layout(device, pool_name, parts, dsets))
    return extended.extend(force_merge_layer(extended))


def build_script_opinionated(
    resolved: ResolvedConfiguration,
    device: str,
    *,
    pool_name: str = DEFAULT_POOL_NAME,
    partitions: Optional[Sequence[PartitionSpec]] = None,
    datasets: Optional[Sequence[DatasetSpec]] = None,
    install_payload: Optional[str] = None,
    partitioner: Optional[Partitioner] = None,
    layout_path: Optional[str] = None,
) -> OpinionatedResult:
    """Retarget any configuration at ``device`` with a fresh ZFS layout.

    Host-specific mounts, interfaces and LUKS devices are dropped. A prebuilt
    disko script in the source configuration describes the old layout, so it
    is never reused here. The new layout is written into the script itself
    unless ``layout_path`` names a file the caller provides.
    """

    final = opinionated_configuration(
        resolved,
        device,
        pool_name=pool_name,
        partitions=partitions,
        datasets=datasets,
    )
    tool = partitioner or DiskoPartitioner(layout_path=layout_path, use_prebuilt=False)
    pipeline = build_pipeline(final, device, install_payload, partitioner=tool)
    return OpinionatedResult(resolved=final, pipeline=pipeline, script=emit_script(pipeline, name=DEFAULT_COMMAND_NAME))


def build_installer_image(
    resolved: ResolvedConfiguration,
    extra_files: Optional[str] = None,
    *,
    boot_trigger: Optional[BootTrigger] = None,
    install_payload: Optional[str] = None,
    partitioner: Optional[Partitioner] = None,
    command_name: str = DEFAULT_COMMAND_NAME,
    options: Optional[Dict[str, Any]] = None,
    extra_modules: Sequence[str] = (),
) -> ImageArtifact:
    """Installer image payload that provisions the configured disk on first boot."""

    pipeline = build_pipeline(resolved, None, install_payload, partitioner=partitioner)
    return emit_image(
        pipeline,
        boot_trigger,
        extra_files,
        command_name=command_name,
        options=options,
        extra_modules=extra_modules,
    )
