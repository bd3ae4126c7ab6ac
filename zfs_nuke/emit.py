from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .lib.command import sh_single_quote
from .pipeline import COPY, REBOOT, ProvisioningPipeline, ProvisioningStep

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_NAME = "diskoScript"

SCRIPT_PREAMBLE = (
    "#!/usr/bin/env bash\n"
    "# Generated by zfs-nuke. Destroys all data on the target disk.\n"
    "# Stops at the first failing line. Nothing is rolled back: an interrupted\n"
    "# or failed run leaves the disk in whatever state that line left it.\n"
    "set -o errexit -o nounset -o pipefail\n"
)

STORE_PATH_RE = re.compile(r"/nix/store/[0-9a-z]{32}-[^/\s'\"]+")

DEFAULT_IMAGE_OPTIONS: Dict[str, Any] = {
    "kernel_packages": "linuxPackages_latest",
    "force_text_mode": True,
    "squashfs_compression": "zstd -Xcompression-level 1",
}


@dataclass(frozen=True)
class ScriptArtifact:
    name: str
    body: str

    def write(self, path: str) -> str:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.body, encoding="utf-8")
        os.chmod(p, 0o755)
        logger.info("Wrote script %s", str(p))
        return str(p)


def _script_line(step: ProvisioningStep) -> str:
    if step.abort_on_failure:
        return step.command
    if "\n" in step.command:
        return f"{{ {step.command}\n}} || true"
    return f"{step.command} || true"


def emit_script(pipeline: ProvisioningPipeline, name: str = DEFAULT_COMMAND_NAME) -> ScriptArtifact:
    lines = [_script_line(s) for s in pipeline.steps]
    return ScriptArtifact(name=name, body=SCRIPT_PREAMBLE + "\n".join(lines) + "\n")


@dataclass(frozen=True)
class BootTrigger:
    """Run the install command once, on the primary console's login shell."""

    tty: str = "/dev/tty1"
    autologin_user: str = "root"

    def shell_init(self, command_name: str) -> str:
        return f'if [ "$(tty)" = "{self.tty}" ]; then\n  {command_name}\nfi\n'


@dataclass(frozen=True)
class ImageArtifact:
    embedded_pipeline: ProvisioningPipeline
    boot_trigger: BootTrigger
    command_name: str = DEFAULT_COMMAND_NAME
    extra_payload: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_IMAGE_OPTIONS))
    extra_modules: Tuple[str, ...] = ()

    def command_script(self) -> ScriptArtifact:
        return emit_script(self.embedded_pipeline, name=self.command_name)

    def shell_init(self) -> str:
        return self.boot_trigger.shell_init(self.command_name)

    def store_paths(self) -> List[str]:
        """Store paths the embedded steps run or install, in first-use order."""

        found = [self.embedded_pipeline.system_image]
        for command in self.embedded_pipeline.commands():
            found.extend(STORE_PATH_RE.findall(command))
        return list(dict.fromkeys(p for p in found if STORE_PATH_RE.fullmatch(p)))

    def render_module(self) -> str:
        """NixOS module for the image builder; reads the sibling files written by :meth:`write`.

        The command script is read as plain text, so the store paths it runs
        are pinned into the squashfs through ``isoImage.storeContents``. The
        install step runs without substituters and needs them on the image.
        ``builtins.storePath`` requires impure evaluation.
        """

        opts = self.options
        imports = [json.dumps(m) for m in self.extra_modules]
        imports.append('"${modulesPath}/installer/cd-dvd/installation-cd-base.nix"')
        lines = [
            "# Generated by zfs-nuke.",
            "{ pkgs, lib, modulesPath, ... }:",
            "{",
            f"  imports = [ {' '.join(imports)} ];",
            f"  boot.kernelPackages = pkgs.{opts.get('kernel_packages', 'linuxPackages_latest')};",
            f"  isoImage.forceTextMode = {'true' if opts.get('force_text_mode', True) else 'false'};",
        ]
        if opts.get("squashfs_compression"):
            lines.append(f"  isoImage.squashfsCompression = {json.dumps(opts['squashfs_compression'])};")
        store_paths = self.store_paths()
        if store_paths:
            lines.append("  isoImage.storeContents = map builtins.storePath [")
            lines += [f"    {json.dumps(p)}" for p in store_paths]
            lines.append("  ];")
        lines += [
            f"  services.getty.autologinUser = lib.mkForce {json.dumps(self.boot_trigger.autologin_user)};",
            "  environment.systemPackages = [",
            f"    (pkgs.writeShellScriptBin {json.dumps(self.command_name)} (builtins.readFile ./{self.command_name}))",
            "  ];",
            "  programs.bash.interactiveShellInit = builtins.readFile ./autorun.sh;",
            "}",
        ]
        return "\n".join(lines) + "\n"

    def write(self, out_dir: str) -> List[str]:
        d = Path(out_dir)
        d.mkdir(parents=True, exist_ok=True)

        written = [self.command_script().write(str(d / self.command_name))]

        autorun = d / "autorun.sh"
        autorun.write_text(self.shell_init(), encoding="utf-8")
        written.append(str(autorun))

        module = d / "installer.nix"
        module.write_text(self.render_module(), encoding="utf-8")
        written.append(str(module))

        manifest = d / "pipeline.json"
        payload = {
            "command": self.command_name,
            "boot_trigger": {"tty": self.boot_trigger.tty, "autologin_user": self.boot_trigger.autologin_user},
            "extra_payload": self.extra_payload,
            "extra_modules": list(self.extra_modules),
            "store_paths": self.store_paths(),
            "options": self.options,
            "pipeline": self.embedded_pipeline.to_dict(),
        }
        manifest.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        written.append(str(manifest))

        logger.info("Wrote installer image payload to %s", str(d))
        return written


def copy_payload_command(extra_payload: str, mount_root: str) -> str:
    target = mount_root.rstrip("/") + "/etc/nixos"
    return f"cp --no-preserve=mode -rT {sh_single_quote(extra_payload)} {sh_single_quote(target)}"


def emit_image(
    pipeline: ProvisioningPipeline,
    boot_trigger: Optional[BootTrigger] = None,
    extra_payload: Optional[str] = None,
    *,
    command_name: str = DEFAULT_COMMAND_NAME,
    options: Optional[Dict[str, Any]] = None,
    extra_modules: Sequence[str] = (),
) -> ImageArtifact:
    """Wrap ``pipeline`` for first-boot execution.

    The copy of ``extra_payload`` lands in the installed root before it is
    unmounted; a reboot is always the last step. ``extra_modules`` are
    imported into the installer module ahead of the installation-cd base.
    """

    embedded = pipeline
    if extra_payload:
        embedded = embedded.with_step(
            ProvisioningStep(
                COPY,
                copy_payload_command(extra_payload, pipeline.mount_root),
                description="copy configuration tree",
            )
        )
    embedded = embedded.with_step(ProvisioningStep(REBOOT, "reboot", description="reboot"))

    merged_options = dict(DEFAULT_IMAGE_OPTIONS)
    merged_options.update(options or {})

    return ImageArtifact(
        embedded_pipeline=embedded,
        boot_trigger=boot_trigger or BootTrigger(),
        command_name=command_name,
        extra_payload=extra_payload,
        options=merged_options,
        extra_modules=tuple(extra_modules),
    )
