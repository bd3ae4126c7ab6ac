from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from ..errors import MissingDiskLayout
from .command import sh_single_quote

logger = logging.getLogger(__name__)

DEFAULT_ROOT_MOUNT_POINT = "/mnt"
LAYOUT_HEREDOC_DELIMITER = "ZFS_NUKE_LAYOUT"


class ResolvedLike(Protocol):
    def get(self, path: Any, default: Any = None) -> Any:
        ...


class Partitioner(Protocol):
    """The external partitioning tool, seen as an opaque command sequence."""

    def commands(self, resolved: ResolvedLike, device: Optional[str]) -> list[str]:
        ...


def root_mount_point(resolved: ResolvedLike) -> str:
    return str(resolved.get("disko.rootMountPoint") or DEFAULT_ROOT_MOUNT_POINT)


def _nix_indented_string(text: str) -> str:
    # Inside '' ... '' only '' and ${ need escaping.
    escaped = text.replace("''", "'''").replace("${", "''${")
    return "''\n" + escaped + "\n''"


def render_layout_file(devices: Mapping[str, Any]) -> str:
    """Render a disko layout module from a ``disko.devices`` tree."""

    payload = json.dumps(devices, indent=2, sort_keys=False)
    return (
        "# Generated by zfs-nuke. Do not edit.\n"
        "{\n"
        f"  disko.devices = builtins.fromJSON {_nix_indented_string(payload)};\n"
        "}\n"
    )


def write_layout_file(path: str, devices: Mapping[str, Any]) -> str:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(render_layout_file(devices), encoding="utf-8")
    logger.info("Wrote disko layout %s", str(p))
    return str(p)


def inline_layout_command(devices: Mapping[str, Any], disko_command: str) -> str:
    """Shell lines that write the layout to a temp file, then run ``disko_command`` on it.

    One statement per line so errexit covers each of them. ``disko_command``
    refers to the file as ``"$layout"``.
    """

    # JSON never puts a bare word on a line of its own, so the delimiter cannot collide.
    body = render_layout_file(devices)
    return (
        'layout="$(mktemp --suffix=.disko.nix)"\n'
        f"cat >\"$layout\" <<'{LAYOUT_HEREDOC_DELIMITER}'\n"
        f"{body}"
        f"{LAYOUT_HEREDOC_DELIMITER}\n"
        f"{disko_command}"
    )


@dataclass(frozen=True)
class DiskoPartitioner:
    """Produce the disko preparation command for a resolved layout.

    With ``use_prebuilt`` a ``system.build.diskoScript`` already present in the
    configuration is used verbatim. Otherwise the disko CLI is pointed at
    ``layout_path`` when one is given, or at a temporary file the command
    itself writes from the resolved ``disko.devices``, so the step carries
    its own layout.
    """

    layout_path: Optional[str] = None
    use_prebuilt: bool = True
    executable: str = "disko"
    mode: str = "disko"

    def commands(self, resolved: ResolvedLike, device: Optional[str]) -> list[str]:
        prebuilt = resolved.get("system.build.diskoScript")
        if self.use_prebuilt and prebuilt:
            return [str(prebuilt)]

        if self.layout_path:
            return [self._disko(resolved, sh_single_quote(self.layout_path))]

        devices = resolved.get("disko.devices")
        if not isinstance(devices, Mapping) or not devices:
            raise MissingDiskLayout("No disko.devices layout" + (f" for {device}" if device else ""))
        return [inline_layout_command(devices, self._disko(resolved, '"$layout"'))]

    def _disko(self, resolved: ResolvedLike, layout_arg: str) -> str:
        return " ".join(
            [
                self.executable,
                "--mode",
                self.mode,
                "--root-mountpoint",
                sh_single_quote(root_mount_point(resolved)),
                layout_arg,
            ]
        )
