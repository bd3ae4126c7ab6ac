from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


class ZfsNukeError(Exception):
    """Base class for construction and execution failures."""


class InvalidDiskSpec(ZfsNukeError, ValueError):
    """Empty device, empty partition list, or an otherwise unusable disk spec."""


class MissingDiskLayout(ZfsNukeError, LookupError):
    """The resolved configuration has no disk/pool layout for the device."""


class InvalidMachineDescription(ZfsNukeError, ValueError):
    """A machine file that is missing, unparsable, or has the wrong shape."""


class MissingSystemImage(ZfsNukeError, LookupError):
    """No installable system image reference was supplied or resolved."""


class ExternalStepFailure(ZfsNukeError, RuntimeError):
    def __init__(self, phase: str, command: str, returncode: int, output: str = "") -> None:
        self.phase = phase
        self.command = command
        self.returncode = returncode
        self.output = output
        msg = f"{phase} step failed ({returncode}): {command}"
        if output:
            msg = f"{msg}\n{output}"
        super().__init__(msg)


@dataclass(frozen=True)
class ConflictingLayerShape:
    """Two layers disagree on value shape at the same path and priority.

    Resolution is last-wins; this record only makes the override visible.
    """

    path: Tuple[str, ...]
    priority: int
    previous_layer: str
    winning_layer: str

    def __str__(self) -> str:
        return (
            f"{'.'.join(self.path)}: layer {self.winning_layer!r} replaced a value of a "
            f"different shape from {self.previous_layer!r} at priority {self.priority}"
        )
