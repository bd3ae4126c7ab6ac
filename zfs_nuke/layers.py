from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence, Tuple, Union

KeyPath = Tuple[str, ...]

# Lower number wins.
FORCE_PRIORITY = 50
DEFAULT_PRIORITY = 100
WEAK_PRIORITY = 1000

MERGE = "merge"
REPLACE = "replace"
LAYER_KINDS = (MERGE, REPLACE)


def parse_key_path(path: Union[str, Sequence[str]]) -> KeyPath:
    """Normalize ``"a.b.c"`` or ``("a", "b", "c")`` into a key path tuple."""

    if isinstance(path, str):
        segments = tuple(path.split("."))
    else:
        segments = tuple(str(s) for s in path)

    if not segments or any(not s for s in segments):
        raise ValueError(f"Invalid key path: {path!r}")
    return segments


def format_key_path(path: KeyPath) -> str:
    return ".".join(path)


@dataclass(frozen=True)
class ConfigLayer:
    """A prioritized, immutable partial configuration.

    ``assignments`` keeps declaration order. A ``replace`` layer swaps out the
    whole subtree at each of its paths instead of merging into it.
    """

    assignments: Tuple[Tuple[KeyPath, Any], ...]
    priority: int = DEFAULT_PRIORITY
    kind: str = MERGE
    name: str = ""

    def __post_init__(self) -> None:
        if self.kind not in LAYER_KINDS:
            raise ValueError(f"Unknown layer kind: {self.kind!r}")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValueError(f"Layer priority must be an integer, got {self.priority!r}")

    @classmethod
    def of(
        cls,
        assignments: Mapping[Union[str, Sequence[str]], Any],
        *,
        priority: int = DEFAULT_PRIORITY,
        kind: str = MERGE,
        name: str = "",
    ) -> "ConfigLayer":
        items = tuple((parse_key_path(k), copy.deepcopy(v)) for k, v in assignments.items())
        return cls(assignments=items, priority=priority, kind=kind, name=name)

    @classmethod
    def force(cls, assignments: Mapping[Union[str, Sequence[str]], Any], *, name: str = "") -> "ConfigLayer":
        return cls.of(assignments, priority=FORCE_PRIORITY, kind=REPLACE, name=name)

    @property
    def is_replace(self) -> bool:
        return self.kind == REPLACE

    @property
    def label(self) -> str:
        return self.name or f"<{self.kind}@{self.priority}>"

    def __iter__(self) -> Iterator[Tuple[KeyPath, Any]]:
        for path, value in self.assignments:
            yield path, copy.deepcopy(value)

    def paths(self) -> Tuple[KeyPath, ...]:
        return tuple(p for p, _ in self.assignments)


def layer_from_mapping(raw: Mapping[str, Any], *, default_name: str = "") -> ConfigLayer:
    """Build a layer from its serialized form (machine files).

    Expected keys: ``assignments`` (dotted path -> value), optional
    ``priority``, ``kind`` and ``name``.
    """

    assignments = raw.get("assignments")
    if not isinstance(assignments, Mapping):
        raise ValueError(f"Layer {raw.get('name') or default_name!r} must define an assignments mapping")

    return ConfigLayer.of(
        assignments,
        priority=int(raw.get("priority", DEFAULT_PRIORITY)),
        kind=str(raw.get("kind", MERGE)),
        name=str(raw.get("name") or default_name),
    )
