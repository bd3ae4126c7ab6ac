from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ConflictingLayerShape
from .layers import ConfigLayer, KeyPath, format_key_path, parse_key_path

logger = logging.getLogger(__name__)


@dataclass
class _Leaf:
    value: Any
    priority: int
    source: str


@dataclass
class _Branch:
    # Strongest (lowest) priority written anywhere in this subtree.
    priority: Optional[int]
    source: str = ""
    # Set by a replace layer; weaker layers cannot write below this node.
    lock: Optional[int] = None
    children: Dict[str, Any] = field(default_factory=dict)


def _stronger(a: Optional[int], b: int) -> int:
    return b if a is None else min(a, b)


def _shape(node: Any) -> str:
    return "mapping" if isinstance(node, _Branch) else "value"


def _shape_of(value: Any) -> str:
    return "mapping" if isinstance(value, Mapping) else "value"


def _build(value: Any, priority: int, source: str) -> Any:
    if isinstance(value, Mapping):
        branch = _Branch(priority=priority, source=source)
        for k, v in value.items():
            branch.children[str(k)] = _build(v, priority, source)
        return branch
    return _Leaf(value=copy.deepcopy(value), priority=priority, source=source)


class _Resolver:
    def __init__(self) -> None:
        self.root = _Branch(priority=None, source="<root>")
        self.conflicts: List[ConflictingLayerShape] = []

    def apply(self, layer: ConfigLayer) -> None:
        logger.debug(
            "Applying layer %s (kind=%s priority=%s paths=%d)",
            layer.label,
            layer.kind,
            layer.priority,
            len(layer.assignments),
        )
        for path, value in layer:
            if not self._assign(self.root, (), path, value, layer):
                logger.debug("Layer %s: %s shadowed by a stronger value", layer.label, format_key_path(path))

    def _conflict(self, path: KeyPath, existing: Any, layer: ConfigLayer) -> None:
        event = ConflictingLayerShape(
            path=path,
            priority=layer.priority,
            previous_layer=existing.source,
            winning_layer=layer.label,
        )
        logger.warning("Conflicting layer shape: %s", event)
        self.conflicts.append(event)

    def _assign(self, parent: _Branch, prefix: KeyPath, path: KeyPath, value: Any, layer: ConfigLayer) -> bool:
        p = layer.priority
        node = parent
        visited: List[_Branch] = []

        for i, seg in enumerate(path[:-1]):
            if node.lock is not None and p > node.lock:
                return False
            child = node.children.get(seg)
            if isinstance(child, _Leaf):
                if p > child.priority:
                    return False
                if p == child.priority:
                    self._conflict(prefix + path[: i + 1], child, layer)
                child = None
            if child is None:
                child = _Branch(priority=p, source=layer.label)
                node.children[seg] = child
            visited.append(child)
            node = child

        if node.lock is not None and p > node.lock:
            return False

        key = path[-1]
        full = prefix + path
        existing = node.children.get(key)

        if layer.is_replace:
            if existing is not None:
                if p > existing.priority:
                    return False
                if p == existing.priority and _shape(existing) != _shape_of(value):
                    self._conflict(full, existing, layer)
            replacement = _build(value, p, layer.label)
            if isinstance(replacement, _Branch):
                replacement.lock = p
            node.children[key] = replacement

        elif isinstance(value, Mapping):
            if isinstance(existing, _Leaf):
                if p > existing.priority:
                    return False
                if p == existing.priority:
                    self._conflict(full, existing, layer)
                existing = None
            if existing is None:
                existing = _Branch(priority=p, source=layer.label)
                node.children[key] = existing
            else:
                existing.priority = _stronger(existing.priority, p)
            for k, v in value.items():
                self._assign(existing, full, (str(k),), v, layer)

        else:
            if existing is not None:
                if p > existing.priority:
                    return False
                if p == existing.priority and isinstance(existing, _Branch):
                    self._conflict(full, existing, layer)
            node.children[key] = _Leaf(value=copy.deepcopy(value), priority=p, source=layer.label)

        for b in visited:
            b.priority = _stronger(b.priority, p)
        return True


def _materialize(node: Any, prefix: KeyPath, provenance: Dict[str, str]) -> Any:
    if isinstance(node, _Branch):
        return {k: _materialize(c, prefix + (k,), provenance) for k, c in node.children.items()}
    provenance[format_key_path(prefix)] = node.source
    return copy.deepcopy(node.value)


@dataclass(frozen=True)
class ResolvedConfiguration:
    """The single winning value per path for an ordered list of layers.

    Never mutated: :meth:`extend` resolves a new configuration on top of the
    layers this one came from.
    """

    layers: Tuple[ConfigLayer, ...]
    values: Dict[str, Any]
    conflicts: Tuple[ConflictingLayerShape, ...] = ()
    provenance: Dict[str, str] = field(default_factory=dict)

    def get(self, path: Union[str, Sequence[str]], default: Any = None) -> Any:
        node: Any = self.values
        for seg in parse_key_path(path):
            if not isinstance(node, Mapping) or seg not in node:
                return default
            node = node[seg]
        return copy.deepcopy(node)

    def __contains__(self, path: object) -> bool:
        marker = object()
        return self.get(path, marker) is not marker  # type: ignore[arg-type]

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.values)

    def origin(self, path: Union[str, Sequence[str]]) -> Optional[str]:
        """Name of the layer that set the leaf at ``path``."""

        return self.provenance.get(format_key_path(parse_key_path(path)))

    def extend(self, *layers: ConfigLayer) -> "ResolvedConfiguration":
        return resolve([*self.layers, *layers])


def resolve(layers: Iterable[ConfigLayer]) -> ResolvedConfiguration:
    """Merge ``layers`` in list order.

    On a conflict the lower priority number wins, and at equal priority the
    later layer wins. Mappings merge key by key unless a replace layer swaps
    the whole subtree, after which weaker layers cannot write under it.
    """

    ordered = tuple(layers)
    resolver = _Resolver()
    for layer in ordered:
        resolver.apply(layer)

    provenance: Dict[str, str] = {}
    values = _materialize(resolver.root, (), provenance)
    return ResolvedConfiguration(
        layers=ordered,
        values=values,
        conflicts=tuple(resolver.conflicts),
        provenance=provenance,
    )
