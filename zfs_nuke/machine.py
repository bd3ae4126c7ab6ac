from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from .errors import InvalidMachineDescription
from .layers import DEFAULT_PRIORITY, WEAK_PRIORITY, ConfigLayer, layer_from_mapping
from .resolve import ResolvedConfiguration, resolve

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


@dataclass(frozen=True)
class MachineConfig:
    """A machine description: a base config plus any extra layers."""

    name: str
    layers: Tuple[ConfigLayer, ...]

    def resolve(self) -> ResolvedConfiguration:
        return resolve(self.layers)


def machine_from_mapping(data: Dict[str, Any], *, default_name: str = "machine") -> MachineConfig:
    name = str(data.get("name") or default_name)

    base = data.get("config") or {}
    if not isinstance(base, dict):
        raise InvalidMachineDescription(f"Machine {name}: 'config' must be a mapping")

    # system.name names the generated script unless the config sets one.
    layers: List[ConfigLayer] = [ConfigLayer.of({"system.name": name}, priority=WEAK_PRIORITY, name=f"{name}:defaults")]
    if base:
        layers.append(ConfigLayer.of(base, priority=DEFAULT_PRIORITY, name=f"{name}:config"))

    extra = data.get("layers") or []
    if not isinstance(extra, list):
        raise InvalidMachineDescription(f"Machine {name}: 'layers' must be a list")
    for i, raw in enumerate(extra):
        if not isinstance(raw, dict):
            raise InvalidMachineDescription(f"Machine {name}: layer #{i} must be a mapping")
        try:
            layers.append(layer_from_mapping(raw, default_name=f"{name}:layer{i}"))
        except ValueError as exc:
            raise InvalidMachineDescription(f"Machine {name}: layer #{i}: {exc}") from exc

    return MachineConfig(name=name, layers=tuple(layers))


def load_machine(path: str) -> MachineConfig:
    p = Path(path)
    if not p.exists():
        raise InvalidMachineDescription(f"No machine file at {path}")

    fmt = _detect_format(p)
    text = p.read_text(encoding="utf-8")
    try:
        if fmt in {"yaml", "yml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise InvalidMachineDescription(f"Cannot parse {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidMachineDescription(f"Machine file must be an object/dict, got {type(data)}")

    machine = machine_from_mapping(data, default_name=p.stem)
    logger.info("Loaded machine %s from %s (%d layers)", machine.name, path, len(machine.layers))
    return machine


def dump_config(config: ResolvedConfiguration, path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if _detect_format(p) == "json":
        p.write_text(json.dumps(config.as_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    else:
        p.write_text(yaml.safe_dump(config.as_dict(), sort_keys=False) + "\n", encoding="utf-8")
