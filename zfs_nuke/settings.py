from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .disk_layout import DEFAULT_POOL_NAME
from .emit import DEFAULT_COMMAND_NAME, DEFAULT_IMAGE_OPTIONS, BootTrigger

SECTIONS = ("paths", "disk", "installer")


@dataclass(frozen=True)
class Settings:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.raw.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"settings section '{name}' must be a mapping, got {type(section).__name__}")
        return section

    @property
    def out_dir(self) -> str:
        return str(self._section("paths").get("out_dir") or "result")

    @property
    def log_path(self) -> str:
        return str(self._section("paths").get("log_path") or "logs/zfs-nuke.log")

    @property
    def pool_name(self) -> str:
        return str(self._section("disk").get("pool_name") or DEFAULT_POOL_NAME)

    @property
    def esp_size(self) -> str:
        return str(self._section("disk").get("esp_size") or "1G")

    @property
    def swap_size(self) -> Optional[str]:
        size = self._section("disk").get("swap_size")
        return str(size) if size else None

    @property
    def command_name(self) -> str:
        return str(self._section("installer").get("command_name") or DEFAULT_COMMAND_NAME)

    @property
    def boot_trigger(self) -> BootTrigger:
        inst = self._section("installer")
        return BootTrigger(
            tty=str(inst.get("tty") or "/dev/tty1"),
            autologin_user=str(inst.get("autologin_user") or "root"),
        )

    @property
    def image_options(self) -> Dict[str, Any]:
        inst = self._section("installer")
        opts = dict(DEFAULT_IMAGE_OPTIONS)
        for key in DEFAULT_IMAGE_OPTIONS:
            if key in inst:
                opts[key] = inst[key]
        return opts


def load_settings(path: Optional[str]) -> Settings:
    """Load ``zfs-nuke.yaml``; a missing optional file means all defaults."""

    if not path:
        return Settings()

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("settings file must be YAML")

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping/object")

    settings = Settings(raw=raw)
    for name in SECTIONS:
        settings._section(name)
    return settings
