from __future__ import annotations

import logging
from typing import Optional

from .layers import FORCE_PRIORITY, REPLACE, ConfigLayer
from .resolve import ResolvedConfiguration

logger = logging.getLogger(__name__)

# Bindings that only make sense on the machine the config was captured from.
HOST_SPECIFIC_PATHS = (
    "fileSystems",
    "networking.interfaces",
    "boot.initrd.luks.devices",
)


def sanitize(config: Optional[ResolvedConfiguration] = None) -> ConfigLayer:
    """Return a layer that blanks host-specific mounts, NICs and LUKS devices.

    ``config`` is not inspected: the paths are emptied unconditionally with a
    replace layer at force priority, so only another force-priority layer
    applied later can put values back.
    """

    if config is not None:
        logger.debug("Sanitizing configuration with %d layers", len(config.layers))
    return ConfigLayer.of(
        {path: {} for path in HOST_SPECIFIC_PATHS},
        priority=FORCE_PRIORITY,
        kind=REPLACE,
        name="sanitize",
    )
