"""zfs-nuke: one-shot ZFS provisioning artifacts from layered machine configs.

Core design goals:
- Explicit, deterministic configuration layering (priority + merge/replace)
- Host-specific bindings stripped before retargeting a config
- Fixed, fail-fast step order: partition, install, unmount, export
- Artifacts are plain text: a shell script or an installer image payload
- Centralized logging
"""

__all__ = []
