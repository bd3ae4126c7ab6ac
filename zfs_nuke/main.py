from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from .builders import build_installer_image, build_script, build_script_opinionated, opinionated_configuration
from .disk_layout import default_partitions
from .errors import ZfsNukeError
from .lib.disko import DiskoPartitioner, write_layout_file
from .logging_utils import configure_logging
from .machine import dump_config, load_machine
from .pipeline import build_pipeline, run_pipeline
from .resolve import ResolvedConfiguration
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = "zfs-nuke.yaml"

NO_ROLLBACK_NOTE = (
    "Provisioning is not transactional: if a step fails or is interrupted, "
    "nothing is undone (no reformat, no re-mount)."
)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    if args.config:
        return load_settings(args.config)
    if Path(DEFAULT_SETTINGS_PATH).exists():
        return load_settings(DEFAULT_SETTINGS_PATH)
    return Settings()


def _resolved_from_args(args: argparse.Namespace) -> ResolvedConfiguration:
    return load_machine(args.machine).resolve()


def cmd_script(args: argparse.Namespace, settings: Settings) -> int:
    resolved = _resolved_from_args(args)
    artifact = build_script(resolved, args.device, install_payload=args.system)
    out = args.out or str(Path(settings.out_dir) / artifact.name)
    artifact.write(out)
    print(out)
    return 0


def cmd_script_opinionated(args: argparse.Namespace, settings: Settings) -> int:
    resolved = _resolved_from_args(args)
    pool = args.pool or settings.pool_name
    out = args.out or str(Path(settings.out_dir) / "diskoScript")
    layout_path = str(Path(args.layout_out).resolve()) if args.layout_out else None

    result = build_script_opinionated(
        resolved,
        args.device,
        pool_name=pool,
        partitions=default_partitions(pool, esp_size=settings.esp_size, swap_size=args.swap_size or settings.swap_size),
        install_payload=args.system,
        layout_path=layout_path,
    )
    if layout_path:
        write_layout_file(layout_path, result.resolved.get("disko.devices"))
    result.script.write(out)
    if args.dump_config:
        dump_config(result.resolved, args.dump_config)
    print(out)
    return 0


def cmd_installer_image(args: argparse.Namespace, settings: Settings) -> int:
    resolved = _resolved_from_args(args)
    image = build_installer_image(
        resolved,
        args.extra_files,
        boot_trigger=settings.boot_trigger,
        install_payload=args.system,
        command_name=settings.command_name,
        options=settings.image_options,
        extra_modules=[str(Path(m).resolve()) for m in args.extra_module],
    )
    out_dir = args.out or str(Path(settings.out_dir) / "installer")
    image.write(out_dir)
    print(out_dir)
    return 0


def cmd_resolve(args: argparse.Namespace, settings: Settings) -> int:
    resolved = _resolved_from_args(args)
    if args.device:
        resolved = opinionated_configuration(resolved, args.device, pool_name=args.pool or settings.pool_name)

    if args.explain:
        for path, layer in sorted(resolved.provenance.items()):
            print(f"{path}\t{layer}")
    else:
        sys.stdout.write(yaml.safe_dump(resolved.as_dict(), sort_keys=False))

    for conflict in resolved.conflicts:
        logger.warning("Conflict: %s", conflict)
    return 0


def cmd_apply(args: argparse.Namespace, settings: Settings) -> int:
    if not args.dry_run and not args.yes_wipe_all_disks:
        raise SystemExit(f"Refusing to wipe {args.device} without --yes-wipe-all-disks. {NO_ROLLBACK_NOTE}")

    resolved = _resolved_from_args(args)
    if args.opinionated:
        built = build_script_opinionated(
            resolved,
            args.device,
            pool_name=args.pool or settings.pool_name,
            install_payload=args.system,
        )
        pipeline = built.pipeline
    else:
        pipeline = build_pipeline(resolved, args.device, args.system, partitioner=DiskoPartitioner())

    logger.warning("Provisioning %s. %s", args.device, NO_ROLLBACK_NOTE)
    outcome = run_pipeline(pipeline, dry_run=args.dry_run)
    logger.info("Completed %d steps", len(outcome.ran_steps))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zfs-nuke",
        description="Build one-shot ZFS provisioning scripts and installer images.",
        epilog=NO_ROLLBACK_NOTE,
    )
    p.add_argument("--config", default=None, help=f"Settings file (default: ./{DEFAULT_SETTINGS_PATH} if present)")
    p.add_argument("--log", default=None, help="Path to log file")
    p.add_argument("-v", "--verbose", action="store_true")

    sub = p.add_subparsers(dest="command", required=True)

    def machine_args(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--machine", required=True, help="Machine description (json|yaml)")
        sp.add_argument("--system", default=None, help="System image to install (default: system.build.toplevel)")

    s = sub.add_parser("script", help="Script for a config that already has a disko layout")
    machine_args(s)
    s.add_argument("--device", required=True)
    s.add_argument("--out", default=None)
    s.set_defaults(func=cmd_script)

    s = sub.add_parser("script-opinionated", help="Sanitize the config and force a fresh ZFS layout")
    machine_args(s)
    s.add_argument("--device", required=True)
    s.add_argument("--pool", default=None)
    s.add_argument("--swap-size", default=None, help="Add a swap partition of this size (e.g. 8G)")
    s.add_argument("--out", default=None)
    s.add_argument("--layout-out", default=None, help="Also write the disko layout to this file and point the script at it (default: embed it in the script)")
    s.add_argument("--dump-config", default=None, help="Also write the final resolved config (json|yaml)")
    s.set_defaults(func=cmd_script_opinionated)

    s = sub.add_parser("installer-image", help="Installer image payload that provisions on first boot")
    machine_args(s)
    s.add_argument("--extra-files", default=None, help="Config tree to copy to /etc/nixos of the installed root")
    s.add_argument(
        "--extra-module",
        action="append",
        default=[],
        help="NixOS module to import into the installer image (repeatable)",
    )
    s.add_argument("--out", default=None, help="Output directory")
    s.set_defaults(func=cmd_installer_image)

    s = sub.add_parser("resolve", help="Print the resolved configuration")
    s.add_argument("--machine", required=True)
    s.add_argument("--device", default=None, help="Show the opinionated configuration for this device")
    s.add_argument("--pool", default=None)
    s.add_argument("--explain", action="store_true", help="Print which layer set each value")
    s.set_defaults(func=cmd_resolve)

    s = sub.add_parser("apply", help="Run the provisioning steps on this machine")
    machine_args(s)
    s.add_argument("--device", required=True)
    s.add_argument("--opinionated", action="store_true")
    s.add_argument("--pool", default=None)
    s.add_argument("--dry-run", action="store_true")
    s.add_argument("--yes-wipe-all-disks", action="store_true")
    s.set_defaults(func=cmd_apply)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings_from_args(args)
    except (OSError, ValueError) as exc:
        parser.error(f"cannot load settings: {exc}")

    configure_logging(
        log_path=args.log or settings.log_path,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        return args.func(args, settings)
    except (ZfsNukeError, OSError, ValueError):
        logger.exception("zfs-nuke %s failed", args.command)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
