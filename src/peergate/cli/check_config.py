"""
Validate (and optionally repair) a WireGuard interface config file.

Exit status is 0 for a valid file, 1 when errors remain.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from peergate.errors import ConfigValidationFailed, ExternalUtilityUnavailable
from peergate.observability import configure_logging
from peergate.settings import get_settings
from peergate.wireguard import conf
from peergate.wireguard.bridge import InterfaceConfig, WireguardBridge
from peergate.wireguard.runner import SubprocessRunner

logger = logging.getLogger("peergate.check_config")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="peergate-check-config", description=__doc__)
    parser.add_argument("path", nargs="?", help="config file (default: <WG_CONFIG_DIR>/<WG_INTERFACE>.conf)")
    parser.add_argument("--fix", action="store_true", help="drop peer sections without a single valid public key")
    parser.add_argument("--sync", action="store_true", help="sync the live interface after a successful fix")
    return parser.parse_args(argv)


def _print_report(path: Path, report: conf.ConfigReport) -> None:
    print(f"{path}: {report.peer_count} peer(s)")
    for error in report.errors:
        print(f"  error: {error}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    print("  OK" if report.ok else "  INVALID")


async def check_config(path: Path, *, fix: bool = False, sync: bool = False) -> conf.ConfigReport:
    settings = get_settings()
    config = replace(InterfaceConfig.from_settings(settings), config_path=path)
    bridge = WireguardBridge(
        config,
        SubprocessRunner(timeout=settings.wg_command_timeout_seconds, dry_run=settings.wg_dry_run),
    )

    report = bridge.validate_file()
    _print_report(path, report)
    if not fix:
        return report

    try:
        removed = await bridge.repair_file()
    except ConfigValidationFailed as exc:
        # Repair only drops broken peers; other structural errors need a human.
        logger.error("repair aborted errors=%s", exc.errors)
        return report
    print(f"removed {removed} invalid peer section(s)")
    report = bridge.validate_file()
    _print_report(path, report)
    if sync and removed and report.ok:
        try:
            await bridge.sync_from_file()
        except ExternalUtilityUnavailable as exc:
            logger.error("live sync failed error=%s", exc)
        else:
            print("live interface synced")
    return report


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    path = Path(args.path) if args.path else settings.wg_config_path
    if not path.exists():
        print(f"{path}: not found", file=sys.stderr)
        return 1
    report = asyncio.run(check_config(path, fix=args.fix, sync=args.sync))
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
