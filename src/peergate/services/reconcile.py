"""
Three-way reconciliation between the client registry, the live interface and
the interface config file.

Divergence is the normal output of this module, not an error: `reconcile`
always returns a report, and bulk mutations report partial failure instead of
raising.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from prometheus_client import Gauge

from peergate.enums import SyncAction, SyncStatus
from peergate.errors import ExternalUtilityUnavailable
from peergate.models import ClientPeer
from peergate.services.registry import ClientRegistry
from peergate.wireguard import conf
from peergate.wireguard.bridge import LivePeerSample, WireguardBridge

logger = logging.getLogger("peergate.reconcile")

_RECONCILE_ENTRIES = Gauge(
    "peergate_reconcile_entries",
    "Entries per status in the latest reconciliation report",
    labelnames=["status"],
)


@dataclass
class SyncEntry:
    status: SyncStatus
    public_key: str
    action: SyncAction
    client: ClientPeer | None = None
    live: LivePeerSample | None = None
    in_config_file: bool = False

    @property
    def label(self) -> str:
        if self.client is not None:
            return self.client.device_id
        return self.public_key


@dataclass
class SyncReport:
    entries: list[SyncEntry] = field(default_factory=list)
    # Keys present only in the config file (neither registered nor live).
    file_only: list[str] = field(default_factory=list)
    config: conf.ConfigReport | None = None
    config_error: str | None = None
    live_error: str | None = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def by_status(self, status: SyncStatus) -> list[SyncEntry]:
        return [e for e in self.entries if e.status == status]

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in SyncStatus}
        for entry in self.entries:
            out[entry.status.value] += 1
        return out

    def actionable(self) -> list[SyncEntry]:
        return [e for e in self.entries if e.action not in (SyncAction.NONE, SyncAction.AWAIT_KEY)]


@dataclass
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def diagnose(
    clients: Iterable[ClientPeer],
    live_peers: Iterable[LivePeerSample],
    file_keys: set[str] | None = None,
) -> SyncReport:
    """
    Classify every client and every live peer exactly once.

    Single pass: index the live peers by key, then each client looks up and
    removes its key from the index. Whatever is left is live-only.
    """
    file_keys = set(file_keys or ())
    live = {peer.public_key.strip(): peer for peer in live_peers if peer.public_key.strip()}
    report = SyncReport()
    seen_keys: set[str] = set()

    for client in clients:
        key = (client.public_key or "").strip()
        sample = live.pop(key, None) if key else None
        if key:
            seen_keys.add(key)

        if sample is not None:
            action = SyncAction.NONE if client.is_active else SyncAction.REMOVE_LIVE
            status = SyncStatus.MATCHED
        else:
            status = SyncStatus.REGISTRY_ONLY
            if not key:
                action = SyncAction.AWAIT_KEY
            elif client.is_active:
                action = SyncAction.PUSH
            elif key in file_keys:
                # Left behind by a failed removal; the next syncconf would revive it.
                action = SyncAction.REMOVE_FILE
            else:
                action = SyncAction.NONE

        report.entries.append(
            SyncEntry(
                status=status,
                public_key=key,
                action=action,
                client=client,
                live=sample,
                in_config_file=bool(key) and key in file_keys,
            )
        )

    for key, sample in live.items():
        seen_keys.add(key)
        report.entries.append(
            SyncEntry(
                status=SyncStatus.LIVE_ONLY,
                public_key=key,
                action=SyncAction.ADOPT_OR_REMOVE,
                live=sample,
                in_config_file=key in file_keys,
            )
        )

    report.file_only = sorted(file_keys - seen_keys)
    return report


async def reconcile(registry: ClientRegistry, bridge: WireguardBridge) -> SyncReport:
    clients = await registry.all_clients()

    live_error: str | None = None
    try:
        live_peers = await bridge.show_peers()
    except ExternalUtilityUnavailable as exc:
        live_error = str(exc)
        live_peers = []

    config_report: conf.ConfigReport | None = None
    config_error: str | None = None
    file_keys: set[str] = set()
    try:
        doc = bridge.read_config()
        config_report = conf.validate(doc)
        file_keys = conf.peer_public_keys(doc)
    except (OSError, ValueError) as exc:
        config_error = str(exc)

    report = diagnose(clients, live_peers, file_keys)
    report.live_error = live_error
    report.config = config_report
    report.config_error = config_error

    counts = report.counts()
    for status, value in counts.items():
        _RECONCILE_ENTRIES.labels(status).set(value)
    logger.info(
        "reconcile matched=%s registry_only=%s live_only=%s file_only=%s live_error=%s",
        counts[SyncStatus.MATCHED.value],
        counts[SyncStatus.REGISTRY_ONLY.value],
        counts[SyncStatus.LIVE_ONLY.value],
        len(report.file_only),
        live_error,
    )
    return report


async def fan_out(tasks: dict[str, Callable[[], Awaitable[object]]], concurrency: int) -> BulkResult:
    """Run every task with bounded concurrency; one failure never stops the others."""
    result = BulkResult()
    if not tasks:
        return result
    slots = asyncio.Semaphore(max(1, concurrency))

    async def _one(factory: Callable[[], Awaitable[object]]) -> None:
        async with slots:
            await factory()

    labels = list(tasks)
    outcomes = await asyncio.gather(*(_one(tasks[label]) for label in labels), return_exceptions=True)
    for label, outcome in zip(labels, outcomes):
        if isinstance(outcome, Exception):
            result.failed[label] = str(outcome) or outcome.__class__.__name__
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            result.succeeded.append(label)
    return result


def _normalize_id(value: str | uuid.UUID) -> str | None:
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        return None


async def bulk_deactivate(
    registry: ClientRegistry,
    bridge: WireguardBridge,
    client_ids: Sequence[str | uuid.UUID],
    concurrency: int = 4,
) -> BulkResult:
    """
    Deactivate many clients: one registry update, then independent live removals.

    The registry flag is the authoritative intent and is never rolled back;
    peers whose removal failed converge on the next `heal` pass.
    """
    rows = await registry.bulk_set_active(client_ids, False)
    found = {str(row.id) for row in rows}
    missing = [str(value) for value in client_ids if _normalize_id(value) not in found]

    tasks: dict[str, Callable[[], Awaitable[object]]] = {}
    no_key: list[str] = []
    for row in rows:
        if not row.has_public_key:
            no_key.append(str(row.id))
            continue
        key = row.public_key

        async def _remove(key: str = key) -> None:
            await bridge.remove_peer(key)

        tasks[str(row.id)] = _remove

    result = await fan_out(tasks, concurrency)
    result.succeeded.extend(no_key)
    result.missing = missing
    logger.info(
        "bulk_deactivate requested=%s succeeded=%s failed=%s missing=%s",
        len(client_ids),
        result.succeeded_count,
        result.failed_count,
        len(missing),
    )
    for label, error in result.failed.items():
        logger.warning("bulk_deactivate removal failed client_id=%s error=%s", label, error)
    return result


async def heal(
    report: SyncReport,
    bridge: WireguardBridge,
    *,
    prune_unknown: bool = False,
    concurrency: int = 4,
) -> BulkResult:
    """Apply the actions suggested by a report. Every step is idempotent."""
    tasks: dict[str, Callable[[], Awaitable[object]]] = {}
    for entry in report.entries:
        key = entry.public_key
        if entry.action == SyncAction.PUSH and entry.client is not None:
            client = entry.client

            async def _push(key: str = key, address: str = client.vpn_address, psk: str | None = client.preshared_key) -> None:
                await bridge.add_peer(key, address, psk)

            tasks[entry.label] = _push
        elif entry.action in (SyncAction.REMOVE_LIVE, SyncAction.REMOVE_FILE) or (
            prune_unknown and entry.status == SyncStatus.LIVE_ONLY
        ):

            async def _remove(key: str = key) -> None:
                await bridge.remove_peer(key)

            tasks[entry.label] = _remove

    result = await fan_out(tasks, concurrency)
    logger.info("heal applied=%s failed=%s prune_unknown=%s", result.succeeded_count, result.failed_count, prune_unknown)
    return result
