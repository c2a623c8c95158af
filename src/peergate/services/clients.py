from __future__ import annotations

import asyncio
import ipaddress
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from peergate.enums import ClientStatusFilter, SyncAction
from peergate.errors import (
    ConfigValidationFailed,
    ExternalUtilityUnavailable,
    NotFoundError,
    PeergateError,
    ValidationError,
)
from peergate.models import ClientPeer
from peergate.services import reconcile as reconcile_service
from peergate.services.geolocation import GeolocationClient
from peergate.services.ipam import allocate_address
from peergate.services.reconcile import BulkResult, SyncReport
from peergate.services.registry import ClientRegistry
from peergate.settings import Settings
from peergate.wireguard import conf
from peergate.wireguard.bridge import LivePeerSample, WireguardBridge, parse_handshake, parse_transfer

logger = logging.getLogger("peergate.clients")

# Written into generated client configs when the private key never left the device.
CLIENT_PRIVATE_KEY_PLACEHOLDER = "<client-private-key>"


@dataclass
class Registration:
    client: ClientPeer
    is_new: bool
    server_public_key: str
    server_endpoint: str
    dns: str
    config_text: str


@dataclass
class LiveStats:
    interface: str
    peers: list[LivePeerSample] = field(default_factory=list)
    error: str | None = None

    @property
    def total_peers(self) -> int:
        return len(self.peers)


@dataclass
class Overview:
    total: int
    active: int
    inactive: int
    by_country: dict[str, int]
    recent: list[ClientPeer]


def _clean_key(value: str | None) -> str | None:
    if value is None:
        return None
    key = value.strip()
    if key and not conf.is_valid_wg_key(key):
        raise ValidationError("public key must be a 44 character base64 WireGuard key")
    return key


class VpnService:
    """Caller-facing client lifecycle on top of the registry and the live bridge."""

    def __init__(
        self,
        registry: ClientRegistry,
        bridge: WireguardBridge,
        geolocation: GeolocationClient,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.bridge = bridge
        self.geolocation = geolocation
        self.settings = settings

    async def register(
        self,
        device_id: str,
        real_ip: str,
        device_name: str | None = None,
        public_key: str | None = None,
    ) -> Registration:
        """
        Create or refresh a client.

        `public_key=None` means keys are generated here. A supplied key means the
        client keeps its private key; an empty string defers the live peer until
        the key arrives through `set_public_key`.
        """
        device_id = (device_id or "").strip()
        if not device_id:
            raise ValidationError("device id is required")
        real_ip = (real_ip or "").strip()
        if not real_ip:
            raise ValidationError("real ip is required")
        device_name = (device_name or "").strip() or None
        key = _clean_key(public_key)

        client = await self.registry.find_by_device_id(device_id)
        if client is None:
            client = await self._create(device_id, real_ip, device_name, key)
            is_new = True
        else:
            client = await self._refresh_info(client, real_ip, device_name)
            if not client.is_active:
                client.is_active = True
                await self.registry.update(client)
                logger.info("client reactivated on registration device_id=%s", device_id)
            if key is None:
                client = await self._rotate(client)
            else:
                client = await self._replace_public_key(client, key)
            is_new = False

        server_public_key = await self.bridge.current_public_key()
        return Registration(
            client=client,
            is_new=is_new,
            server_public_key=server_public_key,
            server_endpoint=self.settings.vpn_server_endpoint,
            dns=self.settings.vpn_client_dns,
            config_text=self._render_config(client, server_public_key),
        )

    async def _create(
        self,
        device_id: str,
        real_ip: str,
        device_name: str | None,
        public_key: str | None,
    ) -> ClientPeer:
        if public_key:
            await self._ensure_key_unused(public_key, device_id)
        # Raises AddressSpaceExhausted before anything is written.
        address = await allocate_address(self.registry, self.settings)
        location = await self.geolocation.lookup(real_ip)

        if public_key is None:
            private_key, public_key = await self.bridge.generate_keypair()
        else:
            private_key = ""
        preshared_key = await self.bridge.generate_preshared_key()

        client = ClientPeer(
            device_id=device_id,
            device_name=device_name,
            real_ip=real_ip,
            country=location.country,
            city=location.city,
            vpn_address=address,
            public_key=public_key,
            private_key=private_key,
            preshared_key=preshared_key,
            is_active=True,
        )
        try:
            client = await self.registry.create(client)
        except IntegrityError as exc:
            await self.registry.session.rollback()
            raise ValidationError(f"registration for {device_id} conflicts with an existing client") from exc
        logger.info("client created device_id=%s vpn_address=%s", device_id, address)

        if not client.has_public_key:
            logger.info("client has no public key yet, live peer deferred device_id=%s", device_id)
            return client

        try:
            await self.bridge.add_peer(client.public_key, client.vpn_address, client.preshared_key)
        except (ExternalUtilityUnavailable, ConfigValidationFailed):
            logger.exception("live peer push failed, rolling back registration device_id=%s", device_id)
            await self.registry.delete(client)
            raise
        return client

    async def _refresh_info(self, client: ClientPeer, real_ip: str, device_name: str | None) -> ClientPeer:
        changed = False
        if client.real_ip != real_ip:
            location = await self.geolocation.lookup(real_ip)
            client.real_ip = real_ip
            client.country = location.country
            client.city = location.city
            changed = True
        if device_name and client.device_name != device_name:
            client.device_name = device_name
            changed = True
        if changed:
            await self.registry.update(client)
        return client

    async def _ensure_key_unused(self, public_key: str, device_id: str) -> None:
        owner = await self.registry.find_by_public_key(public_key)
        if owner is not None and owner.device_id != device_id:
            raise ValidationError("public key is already registered to another device")

    async def _remove_live_quietly(self, client: ClientPeer) -> None:
        try:
            await self.bridge.remove_peer(client.public_key)
        except PeergateError as exc:
            # Rotation continues; a stale peer is cleaned up by the next heal pass.
            logger.warning("old peer removal failed device_id=%s error=%s", client.device_id, exc)

    async def _rotate(self, client: ClientPeer) -> ClientPeer:
        if client.has_public_key:
            await self._remove_live_quietly(client)
            if self.settings.rotation_settle_seconds > 0:
                await asyncio.sleep(self.settings.rotation_settle_seconds)

        private_key, public_key = await self.bridge.generate_keypair()
        client.private_key = private_key
        client.public_key = public_key
        client.preshared_key = await self.bridge.generate_preshared_key()
        await self.registry.update(client)
        logger.info("client keys rotated device_id=%s", client.device_id)

        if client.is_active:
            # Not retried: a blind retry could bind the address to two key pairs.
            await self.bridge.add_peer(client.public_key, client.vpn_address, client.preshared_key)
        return client

    async def _replace_public_key(self, client: ClientPeer, public_key: str) -> ClientPeer:
        if public_key:
            await self._ensure_key_unused(public_key, client.device_id)
        if client.public_key != public_key:
            if client.has_public_key:
                await self._remove_live_quietly(client)
            client.public_key = public_key
            client.private_key = ""
            await self.registry.update(client)
            logger.info("client public key replaced device_id=%s", client.device_id)

        if client.is_active and client.has_public_key:
            await self.bridge.add_peer(client.public_key, client.vpn_address, client.preshared_key)
        return client

    async def _require(self, device_id: str) -> ClientPeer:
        device_id = (device_id or "").strip()
        if not device_id:
            raise ValidationError("device id is required")
        client = await self.registry.find_by_device_id(device_id)
        if client is None:
            raise NotFoundError(f"client with device id {device_id} not found")
        return client

    async def rotate_keys(self, device_id: str) -> ClientPeer:
        client = await self._require(device_id)
        return await self._rotate(client)

    async def set_public_key(self, device_id: str, public_key: str) -> ClientPeer:
        key = _clean_key(public_key)
        if not key:
            raise ValidationError("public key is required")
        client = await self._require(device_id)
        return await self._replace_public_key(client, key)

    async def deactivate(self, device_id: str) -> BulkResult:
        client = await self._require(device_id)
        await self.registry.soft_deactivate(client)
        result = BulkResult()
        if not client.has_public_key:
            result.succeeded.append(client.device_id)
            return result
        try:
            await self.bridge.remove_peer(client.public_key)
            result.succeeded.append(client.device_id)
        except PeergateError as exc:
            logger.warning("peer removal failed after deactivation device_id=%s error=%s", client.device_id, exc)
            result.failed[client.device_id] = str(exc)
        return result

    async def activate(self, client_id: str | uuid.UUID) -> ClientPeer:
        client = await self.get_client(client_id)
        if client.is_active:
            return client
        client.is_active = True
        await self.registry.update(client)
        if client.has_public_key:
            try:
                await self.bridge.add_peer(client.public_key, client.vpn_address, client.preshared_key)
            except (ExternalUtilityUnavailable, ConfigValidationFailed):
                client.is_active = False
                await self.registry.update(client)
                raise
        return client

    async def bulk_deactivate(self, client_ids: Sequence[str | uuid.UUID]) -> BulkResult:
        ids = [value for value in client_ids if str(value).strip()]
        if not ids:
            raise ValidationError("at least one client id is required")
        return await reconcile_service.bulk_deactivate(
            self.registry, self.bridge, ids, concurrency=self.settings.bulk_concurrency
        )

    async def reconcile(self) -> SyncReport:
        return await reconcile_service.reconcile(self.registry, self.bridge)

    async def heal(self, *, prune_unknown: bool = False) -> tuple[SyncReport, BulkResult]:
        report = await self.reconcile()
        if report.live_error:
            # Without a live view every key would look missing; only stale file sections are safe to drop.
            stale = SyncReport(entries=[e for e in report.entries if e.action == SyncAction.REMOVE_FILE])
            result = await reconcile_service.heal(stale, self.bridge, concurrency=self.settings.bulk_concurrency)
            result.failed["live"] = report.live_error
            return report, result
        result = await reconcile_service.heal(
            report, self.bridge, prune_unknown=prune_unknown, concurrency=self.settings.bulk_concurrency
        )
        return report, result

    async def get_live_stats(self) -> LiveStats:
        stats = LiveStats(interface=self.bridge.config.name)
        try:
            stats.peers = await self.bridge.show_peers()
        except ExternalUtilityUnavailable as exc:
            stats.error = str(exc)
        return stats

    async def sync_stats(self) -> int:
        """Fold live handshake/transfer samples into the registry; returns updated rows."""
        try:
            samples = await self.bridge.show_peers()
        except ExternalUtilityUnavailable as exc:
            logger.warning("stats sync skipped error=%s", exc)
            return 0

        by_key = {sample.public_key: sample for sample in samples}
        now = datetime.now(timezone.utc)
        updated = 0
        for client in await self.registry.all_clients():
            sample = by_key.get(client.public_key) if client.has_public_key else None
            if sample is None:
                continue
            handshake = parse_handshake(sample.last_handshake, now)
            if handshake is not None:
                client.last_handshake_at = handshake
            client.bytes_received = parse_transfer(sample.bytes_received)
            client.bytes_sent = parse_transfer(sample.bytes_sent)
            await self.registry.update(client)
            updated += 1
        logger.info("stats synced clients=%s live_peers=%s", updated, len(samples))
        return updated

    def _render_config(self, client: ClientPeer, server_public_key: str) -> str:
        return conf.render_client_config(
            private_key=client.private_key or CLIENT_PRIVATE_KEY_PLACEHOLDER,
            address=f"{client.vpn_address}/{ipaddress.ip_network(self.settings.vpn_network).prefixlen}",
            dns=self.settings.vpn_client_dns,
            server_public_key=server_public_key,
            endpoint=self.settings.vpn_server_endpoint,
            preshared_key=client.preshared_key,
        )

    async def client_config(self, device_id: str) -> str:
        client = await self._require(device_id)
        return self._render_config(client, await self.bridge.current_public_key())

    async def get_client(self, client_id: str | uuid.UUID) -> ClientPeer:
        client = await self.registry.find_by_id(client_id)
        if client is None:
            raise NotFoundError(f"client with id {client_id} not found")
        return client

    async def list_clients(self, query: str | None = None, status: ClientStatusFilter | None = None) -> list[ClientPeer]:
        return await self.registry.list_clients(query=query, status=status)

    async def overview(self) -> Overview:
        counts = await self.registry.count_by_status()
        active = counts.get(True, 0)
        inactive = counts.get(False, 0)
        return Overview(
            total=active + inactive,
            active=active,
            inactive=inactive,
            by_country=await self.registry.count_by_country(),
            recent=await self.registry.list_clients(limit=5),
        )
