from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from peergate.errors import ExternalUtilityUnavailable, ValidationError
from peergate.settings import Settings
from peergate.wireguard import conf
from peergate.wireguard.runner import CommandResult, CommandRunner, SubprocessRunner

logger = logging.getLogger("peergate.wireguard.bridge")

# Returned when neither the live interface nor the config file yields a key.
# Callers must treat it as "unknown", never as a real key.
SERVER_PUBLIC_KEY_PLACEHOLDER = "SERVER_PUBLIC_KEY_PLACEHOLDER"

_BYTE_UNITS = {
    "B": 1,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
    "PiB": 1024**5,
}
_TRANSFER_RE = re.compile(r"^([\d.]+)\s*([KMGTP]?i?B)$")
_HANDSHAKE_PART_RE = re.compile(r"(\d+)\s+(year|day|hour|minute|second)s?")
_HANDSHAKE_UNITS = {
    "year": timedelta(days=365),
    "day": timedelta(days=1),
    "hour": timedelta(hours=1),
    "minute": timedelta(minutes=1),
    "second": timedelta(seconds=1),
}
# `wg set ... remove` output that means the peer is already gone.
_MISSING_PEER_MARKERS = ("not found", "no such peer", "does not exist")


@dataclass(frozen=True)
class InterfaceConfig:
    name: str
    config_path: Path
    wg_binary: str = "wg"
    wg_quick_binary: str = "wg-quick"
    max_concurrency: int = 4

    @staticmethod
    def from_settings(settings: Settings) -> "InterfaceConfig":
        return InterfaceConfig(
            name=settings.wg_interface,
            config_path=settings.wg_config_path,
            wg_binary=settings.wg_binary,
            wg_quick_binary=settings.wg_quick_binary,
            max_concurrency=max(1, settings.wg_max_concurrency),
        )


@dataclass
class LivePeerSample:
    public_key: str
    endpoint: str | None = None
    allowed_ips: list[str] = field(default_factory=list)
    last_handshake: str = "never"
    bytes_received: str = "0 B"
    bytes_sent: str = "0 B"


def parse_transfer(value: str | None) -> int:
    match = _TRANSFER_RE.match((value or "").strip())
    if not match:
        return 0
    return int(float(match.group(1)) * _BYTE_UNITS.get(match.group(2), 1))


def parse_handshake(value: str | None, now: datetime | None = None) -> datetime | None:
    raw = (value or "").strip().lower()
    if not raw or raw == "never":
        return None
    now = now or datetime.now(timezone.utc)
    if raw == "now":
        return now
    delta = timedelta()
    parts = _HANDSHAKE_PART_RE.findall(raw)
    if not parts:
        return None
    for amount, unit in parts:
        delta += int(amount) * _HANDSHAKE_UNITS[unit]
    return now - delta


def parse_show_output(text: str) -> list[LivePeerSample]:
    """Parse the human readable `wg show <iface>` output."""
    peers: list[LivePeerSample] = []
    current: LivePeerSample | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        label, _, value = line.partition(":")
        label = label.strip().lower()
        value = value.strip()
        if label == "peer":
            current = LivePeerSample(public_key=value)
            peers.append(current)
            continue
        if label == "interface":
            current = None
            continue
        if current is None:
            continue
        if label == "endpoint":
            current.endpoint = value or None
        elif label == "allowed ips":
            current.allowed_ips = [ip.strip() for ip in value.split(",") if ip.strip() and ip.strip() != "(none)"]
        elif label == "latest handshake":
            current.last_handshake = value or "never"
        elif label == "transfer":
            received, _, sent = value.partition(",")
            current.bytes_received = received.replace("received", "").strip() or "0 B"
            current.bytes_sent = sent.replace("sent", "").strip() or "0 B"
    return peers


def _is_missing_peer(result: CommandResult) -> bool:
    text = result.output.lower()
    return any(marker in text for marker in _MISSING_PEER_MARKERS)


class WireguardBridge:
    """
    Narrow facade over `wg` / `wg-quick` for one interface.

    File edits are read-validate-write: the on-disk file is only replaced when the
    edited document validates, and live sync only runs against a valid file.
    """

    def __init__(self, config: InterfaceConfig, runner: CommandRunner) -> None:
        self.config = config
        self.runner = runner
        self._slots = asyncio.Semaphore(config.max_concurrency)
        self._file_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, runner: CommandRunner | None = None) -> "WireguardBridge":
        if runner is None:
            runner = SubprocessRunner(timeout=settings.wg_command_timeout_seconds, dry_run=settings.wg_dry_run)
        return cls(InterfaceConfig.from_settings(settings), runner)

    async def _run(self, *args: str, input: str | None = None) -> CommandResult:
        async with self._slots:
            return await self.runner.run(args, input=input)

    async def _run_checked(self, *args: str, input: str | None = None) -> CommandResult:
        result = await self._run(*args, input=input)
        if not result.ok:
            command = " ".join(args[:2])
            details = result.output or "no output"
            raise ExternalUtilityUnavailable(f"{command} failed: {details[:400]}", command=command)
        return result

    def _wg(self, *args: str) -> tuple[str, ...]:
        return (self.config.wg_binary, *args)

    def _wg_quick(self, *args: str) -> tuple[str, ...]:
        return (self.config.wg_quick_binary, *args)

    def read_config(self) -> conf.ConfigDocument:
        path = self.config.config_path
        if not path.exists():
            return conf.ConfigDocument()
        return conf.parse(path.read_text(encoding="utf-8"))

    def _write_config(self, doc: conf.ConfigDocument) -> None:
        path = self.config.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(conf.serialize(doc), encoding="utf-8")
        tmp.chmod(0o600)
        tmp.replace(path)

    async def current_public_key(self) -> str:
        try:
            result = await self._run(*self._wg("show", self.config.name, "public-key"))
            if result.ok and result.stdout.strip():
                return result.stdout.strip()
        except ExternalUtilityUnavailable as exc:
            logger.info("live public key unavailable interface=%s error=%s", self.config.name, exc)

        try:
            iface = conf.interface_section(self.read_config())
        except (OSError, ValueError) as exc:
            logger.warning("cannot read config path=%s error=%s", self.config.config_path, exc)
            iface = None
        private_key = (iface.get("PrivateKey") if iface else None) or ""
        if private_key:
            try:
                return await self.derive_public_key(private_key)
            except ExternalUtilityUnavailable as exc:
                logger.warning("public key derivation failed interface=%s error=%s", self.config.name, exc)

        logger.warning("server public key unknown interface=%s, using placeholder", self.config.name)
        return SERVER_PUBLIC_KEY_PLACEHOLDER

    async def derive_public_key(self, private_key: str) -> str:
        result = await self._run_checked(*self._wg("pubkey"), input=private_key.strip() + "\n")
        public_key = result.stdout.strip()
        if not public_key:
            raise ExternalUtilityUnavailable("wg pubkey returned empty output", command="wg pubkey")
        return public_key

    async def generate_keypair(self) -> tuple[str, str]:
        """Returns (private_key, public_key) in WireGuard base64 format."""
        private_key = (await self._run_checked(*self._wg("genkey"))).stdout.strip()
        if not private_key:
            raise ExternalUtilityUnavailable("wg genkey returned empty output", command="wg genkey")
        return private_key, await self.derive_public_key(private_key)

    async def generate_preshared_key(self) -> str:
        psk = (await self._run_checked(*self._wg("genpsk"))).stdout.strip()
        if not psk:
            raise ExternalUtilityUnavailable("wg genpsk returned empty output", command="wg genpsk")
        return psk

    async def show_peers(self) -> list[LivePeerSample]:
        result = await self._run_checked(*self._wg("show", self.config.name))
        return parse_show_output(result.stdout)

    async def sync_from_file(self) -> None:
        stripped = await self._run_checked(*self._wg_quick("strip", str(self.config.config_path)))
        await self._run_checked(*self._wg("syncconf", self.config.name, "/dev/stdin"), input=stripped.stdout)

    async def add_peer(self, public_key: str, allowed_address: str, preshared_key: str | None = None) -> bool:
        key = (public_key or "").strip()
        if not key:
            raise ValidationError("cannot add a peer without a public key")
        allowed = allowed_address if "/" in allowed_address else f"{allowed_address}/32"

        async with self._file_lock:
            existed = self.config.config_path.exists()
            doc = self.read_config()
            if conf.find_peer(doc, key) is not None:
                logger.info("peer already in config interface=%s key=%s", self.config.name, key)
                conf.ensure_valid(doc)
                added = False
            else:
                previous = doc
                doc = conf.append_section(doc, conf.PEER_HEADER, conf.peer_fields(key, allowed, preshared_key))
                conf.ensure_valid(doc)
                self._write_config(doc)
                added = True
            try:
                await self.sync_from_file()
            except ExternalUtilityUnavailable:
                if added:
                    # The interface never saw the peer; do not leave it behind in the file.
                    if existed:
                        self._write_config(previous)
                    else:
                        self.config.config_path.unlink(missing_ok=True)
                raise

        logger.info("peer added interface=%s key=%s allowed=%s new=%s", self.config.name, key, allowed, added)
        return added

    async def remove_peer(self, public_key: str) -> bool:
        key = (public_key or "").strip()
        if not key:
            raise ValidationError("cannot remove a peer without a public key")

        live_error: ExternalUtilityUnavailable | None = None
        try:
            result = await self._run(*self._wg("set", self.config.name, "peer", key, "remove"))
        except ExternalUtilityUnavailable as exc:
            live_error = exc
        else:
            if result.ok:
                pass
            elif _is_missing_peer(result):
                logger.info("peer already absent from live interface interface=%s key=%s", self.config.name, key)
            else:
                live_error = ExternalUtilityUnavailable(
                    f"wg set remove failed: {(result.output or 'no output')[:400]}", command="wg set"
                )

        async with self._file_lock:
            doc = self.read_config()
            doc, removed = conf.remove_sections(doc, conf.has_public_key(key))
            conf.ensure_valid(doc)
            if removed:
                self._write_config(doc)
            if live_error is None:
                await self.sync_from_file()

        if live_error is not None:
            # The file no longer carries the peer, so a later sync or `wg-quick up` cannot revive it.
            logger.warning(
                "live removal failed, config section dropped interface=%s key=%s sections=%s error=%s",
                self.config.name,
                key,
                removed,
                live_error,
            )
            raise live_error

        logger.info("peer removed interface=%s key=%s sections=%s", self.config.name, key, removed)
        return removed > 0

    async def up(self) -> None:
        await self._run_checked(*self._wg_quick("up", self.config.name))

    async def down(self) -> None:
        await self._run_checked(*self._wg_quick("down", self.config.name))

    def validate_file(self) -> conf.ConfigReport:
        return conf.validate(self.read_config())

    async def repair_file(self) -> int:
        async with self._file_lock:
            doc, removed = conf.repair(self.read_config())
            if removed:
                conf.ensure_valid(doc)
                self._write_config(doc)
        return removed
