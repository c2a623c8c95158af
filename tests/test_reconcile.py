import pytest

from conftest import wg_key
from peergate.enums import SyncAction, SyncStatus
from peergate.models import ClientPeer
from peergate.services import reconcile as reconcile_service
from peergate.services.reconcile import diagnose, fan_out
from peergate.services.registry import ClientRegistry
from peergate.wireguard.bridge import LivePeerSample


def _client(n: int, *, key: str | None = None, active: bool = True) -> ClientPeer:
    return ClientPeer(
        device_id=f"device-{n}",
        real_ip="198.51.100.1",
        vpn_address=f"172.16.0.{n + 1}",
        public_key=wg_key(n) if key is None else key,
        private_key="",
        is_active=active,
    )


def _live(n: int) -> LivePeerSample:
    return LivePeerSample(public_key=wg_key(n))


def test_diagnose_partitions_every_key_once() -> None:
    clients = [
        _client(1),
        _client(2),
        _client(3, active=False),
        _client(4, active=False),
        _client(5, key=""),
    ]
    live = [_live(1), _live(3), _live(40), _live(41)]

    report = diagnose(clients, live, file_keys={wg_key(1), wg_key(2), wg_key(77)})

    statuses = {entry.label: (entry.status, entry.action) for entry in report.entries}
    assert statuses == {
        "device-1": (SyncStatus.MATCHED, SyncAction.NONE),
        "device-2": (SyncStatus.REGISTRY_ONLY, SyncAction.PUSH),
        "device-3": (SyncStatus.MATCHED, SyncAction.REMOVE_LIVE),
        "device-4": (SyncStatus.REGISTRY_ONLY, SyncAction.NONE),
        "device-5": (SyncStatus.REGISTRY_ONLY, SyncAction.AWAIT_KEY),
        wg_key(40): (SyncStatus.LIVE_ONLY, SyncAction.ADOPT_OR_REMOVE),
        wg_key(41): (SyncStatus.LIVE_ONLY, SyncAction.ADOPT_OR_REMOVE),
    }
    assert report.counts() == {"matched": 2, "registry_only": 3, "live_only": 2}
    assert report.file_only == [wg_key(77)]
    assert {e.label for e in report.entries if e.in_config_file} == {"device-1", "device-2"}
    assert {e.label for e in report.actionable()} == {"device-2", "device-3", wg_key(40), wg_key(41)}


def test_diagnose_flags_inactive_client_left_in_file() -> None:
    report = diagnose([_client(1, active=False), _client(2, active=False)], [], file_keys={wg_key(1)})

    actions = {entry.label: entry.action for entry in report.entries}
    assert actions == {"device-1": SyncAction.REMOVE_FILE, "device-2": SyncAction.NONE}
    assert [e.label for e in report.actionable()] == ["device-1"]


def test_diagnose_every_key_lands_in_exactly_one_bucket() -> None:
    clients = [_client(n, active=n % 2 == 0) for n in range(1, 12)]
    live = [_live(n) for n in range(6, 20)]

    report = diagnose(clients, live)

    registry_keys = {c.public_key for c in clients}
    live_keys = {p.public_key for p in live}
    matched = {e.public_key for e in report.by_status(SyncStatus.MATCHED)}
    registry_only = {e.public_key for e in report.by_status(SyncStatus.REGISTRY_ONLY)}
    live_only = {e.public_key for e in report.by_status(SyncStatus.LIVE_ONLY)}

    assert matched == registry_keys & live_keys
    assert registry_only == registry_keys - live_keys
    assert live_only == live_keys - registry_keys
    assert len(report.entries) == len(registry_keys | live_keys)


@pytest.mark.asyncio
async def test_fan_out_isolates_failures() -> None:
    async def ok() -> None:
        return None

    async def boom() -> None:
        raise RuntimeError("wg set failed")

    result = await fan_out({"a": ok, "b": boom, "c": ok}, concurrency=1)

    assert result.succeeded == ["a", "c"]
    assert result.failed == {"b": "wg set failed"}


async def _seed(session, settings, count: int) -> list[ClientPeer]:
    registry = ClientRegistry(session)
    rows = [await registry.create(_client(n)) for n in range(1, count + 1)]
    lines = ["[Interface]", "ListenPort = 51820", ""]
    for row in rows:
        lines += ["[Peer]", f"PublicKey = {row.public_key}", f"AllowedIPs = {row.vpn_address}/32", ""]
    settings.wg_config_path.write_text("\n".join(lines), encoding="utf-8")
    return rows


@pytest.mark.asyncio
async def test_bulk_deactivate_reports_partial_failure(session, settings, runner, bridge) -> None:
    rows = await _seed(session, settings, 3)
    runner.script("wg", "set", "wg0", "peer", wg_key(2), "remove", returncode=1, stderr="Operation not permitted")
    registry = ClientRegistry(session)

    result = await reconcile_service.bulk_deactivate(
        registry, bridge, [str(row.id) for row in rows] + ["not-a-uuid"], concurrency=2
    )

    assert result.succeeded_count == 2
    assert result.failed_count == 1
    assert set(result.failed) == {str(rows[1].id)}
    assert result.missing == ["not-a-uuid"]

    # The registry flag is the intent and stays set even where removal failed.
    assert all(not row.is_active for row in await registry.all_clients())
    text = settings.wg_config_path.read_text(encoding="utf-8")
    assert wg_key(1) not in text
    # The section goes even where the live removal failed, so a later sync cannot revive it.
    assert wg_key(2) not in text
    assert wg_key(3) not in text


@pytest.mark.asyncio
async def test_reconcile_then_heal_converges(session, settings, runner, bridge) -> None:
    rows = await _seed(session, settings, 2)
    registry = ClientRegistry(session)
    rows[1].is_active = False
    await registry.update(rows[1])
    stray = wg_key(90)
    runner.script(
        "wg", "show", "wg0",
        stdout=f"interface: wg0\n\npeer: {wg_key(2)}\n  allowed ips: 172.16.0.3/32\n\npeer: {stray}\n  allowed ips: 172.16.0.50/32\n",
    )

    report = await reconcile_service.reconcile(registry, bridge)

    assert report.live_error is None
    assert report.config is not None and report.config.ok
    assert sorted(e.action.value for e in report.actionable()) == ["adopt_or_remove", "push", "remove_live"]

    result = await reconcile_service.heal(report, bridge, prune_unknown=True)

    assert sorted(result.succeeded) == sorted(["device-1", "device-2", stray])
    removals = [call for call in runner.commands() if call[:2] == ("wg", "set")]
    assert sorted(call[4] for call in removals) == sorted([wg_key(2), stray])


@pytest.mark.asyncio
async def test_reconcile_reports_live_error(session, settings, runner, bridge) -> None:
    await _seed(session, settings, 1)
    runner.script("wg", "show", returncode=1, stderr="Unable to access interface: No such device")

    report = await reconcile_service.reconcile(ClientRegistry(session), bridge)

    assert report.live_error is not None
    assert "No such device" in report.live_error
    assert report.by_status(SyncStatus.REGISTRY_ONLY)[0].action == SyncAction.PUSH
