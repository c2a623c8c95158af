import pytest

from conftest import fake_public_key, wg_key
from peergate.enums import SyncAction
from peergate.errors import AddressSpaceExhausted, ExternalUtilityUnavailable, NotFoundError, ValidationError
from peergate.services.clients import CLIENT_PRIVATE_KEY_PLACEHOLDER, VpnService
from peergate.services.geolocation import GeolocationClient
from peergate.services.registry import ClientRegistry

SERVER_PRIVATE = wg_key(99)
SERVER_CONF = f"[Interface]\nPrivateKey = {SERVER_PRIVATE}\nAddress = 172.16.0.1/16\nListenPort = 51820\n"


@pytest.fixture
def service(session, settings, keyed_runner, bridge) -> VpnService:
    settings.wg_config_path.write_text(SERVER_CONF, encoding="utf-8")
    return VpnService(ClientRegistry(session), bridge, GeolocationClient(settings), settings)


def _conf(settings) -> str:
    return settings.wg_config_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_register_new_client(service, settings) -> None:
    registration = await service.register("device-a", "10.1.2.3", device_name="Laptop")

    client = registration.client
    assert registration.is_new
    assert client.vpn_address == "172.16.0.2"
    assert client.country == "Unknown"
    assert client.public_key == fake_public_key(client.private_key)
    assert client.preshared_key
    assert registration.server_public_key == fake_public_key(SERVER_PRIVATE)
    assert registration.server_endpoint == "203.0.113.10:51820"
    assert f"PrivateKey = {client.private_key}" in registration.config_text
    assert "Address = 172.16.0.2/16" in registration.config_text
    assert f"PresharedKey = {client.preshared_key}" in registration.config_text
    assert _conf(settings).endswith(
        f"\n\n[Peer]\nPublicKey = {client.public_key}\nPresharedKey = {client.preshared_key}\nAllowedIPs = 172.16.0.2/32\n"
    )


@pytest.mark.asyncio
async def test_register_assigns_distinct_addresses(service) -> None:
    first = await service.register("device-a", "10.1.2.3")
    second = await service.register("device-b", "10.1.2.4")

    assert first.client.vpn_address == "172.16.0.2"
    assert second.client.vpn_address == "172.16.0.3"
    assert first.client.public_key != second.client.public_key


@pytest.mark.asyncio
async def test_register_rolls_back_when_live_push_fails(service, settings, runner) -> None:
    runner.script("wg", "syncconf", returncode=1, stderr="Unable to modify interface: Operation not permitted")

    with pytest.raises(ExternalUtilityUnavailable):
        await service.register("device-a", "10.1.2.3")

    assert await service.registry.find_by_device_id("device-a") is None
    assert _conf(settings) == SERVER_CONF


@pytest.mark.asyncio
async def test_register_exhausted_network_writes_nothing(service, settings, runner) -> None:
    settings.vpn_network = "10.9.0.0/30"
    settings.vpn_gateway = "10.9.0.1"
    await service.register("device-a", "10.1.2.3")
    calls_before = len(runner.calls)
    conf_before = _conf(settings)

    with pytest.raises(AddressSpaceExhausted):
        await service.register("device-b", "10.1.2.4")

    assert await service.registry.find_by_device_id("device-b") is None
    assert len(runner.calls) == calls_before
    assert _conf(settings) == conf_before


@pytest.mark.asyncio
async def test_register_rejects_bad_input(service) -> None:
    with pytest.raises(ValidationError):
        await service.register("  ", "10.1.2.3")
    with pytest.raises(ValidationError):
        await service.register("device-a", "")
    with pytest.raises(ValidationError):
        await service.register("device-a", "10.1.2.3", public_key="not-a-key")


@pytest.mark.asyncio
async def test_reregistration_rotates_keys_and_keeps_address(service, settings, runner) -> None:
    first = await service.register("device-a", "10.1.2.3")
    old_key = first.client.public_key

    second = await service.register("device-a", "10.1.2.3")

    assert not second.is_new
    assert second.client.id == first.client.id
    assert second.client.vpn_address == "172.16.0.2"
    assert second.client.public_key != old_key
    text = _conf(settings)
    assert old_key not in text
    assert text.count("[Peer]") == 1
    assert text.count(f"PublicKey = {second.client.public_key}") == 1
    assert ("wg", "set", "wg0", "peer", old_key, "remove") in runner.commands()


@pytest.mark.asyncio
async def test_rotation_add_failure_is_surfaced(service, settings, runner) -> None:
    await service.register("device-a", "10.1.2.3")
    runner.script("wg", "syncconf", returncode=1, stderr="Unable to modify interface")

    with pytest.raises(ExternalUtilityUnavailable):
        await service.rotate_keys("device-a")


@pytest.mark.asyncio
async def test_rotate_unknown_client(service) -> None:
    with pytest.raises(NotFoundError):
        await service.rotate_keys("missing")


@pytest.mark.asyncio
async def test_client_managed_key_keeps_private_key_empty(service, settings) -> None:
    key = wg_key(150)

    registration = await service.register("device-a", "10.1.2.3", public_key=key)

    assert registration.client.private_key == ""
    assert registration.client.public_key == key
    assert f"PrivateKey = {CLIENT_PRIVATE_KEY_PLACEHOLDER}" in registration.config_text
    assert f"PublicKey = {key}" in _conf(settings)


@pytest.mark.asyncio
async def test_public_key_cannot_be_shared_between_devices(service) -> None:
    key = wg_key(150)
    await service.register("device-a", "10.1.2.3", public_key=key)

    with pytest.raises(ValidationError):
        await service.register("device-b", "10.1.2.4", public_key=key)


@pytest.mark.asyncio
async def test_empty_public_key_defers_live_peer(service, settings, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3", public_key="")

    assert registration.client.public_key == ""
    assert _conf(settings) == SERVER_CONF
    assert not any(call[:2] == ("wg", "syncconf") for call in runner.commands())

    key = wg_key(151)
    client = await service.set_public_key("device-a", key)

    assert client.public_key == key
    assert f"PublicKey = {key}\nPresharedKey = {client.preshared_key}\nAllowedIPs = 172.16.0.2/32\n" in _conf(settings)


@pytest.mark.asyncio
async def test_deactivate_removes_live_peer(service, settings) -> None:
    registration = await service.register("device-a", "10.1.2.3")

    result = await service.deactivate("device-a")

    assert result.succeeded == ["device-a"]
    assert not registration.client.is_active
    assert registration.client.public_key not in _conf(settings)


@pytest.mark.asyncio
async def test_deactivate_keeps_flag_when_removal_fails(service, settings, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    runner.script("wg", "set", returncode=1, stderr="Operation not permitted")

    result = await service.deactivate("device-a")

    assert result.failed_count == 1
    assert "Operation not permitted" in result.failed["device-a"]
    client = await service.registry.find_by_device_id("device-a")
    assert client is not None and client.is_active is False
    assert registration.client.public_key not in _conf(settings)


@pytest.mark.asyncio
async def test_failed_deactivation_does_not_come_back_on_heal(service, settings, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    key = registration.client.public_key
    runner.script("wg", "set", returncode=1, stderr="Unable to modify interface: No such device")

    result = await service.deactivate("device-a")
    assert "No such device" in result.failed["device-a"]

    runner.script("wg", "set", returncode=0)
    report, healed = await service.heal()

    assert report.live_error is None
    assert healed.failed == {}
    assert key not in _conf(settings)
    assert not any(e.action == SyncAction.PUSH for e in report.entries)


@pytest.mark.asyncio
async def test_heal_drops_stale_section_of_inactive_client(service, settings, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    client = registration.client
    client.is_active = False
    await service.registry.update(client)
    assert client.public_key in _conf(settings)

    report, result = await service.heal()

    entry = report.entries[0]
    assert entry.action == SyncAction.REMOVE_FILE
    assert entry.in_config_file
    assert result.succeeded == ["device-a"]
    assert client.public_key not in _conf(settings)


@pytest.mark.asyncio
async def test_deactivate_unknown_client(service) -> None:
    with pytest.raises(NotFoundError):
        await service.deactivate("missing")


@pytest.mark.asyncio
async def test_activate_pushes_peer_again(service, settings) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    await service.deactivate("device-a")

    client = await service.activate(str(registration.client.id))

    assert client.is_active
    assert f"PublicKey = {client.public_key}" in _conf(settings)


@pytest.mark.asyncio
async def test_activate_rolls_back_flag_on_push_failure(service, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    await service.deactivate("device-a")
    runner.script("wg", "syncconf", returncode=1, stderr="Unable to modify interface")

    with pytest.raises(ExternalUtilityUnavailable):
        await service.activate(registration.client.id)

    assert registration.client.is_active is False


@pytest.mark.asyncio
async def test_bulk_deactivate_requires_ids(service) -> None:
    with pytest.raises(ValidationError):
        await service.bulk_deactivate([])


@pytest.mark.asyncio
async def test_sync_stats_folds_live_counters(service, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    key = registration.client.public_key
    runner.script(
        "wg", "show", "wg0",
        stdout=f"interface: wg0\n\npeer: {key}\n  latest handshake: 10 seconds ago\n  transfer: 2.00 KiB received, 1.00 MiB sent\n",
    )

    assert await service.sync_stats() == 1

    client = await service.registry.find_by_device_id("device-a")
    assert client.bytes_received == 2048
    assert client.bytes_sent == 1024**2
    assert client.last_handshake_at is not None


@pytest.mark.asyncio
async def test_live_stats_reports_errors_instead_of_raising(service, runner) -> None:
    runner.script("wg", "show", "wg0", returncode=1, stderr="Unable to access interface: No such device")

    stats = await service.get_live_stats()

    assert stats.interface == "wg0"
    assert stats.total_peers == 0
    assert "No such device" in stats.error


@pytest.mark.asyncio
async def test_heal_skips_actions_without_live_view(service, runner) -> None:
    await service.register("device-a", "10.1.2.3")
    runner.script("wg", "show", "wg0", returncode=1, stderr="No such device")

    report, result = await service.heal()

    assert report.live_error
    assert result.succeeded == []
    assert "live" in result.failed


@pytest.mark.asyncio
async def test_heal_without_live_view_still_drops_stale_sections(service, settings, runner) -> None:
    registration = await service.register("device-a", "10.1.2.3")
    await service.register("device-b", "10.1.2.4")
    client = registration.client
    client.is_active = False
    await service.registry.update(client)
    runner.script("wg", "show", "wg0", returncode=1, stderr="No such device")
    runner.script("wg", "set", returncode=1, stderr="Unable to modify interface: No such device")

    report, result = await service.heal()

    assert report.live_error
    assert set(result.failed) == {"live", "device-a"}
    text = _conf(settings)
    assert client.public_key not in text
    # Active peers are not re-pushed blindly while the interface is unreachable.
    assert text.count("[Peer]") == 1


@pytest.mark.asyncio
async def test_overview_and_listing(service) -> None:
    await service.register("device-a", "10.1.2.3", device_name="Office laptop")
    await service.register("device-b", "10.1.2.4", device_name="Phone")
    await service.deactivate("device-b")

    overview = await service.overview()

    assert (overview.total, overview.active, overview.inactive) == (2, 1, 1)
    assert overview.by_country == {"Unknown": 1}
    assert len(overview.recent) == 2
    assert [c.device_id for c in await service.list_clients(query="LAPTOP")] == ["device-a"]


@pytest.mark.asyncio
async def test_client_config_for_unknown_device(service) -> None:
    with pytest.raises(NotFoundError):
        await service.client_config("missing")
