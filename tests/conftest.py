import base64
import itertools

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from peergate.db import create_schema
from peergate.settings import Settings
from peergate.wireguard.bridge import WireguardBridge
from peergate.wireguard.runner import CommandResult, FakeCommandRunner


def wg_key(seed: int) -> str:
    return base64.b64encode(bytes([seed % 256]) * 32).decode()


def fake_public_key(private_key: str) -> str:
    raw = base64.b64decode(private_key.strip())
    return base64.b64encode(bytes((b + 128) % 256 for b in raw)).decode()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'peergate.db'}",
        wg_config_dir=str(tmp_path),
        wg_interface="wg0",
        vpn_server_public_ip="203.0.113.10",
        rotation_settle_seconds=0,
        bulk_concurrency=2,
        stats_sync_interval_seconds=0,
    )


@pytest.fixture
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def keyed_runner(runner: FakeCommandRunner) -> FakeCommandRunner:
    """Fake runner whose genkey/pubkey/genpsk produce distinct valid keys."""
    counter = itertools.count(1)

    runner.respond("wg", "genkey", handler=lambda args, _: CommandResult(args, 0, wg_key(next(counter)) + "\n"))
    runner.respond("wg", "pubkey", handler=lambda args, stdin: CommandResult(args, 0, fake_public_key(stdin or "") + "\n"))
    runner.respond("wg", "genpsk", handler=lambda args, _: CommandResult(args, 0, wg_key(200 + next(counter)) + "\n"))
    return runner


@pytest.fixture
def bridge(settings: Settings, runner: FakeCommandRunner) -> WireguardBridge:
    return WireguardBridge.from_settings(settings, runner)


@pytest_asyncio.fixture
async def session(settings: Settings):
    engine = create_async_engine(settings.database_url)
    await create_schema(engine)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as s:
        yield s
    await engine.dispose()
