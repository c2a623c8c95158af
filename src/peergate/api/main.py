import asyncio
from contextlib import asynccontextmanager, suppress
from importlib.metadata import PackageNotFoundError, version as pkg_version

import uvicorn
from fastapi import FastAPI

from peergate.api.maintenance import maintenance_loop
from peergate.api.routers import clients, health, metrics, vpn
from peergate.db import create_schema, get_engine
from peergate.observability import configure_logging, install_http_observability
from peergate.settings import get_settings


@asynccontextmanager
async def lifespan(_: FastAPI):
    await create_schema(get_engine())

    task = None
    if settings.stats_sync_interval_seconds > 0:
        task = asyncio.create_task(maintenance_loop(settings))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await get_engine().dispose()


settings = get_settings()
configure_logging(settings.log_level)


def _app_version() -> str:
    try:
        return pkg_version("peergate")
    except PackageNotFoundError:
        return "dev"


app = FastAPI(title="Peergate VPN Gateway", version=_app_version(), lifespan=lifespan)
install_http_observability(app)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(vpn.router)
app.include_router(clients.router)


def run() -> None:
    if not settings.api_internal_token:
        raise RuntimeError("API_INTERNAL_TOKEN is required")
    if not settings.vpn_server_public_ip:
        raise RuntimeError("VPN_SERVER_PUBLIC_IP is required")
    uvicorn.run(
        "peergate.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
