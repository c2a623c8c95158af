from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from peergate.db import get_sessionmaker
from peergate.errors import (
    AddressSpaceExhausted,
    ConfigValidationFailed,
    ExternalUtilityUnavailable,
    NotFoundError,
    PeergateError,
    ValidationError,
)
from peergate.services.clients import VpnService
from peergate.services.geolocation import GeolocationClient
from peergate.services.registry import ClientRegistry
from peergate.settings import get_settings
from peergate.wireguard.bridge import WireguardBridge


async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_sessionmaker()() as session:
        yield session


@lru_cache(maxsize=1)
def get_bridge() -> WireguardBridge:
    # One bridge per process: its semaphore and file lock must be shared by all requests.
    return WireguardBridge.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_geolocation() -> GeolocationClient:
    return GeolocationClient(get_settings())


def build_service(session: AsyncSession) -> VpnService:
    return VpnService(
        registry=ClientRegistry(session),
        bridge=get_bridge(),
        geolocation=get_geolocation(),
        settings=get_settings(),
    )


async def vpn_service(session: AsyncSession = Depends(db_session)) -> VpnService:
    return build_service(session)


def to_http_error(exc: PeergateError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AddressSpaceExhausted):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigValidationFailed):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "interface config would be invalid", "errors": exc.errors},
        )
    if isinstance(exc, ExternalUtilityUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
