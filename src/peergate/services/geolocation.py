from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

import httpx

from peergate.settings import Settings

logger = logging.getLogger("peergate.geolocation")

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Location:
    country: str = UNKNOWN
    city: str = UNKNOWN


class GeolocationError(RuntimeError):
    pass


def _json_object(response: httpx.Response) -> dict:
    data = response.json()
    if not isinstance(data, dict):
        raise GeolocationError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _is_public_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address((value or "").strip())
    except ValueError:
        return False
    return not (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast)


class GeolocationClient:
    """Best-effort country/city lookup. Never raises; failures become Unknown/Unknown."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_key = settings.ip_geolocation_api_key
        self.timeout = settings.geolocation_timeout_seconds
        self._transport = transport

    async def lookup(self, ip: str) -> Location:
        if not _is_public_ip(ip):
            return Location()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if self.api_key:
                    return await self._ipgeolocation(client, ip)
                return await self._free_lookup(client, ip)
        except (httpx.HTTPError, GeolocationError, ValueError) as exc:
            logger.warning("geolocation lookup failed ip=%s error=%s", ip, exc)
            return Location()

    async def _ipgeolocation(self, client: httpx.AsyncClient, ip: str) -> Location:
        response = await client.get("https://api.ipgeolocation.io/ipgeo", params={"apiKey": self.api_key, "ip": ip})
        response.raise_for_status()
        data = _json_object(response)
        return Location(country=data.get("country_name") or UNKNOWN, city=data.get("city") or UNKNOWN)

    async def _free_lookup(self, client: httpx.AsyncClient, ip: str) -> Location:
        try:
            response = await client.get(f"http://ip-api.com/json/{ip}")
            response.raise_for_status()
            data = _json_object(response)
            if data.get("status") != "success":
                raise GeolocationError(f"ip-api status={data.get('status')}")
            return Location(country=data.get("country") or UNKNOWN, city=data.get("city") or UNKNOWN)
        except (httpx.HTTPError, GeolocationError, ValueError) as exc:
            logger.info("primary geolocation failed ip=%s error=%s, trying fallback", ip, exc)

        response = await client.get(f"https://ipapi.co/{ip}/json/")
        response.raise_for_status()
        data = _json_object(response)
        return Location(country=data.get("country_name") or UNKNOWN, city=data.get("city") or UNKNOWN)
