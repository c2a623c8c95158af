from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Iterator
from typing import Protocol

from peergate.errors import AddressSpaceExhausted
from peergate.settings import Settings

DEFAULT_NETWORK = "172.16.0.0/16"
DEFAULT_GATEWAY = "172.16.0.1"


class AddressSource(Protocol):
    async def find_all_addresses(self) -> set[str]: ...


def iter_candidate_ips(network: str = DEFAULT_NETWORK, gateway: str = DEFAULT_GATEWAY) -> Iterator[str]:
    """
    Yield client addresses in allocation order.

    The gateway and every address ending in .0 or .255 are skipped, so a /16
    hands out x.y.0.2-254 and then x.y.N.1-254 for each following block.
    """
    net = ipaddress.ip_network(network)
    gw = ipaddress.ip_address(gateway)
    for host in net.hosts():
        if host == gw:
            continue
        last_octet = int(host) & 0xFF
        if last_octet in (0, 255):
            continue
        yield str(host)


def next_address(
    used: Iterable[str],
    network: str = DEFAULT_NETWORK,
    gateway: str = DEFAULT_GATEWAY,
) -> str:
    busy = {str(ip).strip() for ip in used if ip}
    for ip in iter_candidate_ips(network, gateway):
        if ip not in busy:
            return ip
    raise AddressSpaceExhausted(f"no free address left in {network}")


async def allocate_address(source: AddressSource, settings: Settings) -> str:
    # Always rescanned: the config file and registry can change behind our back.
    used = await source.find_all_addresses()
    return next_address(used, network=settings.vpn_network, gateway=settings.vpn_gateway)
