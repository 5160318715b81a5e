from __future__ import annotations

import ipaddress
import socket
from collections.abc import Iterable, Sequence

import psutil
import requests

from .errors import HostNotInList, InvokerError, PortInUse

LOCALHOST = "localhost"
SINGLE_NODE = (LOCALHOST, 0)


def resolve_master_and_rank(
    hosts: Sequence[str],
    addresses: Iterable[str],
    master_host: str | None = None,
) -> tuple[str, int]:
    """Pick this node's rank from the shared host list.

    The rank is the index of the first host that matches one of ``addresses``.
    A lone ``localhost`` entry means a single-node run, whatever the addresses.
    """
    if len(hosts) == 1 and hosts[0] == LOCALHOST:
        return SINGLE_NODE

    known = set(addresses)
    for rank, host in enumerate(hosts):
        if host in known:
            master = master_host if master_host else hosts[0]
            return master, rank
    raise HostNotInList(list(hosts), sorted(known))


def local_addresses() -> list[str]:
    output: list[str] = []
    for nic_addresses in psutil.net_if_addrs().values():
        for addr in nic_addresses:
            if addr.family != socket.AF_INET:
                continue
            if ipaddress.ip_address(addr.address).is_loopback:
                continue
            output.append(addr.address)
    return output


def public_address(url: str, timeout: float) -> str:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise InvokerError(f"failed to get public IP from {url}: {exc}") from exc
    return response.text.strip()


def node_addresses(public_ip_url: str, timeout: float) -> list[str]:
    return [public_address(public_ip_url, timeout), *local_addresses()]


def ensure_port_available(port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError as exc:
            raise PortInUse(port, str(exc)) from exc
