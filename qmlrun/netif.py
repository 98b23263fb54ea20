"""Local network interface lookups."""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

logger = logging.getLogger(__name__)


def _ipv4_entries(name: str) -> list:
    return [
        addr for addr in psutil.net_if_addrs().get(name, [])
        if addr.family == socket.AF_INET
    ]


def resolve_interface_address(name: str | None) -> str | None:
    """Return the first non-loopback IPv4 address bound to interface *name*.

    Order follows the OS enumeration.  ``None`` if the name is empty,
    unknown, or the interface carries no usable IPv4 address.
    """
    if not name:
        return None
    for addr in _ipv4_entries(name):
        if ipaddress.ip_address(addr.address).is_loopback:
            continue
        return addr.address
    return None


def interface_for_address(address: str) -> str | None:
    """Return the local interface whose IPv4 subnet contains *address*."""
    try:
        target = ipaddress.IPv4Address(address)
    except ValueError:
        return None
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            network = ipaddress.IPv4Network(
                f"{addr.address}/{addr.netmask}", strict=False
            )
            if target in network:
                return name
    return None


def get_local_ip() -> str:
    """Get this machine's LAN IP address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(2)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        logger.warning("Could not determine LAN address, falling back to loopback")
        return "127.0.0.1"
