#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Choosing the local address to advertise towards a peer."""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def select_local_address(dest: str, interfaces: Iterable[str]) -> Optional[str]:
    """Pick the interface address on the same subnet as dest.

    Args:
        dest: Destination IPv4 address.
        interfaces: Host interfaces in CIDR form, e.g. "192.168.1.10/24".

    Returns:
        The matching interface address, else the first non-loopback IPv4
        address, else None.
    """
    target = ipaddress.ip_address(dest)
    fallback = None
    for cidr in interfaces:
        iface = ipaddress.ip_interface(cidr)
        if iface.version != 4:
            continue
        if target in iface.network:
            return str(iface.ip)
        if fallback is None and not iface.ip.is_loopback:
            fallback = str(iface.ip)
    return fallback


def routed_address(dest: str, port: int = 5060) -> Optional[str]:
    """Ask the kernel which source address it would use to reach dest."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # connect() on UDP sends nothing; it only selects a route.
            s.connect((dest, port))
            return s.getsockname()[0]
    except OSError as e:
        logger.warning("Could not determine route to %s: %s", dest, e)
        return None


def local_address_for(dest: str, interfaces: Iterable[str] = ()) -> str:
    """Return the local IPv4 address to use when talking to dest.

    Configured interfaces are matched by subnet first; otherwise the routing
    table decides, falling back to the loopback address.
    """
    try:
        dest = str(ipaddress.ip_address(dest))
    except ValueError:
        dest = socket.gethostbyname(dest)
    interfaces = list(interfaces)
    if interfaces:
        selected = select_local_address(dest, interfaces)
        if selected:
            return selected
    return routed_address(dest) or "127.0.0.1"
