#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""RTP port pool.

Hands out UDP sockets bound to even ports from a configured range. A port that
was bound successfully is never put back, even after its session closes the
socket, so a long-running process will eventually drain the pool. Ports that
fail to bind (usually because something else on the host holds them) go to the
back of the pool and may be tried again by a later lease.
"""

from __future__ import annotations

import logging
import socket
from collections import deque
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)


class PortExhausted(RuntimeError):
    """Raised when no port in the pool could be bound."""


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


class RTPPortPool:
    """Allocates bound RTP sockets from an even-numbered port range.

    Args:
        start_port: First port of the range; rounded up to the next even port.
        end_port: Last port of the range (inclusive).
        bind_host: Address the sockets are bound to.
        socket_factory: Creates unbound UDP sockets; replaceable for tests.
    """

    def __init__(
        self,
        start_port: int,
        end_port: int,
        *,
        bind_host: str = "0.0.0.0",
        socket_factory: Optional[Callable[[], socket.socket]] = None,
    ):
        """Initialize the pool with every even port in the range."""
        first = (start_port + 1) // 2 * 2
        self._pool: Deque[int] = deque(range(first, end_port + 1, 2))
        self._max_ports = len(self._pool)
        self._bind_host = bind_host
        self._socket_factory = socket_factory or _udp_socket

    @property
    def available(self) -> int:
        """Number of ports currently in the pool."""
        return len(self._pool)

    def __contains__(self, port: int) -> bool:
        return port in self._pool

    def acquire(self) -> socket.socket:
        """Bind a socket to the next usable port.

        Returns:
            A non-blocking UDP socket bound to a port from the pool.

        Raises:
            PortExhausted: If every attempt failed or the pool is empty.
        """
        attempt = 0
        while self._pool and attempt < self._max_ports:
            port = self._pool.popleft()
            attempt += 1
            sock = self._socket_factory()
            logger.info("Attempting to start RTP on %d", port)
            try:
                sock.bind((self._bind_host, port))
            except OSError as e:
                sock.close()
                self._pool.append(port)
                logger.info("RTP bind on %d failed: %s", port, e)
                continue
            sock.setblocking(False)
            return sock

        logger.error("Failed to bind RTP port after %d attempts", attempt)
        raise PortExhausted("No RTP ports available")
