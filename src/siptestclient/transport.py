#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""UDP SIP transport with client transactions.

Sends requests and responses over one UDP socket, retransmits requests until a
response arrives (RFC 3261 timers A/E), completes requests that never get a
final answer with a locally generated 408, and acknowledges non-2xx final
responses to INVITE. Incoming requests are handed to a single handler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from siptestclient.netutil import local_address_for
from siptestclient.signaling import (
    SIPMessage,
    SIPMethod,
    SIPURI,
    generate_branch,
    make_response,
)

logger = logging.getLogger(__name__)

T1 = 0.5
T2 = 4.0
T4 = 5.0
DEFAULT_SIP_PORT = 5060

ResponseCallback = Callable[[SIPMessage], None]
RequestHandler = Callable[[SIPMessage, Tuple[str, int]], None]


class _ClientTransaction:
    """State of one outstanding request."""

    def __init__(
        self,
        request: SIPMessage,
        data: bytes,
        addr: Tuple[str, int],
        callback: ResponseCallback,
        interval: float,
    ):
        self.request = request
        self.data = data
        self.addr = addr
        self.callback = callback
        self.interval = interval
        self.is_invite = request.method == SIPMethod.INVITE
        self.proceeding = False
        self.completed = False
        self.retransmit_handle: Optional[asyncio.TimerHandle] = None
        self.timeout_handle: Optional[asyncio.TimerHandle] = None
        self.linger_handle: Optional[asyncio.TimerHandle] = None

    def cancel_timers(self):
        for handle in (self.retransmit_handle, self.timeout_handle, self.linger_handle):
            if handle:
                handle.cancel()
        self.retransmit_handle = None
        self.timeout_handle = None
        self.linger_handle = None


class SIPTransport:
    """SIP over UDP.

    Args:
        t1: Retransmission base interval in seconds.
        timeout: Seconds without a final response before a request is
            completed with a synthesized 408.
    """

    def __init__(self, *, t1: float = T1, timeout: float = 64 * T1):
        """Initialize the transport; call start() to bind it."""
        self._t1 = t1
        self._timeout = timeout
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._handler: Optional[RequestHandler] = None
        self._transactions: Dict[Tuple[str, str], _ClientTransaction] = {}
        self._local_host = "0.0.0.0"
        self._local_port = 0

    @property
    def local_port(self) -> int:
        """The actual port the transport is bound to."""
        return self._local_port

    @property
    def running(self) -> bool:
        return self._transport is not None

    async def start(self, host: str, port: int, request_handler: RequestHandler):
        """Bind the UDP socket and start dispatching requests.

        Args:
            host: Listen address.
            port: Listen port, 0 for any.
            request_handler: Called with (request, source address).
        """
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _SIPProtocol(self),
            local_addr=(host, port),
        )
        actual_addr = self._transport.get_extra_info("sockname")
        self._local_host = host
        self._local_port = actual_addr[1] if actual_addr else port
        self._handler = request_handler
        logger.info("SIP transport listening on %s:%d", host, self._local_port)

    async def stop(self):
        """Drop outstanding transactions and close the socket."""
        for txn in self._transactions.values():
            txn.cancel_timers()
        self._transactions.clear()
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("SIP transport stopped")

    def make_response(self, request: SIPMessage, status: int, reason: Optional[str] = None):
        """Build a response to an incoming request."""
        return make_response(request, status, reason)

    def send(
        self,
        message: SIPMessage,
        callback: Optional[ResponseCallback] = None,
        *,
        addr: Optional[Tuple[str, int]] = None,
        via_host: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Send a request or response.

        Requests get a new top Via. When a callback is given the request is
        retransmitted until answered and the callback receives every
        provisional and the final response (a synthesized 408 on timeout).

        Args:
            message: Request or response.
            callback: Response callback for requests.
            addr: Destination; requests default to the Request-URI host/port.
            via_host: Address placed in the Via header.
            timeout: Override of the transaction timeout in seconds.
        """
        if self._transport is None:
            raise RuntimeError("SIP transport not started")

        if not message.is_request:
            if addr is None:
                raise ValueError("Responses need a destination address")
            self._sendto(message.to_bytes(), addr)
            return

        if addr is None:
            addr = self._uri_destination(message.request_uri)
        if via_host is None:
            via_host = self._local_host
            if via_host in ("", "0.0.0.0"):
                via_host = local_address_for(addr[0])
        branch = generate_branch()
        message.prepend("Via", f"SIP/2.0/UDP {via_host}:{self._local_port};rport;branch={branch}")
        data = message.to_bytes()
        self._sendto(data, addr)
        logger.debug("SIP %s sent to %s:%d", message.method_name, addr[0], addr[1])

        if callback is None:
            return

        key = (branch, message.method_name)
        txn = _ClientTransaction(message, data, addr, callback, self._t1)
        self._transactions[key] = txn
        loop = asyncio.get_running_loop()
        txn.retransmit_handle = loop.call_later(txn.interval, self._retransmit, key)
        txn.timeout_handle = loop.call_later(
            self._timeout if timeout is None else timeout, self._expire, key
        )

    @staticmethod
    def _uri_destination(uri: str) -> Tuple[str, int]:
        parsed = SIPURI.parse(uri)
        return parsed.host, parsed.port or DEFAULT_SIP_PORT

    def _sendto(self, data: bytes, addr: Tuple[str, int]):
        if not self._transport:
            return
        try:
            self._transport.sendto(data, addr)
        except OSError as e:
            logger.error("SIP send to %s failed: %s", addr, e)

    def _retransmit(self, key: Tuple[str, str]):
        txn = self._transactions.get(key)
        if txn is None or txn.completed or (txn.is_invite and txn.proceeding):
            return
        logger.debug("Retransmitting SIP %s to %s:%d", key[1], txn.addr[0], txn.addr[1])
        self._sendto(txn.data, txn.addr)
        txn.interval = txn.interval * 2 if txn.is_invite else min(txn.interval * 2, T2)
        txn.retransmit_handle = asyncio.get_running_loop().call_later(
            txn.interval, self._retransmit, key
        )

    def _expire(self, key: Tuple[str, str]):
        txn = self._transactions.pop(key, None)
        if txn is None:
            return
        txn.cancel_timers()
        logger.warning("SIP %s to %s:%d timed out", key[1], txn.addr[0], txn.addr[1])
        self._deliver(txn, make_response(txn.request, 408, "Request Timeout"))

    def _build_ack(self, txn: _ClientTransaction, response: SIPMessage) -> SIPMessage:
        """ACK for a non-2xx final response; reuses the INVITE's branch."""
        request = txn.request
        ack = SIPMessage(
            method=SIPMethod.ACK,
            request_uri=request.request_uri,
            method_name=SIPMethod.ACK.value,
        )
        ack.set("Via", request.via)
        ack.set("Max-Forwards", request.get("Max-Forwards", "70"))
        ack.set("From", request.from_header)
        ack.set("To", response.to_header)
        ack.set("Call-ID", request.call_id)
        ack.set("CSeq", f"{request.cseq_number} ACK")
        return ack

    def _deliver(self, txn: _ClientTransaction, response: SIPMessage):
        try:
            txn.callback(response)
        except Exception:
            logger.exception("SIP response callback failed for %s", txn.request.call_id)

    def _handle_response(self, msg: SIPMessage):
        key = (msg.branch or "", msg.cseq_method)
        txn = self._transactions.get(key)
        if txn is None:
            logger.debug("Stray SIP response %d for call %s", msg.status_code, msg.call_id)
            return

        if msg.status_code < 200:
            if txn.completed:
                return
            if txn.is_invite:
                txn.proceeding = True
                if txn.timeout_handle:
                    txn.timeout_handle.cancel()
                    txn.timeout_handle = None
            self._deliver(txn, msg)
            return

        if txn.completed:
            # Retransmitted final response.
            if txn.is_invite and msg.status_code >= 300:
                self._sendto(self._build_ack(txn, msg).to_bytes(), txn.addr)
            elif txn.is_invite:
                self._deliver(txn, msg)
            return

        txn.completed = True
        txn.cancel_timers()
        if txn.is_invite and msg.status_code >= 300:
            self._sendto(self._build_ack(txn, msg).to_bytes(), txn.addr)
        linger = self._timeout if txn.is_invite else T4
        txn.linger_handle = asyncio.get_running_loop().call_later(
            linger, self._transactions.pop, key, None
        )
        self._deliver(txn, msg)

    def _handle_datagram(self, data: bytes, addr: Tuple[str, int]):
        """Dispatch incoming SIP messages."""
        try:
            msg = SIPMessage.parse(data)
        except ValueError:
            logger.warning("SIP parse error from %s", addr)
            return

        if not msg.is_request:
            self._handle_response(msg)
            return
        if self._handler is None:
            return
        try:
            self._handler(msg, addr)
        except Exception:
            logger.exception("SIP request handler failed for %s", msg.method_name)


class _SIPProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol for SIP signaling."""

    def __init__(self, transport: SIPTransport):
        self._transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self._transport._handle_datagram(data, addr)

    def error_received(self, exc: Exception):
        logger.error("SIP protocol error: %s", exc)
