#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SIP test client: owns the SIP listener and RTP ports, places calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Set, Tuple

from pipecat.utils.base_object import BaseObject

from siptestclient.call import Call
from siptestclient.netutil import local_address_for
from siptestclient.params import ClientParams
from siptestclient.ports import RTPPortPool
from siptestclient.signaling import (
    SIPMessage,
    SIPMethod,
    build_request,
    generate_call_id,
    generate_tag,
)
from siptestclient.transport import SIPTransport

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "INVITE, ACK, BYE, CANCEL, OPTIONS"

RequestHandler = Callable[[SIPMessage, Tuple[str, int]], None]


class SIPTestClient(BaseObject):
    """Places test calls against a SIP server.

    Event handlers available:

    - on_request(client, request, addr): an inbound request the client does
      not answer itself.

    Example::

        client = SIPTestClient(ClientParams(sip_listen_port=5070))
        await client.start()
        call = client.start_call("tester", "1000", "10.0.0.5")

        @call.event_handler("on_answer")
        async def on_answer(call, response):
            call.send_dtmf("1234")

    Args:
        params: Client parameters.
    """

    def __init__(self, params: Optional[ClientParams] = None, **kwargs):
        """Initialize the client; call start() to begin listening."""
        super().__init__(**kwargs)
        self._params = params or ClientParams()
        self._sip = SIPTransport(
            t1=self._params.t1_ms / 1000,
            timeout=self._params.transaction_timeout_ms / 1000,
        )
        lo, hi = self._params.rtp_port_range
        self._pool = RTPPortPool(lo, hi)
        self._calls: Dict[str, Call] = {}
        self._handlers: Dict[str, RequestHandler] = {
            SIPMethod.OPTIONS.value: self._handle_options,
            SIPMethod.BYE.value: self._handle_bye,
        }
        self._background_tasks: Set[asyncio.Task] = set()

        self._register_event_handler("on_request")

    @property
    def params(self) -> ClientParams:
        return self._params

    @property
    def calls(self) -> Dict[str, Call]:
        """Calls placed by this client, by Call-ID."""
        return self._calls

    @property
    def sip(self) -> SIPTransport:
        return self._sip

    @property
    def pool(self) -> RTPPortPool:
        return self._pool

    @property
    def local_port(self) -> int:
        return self._sip.local_port

    async def start(self):
        """Start the SIP listener."""
        await self._sip.start(
            self._params.sip_listen_host,
            self._params.sip_listen_port,
            self._on_sip_request,
        )
        logger.info("SIP test client listening on %d", self._sip.local_port)

    async def stop(self):
        """Stop media for every call and close the SIP listener."""
        for call in self._calls.values():
            call._stop_media()
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()
        await self._sip.stop()

    def add_request_handler(self, method: str, handler: RequestHandler):
        """Answer inbound requests of a method with a custom handler."""
        self._handlers[method.upper()] = handler

    def _on_sip_request(self, request: SIPMessage, addr: Tuple[str, int]):
        logger.info("Got %s request from %s:%d", request.method_name, addr[0], addr[1])
        handler = self._handlers.get(request.method_name)
        if handler:
            handler(request, addr)
            return
        self._create_background_task(self._call_event_handler("on_request", request, addr))

    def _respond(self, request: SIPMessage, status: int, addr: Tuple[str, int]):
        response = self._sip.make_response(request, status)
        if status == 200 and request.method == SIPMethod.OPTIONS:
            response.set("Allow", ALLOWED_METHODS)
        self._sip.send(response, addr=addr)

    def _handle_options(self, request: SIPMessage, addr: Tuple[str, int]):
        self._respond(request, 200, addr)

    def _handle_bye(self, request: SIPMessage, addr: Tuple[str, int]):
        call = self._calls.get(request.call_id)
        if call is None:
            logger.warning("BYE for unknown call %s", request.call_id)
            self._respond(request, 481, addr)
            return
        self._respond(request, 200, addr)
        call._on_remote_bye(request)

    def start_call(
        self,
        from_user: str,
        to_user: str,
        to_addr: str,
        to_port: int = 5060,
        transport: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Call:
        """Create a call and start dialing in the background.

        Register handlers on the returned call right away; the INVITE goes out
        once media has been allocated.

        Raises:
            ValueError: If the transport is not UDP.
        """
        call = Call(
            self._sip,
            self._pool,
            self._params,
            call_id=generate_call_id(generate_tag()[:8]),
            from_user=from_user,
            to_user=to_user,
            to_addr=to_addr,
            to_port=to_port,
            transport=transport or self._params.default_transport,
            username=username,
            password=password,
        )
        self._calls[call.call_id] = call
        self._create_background_task(call.start())
        return call

    async def verify_peer(self, address: str, port: int = 5060) -> SIPMessage:
        """Send OPTIONS to a peer and wait for the answer.

        Returns:
            The final response; status 408 if the peer never answered.
        """
        logger.info("Verifying peer at %s:%d", address, port)
        from_addr = local_address_for(address, self._params.local_interfaces)
        local_port = self._sip.local_port
        request = build_request(
            SIPMethod.OPTIONS,
            f"sip:{address}:{port};transport={self._params.default_transport}",
            from_uri=f"sip:verify@{from_addr}:{local_port}",
            from_tag=generate_tag()[:8],
            to_uri=f"sip:{address}:{port}",
            call_id=generate_call_id(),
            cseq=101,
            contact=f"sip:test@{from_addr}:{local_port}",
            max_forwards=self._params.max_forwards,
            user_agent=self._params.user_agent,
        )
        answered = asyncio.get_running_loop().create_future()

        def _on_response(response: SIPMessage):
            if response.status_code >= 200 and not answered.done():
                answered.set_result(response)

        self._sip.send(
            request,
            _on_response,
            addr=(address, port),
            via_host=from_addr,
            timeout=self._params.options_timeout_ms / 1000,
        )
        response = await answered
        logger.info("Got %d to OPTIONS", response.status_code)
        return response

    def _create_background_task(self, coro) -> asyncio.Task:
        """Create and track a background task."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
