#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Outbound call: INVITE dialog state machine tied to one RTP session."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Set, Union

import numpy as np
from pipecat.utils.base_object import BaseObject

from siptestclient.auth import (
    AuthChallengeUnsupported,
    DigestChallenge,
    DigestCredentials,
    build_authorization,
)
from siptestclient.codecs import SAMPLE_RATE, pcm_to_pcmu
from siptestclient.netutil import local_address_for
from siptestclient.params import ClientParams
from siptestclient.ports import RTPPortPool
from siptestclient.rtp import (
    DTMF_DIGITS,
    SAMPLES_PER_FRAME,
    RTPSession,
    TelephoneEvent,
    create_rtp_session,
    digit_to_event,
)
from siptestclient.sdp import generate_sdp, parse_sdp
from siptestclient.signaling import (
    SIPMessage,
    SIPMethod,
    build_request,
    extract_uri,
    generate_tag,
)

if TYPE_CHECKING:
    from siptestclient.transport import SIPTransport

logger = logging.getLogger(__name__)

FIRST_CSEQ = 101
NORMAL_CLEARING = 16


class CallState(Enum):
    """Lifecycle of an outbound call."""

    CREATED = "created"
    INVITING = "inviting"
    PROVISIONAL = "provisional"
    AUTHENTICATING = "authenticating"
    ANSWERED = "answered"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class CallError(Exception):
    """Base class for call failures."""


class DialogFailure(CallError):
    """The peer ended the INVITE transaction with a failure response."""

    def __init__(self, response: SIPMessage):
        super().__init__(f"INVITE failed: {response.status_code} {response.reason}")
        self.response = response

    @property
    def status(self) -> int:
        return self.response.status_code


class AuthRetryExceeded(DialogFailure):
    """The peer challenged the authenticated INVITE again."""


class Call(BaseObject):
    """One outbound call placed by the test client.

    Event handlers available:

    - on_ring(call, response): 180 Ringing received.
    - on_answer(call, response): 2xx received; media is flowing.
    - on_fail(call, error): the call could not be set up. ``error`` is a
      DialogFailure (or subclass), AuthChallengeUnsupported, or the exception
      raised while allocating media or sending.
    - on_audio(call, payload_type, payload): inbound media packet.
    - on_dtmf_start(call, digit): the peer started sending a digit.
    - on_dtmf_end(call, digit, duration): the peer finished a digit;
      ``duration`` is in samples.
    - on_hangup(call, message): the BYE response, or the peer's BYE request.

    Example::

        @call.event_handler("on_answer")
        async def on_answer(call, response):
            call.play_audio(prompt)

    Args:
        sip: SIP transport used for signaling.
        pool: RTP port pool.
        params: Client parameters.
        call_id: Dialog Call-ID.
        from_user: User part of our URI.
        to_user: User part of the callee's URI.
        to_addr: Callee host.
        to_port: Callee SIP port.
        transport: SIP transport name; only "UDP" is supported.
        username: Digest username, if the peer may challenge.
        password: Digest password.
    """

    def __init__(
        self,
        sip: SIPTransport,
        pool: RTPPortPool,
        params: ClientParams,
        *,
        call_id: str,
        from_user: str,
        to_user: str,
        to_addr: str,
        to_port: int = 5060,
        transport: str = "UDP",
        username: Optional[str] = None,
        password: Optional[str] = None,
        **kwargs,
    ):
        """Initialize the call. Nothing is sent until start()."""
        super().__init__(**kwargs)
        transport = transport.upper()
        if transport != "UDP":
            raise ValueError(f"Unsupported SIP transport {transport}")

        self.call_id = call_id
        self.from_user = from_user
        self.to_user = to_user
        self.to_addr = to_addr
        self.to_port = to_port
        self.transport = transport
        self.remote_uri = f"sip:{to_user}@{to_addr}:{to_port}"
        self.local_addr: Optional[str] = None
        self.from_tag = generate_tag()
        self.to_tag: Optional[str] = None
        self.state = CallState.CREATED
        self.rtp: Optional[RTPSession] = None

        self._sip = sip
        self._pool = pool
        self._params = params
        self._credentials = (
            DigestCredentials(username, password or "") if username is not None else None
        )
        self._cseq = FIRST_CSEQ
        self._auth_attempted = False
        self._invite: Optional[SIPMessage] = None
        self._sdp_applied = False
        self._bye_sent = False
        self._hangup_cause: Optional[int] = None
        self._current_digit: Optional[str] = None
        self._audio_waiters: List[asyncio.Future] = []
        self._background_tasks: Set[asyncio.Task] = set()

        self._register_event_handler("on_ring")
        self._register_event_handler("on_answer")
        self._register_event_handler("on_fail")
        self._register_event_handler("on_audio")
        self._register_event_handler("on_dtmf_start")
        self._register_event_handler("on_dtmf_end")
        self._register_event_handler("on_hangup")

    @property
    def request_uri(self) -> str:
        return f"{self.remote_uri};transport={self.transport}"

    @property
    def local_uri(self) -> str:
        return f"sip:{self.from_user}@{self.local_addr}:{self._sip.local_port}"

    @property
    def finished(self) -> bool:
        return self.state in (CallState.FAILED, CallState.TORN_DOWN)

    async def start(self):
        """Allocate media and send the INVITE.

        Failures are reported through on_fail rather than raised.
        """
        if self.state == CallState.TORN_DOWN:
            logger.debug("Call %s hung up before start", self.call_id)
            return
        if self.state != CallState.CREATED:
            raise CallError(f"Call {self.call_id} already started")
        self.state = CallState.INVITING
        try:
            self.local_addr = local_address_for(self.to_addr, self._params.local_interfaces)
            self.rtp = await create_rtp_session(
                self._pool, self.local_addr, audio_fill=self._params.audio_fill
            )
        except Exception as e:
            logger.error("Call %s could not allocate media: %s", self.call_id, e)
            self._fail(e)
            return

        if self._hangup_cause is not None:
            logger.info("Call %s hung up before INVITE was sent", self.call_id)
            self.rtp.stop()
            self.state = CallState.TORN_DOWN
            return

        self.rtp.add_event_handler("on_audio", self._on_rtp_audio)
        self.rtp.add_event_handler("on_dtmf", self._on_rtp_dtmf)
        self.rtp.add_event_handler("on_audio_stopped", self._on_rtp_audio_stopped)

        try:
            self._send_invite()
        except Exception as e:
            logger.error("Call %s could not send INVITE: %s", self.call_id, e)
            self._fail(e)

    def _next_cseq(self) -> int:
        cseq = self._cseq
        self._cseq += 1
        return cseq

    def _send(self, request: SIPMessage, callback=None):
        self._sip.send(
            request,
            callback,
            addr=(self.to_addr, self.to_port),
            via_host=self.local_addr,
        )

    def _send_invite(self, authorization: Optional[str] = None, header: str = "Authorization"):
        extra = [(header, authorization)] if authorization else []
        invite = build_request(
            SIPMethod.INVITE,
            self.request_uri,
            from_uri=self.local_uri,
            from_tag=self.from_tag,
            to_uri=self.remote_uri,
            call_id=self.call_id,
            cseq=self._next_cseq(),
            contact=self.local_uri,
            max_forwards=self._params.max_forwards,
            user_agent=self._params.user_agent,
            body=generate_sdp(self.rtp.local_sdp),
            extra_headers=extra,
        )
        self._invite = invite
        logger.info("Call %s sending INVITE to %s", self.call_id, self.remote_uri)
        self._send(invite, lambda response: self._on_invite_response(invite, response))

    def _on_invite_response(self, invite: SIPMessage, response: SIPMessage):
        """Drive the dialog from a response to one of our INVITEs."""
        if invite is not self._invite:
            logger.debug("Call %s ignoring response to superseded INVITE", self.call_id)
            return
        if self.finished:
            logger.debug(
                "Call %s ignoring late %d to INVITE", self.call_id, response.status_code
            )
            return

        status = response.status_code
        logger.info("Call %s got %d to INVITE", self.call_id, status)

        if 100 < status < 300 and response.to_tag:
            if status >= 200 or self.to_tag is None:
                self.to_tag = response.to_tag

        if self._hangup_cause is not None:
            self._finish_early_hangup(response)
            return

        if status < 200:
            if self.state in (CallState.INVITING, CallState.AUTHENTICATING):
                self.state = CallState.PROVISIONAL
            self._apply_answer(response)
            if status == 180:
                self._emit("on_ring", response)
            return

        if status < 300:
            self._send_ack(response)
            if self.state == CallState.ANSWERED:
                return
            if not self._sdp_applied:
                self._apply_answer(response)
            self.state = CallState.ANSWERED
            logger.info("Call %s answered", self.call_id)
            self._emit("on_answer", response)
            return

        if status in (401, 407):
            self._authenticate(response)
            return

        self._fail(DialogFailure(response))

    def _finish_early_hangup(self, response: SIPMessage):
        """Complete a hangup requested before the INVITE got a final answer.

        A 2xx is ACKed and immediately released with a BYE; any other final
        response ends the call. on_answer never fires.
        """
        status = response.status_code
        if status < 200:
            return
        if status >= 300:
            logger.info("Call %s ended by %d after hangup", self.call_id, status)
            self.state = CallState.TORN_DOWN
            self._emit("on_hangup", response)
            return
        self._send_ack(response)
        if not self._bye_sent:
            logger.info("Call %s answered after hangup, releasing it", self.call_id)
            self._send_bye(self._hangup_cause)

    def _authenticate(self, response: SIPMessage):
        if self._auth_attempted:
            self._fail(AuthRetryExceeded(response))
            return
        if self._credentials is None:
            logger.warning("Call %s challenged but no credentials configured", self.call_id)
            self._fail(DialogFailure(response))
            return

        if response.status_code == 401:
            challenge_header, reply_header = "WWW-Authenticate", "Authorization"
        else:
            challenge_header, reply_header = "Proxy-Authenticate", "Proxy-Authorization"
        try:
            challenge = DigestChallenge.parse(response.get(challenge_header))
            authorization = build_authorization(
                challenge,
                self._credentials,
                method=SIPMethod.INVITE.value,
                uri=self.request_uri,
            )
        except AuthChallengeUnsupported as e:
            logger.error("Call %s cannot answer challenge: %s", self.call_id, e)
            self._fail(e)
            return

        self._auth_attempted = True
        self.state = CallState.AUTHENTICATING
        self.to_tag = None
        logger.info("Call %s resending INVITE with credentials", self.call_id)
        try:
            self._send_invite(authorization, reply_header)
        except Exception as e:
            logger.error("Call %s could not send INVITE: %s", self.call_id, e)
            self._fail(e)

    def _apply_answer(self, response: SIPMessage):
        if not response.has_sdp or self.rtp is None:
            return
        remote = parse_sdp(response.body)
        self.rtp.start(remote)
        self._sdp_applied = self.rtp.remote_addr is not None

    def _send_ack(self, response: SIPMessage):
        contact = response.get("Contact")
        ack = build_request(
            SIPMethod.ACK,
            extract_uri(contact) if contact else self.request_uri,
            from_uri=self.local_uri,
            from_tag=self.from_tag,
            to_uri=self.remote_uri,
            to_tag=response.to_tag,
            call_id=self.call_id,
            cseq=self._invite.cseq_number,
            max_forwards=self._params.max_forwards,
            user_agent=self._params.user_agent,
        )
        self._send(ack)

    def _fail(self, error: Exception):
        if self.finished:
            return
        self.state = CallState.FAILED
        logger.info("Call %s failed: %s", self.call_id, error)
        self._stop_media()
        self._emit("on_fail", error)

    def _stop_media(self):
        if self.rtp:
            self.rtp.stop()
        for waiter in self._audio_waiters:
            waiter.cancel()
        self._audio_waiters.clear()

    def hangup(self, cause_code: int = NORMAL_CLEARING):
        """End the call.

        Media stops immediately. An answered call is released with a BYE and
        on_hangup fires with its response. While the INVITE is still pending
        the hangup is remembered: a later 2xx is ACKed and released with a
        BYE carrying this cause, and on_answer does not fire.

        Args:
            cause_code: Q.850 cause placed in the Reason header.
        """
        self._stop_media()
        if self.finished or self._bye_sent or self._hangup_cause is not None:
            return
        if self.state == CallState.CREATED:
            self.state = CallState.TORN_DOWN
            return
        if self.state != CallState.ANSWERED:
            logger.info("Call %s not answered yet, BYE deferred", self.call_id)
            self._hangup_cause = cause_code
            return
        self._send_bye(cause_code)

    def _send_bye(self, cause_code: int):
        self._bye_sent = True
        bye = build_request(
            SIPMethod.BYE,
            self.request_uri,
            from_uri=self.local_uri,
            from_tag=self.from_tag,
            to_uri=self.remote_uri,
            to_tag=self.to_tag,
            call_id=self.call_id,
            cseq=self._next_cseq(),
            contact=self.local_uri,
            max_forwards=self._params.max_forwards,
            user_agent=self._params.user_agent,
            extra_headers=[("Reason", f"Q.850;cause={cause_code}")],
        )
        logger.info("Hanging up %s (cause %d)", self.call_id, cause_code)
        self._send(bye, self._on_bye_response)

    def _on_bye_response(self, response: SIPMessage):
        if response.status_code < 200 or self.state == CallState.TORN_DOWN:
            return
        logger.info("Call %s got %d for BYE", self.call_id, response.status_code)
        self.state = CallState.TORN_DOWN
        self._emit("on_hangup", response)

    def _on_remote_bye(self, request: SIPMessage):
        """The peer hung up."""
        self._stop_media()
        if self.state == CallState.TORN_DOWN:
            return
        logger.info("Call %s hung up by peer", self.call_id)
        self.state = CallState.TORN_DOWN
        self._emit("on_hangup", request)

    def _require_media(self) -> RTPSession:
        if self.rtp is None:
            raise CallError(f"Call {self.call_id} has no media session")
        return self.rtp

    def play_audio(
        self, buffer: bytes, on_done: Optional[Callable[[], None]] = None
    ) -> asyncio.Future:
        """Queue PCMU audio in 20 ms chunks.

        Args:
            buffer: PCMU bytes at 8 kHz.
            on_done: Called once the queued audio has finished playing.

        Returns:
            A future resolved when the audio has finished playing (cancelled
            if media stops first).
        """
        rtp = self._require_media()
        done = asyncio.get_running_loop().create_future()
        if on_done is not None:

            def _notify(future: asyncio.Future):
                if not future.cancelled():
                    on_done()

            done.add_done_callback(_notify)

        buffer = bytes(buffer)
        if not buffer:
            done.set_result(None)
            return done

        for start in range(0, len(buffer), SAMPLES_PER_FRAME):
            rtp.push_audio(buffer[start : start + SAMPLES_PER_FRAME], 20)
        logger.debug("Call %s queued %d bytes of audio", self.call_id, len(buffer))
        self._audio_waiters.append(done)
        return done

    def play_pcm(
        self,
        pcm: Union[bytes, np.ndarray],
        sample_rate: int = SAMPLE_RATE,
        on_done: Optional[Callable[[], None]] = None,
    ) -> asyncio.Future:
        """Encode PCM16 audio to PCMU and play it."""
        return self.play_audio(pcm_to_pcmu(pcm, sample_rate), on_done)

    def push_digit(self, digit: str, duration_ms: Optional[int] = None):
        """Queue one DTMF digit."""
        self._require_media().push_digit(digit, duration_ms or self._params.dtmf_duration_ms)

    def send_dtmf(self, digits: str, duration_ms: Optional[int] = None, gap_ms: int = 50):
        """Queue a digit string with silence between digits.

        Raises:
            ValueError: If any digit is invalid; nothing is queued then.
        """
        rtp = self._require_media()
        for digit in digits:
            digit_to_event(digit)
        for i, digit in enumerate(digits):
            if i and gap_ms > 0:
                rtp.push_audio(None, gap_ms)
            rtp.push_digit(digit, duration_ms or self._params.dtmf_duration_ms)

    def set_audio_fill(self, fill: int):
        """Change the byte sent while nothing is queued."""
        self._require_media().set_audio_fill(fill)

    async def _on_rtp_audio(self, session: RTPSession, payload_type: int, payload: bytes):
        await self._call_event_handler("on_audio", payload_type, payload)

    async def _on_rtp_dtmf(self, session: RTPSession, event: TelephoneEvent):
        if event.event >= len(DTMF_DIGITS):
            return
        digit = event.digit
        if event.end:
            # Only the first of the redundant end packets counts.
            if digit == self._current_digit:
                self._current_digit = None
                await self._call_event_handler("on_dtmf_end", digit, event.duration)
            return
        if digit != self._current_digit:
            self._current_digit = digit
            await self._call_event_handler("on_dtmf_start", digit)

    async def _on_rtp_audio_stopped(self, session: RTPSession, audio, duration: int):
        waiters, self._audio_waiters = self._audio_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _emit(self, event_name: str, *args):
        self._create_background_task(self._call_event_handler(event_name, *args))

    def _create_background_task(self, coro) -> asyncio.Task:
        """Create and track a background task."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
