#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""RTP session: packet codecs, play queue and the 20 ms packetization clock.

Each call owns one RTPSession. Outbound media is a FIFO of play segments
(PCMU audio or RFC 4733 DTMF digits); the clock sends exactly one packet per
20 ms tick for whatever segment is current, falling back to a fill byte when
the queue runs dry. Inbound packets are decoded and handed to event handlers
as they arrive, without reordering or buffering.
"""

from __future__ import annotations

import asyncio
import logging
import random
import struct
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set, Tuple, Union

from pipecat.utils.base_object import BaseObject

from siptestclient.ports import RTPPortPool
from siptestclient.sdp import SessionDescription, build_offer

logger = logging.getLogger(__name__)

RTP_VERSION = 2
RTP_HEADER_SIZE = 12
FRAME_DURATION = 0.020  # 20ms
SAMPLES_PER_FRAME = 160  # @ 8kHz
SAMPLES_PER_MS = 8
SEQ_MOD = 0x10000
TS_MOD = 0x100000000

PCMU_PAYLOAD_TYPE = 0
PCMU_SILENCE = 0x7F

# RFC 4733 telephone events
DTMF_PAYLOAD_TYPE = 101
DTMF_DIGITS = "0123456789*#ABCD"
DTMF_VOLUME = 7
DTMF_END_PACKETS = 3
DTMF_DEFAULT_MS = 100


@dataclass
class RTPHeader:
    """Fixed RTP header plus CSRC list (RFC 3550 section 5.1)."""

    payload_type: int = PCMU_PAYLOAD_TYPE
    sequence: int = 0
    timestamp: int = 0
    ssrc: int = 0
    marker: bool = False
    padding: bool = False
    extension: bool = False
    csrcs: List[int] = field(default_factory=list)
    version: int = RTP_VERSION

    @property
    def csrc_count(self) -> int:
        return len(self.csrcs)

    @property
    def size(self) -> int:
        return RTP_HEADER_SIZE + 4 * len(self.csrcs)


def pack_rtp_packet(header: RTPHeader, payload: bytes = b"") -> bytes:
    """Serialize an RTP header and payload.

    Args:
        header: Header fields. Sequence and timestamp are reduced modulo
            their field widths.
        payload: Payload bytes appended after the CSRC list.

    Returns:
        The packet in network byte order.
    """
    count = len(header.csrcs)
    if count > 15:
        raise ValueError("RTP header carries at most 15 CSRCs")
    byte0 = (
        (header.version & 0x03) << 6
        | int(header.padding) << 5
        | int(header.extension) << 4
        | count
    )
    byte1 = int(header.marker) << 7 | (header.payload_type & 0x7F)
    fixed = struct.pack(
        f"!BBHII{count}I",
        byte0,
        byte1,
        header.sequence % SEQ_MOD,
        header.timestamp % TS_MOD,
        header.ssrc & 0xFFFFFFFF,
        *header.csrcs,
    )
    return fixed + bytes(payload)


def unpack_rtp_packet(data: bytes) -> Tuple[RTPHeader, bytes]:
    """Parse an RTP packet.

    Args:
        data: Raw datagram.

    Returns:
        Tuple of (header, payload).

    Raises:
        ValueError: If the datagram is not a complete version 2 RTP packet.
    """
    if len(data) < RTP_HEADER_SIZE:
        raise ValueError(f"RTP packet too short ({len(data)} bytes)")
    byte0, byte1, seq, timestamp, ssrc = struct.unpack_from("!BBHII", data)
    version = byte0 >> 6
    if version != RTP_VERSION:
        raise ValueError(f"Unsupported RTP version {version}")
    count = byte0 & 0x0F
    end = RTP_HEADER_SIZE + 4 * count
    if len(data) < end:
        raise ValueError("RTP packet truncated inside CSRC list")
    csrcs = list(struct.unpack_from(f"!{count}I", data, RTP_HEADER_SIZE))
    header = RTPHeader(
        payload_type=byte1 & 0x7F,
        sequence=seq,
        timestamp=timestamp,
        ssrc=ssrc,
        marker=bool(byte1 & 0x80),
        padding=bool(byte0 & 0x20),
        extension=bool(byte0 & 0x10),
        csrcs=csrcs,
        version=version,
    )
    return header, bytes(data[end:])


@dataclass
class TelephoneEvent:
    """RFC 4733 telephone-event payload.

    Parameters:
        event: Event code; 0-15 are the DTMF digits.
        end: Set on the final packets of an event.
        volume: Power level in -dBm0 (6 bits).
        duration: Samples since the event started (16 bits).
    """

    event: int
    end: bool = False
    volume: int = DTMF_VOLUME
    duration: int = 0

    @property
    def digit(self) -> str:
        """The DTMF character, or the numeric code for non-digit events."""
        if 0 <= self.event < len(DTMF_DIGITS):
            return DTMF_DIGITS[self.event]
        return str(self.event)


def pack_telephone_event(event: TelephoneEvent) -> bytes:
    """Serialize a telephone event to its 4-byte payload."""
    flags = int(event.end) << 7 | (event.volume & 0x3F)
    return struct.pack("!BBH", event.event & 0xFF, flags, event.duration & 0xFFFF)


def unpack_telephone_event(payload: bytes) -> TelephoneEvent:
    """Parse a 4-byte telephone-event payload.

    Raises:
        ValueError: If the payload is shorter than 4 bytes.
    """
    if len(payload) < 4:
        raise ValueError(f"Telephone event payload too short ({len(payload)} bytes)")
    event, flags, duration = struct.unpack_from("!BBH", payload)
    return TelephoneEvent(
        event=event,
        end=bool(flags & 0x80),
        volume=flags & 0x3F,
        duration=duration,
    )


def digit_to_event(digit: str) -> int:
    """Map a DTMF character to its RFC 4733 event code."""
    if not isinstance(digit, str) or len(digit) != 1:
        raise ValueError(f"Invalid DTMF digit {digit!r}")
    code = DTMF_DIGITS.find(digit.upper())
    if code < 0:
        raise ValueError(f"Invalid DTMF digit {digit!r}")
    return code


@dataclass(eq=False)
class PlaySegment:
    """One unit of outbound media.

    Parameters:
        audio: A fill byte repeated for every packet, or PCMU bytes.
        digit: DTMF digit; when set the segment is sent as telephone events.
        length: Duration in samples; None means "until something else is
            queued" and is only used for the idle fill.
        start_timestamp: RTP timestamp at which the segment became current.
    """

    audio: Optional[Union[int, bytes]] = None
    digit: Optional[str] = None
    length: Optional[int] = None
    start_timestamp: int = 0

    @property
    def is_dtmf(self) -> bool:
        return self.digit is not None

    @property
    def is_timed_audio(self) -> bool:
        return self.digit is None and self.length is not None


class RTPSession(BaseObject):
    """Per-call RTP endpoint with a drift-corrected 20 ms send clock.

    Event handlers available:

    - on_audio(session, payload_type, payload): inbound non-DTMF packet.
    - on_dtmf(session, event): inbound telephone event.
    - on_audio_started / on_audio_stopped(session, audio, duration_samples):
      a run of queued audio began or drained.
    - on_dtmf_started / on_dtmf_stopped(session, digit, duration_samples):
      a queued digit began or ended.

    Args:
        local_addr: Address advertised in the local SDP.
        local_port: Port the socket is bound to.
        sock: Bound UDP socket handed over by the port pool.
        audio_fill: Idle fill byte.
    """

    def __init__(
        self,
        local_addr: str,
        local_port: int,
        *,
        sock=None,
        audio_fill: int = PCMU_SILENCE,
        **kwargs,
    ):
        """Initialize the RTP session.

        Args:
            local_addr: Address advertised in the local SDP.
            local_port: Port the socket is bound to.
            sock: Bound UDP socket handed over by the port pool.
            audio_fill: Idle fill byte.
            **kwargs: Additional arguments passed to parent.
        """
        super().__init__(**kwargs)
        self.local_addr = local_addr
        self.local_port = local_port
        self.local_sdp = build_offer(
            local_ip=local_addr, local_port=local_port, session_id=int(time.time())
        )
        self.remote_sdp: Optional[SessionDescription] = None

        self._sock = sock
        self._ssrc = random.randint(0, 0xFFFFFFFF)
        self._seq = random.randint(0, 0xFFFF)
        self._timestamp = random.randint(0, 0xFFFFFFFF)
        self._needs_marker = True
        self._fill = _check_byte(audio_fill)
        self._queue: Deque[PlaySegment] = deque()
        self._current = PlaySegment(audio=self._fill, start_timestamp=self._timestamp)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._remote_addr: Optional[Tuple[str, int]] = None
        self._clock_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        self._sent = 0
        self._received = 0

        self._register_event_handler("on_audio")
        self._register_event_handler("on_dtmf")
        self._register_event_handler("on_audio_started")
        self._register_event_handler("on_audio_stopped")
        self._register_event_handler("on_dtmf_started")
        self._register_event_handler("on_dtmf_stopped")

    @property
    def ssrc(self) -> int:
        return self._ssrc

    @property
    def sequence(self) -> int:
        """Sequence number of the next outbound packet."""
        return self._seq

    @property
    def timestamp(self) -> int:
        """RTP timestamp of the next outbound audio packet."""
        return self._timestamp

    @property
    def remote_addr(self) -> Optional[Tuple[str, int]]:
        return self._remote_addr

    @property
    def current(self) -> PlaySegment:
        return self._current

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def running(self) -> bool:
        return self._clock_task is not None and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def open(self):
        """Attach the bound socket to the event loop for receiving."""
        if self._sock is None:
            raise RuntimeError("RTP session has no socket")
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _RTPProtocol(self), sock=self._sock
        )
        logger.info("RTP session open on %s:%d", self.local_addr, self.local_port)

    def start(self, remote: SessionDescription):
        """Point the session at the negotiated remote endpoint.

        Starts the send clock on first use. Calling again (for example after an
        authenticated re-INVITE) only updates the remote endpoint.

        Args:
            remote: The peer's session description.
        """
        if self._stopped:
            logger.warning("Ignoring start on stopped RTP session %d", self.local_port)
            return
        addr = remote.remote_rtp_addr()
        if addr is None:
            logger.warning("Remote SDP has no audio endpoint; media not started")
            return
        if addr != self._remote_addr:
            logger.info("RTP session %d -> %s:%d", self.local_port, addr[0], addr[1])
        self._remote_addr = addr
        self.remote_sdp = remote
        if self._clock_task is None:
            self._clock_task = asyncio.get_running_loop().create_task(self._run_clock())

    def stop(self):
        """Stop the clock and release the socket. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        if self._clock_task:
            self._clock_task.cancel()
            self._clock_task = None
        if self._transport:
            self._transport.close()
            self._transport = None
        elif self._sock is not None:
            self._sock.close()
        self._sock = None
        logger.info(
            "RTP session %d stopped (sent=%d received=%d)",
            self.local_port,
            self._sent,
            self._received,
        )

    def push_audio(self, audio: Optional[Union[bytes, int]] = None, duration_ms: int = 20):
        """Queue PCMU audio.

        Args:
            audio: PCMU bytes, a fill byte, or None for silence.
            duration_ms: How long the segment plays.
        """
        if audio is None:
            audio = PCMU_SILENCE
        elif isinstance(audio, int):
            audio = _check_byte(audio)
        else:
            audio = bytes(audio)
        if duration_ms <= 0:
            raise ValueError("duration_ms must be positive")
        self._queue.append(PlaySegment(audio=audio, length=duration_ms * SAMPLES_PER_MS))

    def push_digit(self, digit: str, duration_ms: int = DTMF_DEFAULT_MS):
        """Queue a DTMF digit sent as RFC 4733 telephone events."""
        digit_to_event(digit)
        if duration_ms <= 0:
            raise ValueError("duration_ms must be positive")
        self._queue.append(PlaySegment(digit=digit.upper(), length=duration_ms * SAMPLES_PER_MS))

    def set_audio_fill(self, fill: int):
        """Change the byte sent while nothing is queued."""
        self._fill = _check_byte(fill)
        if self._current.length is None and not self._current.is_dtmf:
            self._current.audio = self._fill

    def _elapsed(self, start_timestamp: int) -> int:
        return (self._timestamp - start_timestamp) % TS_MOD

    def _take_marker(self) -> bool:
        marker = self._needs_marker
        self._needs_marker = False
        return marker

    def _advance_sequence(self):
        self._seq += 1
        if self._seq >= SEQ_MOD:
            self._seq = 0
            self._needs_marker = True

    def _advance_timestamp(self):
        self._timestamp += SAMPLES_PER_FRAME
        if self._timestamp >= TS_MOD:
            self._timestamp -= TS_MOD
            self._needs_marker = True

    def _send_packet(self, payload_type: int, timestamp: int, payload: bytes, *, marker=False):
        header = RTPHeader(
            payload_type=payload_type,
            sequence=self._seq,
            timestamp=timestamp,
            ssrc=self._ssrc,
            marker=marker,
        )
        packet = pack_rtp_packet(header, payload)
        self._advance_sequence()

        if self._transport and self._remote_addr:
            try:
                self._transport.sendto(packet, self._remote_addr)
                self._sent += 1
            except OSError as e:
                logger.warning("RTP send failed: %s", e)
        else:
            logger.debug("Dropping RTP packet, media not negotiated")

    def _send_audio(self):
        segment = self._current
        if isinstance(segment.audio, int):
            payload = bytes([segment.audio]) * SAMPLES_PER_FRAME
        else:
            offset = self._elapsed(segment.start_timestamp)
            chunk = segment.audio[offset : offset + SAMPLES_PER_FRAME]
            payload = chunk.ljust(SAMPLES_PER_FRAME, b"\x00")
        self._send_packet(
            PCMU_PAYLOAD_TYPE, self._timestamp, payload, marker=self._take_marker()
        )

    def _send_dtmf(self):
        segment = self._current
        event = TelephoneEvent(
            event=digit_to_event(segment.digit),
            duration=self._elapsed(segment.start_timestamp),
        )
        self._send_packet(
            DTMF_PAYLOAD_TYPE,
            segment.start_timestamp,
            pack_telephone_event(event),
            marker=self._take_marker(),
        )

    def _send_dtmf_end(self, segment: PlaySegment):
        event = TelephoneEvent(
            event=digit_to_event(segment.digit),
            end=True,
            duration=self._elapsed(segment.start_timestamp),
        )
        payload = pack_telephone_event(event)
        for _ in range(DTMF_END_PACKETS):
            self._send_packet(DTMF_PAYLOAD_TYPE, segment.start_timestamp, payload)

    async def _emit_transition(self, previous: PlaySegment, current: PlaySegment):
        if previous.is_dtmf:
            await self._call_event_handler("on_dtmf_stopped", previous.digit, previous.length)
        elif previous.is_timed_audio and not current.is_timed_audio:
            await self._call_event_handler("on_audio_stopped", previous.audio, previous.length)

        if current.is_dtmf:
            await self._call_event_handler("on_dtmf_started", current.digit, current.length)
        elif current.is_timed_audio and not previous.is_timed_audio:
            await self._call_event_handler("on_audio_started", current.audio, current.length)

    async def _tick(self):
        """Send the packet(s) for one 20 ms frame."""
        if self._stopped:
            return

        previous = self._current
        exhausted = (
            previous.length is not None
            and self._elapsed(previous.start_timestamp) >= previous.length
        )
        if self._queue and (previous.length is None or exhausted):
            segment = self._queue.popleft()
            segment.start_timestamp = self._timestamp
            self._current = segment
            self._needs_marker = True
        elif exhausted:
            self._current = PlaySegment(audio=self._fill, start_timestamp=self._timestamp)
            self._needs_marker = True

        if self._current is not previous:
            await self._emit_transition(previous, self._current)
            if self._stopped:
                return
            if previous.is_dtmf:
                self._send_dtmf_end(previous)

        if self._current.is_dtmf:
            self._send_dtmf()
        else:
            self._send_audio()
        self._advance_timestamp()

    def _reset_to_idle(self):
        self._current = PlaySegment(audio=self._fill, start_timestamp=self._timestamp)
        self._needs_marker = True

    async def _run_clock(self):
        """Run ticks every 20 ms against the loop's monotonic clock."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        try:
            while not self._stopped:
                try:
                    await self._tick()
                except Exception:
                    logger.exception(
                        "RTP tick failed on port %d, reverting to fill", self.local_port
                    )
                    self._reset_to_idle()

                next_tick += FRAME_DURATION
                now = loop.time()
                delay = next_tick - now
                if delay < -FRAME_DURATION * 2:
                    # More than two frames late: resync.
                    next_tick = now
                    delay = 0.0
                await asyncio.sleep(max(0.0, delay))
        except asyncio.CancelledError:
            pass

    def _create_background_task(self, coro) -> asyncio.Task:
        """Create and track a background task."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _handle_packet(self, data: bytes, addr: Tuple[str, int]):
        """Process an incoming RTP packet."""
        if self._stopped:
            return
        try:
            header, payload = unpack_rtp_packet(data)
        except ValueError as e:
            logger.warning("Dropping malformed RTP packet from %s: %s", addr, e)
            return

        self._received += 1
        if header.marker or header.sequence % 1000 == 0:
            logger.info("RTP packet: %d/%s/%d", header.sequence, header.marker, header.ssrc)

        if header.payload_type == DTMF_PAYLOAD_TYPE:
            try:
                event = unpack_telephone_event(payload)
            except ValueError as e:
                logger.warning("Dropping malformed telephone event from %s: %s", addr, e)
                return
            self._create_background_task(self._call_event_handler("on_dtmf", event))
        else:
            self._create_background_task(
                self._call_event_handler("on_audio", header.payload_type, payload)
            )


def _check_byte(value: int) -> int:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"Fill byte out of range: {value}")
    return value


async def create_rtp_session(pool: RTPPortPool, local_addr: str, **kwargs) -> RTPSession:
    """Lease a port from the pool and open a session on it.

    Args:
        pool: Port pool to allocate from.
        local_addr: Address advertised in the local SDP.
        **kwargs: Passed to RTPSession.

    Returns:
        An open, not yet negotiated session.

    Raises:
        PortExhausted: If the pool has no bindable port.
    """
    sock = pool.acquire()
    port = sock.getsockname()[1]
    session = RTPSession(local_addr, port, sock=sock, **kwargs)
    try:
        await session.open()
    except Exception:
        session.stop()
        raise
    return session


class _RTPProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol for RTP packet reception."""

    def __init__(self, session: RTPSession):
        self._session = session

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self._session._handle_packet(data, addr)

    def error_received(self, exc: Exception):
        logger.error("RTP error: %s", exc)
