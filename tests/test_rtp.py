#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Tests for RTP packet codecs, telephone events and the RTPSession clock."""

import asyncio
import socket
from unittest.mock import MagicMock

import pytest

from siptestclient.ports import RTPPortPool
from siptestclient.rtp import (
    DTMF_PAYLOAD_TYPE,
    PCMU_PAYLOAD_TYPE,
    SAMPLES_PER_FRAME,
    TS_MOD,
    PlaySegment,
    RTPHeader,
    RTPSession,
    TelephoneEvent,
    create_rtp_session,
    digit_to_event,
    pack_rtp_packet,
    pack_telephone_event,
    unpack_rtp_packet,
    unpack_telephone_event,
)
from siptestclient.sdp import parse_sdp

REMOTE_RTP = ("10.0.0.1", 4000)

ANSWER_SDP = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 10.0.0.1\r\n"
    "s=-\r\n"
    "c=IN IP4 10.0.0.1\r\n"
    "t=0 0\r\n"
    "m=audio 4000 RTP/AVP 0 101\r\n"
    "a=rtpmap:0 PCMU/8000\r\n"
    "a=rtpmap:101 telephone-event/8000\r\n"
)


def _mock_transport():
    """Create a mock asyncio.DatagramTransport."""
    transport = MagicMock(spec=asyncio.DatagramTransport)
    transport.sendto = MagicMock()
    transport.close = MagicMock()
    return transport


def _negotiated_session(**kwargs) -> RTPSession:
    """Session with a mock transport and a known remote, clock not running."""
    session = RTPSession("127.0.0.1", 40000, **kwargs)
    session._transport = _mock_transport()
    session._remote_addr = REMOTE_RTP
    return session


def _sent(session: RTPSession):
    """Decode every packet the session handed to its transport."""
    return [unpack_rtp_packet(c.args[0]) for c in session._transport.sendto.call_args_list]


async def _settle():
    """Let event handler tasks run."""
    await asyncio.sleep(0.01)


def _record(session: RTPSession, *events):
    calls = []
    for name in events:

        def _make(name):
            async def handler(obj, *args):
                calls.append((name, *args))

            return handler

        session.add_event_handler(name, _make(name))
    return calls


class TestRTPHeader:
    def test_pack_header_size(self):
        """Header without CSRCs is 12 bytes."""
        assert len(pack_rtp_packet(RTPHeader())) == 12

    def test_version_and_marker_bits(self):
        """First byte carries version 2; marker is the top bit of byte 1."""
        header = pack_rtp_packet(
            RTPHeader(payload_type=101, sequence=1, timestamp=2, ssrc=3, marker=True)
        )
        assert header[0] == 0x80
        assert header[1] == 0x80 | 101

    def test_roundtrip_with_csrcs(self):
        """CSRC count, flags and payload survive pack/unpack."""
        header = RTPHeader(
            payload_type=0,
            sequence=0xFFFF,
            timestamp=0xFFFFFFFF,
            ssrc=0xDEADBEEF,
            marker=True,
            padding=True,
            extension=True,
            csrcs=[1, 2, 3],
        )
        data = pack_rtp_packet(header, b"\x01\x02")
        assert len(data) == 12 + 3 * 4 + 2
        parsed, payload = unpack_rtp_packet(data)
        assert parsed == header
        assert parsed.size == 24
        assert payload == b"\x01\x02"

    def test_sequence_and_timestamp_reduced(self):
        """Out-of-range sequence and timestamp wrap to their field widths."""
        data = pack_rtp_packet(RTPHeader(sequence=0x10001, timestamp=TS_MOD + 5))
        header, _ = unpack_rtp_packet(data)
        assert header.sequence == 1
        assert header.timestamp == 5

    def test_too_many_csrcs(self):
        """More than 15 CSRCs cannot be encoded."""
        with pytest.raises(ValueError):
            pack_rtp_packet(RTPHeader(csrcs=list(range(16))))

    def test_unpack_too_short(self):
        """Datagrams shorter than the fixed header are rejected."""
        with pytest.raises(ValueError, match="too short"):
            unpack_rtp_packet(b"\x80\x00\x00")

    def test_unpack_wrong_version(self):
        """Only version 2 packets are accepted."""
        data = bytearray(pack_rtp_packet(RTPHeader()))
        data[0] = 0x40
        with pytest.raises(ValueError, match="version"):
            unpack_rtp_packet(bytes(data))

    def test_unpack_truncated_csrc_list(self):
        """A CSRC count larger than the datagram is rejected."""
        data = bytearray(pack_rtp_packet(RTPHeader()))
        data[0] |= 0x02
        with pytest.raises(ValueError, match="CSRC"):
            unpack_rtp_packet(bytes(data) + b"\x00\x00\x00\x01")


class TestTelephoneEvent:
    def test_roundtrip(self):
        """Event, end flag, volume and duration survive pack/unpack."""
        event = TelephoneEvent(event=11, end=True, volume=7, duration=800)
        payload = pack_telephone_event(event)
        assert payload == bytes([11, 0x80 | 7, 0x03, 0x20])
        assert unpack_telephone_event(payload) == event

    def test_digit_mapping(self):
        """Codes 0-15 map to DTMF characters, others to their number."""
        assert TelephoneEvent(event=0).digit == "0"
        assert TelephoneEvent(event=10).digit == "*"
        assert TelephoneEvent(event=11).digit == "#"
        assert TelephoneEvent(event=15).digit == "D"
        assert TelephoneEvent(event=20).digit == "20"

    def test_duration_wraps(self):
        """Duration is a 16-bit field."""
        payload = pack_telephone_event(TelephoneEvent(event=1, duration=0x10010))
        assert unpack_telephone_event(payload).duration == 0x10

    def test_unpack_too_short(self):
        """Payloads under 4 bytes are rejected."""
        with pytest.raises(ValueError):
            unpack_telephone_event(b"\x01\x02")

    def test_digit_to_event(self):
        """Digits map to codes, letters case-insensitively."""
        assert digit_to_event("5") == 5
        assert digit_to_event("#") == 11
        assert digit_to_event("a") == 12

    @pytest.mark.parametrize("digit", ["X", "", "12", "!"])
    def test_digit_to_event_invalid(self, digit):
        """Anything but one DTMF character is rejected."""
        with pytest.raises(ValueError):
            digit_to_event(digit)


class TestRTPSessionClock:
    @pytest.mark.asyncio
    async def test_idle_sends_fill(self):
        """With nothing queued each tick sends one fill packet."""
        session = _negotiated_session()
        seq, ts = session.sequence, session.timestamp
        for _ in range(3):
            await session._tick()

        packets = _sent(session)
        assert len(packets) == 3
        for i, (header, payload) in enumerate(packets):
            assert header.payload_type == PCMU_PAYLOAD_TYPE
            assert header.ssrc == session.ssrc
            assert header.sequence == (seq + i) % 0x10000
            assert header.timestamp == (ts + i * SAMPLES_PER_FRAME) % TS_MOD
            assert payload == b"\x7f" * SAMPLES_PER_FRAME
        assert [h.marker for h, _ in packets] == [True, False, False]

    @pytest.mark.asyncio
    async def test_set_audio_fill(self):
        """Changing the fill takes effect on the current idle segment."""
        session = _negotiated_session(audio_fill=0xFF)
        await session._tick()
        session.set_audio_fill(0x55)
        await session._tick()
        payloads = [p for _, p in _sent(session)]
        assert payloads == [b"\xff" * 160, b"\x55" * 160]

    def test_fill_out_of_range(self):
        """Fill bytes outside 0-255 are rejected."""
        session = RTPSession("127.0.0.1", 40000)
        with pytest.raises(ValueError):
            session.set_audio_fill(256)

    @pytest.mark.asyncio
    async def test_sequence_wrap_sets_marker(self):
        """The packet after sequence 65535 carries sequence 0 and the marker."""
        session = _negotiated_session()
        await session._tick()
        session._seq = 0xFFFF
        await session._tick()
        await session._tick()
        packets = _sent(session)[1:]
        assert [(h.sequence, h.marker) for h, _ in packets] == [(0xFFFF, False), (0, True)]

    @pytest.mark.asyncio
    async def test_timestamp_wrap_sets_marker(self):
        """Wrapping the 32-bit timestamp marks the next packet."""
        session = _negotiated_session()
        await session._tick()
        session._timestamp = TS_MOD - SAMPLES_PER_FRAME
        await session._tick()
        await session._tick()
        packets = _sent(session)[1:]
        assert [(h.timestamp, h.marker) for h, _ in packets] == [
            (TS_MOD - SAMPLES_PER_FRAME, False),
            (0, True),
        ]

    @pytest.mark.asyncio
    async def test_audio_segment_events_and_marker(self):
        """Queued audio raises start/stop events and marks both transitions."""
        session = _negotiated_session()
        calls = _record(session, "on_audio_started", "on_audio_stopped")
        await session._tick()

        audio = bytes(range(160))
        session.push_audio(audio, 20)
        await session._tick()
        await session._tick()
        await _settle()

        packets = _sent(session)
        assert packets[1][1] == audio
        assert packets[1][0].marker is True
        assert packets[2][1] == b"\x7f" * 160
        assert packets[2][0].marker is True
        assert calls == [
            ("on_audio_started", audio, 160),
            ("on_audio_stopped", audio, 160),
        ]

    @pytest.mark.asyncio
    async def test_back_to_back_audio(self):
        """Consecutive audio segments raise no stop/start pair but mark the new one."""
        session = _negotiated_session()
        calls = _record(session, "on_audio_started", "on_audio_stopped")
        session.push_audio(b"\x01" * 160, 20)
        session.push_audio(b"\x02" * 160, 20)
        for _ in range(3):
            await session._tick()
        await _settle()

        packets = _sent(session)
        assert [p for _, p in packets] == [b"\x01" * 160, b"\x02" * 160, b"\x7f" * 160]
        assert [h.marker for h, _ in packets] == [True, True, True]
        assert [name for name, *_ in calls] == ["on_audio_started", "on_audio_stopped"]

    @pytest.mark.asyncio
    async def test_long_audio_sliced_and_padded(self):
        """A segment longer than one frame is sent in 160-byte slices, zero padded."""
        session = _negotiated_session()
        audio = b"\x10" * 160 + b"\x20" * 100
        session.push_audio(audio, 40)
        await session._tick()
        await session._tick()
        payloads = [p for _, p in _sent(session)]
        assert payloads[0] == b"\x10" * 160
        assert payloads[1] == b"\x20" * 100 + b"\x00" * 60

    @pytest.mark.asyncio
    async def test_fill_byte_segment(self):
        """push_audio with a byte or None repeats that byte for the duration."""
        session = _negotiated_session()
        session.push_audio(0x33, 20)
        session.push_audio(None, 20)
        await session._tick()
        await session._tick()
        assert [p for _, p in _sent(session)] == [b"\x33" * 160, b"\x7f" * 160]

    def test_push_audio_invalid_duration(self):
        """Durations must be positive."""
        session = RTPSession("127.0.0.1", 40000)
        with pytest.raises(ValueError):
            session.push_audio(b"\x00", 0)

    @pytest.mark.asyncio
    async def test_dtmf_digit_packets(self):
        """A digit is sent as telephone events followed by exactly three end packets."""
        session = _negotiated_session()
        calls = _record(session, "on_dtmf_started", "on_dtmf_stopped")
        session.push_digit("5", 40)
        for _ in range(3):
            await session._tick()
        await _settle()

        packets = _sent(session)
        assert len(packets) == 6
        start_ts = packets[0][0].timestamp
        events = [(h, unpack_telephone_event(p)) for h, p in packets[:5]]
        for header, event in events:
            assert header.payload_type == DTMF_PAYLOAD_TYPE
            assert header.timestamp == start_ts
            assert event.event == 5
            assert event.volume == 7

        assert events[0][0].marker is True
        assert [e.duration for _, e in events[:2]] == [0, 160]
        assert [e.end for _, e in events[:2]] == [False, False]
        ends = events[2:]
        assert all(e.end and e.duration == 320 for _, e in ends)
        assert not any(h.marker for h, _ in ends)

        fill_header, fill_payload = packets[5]
        assert fill_header.payload_type == PCMU_PAYLOAD_TYPE
        assert fill_header.marker is True
        assert fill_payload == b"\x7f" * 160

        assert calls == [("on_dtmf_started", "5", 320), ("on_dtmf_stopped", "5", 320)]

    @pytest.mark.asyncio
    async def test_sequence_contiguous_across_dtmf(self):
        """End packets consume sequence numbers; the timestamp only advances per tick."""
        session = _negotiated_session()
        seq, ts = session.sequence, session.timestamp
        session.push_digit("1", 20)
        await session._tick()
        await session._tick()
        packets = _sent(session)
        assert [h.sequence for h, _ in packets] == [(seq + i) % 0x10000 for i in range(5)]
        assert packets[-1][0].timestamp == (ts + SAMPLES_PER_FRAME) % TS_MOD

    def test_push_digit_invalid(self):
        """Unknown digits are rejected before anything is queued."""
        session = RTPSession("127.0.0.1", 40000)
        with pytest.raises(ValueError):
            session.push_digit("X")
        assert session.queued == 0

    @pytest.mark.asyncio
    async def test_send_before_negotiation_dropped(self):
        """Without a remote endpoint packets are dropped, not sent."""
        session = RTPSession("127.0.0.1", 40000)
        session._transport = _mock_transport()
        seq = session.sequence
        await session._tick()
        session._transport.sendto.assert_not_called()
        assert session.sequence == (seq + 1) % 0x10000

    @pytest.mark.asyncio
    async def test_tick_after_stop_is_noop(self):
        """A stopped session sends nothing."""
        session = _negotiated_session()
        transport = session._transport
        session.stop()
        await session._tick()
        transport.sendto.assert_not_called()

    @pytest.mark.asyncio
    async def test_clock_survives_bad_segment(self):
        """A broken queue entry reverts the session to fill instead of stopping the clock."""
        session = _negotiated_session()
        session._remote_addr = None
        session._queue.append(PlaySegment(digit="Z", length=160))
        session.start(parse_sdp(ANSWER_SDP))
        assert session.running
        await asyncio.sleep(0.1)
        transport = session._transport
        session.stop()

        payloads = [unpack_rtp_packet(c.args[0])[1] for c in transport.sendto.call_args_list]
        assert len(payloads) >= 2
        assert payloads[-1] == b"\x7f" * 160
        assert session.current.audio == 0x7F

    @pytest.mark.asyncio
    async def test_start_sets_remote(self):
        """start() points the session at the SDP's audio endpoint."""
        session = RTPSession("127.0.0.1", 40000)
        session._transport = _mock_transport()
        session.start(parse_sdp(ANSWER_SDP))
        assert session.remote_addr == REMOTE_RTP
        assert session.running
        session.stop()
        assert not session.running

    def test_stop_idempotent(self):
        """stop() can be called repeatedly."""
        sock = MagicMock()
        session = RTPSession("127.0.0.1", 40000, sock=sock)
        session.stop()
        session.stop()
        assert session.stopped
        sock.close.assert_called_once()


class TestRTPSessionReceive:
    @pytest.mark.asyncio
    async def test_inbound_audio(self):
        """Non-DTMF packets are passed to on_audio with their payload type."""
        session = RTPSession("127.0.0.1", 40000)
        calls = _record(session, "on_audio")
        data = pack_rtp_packet(RTPHeader(payload_type=0, sequence=1, ssrc=9), b"\xff" * 160)
        session._handle_packet(data, REMOTE_RTP)
        await _settle()
        assert calls == [("on_audio", 0, b"\xff" * 160)]

    @pytest.mark.asyncio
    async def test_inbound_dtmf(self):
        """Payload type 101 is decoded into a TelephoneEvent."""
        session = RTPSession("127.0.0.1", 40000)
        calls = _record(session, "on_dtmf")
        event = TelephoneEvent(event=3, end=True, duration=800)
        data = pack_rtp_packet(
            RTPHeader(payload_type=DTMF_PAYLOAD_TYPE, marker=True),
            pack_telephone_event(event),
        )
        session._handle_packet(data, REMOTE_RTP)
        await _settle()
        assert calls == [("on_dtmf", event)]

    @pytest.mark.asyncio
    async def test_malformed_packets_dropped(self):
        """Short or truncated packets raise no events and no errors."""
        session = RTPSession("127.0.0.1", 40000)
        calls = _record(session, "on_audio", "on_dtmf")
        session._handle_packet(b"\x80\x00", REMOTE_RTP)
        session._handle_packet(
            pack_rtp_packet(RTPHeader(payload_type=DTMF_PAYLOAD_TYPE), b"\x01"), REMOTE_RTP
        )
        await _settle()
        assert calls == []

    @pytest.mark.asyncio
    async def test_loopback_receive(self):
        """A session opened from the pool receives datagrams on its port."""
        pool = RTPPortPool(40100, 40200, bind_host="127.0.0.1")
        session = await create_rtp_session(pool, "127.0.0.1")
        received = asyncio.Event()
        payloads = []

        @session.event_handler("on_audio")
        async def on_audio(session, payload_type, payload):
            payloads.append(payload)
            received.set()

        assert session.local_port % 2 == 0
        assert session.local_sdp.audio().port == session.local_port

        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            data = pack_rtp_packet(RTPHeader(sequence=7, ssrc=1), b"\x7f" * 160)
            sender.sendto(data, ("127.0.0.1", session.local_port))
            await asyncio.wait_for(received.wait(), timeout=2.0)
        finally:
            sender.close()
            session.stop()
        assert payloads == [b"\x7f" * 160]
