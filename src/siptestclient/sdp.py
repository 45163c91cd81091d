#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SDP (Session Description Protocol) parsing and generation.

Only the fields the test client negotiates with are modelled: origin,
connection address, and the media lines with their attributes. Unknown lines
are kept verbatim so a parsed description can be written back out.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

PCMU_PAYLOAD_TYPE = 0
TELEPHONE_EVENT_PAYLOAD_TYPE = 101

# Static RTP payload type -> codec name
PT_CODEC: Dict[int, str] = {0: "PCMU", 8: "PCMA"}

_RTPMAP_RE = re.compile(r"rtpmap:(\d+)\s+([\w-]+)/(\d+)")


@dataclass
class Origin:
    """The o= line."""

    username: str = "-"
    session_id: str = "0"
    version: str = "0"
    nettype: str = "IN"
    addrtype: str = "IP4"
    address: str = "0.0.0.0"


@dataclass
class MediaDescription:
    """One m= section.

    Parameters:
        media: Media type ("audio").
        port: Transport port.
        proto: Transport protocol ("RTP/AVP").
        formats: Payload types offered, in preference order.
        connection: Media-level c= address, if any.
        attributes: a= lines without the "a=" prefix.
    """

    media: str
    port: int
    proto: str = "RTP/AVP"
    formats: List[int] = field(default_factory=list)
    connection: Optional[str] = None
    attributes: List[str] = field(default_factory=list)

    def codecs(self) -> Dict[int, str]:
        """Map payload type to encoding name from rtpmap or static types."""
        codecs = {pt: PT_CODEC[pt] for pt in self.formats if pt in PT_CODEC}
        for attr in self.attributes:
            m = _RTPMAP_RE.match(attr)
            if m:
                codecs[int(m.group(1))] = m.group(2)
        return codecs


@dataclass
class SessionDescription:
    """A parsed session description."""

    version: str = "0"
    origin: Origin = field(default_factory=Origin)
    session_name: str = "-"
    connection: Optional[str] = None
    timing: str = "0 0"
    media: List[MediaDescription] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)

    def audio(self) -> Optional[MediaDescription]:
        """Return the first audio media section."""
        for media in self.media:
            if media.media == "audio":
                return media
        return None

    def remote_rtp_addr(self) -> Optional[Tuple[str, int]]:
        """Return the (ip, port) audio should be sent to, or None."""
        audio = self.audio()
        if audio is None or not audio.port:
            return None
        address = audio.connection or self.connection
        if not address:
            return None
        return address, audio.port


def _connection_address(value: str) -> str:
    # c=<nettype> <addrtype> <address>[/ttl]
    parts = value.split()
    return parts[-1].split("/")[0] if len(parts) >= 3 else ""


def parse_sdp(sdp: str) -> SessionDescription:
    """Parse SDP text into a SessionDescription.

    Args:
        sdp: Raw SDP text, CRLF or LF line endings.

    Returns:
        The parsed description. Malformed lines are ignored.
    """
    desc = SessionDescription()
    current: Optional[MediaDescription] = None

    for line in sdp.replace("\r\n", "\n").split("\n"):
        line = line.strip()
        if len(line) < 2 or line[1] != "=":
            continue
        kind, value = line[0], line[2:]
        if kind == "m":
            parts = value.split()
            if len(parts) < 3:
                current = None
                continue
            try:
                port = int(parts[1].split("/")[0])
            except ValueError:
                port = 0
            formats = [int(f) for f in parts[3:] if f.isdigit()]
            current = MediaDescription(media=parts[0], port=port, proto=parts[2], formats=formats)
            desc.media.append(current)
        elif kind == "c":
            address = _connection_address(value)
            if current is not None:
                current.connection = address
            else:
                desc.connection = address
        elif kind == "a":
            if current is not None:
                current.attributes.append(value)
            else:
                desc.extra.append(line)
        elif current is not None:
            continue
        elif kind == "v":
            desc.version = value
        elif kind == "o":
            parts = value.split()
            if len(parts) == 6:
                desc.origin = Origin(*parts)
        elif kind == "s":
            desc.session_name = value
        elif kind == "t":
            desc.timing = value
        else:
            desc.extra.append(line)

    return desc


def generate_sdp(desc: SessionDescription) -> str:
    """Serialize a SessionDescription.

    Args:
        desc: The description to write.

    Returns:
        SDP string with CRLF line endings.
    """
    o = desc.origin
    lines = [
        f"v={desc.version}",
        f"o={o.username} {o.session_id} {o.version} {o.nettype} {o.addrtype} {o.address}",
        f"s={desc.session_name}",
    ]
    if desc.connection:
        lines.append(f"c=IN IP4 {desc.connection}")
    lines.append(f"t={desc.timing}")
    lines.extend(desc.extra)
    for media in desc.media:
        formats = " ".join(str(pt) for pt in media.formats)
        lines.append(f"m={media.media} {media.port} {media.proto} {formats}")
        if media.connection:
            lines.append(f"c=IN IP4 {media.connection}")
        lines.extend(f"a={attr}" for attr in media.attributes)
    return "\r\n".join(lines) + "\r\n"


def build_offer(*, local_ip: str, local_port: int, session_id: int) -> SessionDescription:
    """Build the client's offer: PCMU plus telephone-event, 20 ms packets.

    Args:
        local_ip: Local IP address for media.
        local_port: Local RTP port.
        session_id: Session identifier for the o= line.

    Returns:
        The local session description.
    """
    return SessionDescription(
        origin=Origin(
            username="tester",
            session_id=str(session_id),
            version=str(session_id),
            address=local_ip,
        ),
        session_name="siptestclient",
        connection=local_ip,
        media=[
            MediaDescription(
                media="audio",
                port=local_port,
                formats=[PCMU_PAYLOAD_TYPE, TELEPHONE_EVENT_PAYLOAD_TYPE],
                attributes=[
                    f"rtpmap:{PCMU_PAYLOAD_TYPE} PCMU/8000",
                    f"rtpmap:{TELEPHONE_EVENT_PAYLOAD_TYPE} telephone-event/8000",
                    f"fmtp:{TELEPHONE_EVENT_PAYLOAD_TYPE} 0-16",
                    "silenceSupp:off - - - -",
                    "ptime:20",
                    "sendrecv",
                ],
            )
        ],
    )
