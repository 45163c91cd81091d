#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SIP message parsing, serialization and request/response building.

Covers the subset a UAC test client needs: building INVITE, ACK, BYE and
OPTIONS requests, answering OPTIONS and BYE, and reading the dialog fields
(tags, CSeq, Via branch, Contact) out of responses.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class SIPMethod(Enum):
    """Supported SIP request methods."""

    INVITE = "INVITE"
    ACK = "ACK"
    BYE = "BYE"
    CANCEL = "CANCEL"
    OPTIONS = "OPTIONS"


SIP_VERSION = "SIP/2.0"

REASON_PHRASES: Dict[int, str] = {
    100: "Trying",
    180: "Ringing",
    183: "Session Progress",
    200: "OK",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    407: "Proxy Authentication Required",
    408: "Request Timeout",
    481: "Call/Transaction Does Not Exist",
    486: "Busy Here",
    487: "Request Terminated",
    500: "Server Internal Error",
    501: "Not Implemented",
    503: "Service Unavailable",
}

_COMPACT_FORMS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
    "k": "Supported",
}

_SPECIAL_CASE = {
    "call-id": "Call-ID",
    "cseq": "CSeq",
    "www-authenticate": "WWW-Authenticate",
    "mime-version": "MIME-Version",
}

_URI_RE = re.compile(
    r"^(?P<scheme>sips?):(?:(?P<user>[^@;]+)@)?(?P<host>[^:;?]+)(?::(?P<port>\d+))?(?P<params>;[^?]*)?"
)


def canonical_header(name: str) -> str:
    """Normalize a header name, expanding compact forms."""
    low = name.strip().lower()
    if low in _COMPACT_FORMS:
        return _COMPACT_FORMS[low]
    if low in _SPECIAL_CASE:
        return _SPECIAL_CASE[low]
    return "-".join(part.capitalize() for part in low.split("-"))


def header_param(value: str, name: str) -> Optional[str]:
    """Return a ;name=value parameter from a header value, or None."""
    # Parameters follow the closing ">" of a name-addr, if there is one.
    _, _, params = value.rpartition(">") if ">" in value else ("", "", value)
    for part in params.split(";")[1:]:
        key, _, val = part.strip().partition("=")
        if key.lower() == name.lower():
            return val.strip()
    return None


def extract_uri(value: str) -> str:
    """Extract the URI from a name-addr like '"Bob" <sip:bob@host>;tag=x'."""
    m = re.search(r"<([^>]+)>", value)
    if m:
        return m.group(1)
    return value.split(";")[0].strip()


@dataclass
class SIPURI:
    """A parsed sip: URI."""

    host: str
    port: Optional[int] = None
    user: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)
    scheme: str = "sip"

    @classmethod
    def parse(cls, uri: str) -> SIPURI:
        m = _URI_RE.match(uri.strip())
        if not m:
            raise ValueError(f"Invalid SIP URI {uri!r}")
        params: Dict[str, str] = {}
        for part in (m.group("params") or "").split(";")[1:]:
            key, _, val = part.partition("=")
            params[key.lower()] = val
        return cls(
            host=m.group("host"),
            port=int(m.group("port")) if m.group("port") else None,
            user=m.group("user"),
            params=params,
            scheme=m.group("scheme"),
        )


@dataclass
class SIPMessage:
    """Parsed SIP message (request or response).

    Parameters:
        method: SIP method for requests (None for responses and unknown methods).
        request_uri: Request URI (None for responses).
        status_code: Status code for responses (None for requests).
        reason: Reason phrase for responses.
        headers: Canonical header name -> values, in arrival order.
        body: Message body (SDP, etc.) or None.
    """

    method: Optional[SIPMethod] = None
    request_uri: Optional[str] = None
    status_code: Optional[int] = None
    reason: str = ""
    headers: Dict[str, List[str]] = field(default_factory=dict)
    body: Optional[str] = None
    method_name: str = ""

    @property
    def is_request(self) -> bool:
        return self.status_code is None

    def get(self, name: str, default: str = "") -> str:
        """Return the first value of a header."""
        values = self.headers.get(canonical_header(name))
        return values[0] if values else default

    def get_all(self, name: str) -> List[str]:
        """Return every value of a header, in order."""
        return list(self.headers.get(canonical_header(name), []))

    def set(self, name: str, value: str):
        """Replace all values of a header."""
        self.headers[canonical_header(name)] = [value]

    def add(self, name: str, value: str):
        """Append a value to a header."""
        self.headers.setdefault(canonical_header(name), []).append(value)

    def prepend(self, name: str, value: str):
        """Insert a value before existing ones (used for Via)."""
        self.headers.setdefault(canonical_header(name), []).insert(0, value)

    def remove(self, name: str):
        self.headers.pop(canonical_header(name), None)

    @property
    def call_id(self) -> str:
        """Return the Call-ID header value."""
        return self.get("Call-ID")

    @property
    def from_header(self) -> str:
        """Return the From header value."""
        return self.get("From")

    @property
    def to_header(self) -> str:
        """Return the To header value."""
        return self.get("To")

    @property
    def via(self) -> str:
        """Return the top Via header value."""
        return self.get("Via")

    @property
    def cseq(self) -> str:
        """Return the CSeq header value."""
        return self.get("CSeq")

    @property
    def cseq_number(self) -> int:
        number, _, _ = self.cseq.partition(" ")
        return int(number) if number.isdigit() else 0

    @property
    def cseq_method(self) -> str:
        return self.cseq.partition(" ")[2].strip()

    @property
    def from_tag(self) -> Optional[str]:
        return header_param(self.from_header, "tag")

    @property
    def to_tag(self) -> Optional[str]:
        return header_param(self.to_header, "tag")

    @property
    def branch(self) -> Optional[str]:
        """Branch parameter of the top Via."""
        return header_param(self.via, "branch")

    @property
    def content_type(self) -> str:
        return self.get("Content-Type").split(";")[0].strip().lower()

    @property
    def has_sdp(self) -> bool:
        return bool(self.body) and self.content_type == "application/sdp"

    @classmethod
    def parse(cls, data: bytes) -> SIPMessage:
        """Parse raw bytes into a SIPMessage.

        Args:
            data: Raw SIP message bytes.

        Returns:
            Parsed SIPMessage.

        Raises:
            ValueError: If the start line is not a SIP request or status line.
        """
        text = data.decode("utf-8", errors="replace")
        if "\r\n\r\n" in text:
            head, _, body = text.partition("\r\n\r\n")
            lines = head.split("\r\n")
        else:
            head, _, body = text.partition("\n\n")
            lines = head.split("\n")
        first_line = lines[0].strip()
        parts = first_line.split(" ", 2)
        if len(parts) < 3:
            raise ValueError(f"Invalid SIP start line {first_line!r}")

        msg = cls()
        if parts[0] == SIP_VERSION:
            if not parts[1].isdigit():
                raise ValueError(f"Invalid SIP status line {first_line!r}")
            msg.status_code = int(parts[1])
            msg.reason = parts[2]
        elif parts[2] == SIP_VERSION:
            msg.method_name = parts[0].upper()
            try:
                msg.method = SIPMethod(msg.method_name)
            except ValueError:
                msg.method = None
            msg.request_uri = parts[1]
        else:
            raise ValueError(f"Invalid SIP start line {first_line!r}")

        last: Optional[str] = None
        for line in lines[1:]:
            if not line:
                continue
            if line[0] in " \t" and last:
                # Folded continuation of the previous header.
                msg.headers[last][-1] += " " + line.strip()
                continue
            if ":" not in line:
                continue
            key, _, value = line.partition(":")
            last = canonical_header(key)
            msg.headers.setdefault(last, []).append(value.strip())

        length = msg.get("Content-Length")
        if length.isdigit():
            body = body.encode("utf-8")[: int(length)].decode("utf-8", errors="replace")
        msg.body = body if body.strip() else None
        return msg

    def start_line(self) -> str:
        if self.is_request:
            return f"{self.method_name} {self.request_uri} {SIP_VERSION}"
        reason = self.reason or REASON_PHRASES.get(self.status_code, "")
        return f"{SIP_VERSION} {self.status_code} {reason}"

    def to_bytes(self) -> bytes:
        """Serialize the message; Content-Length is always recomputed."""
        body = (self.body or "").encode("utf-8")
        lines = [self.start_line()]
        for name, values in self.headers.items():
            if name == "Content-Length":
                continue
            lines.extend(f"{name}: {value}" for value in values)
        lines.append(f"Content-Length: {len(body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8") + body


def generate_branch() -> str:
    """Generate an RFC 3261 magic-cookie branch."""
    return f"z9hG4bK{uuid.uuid4().hex[:16]}"


def generate_tag() -> str:
    return uuid.uuid4().hex[:16]


def generate_call_id(host: str = "localhost") -> str:
    return f"{uuid.uuid4().hex}@{host}"


def format_address(uri: str, tag: Optional[str] = None) -> str:
    """Format a name-addr header value with an optional tag."""
    value = f"<{uri}>"
    if tag:
        value += f";tag={tag}"
    return value


def build_request(
    method: SIPMethod,
    uri: str,
    *,
    from_uri: str,
    from_tag: str,
    to_uri: str,
    call_id: str,
    cseq: int,
    to_tag: Optional[str] = None,
    contact: Optional[str] = None,
    max_forwards: int = 70,
    user_agent: Optional[str] = None,
    body: Optional[str] = None,
    content_type: Optional[str] = None,
    extra_headers: Iterable[Tuple[str, str]] = (),
) -> SIPMessage:
    """Build a request. The transport adds the Via header when sending.

    Args:
        method: Request method.
        uri: Request-URI.
        from_uri: Our address-of-record.
        from_tag: Our dialog tag.
        to_uri: The peer's address.
        call_id: Dialog Call-ID.
        cseq: CSeq sequence number.
        to_tag: The peer's tag once known.
        contact: Contact URI.
        max_forwards: Max-Forwards value.
        user_agent: User-Agent value.
        body: Optional body.
        content_type: Content type of the body.
        extra_headers: Additional (name, value) pairs.

    Returns:
        The request message.
    """
    msg = SIPMessage(method=method, request_uri=uri, method_name=method.value)
    msg.set("Max-Forwards", str(max_forwards))
    msg.set("From", format_address(from_uri, from_tag))
    msg.set("To", format_address(to_uri, to_tag))
    msg.set("Call-ID", call_id)
    msg.set("CSeq", f"{cseq} {method.value}")
    if contact:
        msg.set("Contact", f"<{contact}>")
    if user_agent:
        msg.set("User-Agent", user_agent)
    for name, value in extra_headers:
        msg.add(name, value)
    if body is not None:
        msg.set("Content-Type", content_type or "application/sdp")
        msg.body = body
    return msg


def make_response(
    request: SIPMessage,
    status: int,
    reason: Optional[str] = None,
    *,
    to_tag: Optional[str] = None,
) -> SIPMessage:
    """Build a response to a request, copying the transaction headers.

    Args:
        request: The request being answered.
        status: Status code.
        reason: Reason phrase; the standard phrase when omitted.
        to_tag: Tag added to To when the request's To has none.

    Returns:
        The response message.
    """
    response = SIPMessage(
        status_code=status,
        reason=reason or REASON_PHRASES.get(status, ""),
    )
    for via in request.get_all("Via"):
        response.add("Via", via)
    response.set("From", request.from_header)
    to_header = request.to_header
    if to_tag and request.to_tag is None:
        to_header = f"{to_header};tag={to_tag}"
    response.set("To", to_header)
    response.set("Call-ID", request.call_id)
    response.set("CSeq", request.cseq)
    return response
