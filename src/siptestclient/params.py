#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SIP test client parameters."""

from __future__ import annotations

from typing import List, Tuple

from pydantic import BaseModel, field_validator, model_validator


class ClientParams(BaseModel):
    """Parameters for the SIP test client.

    Parameters:
        sip_listen_host: Bind address for the SIP UDP listener.
        sip_listen_port: Port for the SIP UDP listener (0 picks a free one).
        rtp_port_range: Inclusive range of UDP ports for RTP media. Only even
            ports are used.
        default_transport: Transport advertised in Request-URIs and Via.
        max_forwards: Max-Forwards value for outgoing requests.
        user_agent: User-Agent header value.
        t1_ms: SIP retransmission base interval (RFC 3261 T1).
        transaction_timeout_ms: Time without a final response before a
            request is completed with a synthesized 408.
        options_timeout_ms: How long verify_peer() waits for an answer.
        audio_fill: PCMU byte sent when nothing is queued (0x7F is silence).
        dtmf_duration_ms: Default length of a pushed DTMF digit.
        local_interfaces: Optional host interfaces in CIDR form
            ("192.168.1.10/24") used to pick the local media address by
            subnet match. When empty the routing table decides.
    """

    sip_listen_host: str = "0.0.0.0"
    sip_listen_port: int = 5060
    rtp_port_range: Tuple[int, int] = (10000, 20000)
    default_transport: str = "UDP"
    max_forwards: int = 70
    user_agent: str = "siptestclient"
    t1_ms: int = 500
    transaction_timeout_ms: int = 32000
    options_timeout_ms: int = 5000
    audio_fill: int = 0x7F
    dtmf_duration_ms: int = 100
    local_interfaces: List[str] = []

    @field_validator("audio_fill")
    @classmethod
    def _check_fill(cls, value: int) -> int:
        if not 0 <= value <= 0xFF:
            raise ValueError("audio_fill must be a single byte")
        return value

    @field_validator("default_transport")
    @classmethod
    def _check_transport(cls, value: str) -> str:
        value = value.upper()
        if value != "UDP":
            raise ValueError(f"Unsupported SIP transport {value}")
        return value

    @model_validator(mode="after")
    def _check_port_range(self) -> ClientParams:
        lo, hi = self.rtp_port_range
        if lo > hi:
            raise ValueError("rtp_port_range start must not exceed end")
        return self
