#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SIP/RTP test client.

Places outbound SIP calls against a telephony server, streams PCMU audio and
RFC 4733 DTMF over RTP, and reports inbound media, digits and call progress
through event handlers.
"""

from siptestclient.auth import AuthChallengeUnsupported
from siptestclient.call import (
    AuthRetryExceeded,
    Call,
    CallError,
    CallState,
    DialogFailure,
)
from siptestclient.client import SIPTestClient
from siptestclient.params import ClientParams
from siptestclient.ports import PortExhausted, RTPPortPool
from siptestclient.rtp import RTPSession

__all__ = [
    "AuthChallengeUnsupported",
    "AuthRetryExceeded",
    "Call",
    "CallError",
    "CallState",
    "ClientParams",
    "DialogFailure",
    "PortExhausted",
    "RTPPortPool",
    "RTPSession",
    "SIPTestClient",
]
