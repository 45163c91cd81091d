#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""SIP smoke test

Checks that a telephony server answers OPTIONS, places a call, waits for
inbound audio, optionally plays a PCMU file and some DTMF, then hangs up.

Requirements:
    pip install -e .

Environment variables:
    HOST: Server as host[:port] (required)
    SIP_USER: Digest username, if the server challenges
    PASSWORD: Digest password
    TO_USER: Extension to dial (default: test)
    FROM_USER: Our user part (default: tester)
    AUDIO_FILE: Raw 8 kHz PCMU file to play after answer
    DIGITS: DTMF digits to send after answer
    SIP_PORT: Local SIP port (default: 7060)
"""

import asyncio
import logging
import os
import sys

from siptestclient import ClientParams, SIPTestClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> int:
    host = os.getenv("HOST")
    if not host:
        logger.error("HOST is not set")
        return 2
    address, _, port = host.partition(":")
    sip_port = int(port or "5060")

    params = ClientParams(
        sip_listen_port=int(os.getenv("SIP_PORT", "7060")),
        rtp_port_range=(10000, 11000),
    )
    client = SIPTestClient(params)
    await client.start()

    try:
        response = await client.verify_peer(address, sip_port)
        if response.status_code == 408:
            logger.error("%s did not answer OPTIONS", host)
            return 1
        logger.info("Peer answered OPTIONS with %d", response.status_code)

        call = client.start_call(
            os.getenv("FROM_USER", "tester"),
            os.getenv("TO_USER", "test"),
            address,
            sip_port,
            username=os.getenv("SIP_USER"),
            password=os.getenv("PASSWORD"),
        )
        outcome = asyncio.get_running_loop().create_future()
        got_audio = asyncio.Event()
        hung_up = asyncio.Event()

        @call.event_handler("on_answer")
        async def on_answer(call, response):
            logger.info("Answered: %d %s", response.status_code, response.reason)
            if not outcome.done():
                outcome.set_result(True)

        @call.event_handler("on_fail")
        async def on_fail(call, error):
            logger.error("Call failed: %s", error)
            if not outcome.done():
                outcome.set_result(False)

        @call.event_handler("on_audio")
        async def on_audio(call, payload_type, payload):
            got_audio.set()

        @call.event_handler("on_dtmf_end")
        async def on_dtmf_end(call, digit, duration):
            logger.info("Peer sent DTMF %s (%d samples)", digit, duration)

        @call.event_handler("on_hangup")
        async def on_hangup(call, message):
            hung_up.set()

        if not await asyncio.wait_for(outcome, timeout=30):
            return 1

        await asyncio.wait_for(got_audio.wait(), timeout=5)
        logger.info("Receiving audio")

        audio_file = os.getenv("AUDIO_FILE")
        if audio_file:
            with open(audio_file, "rb") as f:
                await call.play_audio(f.read())
            logger.info("Finished playing %s", audio_file)

        digits = os.getenv("DIGITS")
        if digits:
            digits_sent = asyncio.Event()
            remaining = len(digits)

            @call.rtp.event_handler("on_dtmf_stopped")
            async def on_dtmf_stopped(session, digit, duration):
                nonlocal remaining
                remaining -= 1
                if remaining == 0:
                    digits_sent.set()

            call.send_dtmf(digits)
            await asyncio.wait_for(digits_sent.wait(), timeout=len(digits) + 5)
            logger.info("Sent DTMF %s", digits)

        await asyncio.sleep(0.5)
        call.hangup(16)
        await asyncio.wait_for(hung_up.wait(), timeout=10)
        logger.info("Call hung up")
        return 0
    finally:
        await client.stop()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
