#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Tests for G.711 PCMU conversion used by play_pcm and inbound audio."""

import numpy as np
import pytest

from siptestclient.codecs import G711Codec, pcm_to_pcmu, pcmu_to_pcm, resample_down, resample_up


class TestG711Codec:
    def test_silence_encodes_to_0xff(self):
        """Linear zero is mu-law 0xFF."""
        encoded = G711Codec.get_instance().encode(np.zeros(160, dtype=np.int16))
        assert encoded.dtype == np.uint8
        assert np.all(encoded == 0xFF)

    def test_fill_byte_decodes_to_zero(self):
        """The default fill byte 0x7F is (negative) zero."""
        decoded = G711Codec.get_instance().decode(np.array([0x7F, 0xFF], dtype=np.uint8))
        assert list(decoded) == [0, 0]

    def test_every_code_reencodes(self):
        """Decoding then encoding reproduces every byte except negative zero."""
        codec = G711Codec.get_instance()
        ulaw = np.arange(256, dtype=np.uint8)
        again = codec.encode(codec.decode(ulaw))
        mask = ulaw != 0x7F
        assert np.array_equal(ulaw[mask], again[mask])

    def test_singleton(self):
        """get_instance returns the same object."""
        assert G711Codec.get_instance() is G711Codec.get_instance()


class TestPcmConversion:
    def test_pcm_to_pcmu_8k(self):
        """One PCMU byte per 8 kHz sample."""
        pcm = np.zeros(160, dtype=np.int16).tobytes()
        assert pcm_to_pcmu(pcm) == b"\xff" * 160

    def test_pcm_to_pcmu_16k(self):
        """16 kHz input is decimated to 8 kHz."""
        pcm = np.full(320, 1000, dtype=np.int16)
        encoded = pcm_to_pcmu(pcm, sample_rate=16000)
        assert len(encoded) == 160
        assert len(set(encoded)) == 1

    def test_pcmu_to_pcm_24k(self):
        """Decoding to 24 kHz triples the sample count."""
        pcm = pcmu_to_pcm(b"\xff" * 160, sample_rate=24000)
        samples = np.frombuffer(pcm, dtype=np.int16)
        assert len(samples) == 480
        assert np.all(samples == 0)

    def test_conversion_approximates_input(self):
        """PCM survives PCMU encoding within quantization error."""
        original = np.linspace(-16000, 16000, 160).astype(np.int16)
        decoded = np.frombuffer(pcmu_to_pcm(pcm_to_pcmu(original)), dtype=np.int16)
        assert np.max(np.abs(original.astype(np.int32) - decoded.astype(np.int32))) < 1000

    @pytest.mark.parametrize("rate", [11025, 44100])
    def test_unsupported_rate(self, rate):
        """Only multiples of 8 kHz are supported."""
        with pytest.raises(ValueError):
            pcm_to_pcmu(b"\x00\x00", sample_rate=rate)


class TestResample:
    def test_up_preserves_dc(self):
        """A constant signal stays constant when upsampled."""
        result = resample_up(np.full(160, 1000, dtype=np.int16), factor=2)
        assert len(result) == 320
        assert np.all(result == 1000)

    def test_down_length(self):
        """Downsampling by 3 keeps every third sample."""
        result = resample_down(np.zeros(480, dtype=np.int16), factor=3)
        assert len(result) == 160
        assert result.dtype == np.int16

    def test_empty(self):
        """Empty input stays empty."""
        assert len(resample_up(np.array([], dtype=np.int16), factor=2)) == 0
        assert len(resample_down(np.array([], dtype=np.int16), factor=2)) == 0
