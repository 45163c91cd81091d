#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""G.711 mu-law (PCMU) conversion for recorded prompts and received media.

The RTP session itself only moves PCMU bytes. These helpers sit at the edges:
turning linear PCM16 prompts into PCMU before they are queued, and turning
received PCMU payloads back into PCM16 for listeners that want linear audio.
"""

from __future__ import annotations

import numpy as np

# mu-law constants
_BIAS = 0x84
_CLIP = 32635
_EXP_LUT = np.array([0, 132, 396, 924, 1980, 4092, 8316, 16764], dtype=np.int16)

SAMPLE_RATE = 8000


def _build_encode_lut() -> np.ndarray:
    """Encode table indexed by an int16 sample viewed as uint16."""
    samples = np.arange(65536, dtype=np.uint16).view(np.int16).astype(np.int32)
    sign = np.where(samples < 0, 0x80, 0)
    magnitude = np.minimum(np.abs(samples), _CLIP) + _BIAS
    # Position of the highest set bit, 7..14 after biasing.
    exponent = np.frexp(magnitude)[1] - 8
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return (~(sign | (exponent << 4) | mantissa) & 0xFF).astype(np.uint8)


def _build_decode_lut() -> np.ndarray:
    """Decode table: mu-law byte -> int16 sample."""
    inverted = ~np.arange(256, dtype=np.int32) & 0xFF
    exponent = (inverted >> 4) & 0x07
    mantissa = inverted & 0x0F
    magnitude = _EXP_LUT[exponent].astype(np.int32) + (mantissa << (exponent + 3))
    return np.where(inverted & 0x80, -magnitude, magnitude).astype(np.int16)


class G711Codec:
    """G.711 mu-law codec with lazy-initialized LUT singleton."""

    _instance: G711Codec | None = None

    def __init__(self):
        """Initialize the codec by building encode and decode lookup tables."""
        self._encode_lut = _build_encode_lut()
        self._decode_lut = _build_decode_lut()

    @classmethod
    def get_instance(cls) -> G711Codec:
        """Get or create the singleton codec instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def encode(self, pcm: np.ndarray) -> np.ndarray:
        """Encode int16 PCM samples to mu-law bytes."""
        indices = pcm.astype(np.int16, copy=False).view(np.uint16)
        return self._encode_lut[indices]

    def decode(self, ulaw: np.ndarray) -> np.ndarray:
        """Decode mu-law bytes to int16 PCM samples."""
        return self._decode_lut[ulaw]


def resample_up(samples: np.ndarray, factor: int) -> np.ndarray:
    """Upsample by integer factor using linear interpolation.

    Args:
        samples: Input int16 PCM samples.
        factor: Upsampling factor (e.g. 2 for 8kHz -> 16kHz).

    Returns:
        Upsampled int16 PCM array.
    """
    if len(samples) == 0:
        return np.array([], dtype=np.int16)
    indices = np.arange(len(samples) * factor, dtype=np.float64) / factor
    result = np.interp(indices, np.arange(len(samples)), samples.astype(np.float64))
    return np.clip(result, -32768, 32767).astype(np.int16)


def resample_down(samples: np.ndarray, factor: int) -> np.ndarray:
    """Downsample by integer factor with moving-average anti-alias filter.

    Args:
        samples: Input int16 PCM samples.
        factor: Downsampling factor (e.g. 2 for 16kHz -> 8kHz).

    Returns:
        Downsampled int16 PCM array.
    """
    if len(samples) == 0:
        return np.array([], dtype=np.int16)
    pad = factor - 1
    sig = samples.astype(np.float32)
    padded = np.pad(sig, (pad, pad), mode="edge")
    kernel = np.ones(factor, dtype=np.float32) / factor
    filtered = np.convolve(padded, kernel, mode="same")
    filtered = filtered[pad : pad + len(sig)]
    decimated = filtered[::factor]
    return np.clip(decimated, -32768, 32767).astype(np.int16)


def _rate_factor(sample_rate: int) -> int:
    if sample_rate % SAMPLE_RATE:
        raise ValueError(f"Unsupported sample rate {sample_rate}")
    return sample_rate // SAMPLE_RATE


def pcm_to_pcmu(pcm: bytes | np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Convert linear PCM16 audio to 8 kHz PCMU bytes.

    Args:
        pcm: Raw little-endian PCM16 bytes or an int16 array.
        sample_rate: Input rate; must be a multiple of 8000.

    Returns:
        PCMU bytes, one per 8 kHz sample.
    """
    if isinstance(pcm, (bytes, bytearray, memoryview)):
        pcm = np.frombuffer(pcm, dtype=np.int16)
    factor = _rate_factor(sample_rate)
    if factor > 1:
        pcm = resample_down(pcm, factor=factor)
    return G711Codec.get_instance().encode(pcm).tobytes()


def pcmu_to_pcm(payload: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Convert a PCMU payload to PCM16 bytes at the requested rate."""
    ulaw = np.frombuffer(payload, dtype=np.uint8)
    pcm = G711Codec.get_instance().decode(ulaw)
    factor = _rate_factor(sample_rate)
    if factor > 1:
        pcm = resample_up(pcm, factor=factor)
    return pcm.tobytes()
