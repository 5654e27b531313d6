from __future__ import annotations

import numpy as np

_BIAS = 0x84
_CLIP = 32635


def _build_decode_table() -> np.ndarray:
    mu = np.bitwise_not(np.arange(256, dtype=np.uint8)).astype(np.int32)
    sign = mu & 0x80
    exponent = (mu & 0x70) >> 4
    mantissa = mu & 0x0F

    magnitude = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


def _build_encode_table() -> np.ndarray:
    # Indexed by the 14-bit linear value (sample >> 2) offset by 8192.
    sample = (np.arange(16384, dtype=np.int32) - 8192) << 2
    sign = np.where(sample < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(sample), _CLIP) + _BIAS

    exponent = np.zeros_like(magnitude)
    for exp in range(1, 8):
        exponent = np.where(magnitude >= (0x80 << exp), exp, exponent)

    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return np.bitwise_not(sign | (exponent << 4) | mantissa).astype(np.uint8)


_ULAW_TO_LINEAR = _build_decode_table()
_LINEAR_TO_ULAW = _build_encode_table()


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to a PCM16 int16 array via lookup table."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _ULAW_TO_LINEAR[data]


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode a PCM16 int16 array to G.711 mu-law bytes via lookup table."""

    if pcm16.size == 0:
        return b""

    index = (pcm16.astype(np.int32) >> 2) + 8192
    np.clip(index, 0, 16383, out=index)
    return _LINEAR_TO_ULAW[index].tobytes()


def pcm16_resample(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate:
        return pcm
    if pcm.size == 0:
        return pcm.astype(np.int16)

    x_old = np.arange(pcm.size, dtype=np.float32)
    x_new = np.linspace(0, pcm.size - 1, int(pcm.size * dst_rate / src_rate), dtype=np.float32)

    y_old = pcm.astype(np.float32)
    y_new = np.interp(x_new, x_old, y_old)

    return np.clip(y_new, -32768, 32767).astype(np.int16)


def mix_pcm16(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Add two equal-length PCM16 signals with hard clipping to int16."""

    mixed = a.astype(np.int32) + b.astype(np.int32)
    return np.clip(mixed, -32768, 32767).astype(np.int16)
