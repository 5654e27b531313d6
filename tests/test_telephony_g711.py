from __future__ import annotations

import numpy as np

from telephony.g711 import mix_pcm16, pcm16_resample, ulaw_decode, ulaw_encode


def test_ulaw_encode_decode_shape_and_types() -> None:
    # 20ms of 8kHz samples
    pcm = (np.sin(np.linspace(0, 2 * np.pi, 160, endpoint=False)) * 12000).astype(np.int16)

    ulaw = ulaw_encode(pcm)
    assert isinstance(ulaw, bytes | bytearray)
    assert len(ulaw) == pcm.size

    decoded = ulaw_decode(ulaw)
    assert decoded.dtype == np.int16
    assert decoded.shape == pcm.shape


def test_ulaw_silence_byte_is_zero() -> None:
    assert ulaw_encode(np.zeros(4, dtype=np.int16)) == b"\xff" * 4
    assert int(np.max(np.abs(ulaw_decode(b"\xff" * 160)))) == 0


def test_ulaw_round_trip_error_is_bounded() -> None:
    pcm = (np.sin(np.linspace(0, 4 * np.pi, 320, endpoint=False)) * 20000).astype(np.int16)
    decoded = ulaw_decode(ulaw_encode(pcm))

    # Mu-law quantization error grows with amplitude but stays within a few percent.
    error = np.abs(decoded.astype(np.int32) - pcm.astype(np.int32))
    assert int(error.max()) <= 1100


def test_ulaw_encode_preserves_sign_and_clips_extremes() -> None:
    decoded = ulaw_decode(ulaw_encode(np.array([32767, -32768, 1000, -1000], dtype=np.int16)))

    assert decoded[0] > 30000
    assert decoded[1] < -30000
    assert decoded[2] > 0
    assert decoded[3] < 0


def test_resample_changes_length() -> None:
    pcm = np.zeros(8000, dtype=np.int16)
    out = pcm16_resample(pcm, 8000, 16000)
    assert out.shape[0] == 16000


def test_resample_same_rate_is_identity() -> None:
    pcm = np.arange(10, dtype=np.int16)
    assert pcm16_resample(pcm, 8000, 8000) is pcm


def test_mix_pcm16_clips_instead_of_wrapping() -> None:
    a = np.array([30000, -30000, 100], dtype=np.int16)
    b = np.array([10000, -10000, 50], dtype=np.int16)

    mixed = mix_pcm16(a, b)

    assert mixed.dtype == np.int16
    assert mixed.tolist() == [32767, -32768, 150]
