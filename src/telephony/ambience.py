"""Background ambience mixed into the audio the caller hears.

The track must be 8 kHz, 16-bit, mono linear PCM so it can be added
sample-for-sample to the telephony stream without resampling.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from telephony.frames import AudioEncoding, Frame
from telephony.g711 import mix_pcm16, ulaw_decode, ulaw_encode

LOGGER = logging.getLogger(__name__)

AMBIENCE_SAMPLE_RATE = 8000


def load_ambience_wav(path: Path) -> np.ndarray:
    """Load and validate an ambience track, returning its PCM16 samples.

    Raises:
        ValueError: if the file is not 8 kHz / 16-bit / mono PCM or has no audio.
    """

    try:
        with sf.SoundFile(str(path), mode="r") as f:
            channels = int(f.channels)
            sample_rate = int(f.samplerate)
            subtype = f.subtype
            pcm = f.read(dtype="int16")
    except RuntimeError as exc:
        # soundfile.LibsndfileError derives from RuntimeError.
        raise ValueError(f"Invalid ambience WAV {path}: {exc}") from exc

    LOGGER.info(
        "Ambience track %s: channels=%s rate=%s subtype=%s samples=%s",
        path,
        channels,
        sample_rate,
        subtype,
        len(pcm),
    )

    if channels != 1:
        raise ValueError("Ambience WAV must be mono")
    if sample_rate != AMBIENCE_SAMPLE_RATE:
        raise ValueError(f"Ambience WAV must be {AMBIENCE_SAMPLE_RATE} Hz")
    if subtype != "PCM_16":
        raise ValueError("Ambience WAV must be 16-bit linear PCM")
    if len(pcm) == 0:
        raise ValueError("Ambience WAV has no audio data")

    return np.asarray(pcm, dtype=np.int16).reshape(-1)


class AmbienceMixer:
    """Loops a background track and mixes it into mu-law frames.

    One mixer per session: it owns the playback cursor into the shared track.
    """

    def __init__(self, track: np.ndarray, *, gain: float = 0.3) -> None:
        if track.size == 0:
            raise ValueError("Ambience track is empty")
        self._track = (track.astype(np.float32) * gain).astype(np.int16)
        self._cursor = 0

    def next_chunk(self, samples: int) -> np.ndarray:
        """Return the next `samples` of the track, wrapping at the end."""

        indices = (np.arange(samples) + self._cursor) % self._track.size
        self._cursor = int((self._cursor + samples) % self._track.size)
        return self._track[indices]

    def mix(self, frame: Frame) -> Frame:
        if frame.encoding is not AudioEncoding.ULAW_8000:
            raise ValueError(f"Ambience mixes ulaw_8000 frames only, got {frame.encoding.value}")

        voice = ulaw_decode(frame.payload)
        mixed = mix_pcm16(voice, self.next_chunk(voice.size))
        return Frame(
            payload=ulaw_encode(mixed),
            sequence=frame.sequence,
            encoding=frame.encoding,
            timestamp_ms=frame.timestamp_ms,
        )
