"""Audio frame primitives shared by the codec and both relays."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AudioEncoding(str, Enum):
    """Audio formats, named after the voice-AI backend's format identifiers."""

    ULAW_8000 = "ulaw_8000"
    PCM_8000 = "pcm_8000"
    PCM_16000 = "pcm_16000"
    PCM_22050 = "pcm_22050"
    PCM_24000 = "pcm_24000"
    PCM_44100 = "pcm_44100"

    @property
    def sample_rate(self) -> int:
        return int(self.value.split("_", 1)[1])

    @property
    def sample_width(self) -> int:
        return 1 if self is AudioEncoding.ULAW_8000 else 2

    @property
    def is_ulaw(self) -> bool:
        return self is AudioEncoding.ULAW_8000

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.sample_width

    @property
    def tag(self) -> int:
        """One-byte identifier used by the binary frame layouts."""
        return _TAGS[self]

    @classmethod
    def from_tag(cls, tag: int) -> AudioEncoding:
        try:
            return _ENCODINGS_BY_TAG[tag]
        except KeyError:
            raise ValueError(f"Unknown encoding tag: {tag}") from None

    def bytes_for(self, duration_ms: int) -> int:
        return self.bytes_per_second * duration_ms // 1000


_TAGS: dict[AudioEncoding, int] = {encoding: index for index, encoding in enumerate(AudioEncoding)}
_ENCODINGS_BY_TAG: dict[int, AudioEncoding] = {tag: encoding for encoding, tag in _TAGS.items()}


@dataclass(frozen=True, slots=True)
class Frame:
    """One immutable chunk of audio with its position in a stream.

    sequence:
        Monotonic within one direction of one session.

    timestamp_ms:
        Media timestamp relative to the start of the stream.
    """

    payload: bytes
    sequence: int
    encoding: AudioEncoding
    timestamp_ms: int = 0

    @property
    def duration_s(self) -> float:
        """Playback duration declared by the payload size and encoding."""
        return len(self.payload) / self.encoding.bytes_per_second
