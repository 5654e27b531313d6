"""Media frame codec.

Decodes caller audio from the telephony transport into `Frame` objects,
encodes frames for the caller, and transcodes between the telephony encoding
and the voice-AI backend's encoding.

Binary layouts (big-endian):

    fixed:
        u32 sequence | u32 timestamp_ms | u8 encoding tag | 3 reserved bytes
        payload: exactly `frame_ms` of audio for the tagged encoding

    length_prefixed:
        u32 sequence | u32 timestamp_ms | u8 encoding tag | u8 reserved | u16 length
        payload: exactly `length` bytes

Twilio Media Streams use framed JSON text with base64 mu-law payloads.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import replace
from enum import Enum
from typing import Any

import numpy as np

from integrations.twilio_streaming import StreamMessage, media_message, parse_stream_message
from relay.errors import MalformedFrame
from telephony.frames import AudioEncoding, Frame
from telephony.g711 import pcm16_resample, ulaw_decode, ulaw_encode

_FIXED_HEADER = struct.Struct(">IIB3x")
_PREFIXED_HEADER = struct.Struct(">IIBxH")

HEADER_BYTES = _FIXED_HEADER.size


class FrameLayout(str, Enum):
    TWILIO_JSON = "twilio_json"
    FIXED = "fixed"
    LENGTH_PREFIXED = "length_prefixed"


class FrameCodec:
    """Stateless codec for one telephony transport layout."""

    def __init__(
        self,
        layout: FrameLayout = FrameLayout.TWILIO_JSON,
        *,
        frame_ms: int = 20,
        twilio_encoding: AudioEncoding = AudioEncoding.ULAW_8000,
    ) -> None:
        self.layout = FrameLayout(layout)
        self.frame_ms = frame_ms
        self._twilio_encoding = twilio_encoding

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def decode_inbound(self, data: bytes | str) -> Frame:
        if self.layout is FrameLayout.TWILIO_JSON:
            return self.frame_from_media(parse_stream_message(data))

        if isinstance(data, str):
            raise MalformedFrame("Binary layout received a text message")
        if len(data) < HEADER_BYTES:
            raise MalformedFrame(f"Truncated header: {len(data)} < {HEADER_BYTES} bytes")

        if self.layout is FrameLayout.FIXED:
            sequence, timestamp_ms, tag = _FIXED_HEADER.unpack_from(data)
            encoding = self._encoding_for(tag)
            expected = encoding.bytes_for(self.frame_ms)
        else:
            sequence, timestamp_ms, tag, expected = _PREFIXED_HEADER.unpack_from(data)
            encoding = self._encoding_for(tag)

        payload = data[HEADER_BYTES:]
        if len(payload) != expected:
            raise MalformedFrame(f"Payload length {len(payload)} != {expected}")

        return Frame(payload=payload, sequence=sequence, encoding=encoding, timestamp_ms=timestamp_ms)

    def frame_from_media(self, message: StreamMessage) -> Frame:
        """Build a frame from an already-parsed Twilio `media` envelope."""

        if message.event != "media":
            raise MalformedFrame(f"Expected a media message, got {message.event!r}")

        media = message.body.get("media") or {}
        payload_b64 = media.get("payload")
        if not isinstance(payload_b64, str):
            raise MalformedFrame("Media message has no payload")
        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedFrame(f"Invalid base64 payload: {exc}") from exc

        try:
            timestamp_ms = int(media.get("timestamp") or 0)
        except (TypeError, ValueError) as exc:
            raise MalformedFrame(f"Invalid media timestamp: {media.get('timestamp')!r}") from exc

        sequence = message.sequence
        if sequence is None:
            sequence = _int_or_zero(media.get("chunk"))

        return Frame(
            payload=payload,
            sequence=sequence,
            encoding=self._twilio_encoding,
            timestamp_ms=timestamp_ms,
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def encode_outbound(self, frame: Frame, *, stream_sid: str | None = None) -> bytes | str:
        if self.layout is FrameLayout.TWILIO_JSON:
            return media_message(
                stream_sid=stream_sid,
                payload_b64=base64.b64encode(frame.payload).decode("ascii"),
                sequence=frame.sequence,
                timestamp_ms=frame.timestamp_ms,
            )

        if self.layout is FrameLayout.FIXED:
            expected = frame.encoding.bytes_for(self.frame_ms)
            if len(frame.payload) != expected:
                raise MalformedFrame(f"Payload length {len(frame.payload)} != {expected}")
            header = _FIXED_HEADER.pack(
                frame.sequence & 0xFFFFFFFF, frame.timestamp_ms & 0xFFFFFFFF, frame.encoding.tag
            )
        else:
            if len(frame.payload) > 0xFFFF:
                raise MalformedFrame(f"Payload too large for length prefix: {len(frame.payload)}")
            header = _PREFIXED_HEADER.pack(
                frame.sequence & 0xFFFFFFFF,
                frame.timestamp_ms & 0xFFFFFFFF,
                frame.encoding.tag,
                len(frame.payload),
            )
        return header + frame.payload

    # ------------------------------------------------------------------
    # Transcoding
    # ------------------------------------------------------------------

    @property
    def telephony_encoding(self) -> AudioEncoding:
        return self._twilio_encoding

    def packetize(self, frame: Frame, *, first_sequence: int) -> list[Frame]:
        """Split a frame into `frame_ms` chunks with consecutive sequence numbers.

        The last chunk may be shorter than `frame_ms`, except in the fixed
        layout where it is padded with silence.
        """

        chunk_bytes = frame.encoding.bytes_for(self.frame_ms)
        if chunk_bytes <= 0 or not frame.payload:
            return [replace(frame, sequence=first_sequence)]

        chunks: list[Frame] = []
        for index, offset in enumerate(range(0, len(frame.payload), chunk_bytes)):
            payload = frame.payload[offset : offset + chunk_bytes]
            if self.layout is FrameLayout.FIXED and len(payload) < chunk_bytes:
                payload += silence(frame.encoding, chunk_bytes - len(payload))
            chunks.append(
                Frame(
                    payload=payload,
                    sequence=first_sequence + index,
                    encoding=frame.encoding,
                    timestamp_ms=frame.timestamp_ms + index * self.frame_ms,
                )
            )
        return chunks

    def _encoding_for(self, tag: int) -> AudioEncoding:
        try:
            return AudioEncoding.from_tag(tag)
        except ValueError as exc:
            raise MalformedFrame(str(exc)) from exc


def silence(encoding: AudioEncoding, size: int) -> bytes:
    return (b"\xff" if encoding.is_ulaw else b"\x00") * size


def to_pcm16(frame: Frame) -> np.ndarray:
    if frame.encoding.is_ulaw:
        return ulaw_decode(frame.payload)
    usable = len(frame.payload) - (len(frame.payload) % 2)
    return np.frombuffer(frame.payload[:usable], dtype="<i2").astype(np.int16)


def from_pcm16(pcm: np.ndarray, encoding: AudioEncoding) -> bytes:
    if encoding.is_ulaw:
        return ulaw_encode(pcm)
    return pcm.astype("<i2").tobytes()


def transcode(frame: Frame, target: AudioEncoding) -> Frame:
    """Convert a frame to `target`, keeping its sequence number and timestamp."""

    if frame.encoding is target:
        return frame

    pcm = to_pcm16(frame)
    pcm = pcm16_resample(pcm, frame.encoding.sample_rate, target.sample_rate)
    return replace(frame, payload=from_pcm16(pcm, target), encoding=target)


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
