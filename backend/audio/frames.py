"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class Channel(str, Enum):
    """Which party of the call an audio stream or transcript belongs to."""

    OPERATOR = "operator"
    COUNTERPARTY = "counterparty"


@dataclass(frozen=True)
class AudioFrame:
    """
    Canonical mono audio frame used between the device and the
    transcription stream adapters.

    channel:
        Call party the audio belongs to.

    sequence_num:
        Monotonic per-channel sequence number assigned at capture.
        Used for gap detection and debugging only.

    pcm_bytes:
        Raw PCM16 little-endian mono bytes.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the chunk was captured.
        Observability only (not control logic).
    """
    channel: Channel
    sequence_num: int
    pcm_bytes: bytes
    ts_ms: int
