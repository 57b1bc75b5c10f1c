"""
Channel demultiplexer for interleaved aggregate-device audio (pure).

An aggregate device delivers PCM as a sequence of interleaved frames of a
fixed byte width W. Each frame holds the operator channel group at one
byte offset and the counterparty group at another; the two groups cover
the whole frame.

Design:
- Pure functions only (no queues, no timing, no IO).
- Input that is not a whole number of frames is rejected, never padded or
  truncated: either would shift one channel against the other.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from audio.frames import AudioFrame, Channel
from config import DeviceConfig
from errors import FrameAlignmentError


@dataclass(frozen=True)
class ChannelGroup:
    """Byte range of one party's samples inside an interleaved frame."""
    offset: int
    width: int

    @property
    def end(self) -> int:
        return self.offset + self.width


class ChannelDemultiplexer:
    """
    Split interleaved frames into an operator stream and a counterparty
    stream.

    Stateless: the same instance may be shared by any number of sessions
    using the same device format.
    """

    def __init__(
        self,
        *,
        frame_width: int,
        operator: ChannelGroup,
        counterparty: ChannelGroup,
    ) -> None:
        if frame_width <= 0:
            raise ValueError("frame_width must be > 0")
        for name, group in (("operator", operator), ("counterparty", counterparty)):
            if group.offset < 0 or group.width <= 0 or group.end > frame_width:
                raise ValueError(f"{name} group {group} does not fit in frame width {frame_width}")
        if operator.offset < counterparty.end and counterparty.offset < operator.end:
            raise ValueError("operator and counterparty groups overlap")
        if operator.width + counterparty.width != frame_width:
            raise ValueError(
                f"channel groups ({operator.width}+{counterparty.width}) "
                f"must sum to frame width {frame_width}"
            )

        self.frame_width = frame_width
        self.operator = operator
        self.counterparty = counterparty

    @classmethod
    def from_device_config(cls, config: DeviceConfig) -> ChannelDemultiplexer:
        """Build the byte layout from a channel-level device description."""
        sw = config.sample_width_bytes
        return cls(
            frame_width=config.frame_width_bytes,
            operator=ChannelGroup(
                offset=config.operator_channel * sw,
                width=config.operator_channel_count * sw,
            ),
            counterparty=ChannelGroup(
                offset=config.counterparty_channel * sw,
                width=config.counterparty_channel_count * sw,
            ),
        )

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def split(self, chunk: bytes) -> tuple[bytes, bytes]:
        """
        De-interleave `chunk` into (operator_bytes, counterparty_bytes).

        Raises:
            FrameAlignmentError if len(chunk) is not a multiple of the
            frame width.
        """
        if len(chunk) % self.frame_width != 0:
            raise FrameAlignmentError(
                f"chunk of {len(chunk)} bytes is not a multiple of "
                f"frame width {self.frame_width}"
            )
        if not chunk:
            return b"", b""

        frames = np.frombuffer(chunk, dtype=np.uint8).reshape(-1, self.frame_width)
        op = frames[:, self.operator.offset:self.operator.end]
        cp = frames[:, self.counterparty.offset:self.counterparty.end]
        return op.tobytes(), cp.tobytes()

    def demultiplex(
        self,
        *,
        sequence_num: int,
        chunk: bytes,
        ts_ms: int,
    ) -> tuple[AudioFrame, AudioFrame]:
        """
        Split one captured chunk into an operator frame and a counterparty
        frame, both carrying the chunk's sequence number.
        """
        op_bytes, cp_bytes = self.split(chunk)
        return (
            AudioFrame(
                channel=Channel.OPERATOR,
                sequence_num=sequence_num,
                pcm_bytes=op_bytes,
                ts_ms=ts_ms,
            ),
            AudioFrame(
                channel=Channel.COUNTERPARTY,
                sequence_num=sequence_num,
                pcm_bytes=cp_bytes,
                ts_ms=ts_ms,
            ),
        )

    def interleave(self, operator_bytes: bytes, counterparty_bytes: bytes) -> bytes:
        """
        Inverse of split(): rebuild the interleaved byte stream.

        Raises:
            FrameAlignmentError if the inputs are not whole group widths or
            describe different frame counts.
        """
        if (
            len(operator_bytes) % self.operator.width != 0
            or len(counterparty_bytes) % self.counterparty.width != 0
        ):
            raise FrameAlignmentError("channel bytes are not a whole number of samples")

        n = len(operator_bytes) // self.operator.width
        if n != len(counterparty_bytes) // self.counterparty.width:
            raise FrameAlignmentError("operator and counterparty frame counts differ")

        out = np.empty((n, self.frame_width), dtype=np.uint8)
        out[:, self.operator.offset:self.operator.end] = np.frombuffer(
            operator_bytes, dtype=np.uint8
        ).reshape(n, self.operator.width)
        out[:, self.counterparty.offset:self.counterparty.end] = np.frombuffer(
            counterparty_bytes, dtype=np.uint8
        ).reshape(n, self.counterparty.width)
        return out.tobytes()
