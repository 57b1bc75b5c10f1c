"""
Per-channel sequence continuity checks.

Sequence numbers are assigned at capture and must be strictly increasing
and gap-free within a channel. A gap means audio was dropped somewhere
between the device and the transcription stream; it is logged, never
repaired.

Usage:

    result = check_sequence_gap(last_seq=prev, current_seq=frame.sequence_num)
    if result.gap:
        log_event({
            "event_type": "SEQ_GAP_DETECTED",
            "expected": result.expected,
            "actual": result.actual,
            "gap_size": result.gap_size,
        })
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SeqCheckResult:
    """
    Result of a sequence continuity check.
    """
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """Number of frames skipped (0 if none, negative if reordered)."""
        if not self.gap:
            return 0
        return self.actual - self.expected

    @property
    def reordered(self) -> bool:
        """True if the frame arrived at or behind an already-seen number."""
        return self.gap and self.actual < self.expected


def check_sequence_gap(
    *,
    last_seq: Optional[int],
    current_seq: int,
) -> SeqCheckResult:
    """
    Check whether `current_seq` directly follows `last_seq`.

    Pure function; never raises.
    """
    if last_seq is None or current_seq == last_seq + 1:
        return SeqCheckResult(gap=False, expected=current_seq, actual=current_seq)

    return SeqCheckResult(gap=True, expected=last_seq + 1, actual=current_seq)
