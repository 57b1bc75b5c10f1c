# pylint: disable=missing-module-docstring,missing-function-docstring

from audio.sequence import check_sequence_gap


def test_first_frame_is_never_a_gap():
    assert not check_sequence_gap(last_seq=None, current_seq=42).gap


def test_consecutive_frames():
    result = check_sequence_gap(last_seq=4, current_seq=5)

    assert not result.gap
    assert result.gap_size == 0


def test_skipped_frames_reported():
    result = check_sequence_gap(last_seq=4, current_seq=8)

    assert result.gap
    assert result.expected == 5
    assert result.gap_size == 3
    assert not result.reordered


def test_repeated_frame_is_reordered():
    result = check_sequence_gap(last_seq=4, current_seq=4)

    assert result.gap
    assert result.reordered
