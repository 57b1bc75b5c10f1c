# pylint: disable=missing-module-docstring,missing-function-docstring

import struct

import pytest

from audio.demux import ChannelDemultiplexer, ChannelGroup
from audio.frames import Channel
from config import DeviceConfig, DeviceMode
from errors import FrameAlignmentError


def stereo_demux() -> ChannelDemultiplexer:
    return ChannelDemultiplexer(
        frame_width=4,
        operator=ChannelGroup(offset=0, width=2),
        counterparty=ChannelGroup(offset=2, width=2),
    )


# ---------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------

def test_100_interleaved_frames_split_into_ordered_streams():
    op_samples = [struct.pack("<h", i) for i in range(100)]
    cp_samples = [struct.pack("<h", -i - 1) for i in range(100)]
    chunk = b"".join(o + c for o, c in zip(op_samples, cp_samples))

    op, cp = stereo_demux().split(chunk)

    assert len(op) == 200
    assert len(cp) == 200
    assert list(struct.unpack("<100h", op)) == list(range(100))
    assert list(struct.unpack("<100h", cp)) == [-i - 1 for i in range(100)]


def test_split_honors_group_order_in_frame():
    # Counterparty first in the frame, operator second
    demux = ChannelDemultiplexer(
        frame_width=4,
        operator=ChannelGroup(offset=2, width=2),
        counterparty=ChannelGroup(offset=0, width=2),
    )

    op, cp = demux.split(b"\x01\x02\x03\x04\x05\x06\x07\x08")

    assert op == b"\x03\x04\x07\x08"
    assert cp == b"\x01\x02\x05\x06"


def test_misaligned_chunk_raises():
    with pytest.raises(FrameAlignmentError):
        stereo_demux().split(b"\x00" * 6)


def test_empty_chunk_yields_empty_streams():
    assert stereo_demux().split(b"") == (b"", b"")


def test_demultiplex_tags_both_frames():
    op, cp = stereo_demux().demultiplex(sequence_num=7, chunk=b"\x01\x00\x02\x00", ts_ms=123)

    assert op.channel is Channel.OPERATOR
    assert cp.channel is Channel.COUNTERPARTY
    assert op.sequence_num == cp.sequence_num == 7
    assert op.pcm_bytes == b"\x01\x00"
    assert cp.pcm_bytes == b"\x02\x00"
    assert op.ts_ms == cp.ts_ms == 123


# ---------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------

def test_interleave_inverts_split_for_all_valid_layouts():
    for frame_width in (2, 4, 6, 8):
        chunk = bytes(i % 251 for i in range(frame_width * 50))
        for op_width in range(1, frame_width):
            cp_width = frame_width - op_width
            layouts = (
                (ChannelGroup(0, op_width), ChannelGroup(op_width, cp_width)),
                (ChannelGroup(cp_width, op_width), ChannelGroup(0, cp_width)),
            )
            for operator, counterparty in layouts:
                demux = ChannelDemultiplexer(
                    frame_width=frame_width,
                    operator=operator,
                    counterparty=counterparty,
                )
                assert demux.interleave(*demux.split(chunk)) == chunk


def test_interleave_rejects_mismatched_frame_counts():
    with pytest.raises(FrameAlignmentError):
        stereo_demux().interleave(b"\x00" * 4, b"\x00" * 2)


# ---------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------

def test_overlapping_groups_rejected():
    with pytest.raises(ValueError):
        ChannelDemultiplexer(
            frame_width=4,
            operator=ChannelGroup(0, 2),
            counterparty=ChannelGroup(1, 2),
        )


def test_groups_must_cover_frame():
    with pytest.raises(ValueError):
        ChannelDemultiplexer(
            frame_width=6,
            operator=ChannelGroup(0, 2),
            counterparty=ChannelGroup(2, 2),
        )


def test_from_device_config_uses_byte_offsets():
    config = DeviceConfig(
        mode=DeviceMode.AGGREGATE,
        device_name="Test Aggregate",
        channels=2,
        operator_channel=1,
        counterparty_channel=0,
    )

    demux = ChannelDemultiplexer.from_device_config(config)

    assert demux.frame_width == 4
    assert demux.operator == ChannelGroup(offset=2, width=2)
    assert demux.counterparty == ChannelGroup(offset=0, width=2)
