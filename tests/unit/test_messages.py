# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest

from audio.frames import Channel
from errors import ProtocolError
from protocol.messages import (
    RequestAssistance,
    StartSession,
    StopSession,
    parse_control,
    session_error_message,
    transcript_message,
)
from session.events import TranscriptEvent


# ---------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------

def test_start_session_fields_are_optional():
    assert parse_control(json.dumps({"type": "start-session"})) == StartSession()


def test_start_session_with_everything():
    msg = parse_control(json.dumps({
        "type": "start-session",
        "sessionId": "call_1",
        "mode": "sales",
        "leadId": "lead_9",
    }))

    assert msg == StartSession(session_id="call_1", mode="sales", lead_id="lead_9")


def test_stop_session_requires_id():
    assert parse_control('{"type": "stop-session", "sessionId": "call_1"}') == StopSession("call_1")

    with pytest.raises(ProtocolError):
        parse_control('{"type": "stop-session"}')


def test_request_assistance_requires_id():
    msg = parse_control('{"type": "request-assistance", "sessionId": "call_1"}')

    assert msg == RequestAssistance("call_1")

    with pytest.raises(ProtocolError):
        parse_control('{"type": "request-assistance", "sessionId": ""}')


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2]",
        '{"type": "mic-start"}',
        '{"type": "start-session", "mode": "support"}',
        '{"type": "start-session", "sessionId": 42}',
        '{"type": "start-session", "leadId": "  "}',
    ],
)
def test_malformed_control_raises_protocol_error(payload: str):
    with pytest.raises(ProtocolError):
        parse_control(payload)


# ---------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------

def test_transcript_message_shape():
    event = TranscriptEvent(
        event_id="counterparty-3",
        channel=Channel.COUNTERPARTY,
        text="ten units please",
        is_final=True,
        confidence=0.93,
        stream_ts_s=12.5,
    )

    assert transcript_message("call_1", event) == {
        "type": "transcript",
        "sessionId": "call_1",
        "id": "counterparty-3",
        "channel": "counterparty",
        "text": "ten units please",
        "isFinal": True,
        "confidence": 0.93,
        "timestamp": 12.5,
    }


def test_session_error_channel_is_optional():
    without = session_error_message("call_1", kind="device_busy", fatal=True, message="busy")
    with_channel = session_error_message(
        "call_1",
        kind="channel_degraded",
        fatal=False,
        message="engine down",
        channel=Channel.OPERATOR,
    )

    assert "channel" not in without
    assert with_channel["channel"] == "operator"
