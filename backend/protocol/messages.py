"""
Delivery-channel JSON protocol.

Inbound (client -> server) control messages:

    {"type": "start-session", "sessionId"?: str, "mode"?: "sales"|"vendor", "leadId"?: str}
    {"type": "stop-session", "sessionId": str}
    {"type": "request-assistance", "sessionId": str}

Outbound (server -> client) messages are plain dicts built here so the
wire field names live in exactly one place.

Rules:
- Pure functions only (no IO, no session state)
- Malformed input raises ProtocolError, never KeyError/TypeError
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from audio.frames import Channel
from errors import ProtocolError
from session.events import TranscriptEvent

CALL_MODES: tuple[str, ...] = ("sales", "vendor")

MSG_START_SESSION = "start-session"
MSG_STOP_SESSION = "stop-session"
MSG_REQUEST_ASSISTANCE = "request-assistance"


# ---------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StartSession:
    session_id: Optional[str] = None
    mode: Optional[str] = None
    lead_id: Optional[str] = None


@dataclass(frozen=True)
class StopSession:
    session_id: str


@dataclass(frozen=True)
class RequestAssistance:
    """Operator asks for a suggestion over the transcript so far."""
    session_id: str


ControlMessage = Union[StartSession, StopSession, RequestAssistance]


def _optional_str(data: dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"'{key}' must be a non-empty string")
    return value


def parse_control(payload: str) -> ControlMessage:
    """
    Decode one inbound text message.

    Raises:
        ProtocolError
    """
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise ProtocolError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("control message must be a JSON object")

    msg_type = data.get("type")

    if msg_type == MSG_START_SESSION:
        mode = _optional_str(data, "mode")
        if mode is not None and mode not in CALL_MODES:
            raise ProtocolError(f"unknown mode {mode!r} (expected one of {CALL_MODES})")
        return StartSession(
            session_id=_optional_str(data, "sessionId"),
            mode=mode,
            lead_id=_optional_str(data, "leadId"),
        )

    if msg_type == MSG_STOP_SESSION:
        session_id = _optional_str(data, "sessionId")
        if session_id is None:
            raise ProtocolError("stop-session requires 'sessionId'")
        return StopSession(session_id=session_id)

    if msg_type == MSG_REQUEST_ASSISTANCE:
        session_id = _optional_str(data, "sessionId")
        if session_id is None:
            raise ProtocolError("request-assistance requires 'sessionId'")
        return RequestAssistance(session_id=session_id)

    raise ProtocolError(f"unknown message type {msg_type!r}")


# ---------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------

def transcript_message(session_id: str, event: TranscriptEvent) -> dict[str, Any]:
    return {
        "type": "transcript",
        "sessionId": session_id,
        "id": event.event_id,
        "channel": event.channel.value,
        "text": event.text,
        "isFinal": event.is_final,
        "confidence": event.confidence,
        "timestamp": event.stream_ts_s,
    }


def assistance_message(
    session_id: str,
    *,
    correlates_with: str,
    text: str,
    next_action: str,
    confidence: str,
) -> dict[str, Any]:
    return {
        "type": "assistance",
        "sessionId": session_id,
        "correlatesWith": correlates_with,
        "text": text,
        "nextAction": next_action,
        "confidence": confidence,
    }


def session_error_message(
    session_id: Optional[str],
    *,
    kind: str,
    fatal: bool,
    message: str,
    channel: Optional[Channel] = None,
) -> dict[str, Any]:
    msg: dict[str, Any] = {
        "type": "session-error",
        "sessionId": session_id,
        "kind": kind,
        "fatal": fatal,
        "message": message,
    }
    if channel is not None:
        msg["channel"] = channel.value
    return msg


def session_started_message(
    session_id: str,
    *,
    mode: str,
    channels: tuple[Channel, ...],
) -> dict[str, Any]:
    return {
        "type": "session-started",
        "sessionId": session_id,
        "mode": mode,
        "channels": [c.value for c in channels],
    }


def session_stopped_message(session_id: str, *, reason: str) -> dict[str, Any]:
    return {
        "type": "session-stopped",
        "sessionId": session_id,
        "reason": reason,
    }


def stream_restarted_message(session_id: str, *, channel: Channel, reason: str) -> dict[str, Any]:
    return {
        "type": "stream-restarted",
        "sessionId": session_id,
        "channel": channel.value,
        "reason": reason,
    }
