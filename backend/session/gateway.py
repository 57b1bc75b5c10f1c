"""
Session gateway (one per client connection).

Responsibilities:
- Route inbound JSON control messages (start, stop, on-demand
  assistance) to the call session manager
- Reply to malformed or failed control requests with a session-error
- Track which sessions this connection started and stop them when the
  connection drops

NOT responsible for:
- Session state transitions (see session.manager)
- Pushing transcripts/assistance (the manager does that through the
  delivery channel)
- Any audio handling
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from errors import AssistanceError, PipelineError, ProtocolError, SessionAlreadyActive, SessionNotFound
from observability.logger import log_event
from protocol.messages import (
    RequestAssistance,
    StartSession,
    StopSession,
    parse_control,
    session_error_message,
)
from constants import PAYLOAD_PREVIEW_CHARS
from session.delivery import WebSocketDeliveryChannel
from session.manager import STOP_REASON_CHANNEL_LOST, CallSessionManager


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayResult:
    """
    Return value for gateway boundary methods.

    outbound_json:
        Direct replies to send to the client, in order
    """
    outbound_json: tuple[dict[str, Any], ...] = ()


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one client connection (may start several calls over
    its lifetime, one after another or side by side).
    """

    def __init__(
        self,
        *,
        manager: CallSessionManager,
        channel: WebSocketDeliveryChannel,
    ) -> None:
        self._manager = manager
        self._channel = channel
        self.owned_sessions: set[str] = set()

    async def on_json_message(self, payload: str) -> GatewayResult:
        """Route one inbound text message."""
        try:
            message = parse_control(payload)
        except ProtocolError as e:
            log_event({
                "event_type": "CONTROL_MESSAGE_REJECTED",
                "error": str(e),
                "payload_preview": payload[:PAYLOAD_PREVIEW_CHARS],
            })
            return GatewayResult(outbound_json=(
                session_error_message(None, kind=e.kind, fatal=False, message=str(e)),
            ))

        if isinstance(message, StartSession):
            return await self._start(message)
        if isinstance(message, StopSession):
            return await self._stop(message)
        if isinstance(message, RequestAssistance):
            return self._request_assistance(message)
        return GatewayResult()

    async def on_ws_disconnect(self, reason: str | None = None) -> GatewayResult:
        """Called when the WebSocket disconnects; stops every owned session."""
        self._channel.mark_disconnected()

        log_event({
            "event_type": "WS_DISCONNECTED",
            "reason": reason,
            "owned_sessions": sorted(self.owned_sessions),
        })

        for session_id in sorted(self.owned_sessions):
            try:
                await self._manager.stop_session(session_id, reason=STOP_REASON_CHANNEL_LOST)
            except SessionNotFound:
                # Already stopped on its own (source failure, no healthy channel)
                continue
        self.owned_sessions.clear()
        return GatewayResult()

    # ------------------------------------------------------------------
    # Control handlers
    # ------------------------------------------------------------------

    async def _start(self, message: StartSession) -> GatewayResult:
        try:
            session = await self._manager.start_session(
                self._channel,
                session_id=message.session_id,
                mode=message.mode,
                lead_id=message.lead_id,
            )
        except PipelineError as e:
            # A conflicting ID opened nothing; the existing session keeps running
            return GatewayResult(outbound_json=(
                session_error_message(
                    message.session_id,
                    kind=e.kind,
                    fatal=not isinstance(e, SessionAlreadyActive),
                    message=str(e),
                ),
            ))

        self.owned_sessions.add(session.session_id)
        return GatewayResult()

    async def _stop(self, message: StopSession) -> GatewayResult:
        if message.session_id not in self.owned_sessions:
            return self._not_found(message.session_id)

        try:
            await self._manager.stop_session(message.session_id)
        except SessionNotFound:
            self.owned_sessions.discard(message.session_id)
            return self._not_found(message.session_id)

        self.owned_sessions.discard(message.session_id)
        return GatewayResult()

    def _request_assistance(self, message: RequestAssistance) -> GatewayResult:
        if message.session_id not in self.owned_sessions:
            return self._not_found(message.session_id)

        try:
            self._manager.request_assistance(message.session_id)
        except SessionNotFound:
            return self._not_found(message.session_id)
        except AssistanceError as e:
            return GatewayResult(outbound_json=(
                session_error_message(
                    message.session_id,
                    kind=e.kind,
                    fatal=False,
                    message=str(e),
                ),
            ))
        return GatewayResult()

    @staticmethod
    def _not_found(session_id: str) -> GatewayResult:
        return GatewayResult(outbound_json=(
            session_error_message(
                session_id,
                kind=SessionNotFound.kind,
                fatal=False,
                message=f"no active session {session_id!r} on this connection",
            ),
        ))
