"""
Route registration for the live call API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire gateway to WebSocket lifecycle
- Pull dependencies from app.state
"""

from __future__ import annotations

from typing import Any

from fastapi import WebSocket, WebSocketDisconnect, FastAPI
from starlette.concurrency import run_in_threadpool

from audio.sources import is_device_available, list_input_devices
from errors import DeliveryChannelLost
from observability.logger import log_event
from session.delivery import WebSocketDeliveryChannel
from session.gateway import SessionGateway, GatewayResult
from session.manager import CallSessionManager


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        manager: CallSessionManager = app.state.manager
        return {"status": "ok", "activeSessions": manager.active_count}

    @app.get("/devices")
    async def devices() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        manager: CallSessionManager = app.state.manager
        device_config = app.state.device_config
        # Opening a PortAudio stream blocks; keep it off the event loop
        available = await run_in_threadpool(
            is_device_available, device_config, leases=manager.leases
        )
        inputs = await run_in_threadpool(list_input_devices)
        return {
            "device": device_config.device_name,
            "mode": device_config.mode.value,
            "channels": device_config.channels,
            "available": available,
            "inUse": manager.leases.is_held(device_config.device_name),
            "inputs": inputs,
        }

    @app.websocket("/ws/calls")
    async def calls_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        channel = WebSocketDeliveryChannel(ws)
        gateway = SessionGateway(manager=app.state.manager, channel=channel)

        try:
            while True:
                payload = await ws.receive_text()
                result = await gateway.on_json_message(payload)
                await _flush_gateway_result(channel, result)

        except (WebSocketDisconnect, DeliveryChannelLost):
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "owned_sessions": sorted(gateway.owned_sessions),
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_ws_disconnect(reason="server_error")


async def _flush_gateway_result(
    channel: WebSocketDeliveryChannel,
    result: GatewayResult,
) -> None:
    for msg in result.outbound_json:
        await channel.send(msg)
