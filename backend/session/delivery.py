"""
Delivery channel: the push side of the client connection.

The session manager only ever sees the DeliveryChannel interface; the
WebSocket details stay here.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

from errors import DeliveryChannelLost
from observability.logger import log_event


class DeliveryChannel(ABC):
    """Ordered, serialized delivery of JSON messages to one client."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """
        Deliver one message.

        Raises:
            DeliveryChannelLost if the client is gone.
        """
        raise NotImplementedError


class WebSocketDeliveryChannel(DeliveryChannel):
    """
    FastAPI/Starlette WebSocket sink.

    Sends are serialized with a lock: several session tasks (transcript
    consumer, assistance tasks) push concurrently.
    """

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def mark_disconnected(self) -> None:
        self._connected = False

    async def send(self, message: dict[str, Any]) -> None:
        if not self._connected:
            raise DeliveryChannelLost("client connection is closed")

        async with self._lock:
            try:
                await self._ws.send_text(json.dumps(message, ensure_ascii=False))
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Starlette raises several unrelated types for a dead socket
                self._connected = False
                log_event({
                    "event_type": "WS_SEND_FAILED",
                    "message_type": message.get("type"),
                    "error": repr(e),
                })
                raise DeliveryChannelLost(f"send failed: {e!r}") from e
