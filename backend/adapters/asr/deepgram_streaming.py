"""
Deepgram live transcription engine.

Core model:
- One Deepgram WebSocket connection == one EngineSession.
- Audio goes out as binary frames (linear16 at the device sample rate), one
  call party per connection.
- Recognition comes back as `Results` JSON messages; everything else
  (Metadata, SpeechStarted, UtteranceEnd) is ignored.
- Finalize / CloseStream control messages flush the server-side hypothesis
  and end the stream cleanly.

Limits:
- Deepgram closes a connection that has received no audio for ~10s with
  close reason NET-0001. That close is reported as EngineLimitExceeded so
  the stream adapter restarts instead of counting a failure.

Design constraints:
- No reconnects here (see adapters.asr.stream).
- No knowledge of call parties, sessions or the delivery channel.
"""

from __future__ import annotations

import asyncio
import json
import urllib.parse
from collections.abc import AsyncIterator
from typing import Any

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.legacy.client import (
    connect as ws_connect,
    WebSocketClientProtocol,
)

from adapters.asr.base import EngineResult, EngineSession, TranscriptionEngine
from constants import (
    AUDIO_SAMPLE_RATE_HZ,
    DEEPGRAM_IDLE_TIMEOUT_REASON,
    DEEPGRAM_LISTEN_URL,
    DEEPGRAM_MAX_MESSAGE_BYTES,
    PAYLOAD_PREVIEW_CHARS,
)
from errors import EngineConnectError, EngineError, EngineLimitExceeded
from observability.logger import log_event


def parse_result(data: dict[str, Any]) -> EngineResult | None:
    """
    Convert one Deepgram message into an EngineResult.

    Returns None for message types that carry no transcript.
    """
    if data.get("type") != "Results":
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None

    best = alternatives[0]
    raw_text = best.get("transcript")
    text = raw_text.strip() if isinstance(raw_text, str) else ""

    return EngineResult(
        text=text,
        is_final=bool(data.get("is_final", False)),
        confidence=float(best.get("confidence") or 0.0),
        start_s=float(data.get("start") or 0.0),
    )


def map_close(exc: ConnectionClosed) -> EngineError:
    """Classify a closed connection as an engine limit or a transport failure."""
    frame = exc.rcvd
    reason = frame.reason if frame is not None else ""
    if DEEPGRAM_IDLE_TIMEOUT_REASON in reason:
        return EngineLimitExceeded(f"deepgram closed the stream: {reason}")
    code = frame.code if frame is not None else None
    return EngineConnectError(f"deepgram connection closed (code={code}, reason={reason!r})")


class DeepgramSession(EngineSession):
    """One live Deepgram WebSocket connection."""

    def __init__(self, ws: WebSocketClientProtocol) -> None:
        self._ws = ws
        self._finalized = False
        self._closed = False

    async def send_audio(self, pcm_bytes: bytes) -> None:
        try:
            await self._ws.send(pcm_bytes)
        except ConnectionClosed as e:
            raise map_close(e) from e
        except OSError as e:
            raise EngineConnectError(f"deepgram send failed: {e!r}") from e

    async def results(self) -> AsyncIterator[EngineResult]:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    data = json.loads(raw)
                except ValueError:
                    log_event({
                        "event_type": "DEEPGRAM_BAD_MESSAGE",
                        "payload_preview": raw[:PAYLOAD_PREVIEW_CHARS],
                    })
                    continue

                result = parse_result(data)
                if result is not None:
                    yield result
        except ConnectionClosed as e:
            raise map_close(e) from e
        except OSError as e:
            raise EngineConnectError(f"deepgram receive failed: {e!r}") from e

    async def finalize(self) -> None:
        if self._finalized or self._closed:
            return
        self._finalized = True
        try:
            await self._ws.send(json.dumps({"type": "Finalize"}))
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        except (ConnectionClosed, OSError):
            # Nothing left to flush on a dead connection
            return

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except (WebSocketException, OSError):
            return


class DeepgramEngine(TranscriptionEngine):
    """
    Opens Deepgram live sessions for mono PCM16 audio.

    One engine instance is shared by every stream adapter in the process;
    it holds configuration only.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        language: str | None = None,
        sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
        punctuate: bool = True,
        interim_results: bool = True,
        smart_format: bool = False,
        connect_timeout_s: float = 5.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._sample_rate_hz = sample_rate_hz
        self._punctuate = punctuate
        self._interim_results = interim_results
        self._smart_format = smart_format
        self._connect_timeout_s = connect_timeout_s

    def build_url(self, *, channels: int = 1) -> str:
        params: dict[str, str] = {
            "model": self._model,
            "encoding": "linear16",
            "sample_rate": str(self._sample_rate_hz),
            "channels": str(channels),
            "interim_results": str(self._interim_results).lower(),
            "punctuate": str(self._punctuate).lower(),
            "smart_format": str(self._smart_format).lower(),
        }
        if self._language:
            params["language"] = self._language

        qs = urllib.parse.urlencode(params)
        return f"{DEEPGRAM_LISTEN_URL}?{qs}"

    async def open_session(self, *, channels: int = 1) -> DeepgramSession:
        if not self._api_key:
            raise EngineConnectError("DEEPGRAM_API_KEY is not configured")

        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            ws = await asyncio.wait_for(
                ws_connect(
                    self.build_url(channels=channels),
                    extra_headers=headers,
                    max_size=DEEPGRAM_MAX_MESSAGE_BYTES,
                    ping_interval=None,
                ),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise EngineConnectError(
                f"deepgram connect timed out after {self._connect_timeout_s}s"
            ) from e
        except (WebSocketException, OSError) as e:
            raise EngineConnectError(f"deepgram connect failed: {e!r}") from e

        return DeepgramSession(ws)
