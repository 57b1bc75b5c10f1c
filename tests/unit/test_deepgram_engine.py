# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from adapters.asr.deepgram_streaming import DeepgramEngine, DeepgramSession, map_close, parse_result
from errors import EngineConnectError, EngineLimitExceeded


def results_message(text: str, *, is_final: bool, start: float = 0.0) -> dict[str, Any]:
    return {
        "type": "Results",
        "is_final": is_final,
        "start": start,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.87}]},
    }


class FakeDeepgramSocket:
    """Async-iterable stand-in for a websockets client connection."""

    def __init__(self, incoming: list[Any], *, error: Exception | None = None) -> None:
        self.incoming = incoming
        self.error = error
        self.sent: list[Any] = []
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.incoming:
            yield item
        if self.error is not None:
            raise self.error

    async def send(self, data: Any) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------
# Message parsing
# ---------------------------------------------------------------------

def test_parse_results_message():
    result = parse_result(results_message("  price for ten units ", is_final=True, start=3.25))

    assert result is not None
    assert result.text == "price for ten units"
    assert result.is_final
    assert result.confidence == pytest.approx(0.87)
    assert result.start_s == pytest.approx(3.25)


def test_non_results_messages_are_ignored():
    assert parse_result({"type": "Metadata", "request_id": "abc"}) is None
    assert parse_result({"type": "UtteranceEnd"}) is None
    assert parse_result({"type": "Results", "channel": {"alternatives": []}}) is None


def test_idle_close_is_an_engine_limit():
    exc = ConnectionClosedError(Close(1011, "NET-0001: no audio received"), None)

    assert isinstance(map_close(exc), EngineLimitExceeded)


def test_other_close_is_a_connect_error():
    exc = ConnectionClosedError(Close(1011, "internal error"), None)

    assert isinstance(map_close(exc), EngineConnectError)
    assert isinstance(map_close(ConnectionClosedError(None, None)), EngineConnectError)


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------

def test_session_yields_only_transcripts():
    ws = FakeDeepgramSocket([
        json.dumps({"type": "Metadata"}),
        b"\x00\x01",
        "{broken",
        json.dumps(results_message("hello", is_final=False)),
        json.dumps(results_message("hello there", is_final=True)),
    ])
    session = DeepgramSession(ws)  # type: ignore[arg-type]

    async def collect() -> list[Any]:
        return [r async for r in session.results()]

    results = asyncio.run(collect())

    assert [(r.text, r.is_final) for r in results] == [("hello", False), ("hello there", True)]


def test_session_maps_limit_close_while_reading():
    ws = FakeDeepgramSocket(
        [],
        error=ConnectionClosedError(Close(1011, "NET-0001"), None),
    )
    session = DeepgramSession(ws)  # type: ignore[arg-type]

    async def drain() -> None:
        async for _ in session.results():
            pass

    with pytest.raises(EngineLimitExceeded):
        asyncio.run(drain())


def test_finalize_flushes_then_closes_stream():
    ws = FakeDeepgramSocket([])
    session = DeepgramSession(ws)  # type: ignore[arg-type]

    async def scenario() -> None:
        await session.send_audio(b"\x00\x00")
        await session.finalize()
        await session.finalize()
        await session.close()
        await session.close()

    asyncio.run(scenario())

    assert ws.sent == [b"\x00\x00", '{"type": "Finalize"}', '{"type": "CloseStream"}']
    assert ws.closed


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

def test_build_url_describes_mono_linear16():
    engine = DeepgramEngine(api_key="key", model="nova-2-phonecall", language="en-US", sample_rate_hz=16000)

    url = urlparse(engine.build_url())
    params = {k: v[0] for k, v in parse_qs(url.query).items()}

    assert f"{url.scheme}://{url.netloc}{url.path}" == "wss://api.deepgram.com/v1/listen"
    assert params["model"] == "nova-2-phonecall"
    assert params["encoding"] == "linear16"
    assert params["sample_rate"] == "16000"
    assert params["channels"] == "1"
    assert params["interim_results"] == "true"
    assert params["language"] == "en-US"

    wide = parse_qs(urlparse(engine.build_url(channels=2)).query)
    assert wide["channels"] == ["2"]


def test_missing_api_key_is_a_connect_error():
    engine = DeepgramEngine(api_key=None, model="nova-2-phonecall")

    with pytest.raises(EngineConnectError):
        asyncio.run(engine.open_session())
