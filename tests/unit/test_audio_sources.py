# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any

import pytest

from audio.sources import (
    MAX_PENDING_CHUNKS,
    DeviceLeases,
    SoundDeviceSource,
    classify_device_error,
    is_device_available,
)
from config import DeviceConfig, DeviceMode
from errors import DeviceBusy, DeviceDisconnected, DeviceUnavailable
from observability import logger

CONFIG = DeviceConfig(mode=DeviceMode.AGGREGATE, device_name="Test Aggregate", channels=2)


class FakeStream:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.stopped = False
        self.closed = False

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class StreamFactory:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.streams: list[FakeStream] = []

    def __call__(self, **kwargs: Any) -> FakeStream:
        if self.error is not None:
            raise self.error
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture
def logs(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    lines: list[dict[str, Any]] = []
    monkeypatch.setattr(logger, "_print", lambda line: lines.append(json.loads(line)))
    return lines


# ---------------------------------------------------------------------
# Leases
# ---------------------------------------------------------------------

def test_second_lease_on_same_device_is_busy():
    leases = DeviceLeases()
    leases.acquire("Test Aggregate", holder="call_1")

    with pytest.raises(DeviceBusy, match="call_1"):
        leases.acquire("Test Aggregate", holder="call_2")

    leases.release("Test Aggregate")
    leases.acquire("Test Aggregate", holder="call_2")
    assert leases.holder("Test Aggregate") == "call_2"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Error opening RawInputStream: Device or resource busy", DeviceBusy),
        ("Device is already in use by another application", DeviceBusy),
        ("Error querying device -1", DeviceUnavailable),
        ("Invalid number of channels [PaErrorCode -9998]", DeviceUnavailable),
    ],
)
def test_classify_device_error(message: str, expected: type):
    assert isinstance(classify_device_error(Exception(message), "Agg"), expected)


# ---------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------

def test_preflight_opens_and_closes_the_device(logs):
    factory = StreamFactory()

    assert is_device_available(CONFIG, stream_factory=factory)

    stream = factory.streams[0]
    assert stream.kwargs["device"] == "Test Aggregate"
    assert stream.kwargs["channels"] == 2
    assert stream.kwargs["blocksize"] == 320
    assert stream.stopped and stream.closed


def test_preflight_reports_unavailable_device(logs):
    factory = StreamFactory(error=DeviceUnavailable("device 'Test Aggregate' not found"))

    assert not is_device_available(CONFIG, stream_factory=factory)
    assert logs[0]["event_type"] == "DEVICE_PREFLIGHT_FAILED"
    assert logs[0]["kind"] == "device_unavailable"


def test_preflight_of_leased_device_is_false_without_opening(logs):
    factory = StreamFactory()
    leases = DeviceLeases()
    leases.acquire("Test Aggregate", holder="call_1")

    assert not is_device_available(CONFIG, leases=leases, stream_factory=factory)
    assert factory.streams == []


# ---------------------------------------------------------------------
# SoundDeviceSource
# ---------------------------------------------------------------------

def test_source_delivers_chunks_until_stopped(logs):
    leases = DeviceLeases()
    factory = StreamFactory()

    async def scenario() -> list[tuple[int, bytes]]:
        source = SoundDeviceSource(
            CONFIG, leases=leases, session_id="call_1", no_data_warning_s=0, stream_factory=factory
        )
        await source.open()
        assert leases.holder("Test Aggregate") == "call_1"

        # PortAudio thread side
        source._on_audio(b"\x01\x00\x02\x00", 1, None, None)  # pylint: disable=protected-access
        source._on_audio(b"\x03\x00\x04\x00", 1, None, None)  # pylint: disable=protected-access

        received: list[tuple[int, bytes]] = []
        async for item in source.chunks():
            received.append(item)
            if len(received) == 2:
                source.stop()
        return received

    received = asyncio.run(scenario())

    assert received == [(0, b"\x01\x00\x02\x00"), (1, b"\x03\x00\x04\x00")]
    assert factory.streams[0].stopped and factory.streams[0].closed
    assert not leases.is_held("Test Aggregate")


def test_busy_device_fails_open_without_touching_portaudio():
    leases = DeviceLeases()
    leases.acquire("Test Aggregate", holder="call_other")
    factory = StreamFactory()

    async def scenario() -> None:
        source = SoundDeviceSource(CONFIG, leases=leases, stream_factory=factory)
        with pytest.raises(DeviceBusy):
            await source.open()
        # The refused session cleans up; the holder keeps its lease
        source.stop()
        assert source.closed

    asyncio.run(scenario())

    assert factory.streams == []
    assert leases.holder("Test Aggregate") == "call_other"


def test_dropped_chunks_leave_a_gap_in_capture_sequence(logs):
    async def scenario() -> list[int]:
        source = SoundDeviceSource(
            CONFIG, leases=DeviceLeases(), no_data_warning_s=0, stream_factory=StreamFactory()
        )
        await source.open()

        # Consumer stalled while the device kept delivering
        total = MAX_PENDING_CHUNKS + 10
        for _ in range(total):
            source._deliver(b"\x00\x00\x00\x00")  # pylint: disable=protected-access
        source.stop()

        return [seq async for seq, _ in source.chunks()]

    seqs = asyncio.run(scenario())

    assert seqs == list(range(10, MAX_PENDING_CHUNKS + 10))
    stopped = next(e for e in logs if e["event_type"] == "AUDIO_SOURCE_STOPPED")
    assert stopped["dropped_chunks"] == 10


def test_failed_open_releases_the_lease(logs):
    leases = DeviceLeases()
    factory = StreamFactory(error=DeviceUnavailable("device 'Test Aggregate' not found"))

    async def scenario() -> None:
        source = SoundDeviceSource(CONFIG, leases=leases, stream_factory=factory)
        with pytest.raises(DeviceUnavailable):
            await source.open()

    asyncio.run(scenario())

    assert not leases.is_held("Test Aggregate")


def test_device_loss_surfaces_as_disconnected(logs):
    async def scenario() -> None:
        source = SoundDeviceSource(
            CONFIG, leases=DeviceLeases(), no_data_warning_s=0, stream_factory=StreamFactory()
        )
        await source.open()
        source._on_finished()  # pylint: disable=protected-access

        with pytest.raises(DeviceDisconnected):
            async for _ in source.chunks():
                pass
        source.stop()

    asyncio.run(scenario())


def test_silent_device_is_reported(logs):
    async def scenario() -> None:
        source = SoundDeviceSource(
            CONFIG, leases=DeviceLeases(), no_data_warning_s=0.05, stream_factory=StreamFactory()
        )
        await source.open()
        await asyncio.sleep(0.15)
        source.stop()

    asyncio.run(scenario())

    silent = [e for e in logs if e["event_type"] == "AUDIO_SOURCE_SILENT"]
    assert len(silent) == 1
    assert silent[0]["level"] == "warning"


def test_chunks_is_not_restartable(logs):
    async def scenario() -> None:
        source = SoundDeviceSource(
            CONFIG, leases=DeviceLeases(), no_data_warning_s=0, stream_factory=StreamFactory()
        )
        await source.open()
        source.stop()
        async for _ in source.chunks():
            pass
        with pytest.raises(RuntimeError):
            async for _ in source.chunks():
                pass

    asyncio.run(scenario())
