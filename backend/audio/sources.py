"""
Audio source adapters (OS capture devices).

Responsibilities:
- Open a configured input device and expose its raw PCM as an async
  iterator of sequence-stamped byte chunks
- Enforce exclusive device use across sessions (fail fast, no queuing)
- Report device loss upward as DeviceDisconnected (never retried here)
- Pre-flight a device by actually opening it

Non-responsibilities:
- No channel separation (see audio.demux)
- No transcription, no session state

Threading model:
PortAudio delivers audio on its own thread. The callback never touches
asyncio objects directly; it hands each chunk to the event loop with
call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from config import DeviceConfig
from constants import AUDIO_DTYPE, SEQ_NUM_START
from errors import DeviceBusy, DeviceDisconnected, DeviceError, DeviceUnavailable
from observability.logger import log_event, log_warning

# Chunks buffered between the PortAudio thread and the pump task.
MAX_PENDING_CHUNKS = 256

_END = object()

StreamFactory = Callable[..., Any]


# ---------------------------------------------------------------------
# Device leases (shared-resource policy)
# ---------------------------------------------------------------------

class DeviceLeases:
    """
    Exclusive-use table for capture devices.

    One instance per process, owned by the session manager and handed to
    every source it creates. Acquiring a device that is already held
    raises DeviceBusy immediately.
    """

    def __init__(self) -> None:
        self._held: dict[str, str | None] = {}

    def acquire(self, device_name: str, *, holder: str | None = None) -> None:
        if device_name in self._held:
            raise DeviceBusy(
                f"device {device_name!r} is in use by session {self._held[device_name]!r}"
            )
        self._held[device_name] = holder

    def release(self, device_name: str) -> None:
        self._held.pop(device_name, None)

    def is_held(self, device_name: str) -> bool:
        return device_name in self._held

    def holder(self, device_name: str) -> str | None:
        return self._held.get(device_name)


# ---------------------------------------------------------------------
# PortAudio boundary
# ---------------------------------------------------------------------

def classify_device_error(exc: BaseException, device_name: str) -> DeviceError:
    """
    Map a PortAudio/sounddevice failure onto the device error taxonomy.

    PortAudio reports everything as one exception type; the message is the
    only signal for "busy" vs "missing/denied".
    """
    text = str(exc).lower()
    if any(marker in text for marker in ("busy", "in use", "already", "exclusive")):
        return DeviceBusy(f"device {device_name!r} is in use: {exc}")
    return DeviceUnavailable(f"device {device_name!r} cannot be opened: {exc}")


def open_raw_input_stream(
    *,
    device: str,
    channels: int,
    samplerate: int,
    blocksize: int,
    callback: Callable[..., None] | None,
    finished_callback: Callable[[], None] | None = None,
) -> Any:
    """
    Open and start a sounddevice.RawInputStream.

    Raises:
        DeviceBusy / DeviceUnavailable
    """
    import sounddevice as sd  # pylint: disable=import-outside-toplevel

    try:
        stream = sd.RawInputStream(
            device=device,
            channels=channels,
            samplerate=samplerate,
            blocksize=blocksize,
            dtype=AUDIO_DTYPE,
            callback=callback,
            finished_callback=finished_callback,
        )
        stream.start()
    except sd.PortAudioError as exc:
        raise classify_device_error(exc, device) from exc
    except ValueError as exc:
        # sounddevice raises ValueError for unknown device names
        raise DeviceUnavailable(f"device {device!r} not found: {exc}") from exc
    return stream


def list_input_devices() -> list[dict[str, Any]]:
    """
    Enumerate input-capable devices (diagnostics / pre-flight only).

    Device identity for calls always comes from DeviceConfig.
    """
    import sounddevice as sd  # pylint: disable=import-outside-toplevel

    devices: list[dict[str, Any]] = []
    for index, info in enumerate(sd.query_devices()):
        if info["max_input_channels"] > 0:
            devices.append({
                "id": index,
                "name": info["name"],
                "channels": info["max_input_channels"],
                "sample_rate": info["default_samplerate"],
            })
    return devices


def is_device_available(
    config: DeviceConfig,
    *,
    leases: DeviceLeases | None = None,
    stream_factory: StreamFactory = open_raw_input_stream,
) -> bool:
    """
    Pre-flight the configured device by opening and immediately closing it.

    Virtual devices can appear and disappear at any time, so a cached
    device list is never trusted.
    """
    if leases is not None and leases.is_held(config.device_name):
        return False

    try:
        stream = stream_factory(
            device=config.device_name,
            channels=config.channels,
            samplerate=config.sample_rate_hz,
            blocksize=config.frames_per_chunk,
            callback=None,
        )
    except DeviceError as exc:
        log_event({
            "event_type": "DEVICE_PREFLIGHT_FAILED",
            "device": config.device_name,
            "kind": exc.kind,
            "error": str(exc),
        })
        return False

    stream.stop()
    stream.close()
    return True


# ---------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------

class AudioSource(ABC):
    """
    Contract for a capture source.

    - open(): acquire and open the device (DeviceUnavailable / DeviceBusy)
    - chunks(): lazy, infinite, non-restartable stream of (capture_seq, raw
      bytes); ends after stop(), raises DeviceDisconnected if the device goes
      away. capture_seq counts every chunk the device delivered, so chunks
      dropped before the consumer saw them show up as sequence gaps
    - stop(): idempotent, releases the OS handle synchronously
    """

    config: DeviceConfig

    @abstractmethod
    async def open(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def chunks(self) -> AsyncIterator[tuple[int, bytes]]:
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def closed(self) -> bool:
        raise NotImplementedError


class SoundDeviceSource(AudioSource):
    """
    PortAudio capture source.

    Serves both device modes: a mono virtual device (counterparty only) and
    a multi-channel aggregate device. Chunks are whole interleaved frames
    of `config.frames_per_chunk` samples per channel.
    """

    def __init__(
        self,
        config: DeviceConfig,
        *,
        leases: DeviceLeases,
        session_id: str | None = None,
        no_data_warning_s: float = 5.0,
        stream_factory: StreamFactory = open_raw_input_stream,
    ) -> None:
        self.config = config
        self._leases = leases
        self._session_id = session_id
        self._no_data_warning_s = no_data_warning_s
        self._stream_factory = stream_factory

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._stream: Any = None
        self._watchdog: asyncio.Task[None] | None = None

        self._opened = False
        self._lease_held = False
        self._stopped = False
        self._iterated = False
        self._received_any = False
        self._dropped_chunks = 0
        self._next_seq = SEQ_NUM_START

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._opened:
            raise RuntimeError("audio source already opened")
        self._opened = True
        self._loop = asyncio.get_running_loop()

        try:
            self._leases.acquire(self.config.device_name, holder=self._session_id)
        except DeviceBusy:
            # Held by another session
            self._stopped = True
            raise
        self._lease_held = True

        try:
            self._stream = self._stream_factory(
                device=self.config.device_name,
                channels=self.config.channels,
                samplerate=self.config.sample_rate_hz,
                blocksize=self.config.frames_per_chunk,
                callback=self._on_audio,
                finished_callback=self._on_finished,
            )
        except BaseException:
            self._release_lease()
            self._stopped = True
            raise

        log_event({
            "event_type": "AUDIO_SOURCE_OPENED",
            "session_id": self._session_id,
            "device": self.config.device_name,
            "mode": self.config.mode.value,
            "channels": self.config.channels,
        })

        if self._no_data_warning_s > 0:
            self._watchdog = asyncio.create_task(self._no_data_watchdog())

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        self._watchdog = None

        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_warning(
                    "AUDIO_SOURCE_CLOSE_FAILED",
                    session_id=self._session_id,
                    device=self.config.device_name,
                    error=repr(exc),
                )

        self._release_lease()
        self._queue.put_nowait(_END)

        log_event({
            "event_type": "AUDIO_SOURCE_STOPPED",
            "session_id": self._session_id,
            "device": self.config.device_name,
            "dropped_chunks": self._dropped_chunks,
        })

    def _release_lease(self) -> None:
        if self._lease_held:
            self._lease_held = False
            self._leases.release(self.config.device_name)

    @property
    def closed(self) -> bool:
        return self._stopped

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def chunks(self) -> AsyncIterator[tuple[int, bytes]]:
        if self._iterated:
            raise RuntimeError("audio source stream is not restartable")
        self._iterated = True

        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, DeviceError):
                raise item
            yield item

    # ------------------------------------------------------------------
    # PortAudio thread side
    # ------------------------------------------------------------------

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        # pylint: disable=unused-argument
        if status:
            log_warning(
                "AUDIO_INPUT_STATUS",
                session_id=self._session_id,
                device=self.config.device_name,
                status=str(status),
            )
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._deliver, bytes(indata))

    def _on_finished(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._deliver_finished)

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _deliver(self, chunk: bytes) -> None:
        if self._stopped:
            return
        self._received_any = True
        seq = self._next_seq
        self._next_seq += 1
        if self._queue.qsize() >= MAX_PENDING_CHUNKS:
            # Consumer stalled: keep the freshest audio
            self._queue.get_nowait()
            self._dropped_chunks += 1
        self._queue.put_nowait((seq, chunk))

    def _deliver_finished(self) -> None:
        if self._stopped:
            return
        self._queue.put_nowait(
            DeviceDisconnected(f"device {self.config.device_name!r} stopped delivering audio")
        )

    async def _no_data_watchdog(self) -> None:
        try:
            await asyncio.sleep(self._no_data_warning_s)
        except asyncio.CancelledError:
            return
        if not self._received_any and not self._stopped:
            log_warning(
                "AUDIO_SOURCE_SILENT",
                session_id=self._session_id,
                device=self.config.device_name,
                waited_s=self._no_data_warning_s,
            )
