"""
Transcription stream adapter (one per channel per call).

Wraps a sequence of engine sessions so that the session manager sees one
uninterrupted transcript stream for the whole call, even though the engine
limits each session's duration and drops idle sessions.

State machine:

    IDLE -> STREAMING -> DRAINING -> RECONNECTING -> STREAMING ...
                 |                                      |
                 +--> STOPPING -> CLOSED                +--> FAILED

Tasks owned while active:
- sender:   forwards queued frames to the current engine session
- reader:   one per engine session; awaits on_event for every result, so
            events leave in engine order
- watchdog: restarts the session before the duration/idle limits hit
- recovery: short-lived, handles one engine error

Guarantees:
- push() never blocks; frames beyond STREAM_BUFFER_MAX_S drop oldest first
- Frames pushed during a restart are replayed, in order, to the new session
- A partial still pending when a session ends is emitted once as final
- Timestamps stay monotonic across restarts
- First engine failure: reported non-fatal, one reconnect. A second failure
  inside the failure window is fatal.

This adapter never reads or mutates session-manager state; it only calls
the two callbacks it was started with.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from enum import Enum
from typing import Optional, Union

from adapters.asr.base import EngineResult, EngineSession, TranscriptionEngine
from audio.frames import AudioFrame, Channel
from audio.queues import AudioFrameQueue
from audio.sequence import check_sequence_gap
from config import StreamSettings
from constants import STREAM_WATCHDOG_INTERVAL_S
from errors import (
    EngineConnectError,
    EngineError,
    EngineFatalError,
    EngineLimitExceeded,
    PipelineError,
)
from observability.logger import log_event, log_warning
from observability.metrics import timed
from session.events import StreamFailure, StreamRestarted, TranscriptEvent
from session.retry import (
    FailureType,
    RetryAttempt,
    Service,
    next_attempt,
    reset_attempt,
    should_retry,
)

EventCallback = Callable[[Union[TranscriptEvent, StreamRestarted]], Awaitable[None]]
ErrorCallback = Callable[[StreamFailure], Awaitable[None]]


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"
    CLOSED = "closed"
    FAILED = "failed"


_TERMINAL = (StreamState.CLOSED, StreamState.FAILED)


class TranscriptionStreamAdapter:
    """
    Long-lived transcription stream for one channel.

    Not reusable: once CLOSED or FAILED, create a new adapter.
    """

    def __init__(
        self,
        *,
        engine: TranscriptionEngine,
        settings: StreamSettings,
        bytes_per_second: int,
        engine_channels: int = 1,
        session_id: str | None = None,
        watchdog_interval_s: float = STREAM_WATCHDOG_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._bytes_per_second = bytes_per_second
        self._engine_channels = engine_channels
        self._session_id = session_id
        self._watchdog_interval_s = watchdog_interval_s
        self._clock = clock

        self.state: StreamState = StreamState.IDLE
        self.channel: Channel | None = None
        self._on_event: EventCallback | None = None
        self._on_error: ErrorCallback | None = None

        self._queue = AudioFrameQueue(
            max_depth_s=settings.buffer_max_s,
            bytes_per_second=bytes_per_second,
        )
        self._wakeup = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._restart_lock = asyncio.Lock()

        self._session: Optional[EngineSession] = None
        self._sender: Optional[asyncio.Task[None]] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._recovery: Optional[asyncio.Task[None]] = None

        # Engine session bookkeeping
        self._session_started_at: float = 0.0
        self._last_audio_at: float = 0.0
        self._session_bytes: int = 0
        self._ts_offset_s: float = 0.0

        # Transcript bookkeeping
        self._segment: int = 0
        self._pending_partial: Optional[TranscriptEvent] = None

        # Failure policy
        self._retry: RetryAttempt = reset_attempt()
        self._last_failure_at: Optional[float] = None

        # Counters (observability)
        self._last_seq: Optional[int] = None
        self.seq_gaps: int = 0
        self.restarts: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        channel: Channel,
        on_event: EventCallback,
        on_error: ErrorCallback,
    ) -> TranscriptionStreamAdapter:
        """
        Open the first engine session and start streaming.

        Raises:
            EngineConnectError if the first session cannot be opened.
        """
        if self.state is not StreamState.IDLE:
            raise RuntimeError(f"stream adapter already started (state={self.state.value})")

        self.channel = channel
        self._on_event = on_event
        self._on_error = on_error

        try:
            session = await self._open_session()
        except EngineConnectError:
            self.state = StreamState.FAILED
            raise

        self._activate(session)
        self.state = StreamState.STREAMING
        self._sender = asyncio.create_task(self._send_loop())
        self._watchdog = asyncio.create_task(self._watchdog_loop())

        self._log("STREAM_STARTED")
        return self

    def push(self, frame: AudioFrame) -> bool:
        """
        Queue one mono frame for the engine. Never blocks.

        Returns False if the stream no longer accepts audio.
        """
        if self.state in (StreamState.IDLE, StreamState.STOPPING) or self.state in _TERMINAL:
            return False

        seq = check_sequence_gap(last_seq=self._last_seq, current_seq=frame.sequence_num)
        if seq.gap:
            self.seq_gaps += 1
            self._log(
                "SEQ_GAP_DETECTED",
                expected=seq.expected,
                actual=seq.actual,
                gap_size=seq.gap_size,
            )
        self._last_seq = frame.sequence_num

        evicted = self._queue.enqueue(frame)
        if evicted:
            log_warning(
                "STREAM_BUFFER_OVERFLOW",
                session_id=self._session_id,
                channel=self._channel_name(),
                state=self.state.value,
                evicted=evicted,
                **self._queue.snapshot(),
            )

        self._wakeup.set()
        return True

    async def stop(self) -> None:
        """
        Flush, finalize and close. Idempotent.

        Every step is bounded by STREAM_DRAIN_TIMEOUT_S; a step that
        overruns is abandoned with a warning. A stop that arrives during a
        restart first waits for the replacement session, then flushes the
        audio buffered meanwhile into it.
        """
        if self.state is StreamState.STOPPING or self.state in _TERMINAL:
            return
        if self.state is StreamState.IDLE:
            self.state = StreamState.CLOSED
            return

        holds_restart_lock = False
        if self.state in (StreamState.DRAINING, StreamState.RECONNECTING):
            # Audio buffered during the restart gap goes to the replacement session
            holds_restart_lock = await self._wait_for_restart()
            if self.state is StreamState.STOPPING or self.state in _TERMINAL:
                if holds_restart_lock:
                    self._restart_lock.release()
                return

        try:
            await self._stop_streaming()
        finally:
            if holds_restart_lock:
                self._restart_lock.release()

    async def _wait_for_restart(self) -> bool:
        """
        Wait, bounded by STREAM_DRAIN_TIMEOUT_S, for an in-flight restart.

        Returns True with the restart lock held, or False if the restart
        overran and is about to be cancelled.
        """
        try:
            await asyncio.wait_for(
                self._restart_lock.acquire(),
                timeout=self._settings.drain_timeout_s,
            )
        except asyncio.TimeoutError:
            log_warning(
                "STREAM_RESTART_ABANDONED",
                session_id=self._session_id,
                channel=self._channel_name(),
                state=self.state.value,
                frames_abandoned=len(self._queue),
                timeout_s=self._settings.drain_timeout_s,
            )
            return False
        return True

    async def _stop_streaming(self) -> None:
        was_streaming = self.state is StreamState.STREAMING
        self.state = StreamState.STOPPING

        await self._cancel_and_wait(self._watchdog)
        await self._cancel_and_wait(self._recovery)

        async with self._send_lock:
            sender = self._sender
        await self._cancel_and_wait(sender)

        session = self._session
        if session is not None and was_streaming:
            await self._flush_queue(session)
            await self._drain(session, self._reader, graceful=True, abandon_event="STREAM_CLOSE_ABANDONED")
        elif session is not None:
            # Restart overran: the old session is half drained
            await self._cancel_and_wait(self._reader)
            await self._close_quietly(session)
        self._session = None
        self._reader = None

        await self._promote_pending_partial()

        dropped = self._queue.clear()
        self.state = StreamState.CLOSED
        self._log(
            "STREAM_CLOSED",
            restarts=self.restarts,
            seq_gaps=self.seq_gaps,
            dropped_overflow=self._queue.drops.overflow,
            dropped_on_close=dropped,
        )

    # ------------------------------------------------------------------
    # Engine session lifecycle
    # ------------------------------------------------------------------

    async def _open_session(self) -> EngineSession:
        try:
            return await asyncio.wait_for(
                self._engine.open_session(channels=self._engine_channels),
                timeout=self._settings.connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise EngineConnectError(
                f"engine session did not open within {self._settings.connect_timeout_s}s"
            ) from e

    async def _open_session_with_retry(self) -> EngineSession:
        """
        Open a replacement session.

        Raises:
            EngineFatalError once the reconnect budget is spent.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._open_session()
            except EngineConnectError as e:
                if attempts > 1 or not self._note_failure():
                    raise EngineFatalError(f"reconnect failed: {e}") from e
                await self._report(StreamFailure(channel=self._require_channel(), error=e, fatal=False))

    def _activate(self, session: EngineSession) -> None:
        now = self._clock()
        self._session = session
        self._session_started_at = now
        self._last_audio_at = now
        self._session_bytes = 0
        self._reader = asyncio.create_task(self._read_loop(session))

    async def _drain(
        self,
        session: EngineSession,
        reader: Optional[asyncio.Task[None]],
        *,
        graceful: bool,
        abandon_event: str,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._finish_session(session, reader, graceful=graceful),
                timeout=self._settings.drain_timeout_s,
            )
        except asyncio.TimeoutError:
            log_warning(
                abandon_event,
                session_id=self._session_id,
                channel=self._channel_name(),
                timeout_s=self._settings.drain_timeout_s,
            )
            await self._cancel_and_wait(reader)
            await self._close_quietly(session)

    async def _finish_session(
        self,
        session: EngineSession,
        reader: Optional[asyncio.Task[None]],
        *,
        graceful: bool,
    ) -> None:
        if graceful:
            try:
                await session.finalize()
            except EngineError as e:
                self._log("STREAM_FINALIZE_FAILED", error=str(e))
        else:
            await session.close()

        if reader is not None and reader is not asyncio.current_task():
            await asyncio.wait({reader})

        await session.close()

    async def _close_quietly(self, session: EngineSession) -> None:
        try:
            await asyncio.wait_for(session.close(), timeout=self._settings.drain_timeout_s)
        except asyncio.TimeoutError:
            log_warning(
                "STREAM_CLOSE_ABANDONED",
                session_id=self._session_id,
                channel=self._channel_name(),
                timeout_s=self._settings.drain_timeout_s,
            )
        except EngineError as e:
            self._log("STREAM_CLOSE_FAILED", error=str(e))

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _send_loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()

            while self.state is StreamState.STREAMING and not self._queue.is_empty():
                async with self._send_lock:
                    session = self._session
                    if self.state is not StreamState.STREAMING or session is None:
                        break
                    frame = self._queue.dequeue()
                    if frame is None:
                        break
                    try:
                        await asyncio.wait_for(
                            session.send_audio(frame.pcm_bytes),
                            timeout=self._settings.connect_timeout_s,
                        )
                    except asyncio.TimeoutError:
                        self._queue.push_front(frame)
                        self._schedule_recovery(
                            EngineConnectError("engine send timed out"), session
                        )
                        break
                    except EngineError as e:
                        self._queue.push_front(frame)
                        self._schedule_recovery(e, session)
                        break

                    self._session_bytes += len(frame.pcm_bytes)
                    self._last_audio_at = self._clock()

    async def _read_loop(self, session: EngineSession) -> None:
        try:
            async for result in session.results():
                await self._handle_result(result)
        except EngineError as e:
            self._schedule_recovery(e, session)
            return

        # A session may only end after finalize()/close() from our side
        self._schedule_recovery(
            EngineConnectError("engine ended the stream unexpectedly"), session
        )

    async def _watchdog_loop(self) -> None:
        limit_s = self._settings.max_session_s - self._settings.restart_margin_s
        idle_s = self._settings.idle_timeout_s - self._settings.restart_margin_s

        while self.state not in _TERMINAL and self.state is not StreamState.STOPPING:
            await asyncio.sleep(self._watchdog_interval_s)
            if self.state is not StreamState.STREAMING:
                continue

            now = self._clock()
            session = self._session
            if now - self._session_started_at >= limit_s:
                await self._restart(session, reason="max_session", graceful=True)
            elif now - self._last_audio_at >= idle_s:
                await self._restart(session, reason="idle_timeout", graceful=True)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _handle_result(self, result: EngineResult) -> None:
        if not result.text:
            if result.is_final:
                # The engine settled the segment on silence
                self._pending_partial = None
            return

        event = TranscriptEvent(
            event_id=f"{self._require_channel().value}-{self._segment}",
            channel=self._require_channel(),
            text=result.text,
            is_final=result.is_final,
            confidence=result.confidence,
            stream_ts_s=self._ts_offset_s + result.start_s,
        )

        if result.is_final:
            self._pending_partial = None
            self._segment += 1
        else:
            self._pending_partial = event

        await self._emit(event)

    async def _promote_pending_partial(self) -> None:
        pending = self._pending_partial
        if pending is None:
            return
        self._pending_partial = None
        self._segment += 1
        self._log("STREAM_PARTIAL_PROMOTED", event_id=pending.event_id)
        await self._emit(replace(pending, is_final=True))

    # ------------------------------------------------------------------
    # Restarts and failures
    # ------------------------------------------------------------------

    def _schedule_recovery(self, error: EngineError, session: EngineSession) -> None:
        if session is not self._session or self.state is not StreamState.STREAMING:
            # Expected end of a session we are already replacing or closing
            return
        if self._recovery is not None and not self._recovery.done():
            return
        self._recovery = asyncio.create_task(self._recover(error, session))

    async def _recover(self, error: EngineError, session: EngineSession) -> None:
        if isinstance(error, EngineLimitExceeded):
            self._log("STREAM_ENGINE_LIMIT", error=str(error))
            await self._restart(session, reason="engine_limit", graceful=True)
            return

        if not self._note_failure():
            await self._fail(error)
            return

        await self._report(StreamFailure(channel=self._require_channel(), error=error, fatal=False))
        await self._restart(session, reason="engine_error", graceful=False)

    async def _restart(
        self,
        session: Optional[EngineSession],
        *,
        reason: str,
        graceful: bool,
    ) -> None:
        """Replace `session`; a no-op if it was already replaced or closed."""
        async with self._restart_lock:
            if self.state is not StreamState.STREAMING or session is not self._session:
                return

            with timed(
                "stream_restart",
                session_id=self._session_id,
                channel=self._channel_name(),
                details={"reason": reason},
            ) as extra:
                async with self._send_lock:
                    self.state = StreamState.DRAINING
                    old = self._session
                    reader = self._reader

                if old is not None:
                    await self._drain(old, reader, graceful=graceful, abandon_event="STREAM_DRAIN_ABANDONED")
                await self._promote_pending_partial()

                self._ts_offset_s += self._session_bytes / self._bytes_per_second
                self.state = StreamState.RECONNECTING

                try:
                    new_session = await self._open_session_with_retry()
                except EngineFatalError as e:
                    extra["outcome"] = "failed"
                    await self._fail(e)
                    return

                self._activate(new_session)
                self.state = StreamState.STREAMING
                self.restarts += 1
                extra["outcome"] = "ok"
                extra["replayed_frames"] = len(self._queue)

        self._wakeup.set()
        self._log("STREAM_RESTARTED", reason=reason, restarts=self.restarts)
        await self._emit(StreamRestarted(channel=self._require_channel(), reason=reason))

    def _note_failure(self) -> bool:
        """
        Record one engine failure.

        Returns True if a reconnect is still allowed.
        """
        now = self._clock()
        if (
            self._last_failure_at is None
            or now - self._last_failure_at > self._settings.failure_window_s
        ):
            self._retry = reset_attempt()
        self._last_failure_at = now

        allowed = should_retry(
            service=Service.ENGINE,
            failure=FailureType.CONNECT_ERROR,
            attempt=self._retry,
        )
        self._retry = next_attempt(self._retry)
        return allowed

    async def _fail(self, error: PipelineError) -> None:
        if self.state in _TERMINAL:
            return
        self.state = StreamState.FAILED

        await self._cancel_and_wait(self._watchdog)
        await self._cancel_and_wait(self._sender)
        await self._cancel_and_wait(self._reader)

        session = self._session
        self._session = None
        if session is not None:
            await self._close_quietly(session)
        self._queue.clear()

        fatal = error if isinstance(error, EngineFatalError) else EngineFatalError(
            f"engine failed twice within {self._settings.failure_window_s}s: {error}"
        )
        log_warning(
            "STREAM_FAILED",
            session_id=self._session_id,
            channel=self._channel_name(),
            error=str(fatal),
        )
        await self._report(StreamFailure(channel=self._require_channel(), error=fatal, fatal=True))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _flush_queue(self, session: EngineSession) -> None:
        async def _send_remaining() -> None:
            while not self._queue.is_empty():
                frame = self._queue.dequeue()
                if frame is None:
                    return
                await session.send_audio(frame.pcm_bytes)
                self._session_bytes += len(frame.pcm_bytes)

        try:
            await asyncio.wait_for(_send_remaining(), timeout=self._settings.drain_timeout_s)
        except asyncio.TimeoutError:
            log_warning(
                "STREAM_FLUSH_ABANDONED",
                session_id=self._session_id,
                channel=self._channel_name(),
                frames_left=len(self._queue),
            )
        except EngineError as e:
            self._log("STREAM_FLUSH_FAILED", error=str(e), frames_left=len(self._queue))

    async def _cancel_and_wait(self, task: Optional[asyncio.Task[None]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        _, pending = await asyncio.wait({task}, timeout=self._settings.drain_timeout_s)
        if pending:
            log_warning(
                "STREAM_TASK_ABANDONED",
                session_id=self._session_id,
                channel=self._channel_name(),
                task=task.get_name(),
            )

    async def _emit(self, event: Union[TranscriptEvent, StreamRestarted]) -> None:
        if self._on_event is not None:
            await self._on_event(event)

    async def _report(self, failure: StreamFailure) -> None:
        if self._on_error is not None:
            await self._on_error(failure)

    def _require_channel(self) -> Channel:
        if self.channel is None:
            raise RuntimeError("stream adapter has not been started")
        return self.channel

    def _channel_name(self) -> str | None:
        return self.channel.value if self.channel is not None else None

    def _log(self, event_type: str, **fields: object) -> None:
        log_event({
            "event_type": event_type,
            "session_id": self._session_id,
            "channel": self._channel_name(),
            "state": self.state.value,
            **fields,
        })
