"""
Call session manager.

Responsibilities:
- Own the session registry and the device lease table
- Drive each CallSession through IDLE -> STARTING -> ACTIVE -> STOPPING -> STOPPED
  (or STARTING -> FAILED)
- Wire source -> demux -> stream adapters (pump task)
- React to adapter events (consumer task): deliver transcripts, keep the
  rolling transcript, spawn assistance, degrade channels
- Bound every shutdown step with SESSION_STOP_GRACE_S

Non-responsibilities:
- No WebSocket parsing (see session.gateway)
- No engine protocol (see adapters.asr)
- No retries of engine connections (stream adapters own those)

Tasks per session:
- pump:       source.chunks() -> demux -> adapter.push(), capture sequence
              numbers carried through so dropped chunks surface as gaps
- consumer:   session.events -> delivery channel
- assistance: one short-lived task per counterparty final or operator request
- stop:       at most one; every stop request awaits it
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional

from adapters.asr.base import TranscriptionEngine
from adapters.asr.stream import TranscriptionStreamAdapter
from adapters.llm.assistance import Assistance, AssistanceGenerator, AssistanceRequest
from audio.demux import ChannelDemultiplexer
from audio.frames import AudioFrame, Channel
from audio.sources import AudioSource, DeviceLeases, SoundDeviceSource
from config import AppConfig, DeviceConfig, DeviceMode
from constants import (
    COUNTERPARTY_ROLE_LABELS,
    OPERATOR_ROLE_LABEL,
    SESSION_TRANSCRIPT_MAX_LINES,
)
from errors import (
    AssistanceError,
    AssistanceFailed,
    AssistanceTimeout,
    DeliveryChannelLost,
    DeviceError,
    FrameAlignmentError,
    PipelineError,
    SessionNotFound,
)
from observability.logger import log_event, log_warning, now_ms
from observability.metrics import timed
from protocol.messages import (
    assistance_message,
    session_error_message,
    session_started_message,
    session_stopped_message,
    stream_restarted_message,
    transcript_message,
)
from session.call_session import CallSession, FailureRecord, SessionState, new_session_id
from session.delivery import DeliveryChannel
from session.events import (
    EndOfEvents,
    SessionEvent,
    SourceFailed,
    StreamFailure,
    StreamRestarted,
    TranscriptEvent,
)
from session.registry import SessionRegistry
from session.retry import (
    FailureType,
    Service,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)

SourceFactory = Callable[[str], AudioSource]
AdapterFactory = Callable[[str, Channel], TranscriptionStreamAdapter]

STOP_REASON_CLIENT = "client_request"
STOP_REASON_CHANNEL_LOST = "delivery_channel_lost"
STOP_REASON_SHUTDOWN = "shutdown"


def role_label(mode: str, channel: Channel) -> str:
    if channel is Channel.OPERATOR:
        return OPERATOR_ROLE_LABEL
    return COUNTERPARTY_ROLE_LABELS.get(mode, COUNTERPARTY_ROLE_LABELS["sales"])


class CallSessionManager:
    """
    One manager per process.

    Collaborators are injected so tests can swap the device, the engine
    and the assistance generator independently.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        device_config: DeviceConfig,
        engine: TranscriptionEngine,
        assistant: Optional[AssistanceGenerator] = None,
        leases: Optional[DeviceLeases] = None,
        source_factory: Optional[SourceFactory] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ) -> None:
        self._config = config
        self._device_config = device_config
        self._engine = engine
        self._assistant = assistant
        self.leases = leases if leases is not None else DeviceLeases()
        self._source_factory = source_factory or self._default_source
        self._adapter_factory = adapter_factory or self._default_adapter
        self.registry = SessionRegistry()

        if device_config.mode is DeviceMode.AGGREGATE:
            self._demux: Optional[ChannelDemultiplexer] = (
                ChannelDemultiplexer.from_device_config(device_config)
            )
            self.channels: tuple[Channel, ...] = (Channel.OPERATOR, Channel.COUNTERPARTY)
        else:
            self._demux = None
            self.channels = (Channel.COUNTERPARTY,)

    # ------------------------------------------------------------------
    # Default collaborators
    # ------------------------------------------------------------------

    def _default_source(self, session_id: str) -> AudioSource:
        return SoundDeviceSource(
            self._device_config,
            leases=self.leases,
            session_id=session_id,
            no_data_warning_s=self._config.audio_no_data_warning_s,
        )

    def _default_adapter(self, session_id: str, channel: Channel) -> TranscriptionStreamAdapter:
        cfg = self._device_config
        if channel is Channel.OPERATOR:
            group_channels = cfg.operator_channel_count
        else:
            group_channels = cfg.counterparty_channel_count
        return TranscriptionStreamAdapter(
            engine=self._engine,
            settings=self._config.stream,
            bytes_per_second=cfg.bytes_per_second_mono * group_channels,
            engine_channels=group_channels,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[CallSession]:
        return self.registry.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self.registry)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(
        self,
        delivery: DeliveryChannel,
        *,
        session_id: Optional[str] = None,
        mode: Optional[str] = None,
        lead_id: Optional[str] = None,
    ) -> CallSession:
        """
        Open the source and the stream adapters, then go ACTIVE.

        Raises:
            SessionAlreadyActive: the ID is in use (nothing was opened)
            DeviceBusy / DeviceUnavailable / EngineConnectError: the session
            is FAILED and every resource it opened has been released
        """
        session = CallSession(
            session_id=session_id or new_session_id(),
            mode=mode or self._config.default_call_mode,
            lead_id=lead_id,
            delivery=delivery,
        )
        self.registry.add(session)
        session.state = SessionState.STARTING
        log_event({"event_type": "SESSION_STARTING", **session.log_context()})

        try:
            session.source = self._source_factory(session.session_id)
            await session.source.open()

            for channel in self.channels:
                adapter = self._adapter_factory(session.session_id, channel)
                await adapter.start(
                    channel,
                    on_event=self._event_sink(session),
                    on_error=self._event_sink(session),
                )
                session.adapters[channel] = adapter
                session.healthy_channels.add(channel)
        except PipelineError as e:
            await self._abort_start(session, e)
            raise

        session.state = SessionState.ACTIVE
        session.consumer_task = asyncio.create_task(self._consume(session))
        session.pump_task = asyncio.create_task(self._pump(session))

        log_event({
            "event_type": "SESSION_ACTIVE",
            **session.log_context(),
            "channels": [c.value for c in self.channels],
        })

        await self._deliver(
            session,
            session_started_message(session.session_id, mode=session.mode, channels=self.channels),
        )
        return session

    async def _abort_start(self, session: CallSession, error: PipelineError) -> None:
        await asyncio.gather(*(
            self._stop_adapter(session, channel, adapter)
            for channel, adapter in session.adapters.items()
        ))
        if session.source is not None:
            session.source.stop()

        session.healthy_channels.clear()
        session.failures.append(FailureRecord(kind=error.kind, message=str(error), fatal=True))
        session.state = SessionState.FAILED
        self.registry.remove(session.session_id)

        log_warning(
            "SESSION_START_FAILED",
            **session.log_context(),
            kind=error.kind,
            error=str(error),
        )

    def _event_sink(self, session: CallSession) -> Callable[[SessionEvent], Awaitable[None]]:
        async def _put(event: SessionEvent) -> None:
            await session.events.put(event)
        return _put

    # ------------------------------------------------------------------
    # Pump (source -> demux -> adapters)
    # ------------------------------------------------------------------

    async def _pump(self, session: CallSession) -> None:
        source = session.source

        try:
            async for seq, chunk in source.chunks():
                ts = now_ms()
                if self._demux is not None:
                    frames: tuple[AudioFrame, ...] = self._demux.demultiplex(
                        sequence_num=seq, chunk=chunk, ts_ms=ts
                    )
                else:
                    frames = (
                        AudioFrame(
                            channel=Channel.COUNTERPARTY,
                            sequence_num=seq,
                            pcm_bytes=chunk,
                            ts_ms=ts,
                        ),
                    )

                for frame in frames:
                    if frame.channel in session.healthy_channels:
                        session.adapters[frame.channel].push(frame)
        except (DeviceError, FrameAlignmentError) as e:
            log_warning("AUDIO_PUMP_FAILED", **session.log_context(), kind=e.kind, error=str(e))
            await session.events.put(SourceFailed(error=e))

    # ------------------------------------------------------------------
    # Consumer (adapter events -> delivery channel)
    # ------------------------------------------------------------------

    async def _consume(self, session: CallSession) -> None:
        while True:
            event = await session.events.get()
            if isinstance(event, EndOfEvents):
                return
            try:
                await self._handle_event(session, event)
            except DeliveryChannelLost:
                self._schedule_stop(session, STOP_REASON_CHANNEL_LOST)
                return

    async def _handle_event(self, session: CallSession, event: SessionEvent) -> None:
        if isinstance(event, TranscriptEvent):
            await self._on_transcript(session, event)
        elif isinstance(event, StreamFailure):
            await self._on_stream_failure(session, event)
        elif isinstance(event, StreamRestarted):
            await session.delivery.send(
                stream_restarted_message(session.session_id, channel=event.channel, reason=event.reason)
            )
        elif isinstance(event, SourceFailed):
            await self._on_source_failed(session, event)

    async def _on_transcript(self, session: CallSession, event: TranscriptEvent) -> None:
        await session.delivery.send(transcript_message(session.session_id, event))

        if not event.is_final:
            return

        session.last_final = event
        session.transcript_lines.append(f"{role_label(session.mode, event.channel)}: {event.text}")
        if len(session.transcript_lines) > SESSION_TRANSCRIPT_MAX_LINES:
            del session.transcript_lines[:-SESSION_TRANSCRIPT_MAX_LINES]

        assistant = self._assistant
        if (
            event.channel is Channel.COUNTERPARTY
            and session.state is SessionState.ACTIVE
            and assistant is not None
        ):
            self._spawn_assistance(session, assistant, event)

    async def _on_stream_failure(self, session: CallSession, failure: StreamFailure) -> None:
        if not failure.fatal:
            log_event({
                "event_type": "STREAM_RECONNECTING",
                **session.log_context(),
                "channel": failure.channel.value,
                "kind": failure.error.kind,
                "error": str(failure.error),
            })
            return

        session.healthy_channels.discard(failure.channel)
        session.failures.append(FailureRecord(
            kind=failure.error.kind,
            message=str(failure.error),
            channel=failure.channel,
            fatal=True,
        ))

        if session.state is not SessionState.ACTIVE:
            return

        if session.healthy_channels:
            log_warning(
                "CHANNEL_DEGRADED",
                **session.log_context(),
                channel=failure.channel.value,
                remaining=[c.value for c in session.healthy_channels],
            )
            await session.delivery.send(session_error_message(
                session.session_id,
                kind="channel_degraded",
                channel=failure.channel,
                fatal=False,
                message=str(failure.error),
            ))
            return

        log_warning("SESSION_NO_HEALTHY_CHANNEL", **session.log_context())
        await session.delivery.send(session_error_message(
            session.session_id,
            kind=failure.error.kind,
            channel=failure.channel,
            fatal=True,
            message=str(failure.error),
        ))
        self._schedule_stop(session, failure.error.kind)

    async def _on_source_failed(self, session: CallSession, event: SourceFailed) -> None:
        session.failures.append(FailureRecord(
            kind=event.error.kind,
            message=str(event.error),
            fatal=True,
        ))
        if session.state is not SessionState.ACTIVE:
            return

        await session.delivery.send(session_error_message(
            session.session_id,
            kind=event.error.kind,
            fatal=True,
            message=str(event.error),
        ))
        self._schedule_stop(session, event.error.kind)

    # ------------------------------------------------------------------
    # Assistance
    # ------------------------------------------------------------------

    def request_assistance(self, session_id: str) -> Optional[asyncio.Task[None]]:
        """
        On-demand assistance over the rolling transcript, correlated with
        the latest final of either channel.

        Returns the assistance task, or None if nothing has been
        transcribed yet.

        Raises:
            SessionNotFound: no ACTIVE session has this ID
            AssistanceFailed: assistance is disabled
        """
        session = self.registry.require(session_id)
        if session.state is not SessionState.ACTIVE:
            raise SessionNotFound(f"session {session_id!r} is not active")

        assistant = self._assistant
        if assistant is None:
            raise AssistanceFailed("assistance is disabled (no generator configured)")

        last_final = session.last_final
        if last_final is None:
            log_event({
                "event_type": "ASSISTANCE_SKIPPED",
                **session.log_context(),
                "reason": "no_transcript",
            })
            return None

        log_event({
            "event_type": "ASSISTANCE_REQUESTED",
            **session.log_context(),
            "event_id": last_final.event_id,
        })
        return self._spawn_assistance(session, assistant, last_final)

    def _spawn_assistance(
        self,
        session: CallSession,
        assistant: AssistanceGenerator,
        event: TranscriptEvent,
    ) -> asyncio.Task[None]:
        # Context is frozen at the triggering final
        request = AssistanceRequest(
            text=event.text,
            transcript=tuple(session.transcript_lines),
            mode=session.mode,
            lead_id=session.lead_id,
        )
        task = asyncio.create_task(self._assist(session, assistant, event, request))
        session.assistance_tasks.add(task)
        task.add_done_callback(session.assistance_tasks.discard)
        return task

    async def _assist(
        self,
        session: CallSession,
        assistant: AssistanceGenerator,
        event: TranscriptEvent,
        request: AssistanceRequest,
    ) -> None:
        with timed(
            "assistance_latency",
            session_id=session.session_id,
            channel=event.channel.value,
            details={"event_id": event.event_id},
        ) as extra:
            try:
                result = await self._generate_with_retry(assistant, request, extra)
            except AssistanceError as e:
                extra["outcome"] = e.kind
                log_warning(
                    "ASSISTANCE_FAILED",
                    **session.log_context(),
                    event_id=event.event_id,
                    kind=e.kind,
                    error=str(e),
                )
                await self._deliver(session, session_error_message(
                    session.session_id,
                    kind=e.kind,
                    fatal=False,
                    message=str(e),
                ))
                return
            extra["outcome"] = "ok"

        await self._deliver(session, assistance_message(
            session.session_id,
            correlates_with=event.event_id,
            text=result.text,
            next_action=result.next_action,
            confidence=result.confidence,
        ))

    async def _generate_with_retry(
        self,
        assistant: AssistanceGenerator,
        request: AssistanceRequest,
        extra: dict[str, object],
    ) -> Assistance:
        """
        One attempt plus at most one retry, each bounded by
        ASSISTANCE_TIMEOUT_S.

        Raises:
            AssistanceTimeout / AssistanceFailed
        """
        timeout_s = self._config.assistance_timeout_s
        attempt = reset_attempt()

        while True:
            error: AssistanceError
            try:
                return await asyncio.wait_for(assistant.generate(request), timeout=timeout_s)
            except asyncio.TimeoutError:
                failure = FailureType.TIMEOUT
                error = AssistanceTimeout(f"no assistance within {timeout_s}s")
            except AssistanceError as e:
                failure = FailureType.ERROR
                error = e
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Vendor SDKs raise their own exception hierarchies
                failure = FailureType.ERROR
                error = AssistanceFailed(f"{type(e).__name__}: {e}")

            if not should_retry(service=Service.ASSISTANCE, failure=failure, attempt=attempt):
                raise error

            attempt = next_attempt(attempt)
            extra["retries"] = attempt.attempt
            log_event({
                "event_type": "ASSISTANCE_RETRY",
                "failure": failure.value,
                "attempt": attempt.attempt,
                "error": str(error),
            })
            await asyncio.sleep(get_retry_delay_ms(service=Service.ASSISTANCE) / 1000)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_session(self, session_id: str, *, reason: str = STOP_REASON_CLIENT) -> CallSession:
        """
        Stop a session. Idempotent while the session is stopping.

        Raises:
            SessionNotFound if no active session has this ID.
        """
        session = self.registry.require(session_id)
        task = self._ensure_stop_task(session, reason)
        await asyncio.shield(task)
        return session

    async def shutdown(self) -> None:
        """Stop every active session (process shutdown)."""
        sessions = list(self.registry)
        if not sessions:
            return
        log_event({"event_type": "MANAGER_SHUTDOWN", "sessions": self.registry.active_ids()})
        await asyncio.gather(*(
            asyncio.shield(self._ensure_stop_task(s, STOP_REASON_SHUTDOWN)) for s in sessions
        ))

    def _schedule_stop(self, session: CallSession, reason: str) -> None:
        if session.is_terminal:
            return
        self._ensure_stop_task(session, reason)

    def _ensure_stop_task(self, session: CallSession, reason: str) -> asyncio.Task[None]:
        if session.stop_task is None:
            session.stop_task = asyncio.create_task(self._run_stop(session, reason))
        return session.stop_task

    async def _run_stop(self, session: CallSession, reason: str) -> None:
        if session.is_terminal:
            return

        grace_s = self._config.session_stop_grace_s
        session.state = SessionState.STOPPING
        session.stop_reason = reason
        log_event({"event_type": "SESSION_STOPPING", **session.log_context(), "reason": reason})

        # 1. Source first: no new audio enters the pipeline
        if session.source is not None:
            session.source.stop()
        await self._cancel_task(session, session.pump_task, "pump", grace_s)

        # 2. Adapters concurrently, each bounded
        await asyncio.gather(*(
            self._stop_adapter(session, channel, adapter)
            for channel, adapter in session.adapters.items()
        ))

        # 3. Deliver whatever the adapters flushed, then end the consumer
        consumer = session.consumer_task
        if consumer is not None and not consumer.done():
            if reason == STOP_REASON_CHANNEL_LOST:
                await self._cancel_task(session, consumer, "consumer", grace_s)
            else:
                session.events.put_nowait(EndOfEvents())
                _, pending = await asyncio.wait({consumer}, timeout=grace_s)
                if pending:
                    await self._cancel_task(session, consumer, "consumer", grace_s)

        # 4. In-flight assistance is no longer wanted
        for task in list(session.assistance_tasks):
            await self._cancel_task(session, task, "assistance", grace_s)

        session.state = SessionState.STOPPED
        self.registry.remove(session.session_id)
        log_event({
            "event_type": "SESSION_STOPPED",
            **session.log_context(),
            "reason": reason,
            "failures": len(session.failures),
        })

        if reason != STOP_REASON_CHANNEL_LOST and session.delivery.connected:
            await self._deliver(session, session_stopped_message(session.session_id, reason=reason))

    async def _stop_adapter(
        self,
        session: CallSession,
        channel: Channel,
        adapter: TranscriptionStreamAdapter,
    ) -> None:
        grace_s = self._config.session_stop_grace_s
        try:
            await asyncio.wait_for(adapter.stop(), timeout=grace_s)
        except asyncio.TimeoutError:
            log_warning(
                "STREAM_STOP_ABANDONED",
                **session.log_context(),
                channel=channel.value,
                grace_s=grace_s,
            )

    async def _cancel_task(
        self,
        session: CallSession,
        task: Optional[asyncio.Task[None]],
        name: str,
        grace_s: float,
    ) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        _, pending = await asyncio.wait({task}, timeout=grace_s)
        if pending:
            log_warning("SESSION_TASK_ABANDONED", **session.log_context(), task=name)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, session: CallSession, message: dict[str, object]) -> None:
        try:
            await session.delivery.send(message)
        except DeliveryChannelLost:
            if session.state is SessionState.ACTIVE:
                self._schedule_stop(session, STOP_REASON_CHANNEL_LOST)
