"""
Pipeline error taxonomy.

Every error that can affect a live call carries a stable `kind` string.
The kind is what clients see in `session-error` events, so it must never
change once released.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all call-pipeline errors."""

    kind: str = "pipeline_error"


# -------------------------
# Device
# -------------------------

class DeviceError(PipelineError):
    """Base class for audio device failures."""

    kind = "device_error"


class DeviceUnavailable(DeviceError):
    """The configured audio device cannot be opened (missing, denied, misconfigured)."""

    kind = "device_unavailable"


class DeviceBusy(DeviceError):
    """The device is already held by another session or application."""

    kind = "device_busy"


class DeviceDisconnected(DeviceError):
    """The device stopped producing audio after it was opened."""

    kind = "device_disconnected"


class FrameAlignmentError(PipelineError):
    """
    An interleaved chunk is not a whole number of frames.

    Means the device format configuration is wrong. Fatal for the session:
    padding or truncating would desynchronize the channels.
    """

    kind = "frame_alignment"


# -------------------------
# Transcription engine
# -------------------------

class EngineError(PipelineError):
    """Base class for transcription engine failures."""

    kind = "engine_error"


class EngineConnectError(EngineError):
    """Opening, writing to, or reading from an engine session failed."""

    kind = "engine_connect"


class EngineLimitExceeded(EngineError):
    """
    The engine closed the session because a duration or idle limit was hit.

    Not a failure: the stream adapter restarts the session transparently.
    """

    kind = "engine_limit"


class EngineFatalError(EngineError):
    """Reconnect budget exhausted; the channel is disabled."""

    kind = "engine_fatal"


# -------------------------
# Assistance
# -------------------------

class AssistanceError(PipelineError):
    """Base class for assistance-generation failures."""

    kind = "assistance_failed"


class AssistanceTimeout(AssistanceError):
    """The assistance generator did not answer within its timeout."""

    kind = "assistance_timeout"


class AssistanceFailed(AssistanceError):
    """The assistance generator raised or returned an unusable answer."""

    kind = "assistance_failed"


# -------------------------
# Delivery channel / sessions
# -------------------------

class DeliveryChannelLost(PipelineError):
    """The client connection is gone; nothing can be delivered."""

    kind = "delivery_channel_lost"


class SessionAlreadyActive(PipelineError):
    """A session with the requested ID is already active."""

    kind = "session_conflict"


class SessionNotFound(PipelineError):
    """No active session has the requested ID."""

    kind = "session_not_found"


class ProtocolError(PipelineError):
    """An inbound control message is malformed."""

    kind = "protocol_error"
