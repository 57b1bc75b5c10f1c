"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide typed, immutable config objects

Non-responsibilities:
- No orchestration logic
- No protocol constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from constants import (
    AUDIO_CHUNK_MS,
    AUDIO_SAMPLE_RATE_HZ,
    AUDIO_SAMPLE_WIDTH_BYTES,
    ASSISTANCE_DEFAULT_MODEL,
    DEEPGRAM_DEFAULT_LANGUAGE,
    DEEPGRAM_DEFAULT_MODEL,
)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# ---------------------------------------------------------------------
# Stream timing
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StreamSettings:
    """
    Timing bounds for one transcription stream.

    All values are seconds. The engine imposes the session and idle limits;
    the adapter restarts `restart_margin_s` before either is reached.
    """

    max_session_s: float = 290.0
    idle_timeout_s: float = 10.0
    restart_margin_s: float = 1.0
    failure_window_s: float = 5.0
    connect_timeout_s: float = 5.0
    buffer_max_s: float = 2.0
    drain_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        if self.buffer_max_s <= 0:
            raise ValueError("buffer_max_s must be > 0")
        if self.restart_margin_s < 0:
            raise ValueError("restart_margin_s must be >= 0")
        if self.max_session_s <= self.restart_margin_s:
            raise ValueError("max_session_s must exceed restart_margin_s")
        if self.idle_timeout_s <= self.restart_margin_s:
            raise ValueError("idle_timeout_s must exceed restart_margin_s")


# ---------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------

class DeviceMode(str, Enum):
    """Which capture topology the device provides."""

    AGGREGATE = "aggregate"  # operator + counterparty interleaved
    SINGLE = "single"        # counterparty only, from a virtual device


@dataclass(frozen=True)
class DeviceConfig:
    """
    Static description of the capture device.

    Channel offsets are 0-indexed here; the environment uses the 1-indexed
    numbering shown in the OS audio setup tools.
    """

    mode: DeviceMode
    device_name: str
    channels: int
    operator_channel: int = 0
    operator_channel_count: int = 1
    counterparty_channel: int = 1
    counterparty_channel_count: int = 1
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ
    sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES
    chunk_ms: int = AUDIO_CHUNK_MS

    def __post_init__(self) -> None:
        if not self.device_name or not self.device_name.strip():
            raise ValueError("device_name must be configured")
        if self.channels <= 0:
            raise ValueError("channels must be > 0")
        if self.sample_rate_hz <= 0 or self.sample_width_bytes <= 0 or self.chunk_ms <= 0:
            raise ValueError("sample_rate_hz, sample_width_bytes and chunk_ms must be > 0")

        if self.mode is DeviceMode.SINGLE:
            if self.channels != 1:
                raise ValueError("single mode expects a mono device (channels=1)")
            return

        op = range(self.operator_channel, self.operator_channel + self.operator_channel_count)
        cp = range(
            self.counterparty_channel,
            self.counterparty_channel + self.counterparty_channel_count,
        )
        if self.operator_channel < 0 or self.counterparty_channel < 0:
            raise ValueError("channel offsets must be >= 0")
        if self.operator_channel_count <= 0 or self.counterparty_channel_count <= 0:
            raise ValueError("channel group sizes must be > 0")
        if set(op) & set(cp):
            raise ValueError(
                f"operator channels {list(op)} and counterparty channels {list(cp)} overlap"
            )
        if self.operator_channel_count + self.counterparty_channel_count != self.channels:
            raise ValueError(
                "operator and counterparty channel groups must cover all "
                f"{self.channels} device channels"
            )
        if max(op.stop, cp.stop) > self.channels:
            raise ValueError("channel group extends past the device channel count")

    # ------------------------------------------------------------------
    # Derived sizes
    # ------------------------------------------------------------------

    @property
    def frame_width_bytes(self) -> int:
        """Bytes per interleaved sample frame (all channels)."""
        return self.channels * self.sample_width_bytes

    @property
    def frames_per_chunk(self) -> int:
        return (self.sample_rate_hz * self.chunk_ms) // 1000

    @property
    def bytes_per_second_mono(self) -> int:
        return self.sample_rate_hz * self.sample_width_bytes

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> DeviceConfig:
        """
        Load the device description from environment variables.

        Raises:
            ValueError if the channel mapping is invalid.
        """
        mode = DeviceMode(os.environ.get("AUDIO_DEVICE_MODE", DeviceMode.AGGREGATE.value))

        if mode is DeviceMode.SINGLE:
            return DeviceConfig(
                mode=mode,
                device_name=os.environ.get("SYSTEM_AUDIO_DEVICE", "BlackHole 2ch"),
                channels=1,
                operator_channel=0,
                operator_channel_count=0,
                counterparty_channel=0,
                counterparty_channel_count=1,
                sample_rate_hz=_env_int("AUDIO_SAMPLE_RATE_HZ", AUDIO_SAMPLE_RATE_HZ),
                chunk_ms=_env_int("AUDIO_CHUNK_MS", AUDIO_CHUNK_MS),
            )

        return DeviceConfig(
            mode=mode,
            device_name=os.environ.get(
                "AGGREGATE_AUDIO_DEVICE",
                os.environ.get("SYSTEM_AUDIO_DEVICE", "Aggregate Device"),
            ),
            channels=_env_int("AUDIO_DEVICE_CHANNELS", 2),
            operator_channel=_env_int("OPERATOR_AUDIO_CHANNEL", 1) - 1,
            operator_channel_count=_env_int("OPERATOR_AUDIO_CHANNEL_COUNT", 1),
            counterparty_channel=_env_int("CUSTOMER_AUDIO_CHANNEL", 2) - 1,
            counterparty_channel_count=_env_int("CUSTOMER_AUDIO_CHANNEL_COUNT", 1),
            sample_rate_hz=_env_int("AUDIO_SAMPLE_RATE_HZ", AUDIO_SAMPLE_RATE_HZ),
            chunk_ms=_env_int("AUDIO_CHUNK_MS", AUDIO_CHUNK_MS),
        )


# ---------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the session manager and gateway.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Transcription engine
    # ------------------------------------------------------------------

    deepgram_api_key: str | None
    deepgram_model: str
    deepgram_language: str

    # ------------------------------------------------------------------
    # Assistance (LLM)
    # ------------------------------------------------------------------

    openai_api_key: str | None
    llm_model: str
    assistance_timeout_s: float
    default_call_mode: str

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    stream: StreamSettings
    session_stop_grace_s: float
    audio_no_data_warning_s: float

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable cannot be parsed or a timing
            bound is inconsistent.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            deepgram_api_key=os.environ.get("DEEPGRAM_API_KEY"),
            deepgram_model=os.environ.get("DEEPGRAM_MODEL", DEEPGRAM_DEFAULT_MODEL),
            deepgram_language=os.environ.get("DEEPGRAM_LANGUAGE", DEEPGRAM_DEFAULT_LANGUAGE),

            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            llm_model=os.environ.get("LLM_MODEL", ASSISTANCE_DEFAULT_MODEL),
            assistance_timeout_s=_env_float("ASSISTANCE_TIMEOUT_S", 8.0),
            default_call_mode=os.environ.get("CALL_MODE", "sales"),

            stream=StreamSettings(
                max_session_s=_env_float("ENGINE_MAX_SESSION_S", 290.0),
                idle_timeout_s=_env_float("ENGINE_IDLE_TIMEOUT_S", 10.0),
                restart_margin_s=_env_float("ENGINE_RESTART_MARGIN_S", 1.0),
                failure_window_s=_env_float("ENGINE_FAILURE_WINDOW_S", 5.0),
                connect_timeout_s=_env_float("ENGINE_CONNECT_TIMEOUT_S", 5.0),
                buffer_max_s=_env_float("STREAM_BUFFER_MAX_S", 2.0),
                drain_timeout_s=_env_float("STREAM_DRAIN_TIMEOUT_S", 2.0),
            ),
            session_stop_grace_s=_env_float("SESSION_STOP_GRACE_S", 3.0),
            audio_no_data_warning_s=_env_float("AUDIO_NO_DATA_WARNING_S", 5.0),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
