"""
CONSTANTS
---------
Fixed protocol and audio-format values shared across the pipeline.

Rules:
- Values that an operator may tune per deployment live in config.py.
- Values that are part of a wire/format contract live here.
- No magic numbers elsewhere in the codebase.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Audio format (PCM16 @ 16kHz, 20ms chunks)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit, little-endian)
AUDIO_CHUNK_MS: Final[int] = 20
AUDIO_DTYPE: Final[str] = "int16"

# =============================================================================
# Sequence numbers
# =============================================================================

SEQ_NUM_START: Final[int] = 0

# =============================================================================
# Transcription engine (Deepgram live API)
# =============================================================================

DEEPGRAM_LISTEN_URL: Final[str] = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_DEFAULT_MODEL: Final[str] = "nova-2-phonecall"
DEEPGRAM_DEFAULT_LANGUAGE: Final[str] = "en-US"
DEEPGRAM_MAX_MESSAGE_BYTES: Final[int] = 2**22

# Close codes / reasons the engine uses when a session limit is hit.
DEEPGRAM_IDLE_TIMEOUT_REASON: Final[str] = "NET-0001"

# =============================================================================
# Watchdog cadence
# =============================================================================

STREAM_WATCHDOG_INTERVAL_S: Final[float] = 0.25

# =============================================================================
# Assistance
# =============================================================================

ASSISTANCE_MAX_HISTORY_LINES: Final[int] = 40
ASSISTANCE_DEFAULT_MODEL: Final[str] = "gpt-4o-mini"
ASSISTANCE_TEMPERATURE: Final[float] = 0.7
ASSISTANCE_MAX_TOKENS: Final[int] = 500
ASSISTANCE_RETRY_DELAY_MS: Final[int] = 200

# =============================================================================
# Call sessions
# =============================================================================

SESSION_TRANSCRIPT_MAX_LINES: Final[int] = 500

# Role labels for the rolling transcript, per call mode
OPERATOR_ROLE_LABEL: Final[str] = "Operator"
COUNTERPARTY_ROLE_LABELS: Final[dict[str, str]] = {
    "sales": "Lead",
    "vendor": "Vendor Rep",
}

# =============================================================================
# Delivery channel
# =============================================================================

PAYLOAD_PREVIEW_CHARS: Final[int] = 100
