"""
Retry policy helpers.

Purpose:
- Centralize the retry rules for engine streams and assistance generation
- Keep the stream adapter and the session manager free of ad-hoc counters

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from constants import ASSISTANCE_RETRY_DELAY_MS


class Service(str, Enum):
    """External collaborator a retry decision is about."""

    ENGINE = "engine"
    ASSISTANCE = "assistance"


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Failure classification used by retry policy.

    CONNECT_ERROR:
        Opening, writing to or reading from an engine session failed.
        One reconnect is allowed per failure window.

    LIMIT:
        The engine closed the session on a duration/idle limit.
        Not a failure: handled as a restart, never counted.

    TIMEOUT:
        Assistance did not answer within its per-attempt timeout.

    ERROR:
        Assistance raised or returned an unusable answer.

    Notes:
    - Cancellation is NOT a failure type and must never trigger retries.
    """

    CONNECT_ERROR = "connect_error"
    LIMIT = "limit"
    TIMEOUT = "timeout"
    ERROR = "error"


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    - attempt == 0 represents the initial attempt (no retry yet).
    - attempt >= 1 represents the Nth retry attempt.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def max_attempts(service: Service, failure: FailureType) -> int:
    """
    Maximum retry attempts (excluding the initial attempt).

    - Engine connect/send/receive: 1 reconnect per failure window
    - Engine limit: 0 (restarts are not retries)
    - Assistance timeout/error: 1 retry
    """
    if service is Service.ENGINE:
        if failure is FailureType.CONNECT_ERROR:
            return 1
        return 0

    if service is Service.ASSISTANCE:
        if failure in (FailureType.TIMEOUT, FailureType.ERROR):
            return 1
        return 0

    return 0


def should_retry(
    *,
    service: Service,
    failure: FailureType,
    attempt: RetryAttempt,
) -> bool:
    """
    Returns True if a retry is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < max_attempts(service, failure)


def get_retry_delay_ms(*, service: Service) -> int:
    """
    Returns delay before a retry.

    Engine reconnects are immediate: buffered audio is aging meanwhile.
    """
    if service is Service.ASSISTANCE:
        return ASSISTANCE_RETRY_DELAY_MS
    return 0
