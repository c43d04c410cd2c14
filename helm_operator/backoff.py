"""Error classification and retry backoff policy.

Failures returned by the engine or the store are sorted into a small set of
categories by type and by keywords found in the error message. For failed
commands only the command's own output is searched, since the command line
itself carries flags such as `--timeout 400s`. Each category maps to a
backoff profile that determines how long to wait before the next attempt.
"""

import datetime
import logging
import random
import socket
from dataclasses import dataclass
from enum import StrEnum

from .exceptions import CommandException

__all__ = [
    "ErrorCategory",
    "BackoffProfile",
    "ClassifiedError",
    "classify_error",
    "categorize",
    "error_text",
    "is_retryable",
    "backoff_profile",
    "retry_delay",
]

_LOGGER = logging.getLogger(__name__)


class ErrorCategory(StrEnum):
    """Category of a failure, used to pick a retry strategy."""

    NETWORK = "Network"
    AUTH = "Auth"
    NOT_FOUND = "NotFound"
    VALIDATION = "Validation"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


NETWORK_KEYWORDS = (
    "connection refused",
    "connection reset",
    "connection timeout",
    "no route to host",
    "network unreachable",
    "dial tcp",
    "i/o timeout",
    "broken pipe",
)
AUTH_KEYWORDS = (
    "unauthorized",
    "authentication failed",
    "invalid credentials",
    "access denied",
    "forbidden",
    "401",
    "403",
)
NOT_FOUND_KEYWORDS = (
    "not found",
    "does not exist",
    "404",
    "no such",
)
VALIDATION_KEYWORDS = (
    "invalid",
    "validation failed",
    "bad request",
    "400",
    "malformed",
    "parse error",
)
TIMEOUT_KEYWORDS = (
    "deadline exceeded",
    "timeout",
)

_NETWORK_ERRORS = (ConnectionError, socket.gaierror, socket.herror)

_RETRYABLE = {
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.AUTH,
    ErrorCategory.UNKNOWN,
}


@dataclass(frozen=True)
class BackoffProfile:
    """Exponential backoff parameters for a category of error."""

    base: datetime.timedelta
    factor: float
    jitter: float
    steps: int
    cap: datetime.timedelta


NETWORK_BACKOFF = BackoffProfile(
    base=datetime.timedelta(seconds=5),
    factor=2.0,
    jitter=0.1,
    steps=5,
    cap=datetime.timedelta(minutes=5),
)
AUTH_BACKOFF = BackoffProfile(
    base=datetime.timedelta(minutes=1),
    factor=2.0,
    jitter=0.1,
    steps=3,
    cap=datetime.timedelta(minutes=15),
)
VALIDATION_BACKOFF = BackoffProfile(
    base=datetime.timedelta(minutes=5),
    factor=1.5,
    jitter=0.0,
    steps=2,
    cap=datetime.timedelta(minutes=10),
)
DEFAULT_BACKOFF = BackoffProfile(
    base=datetime.timedelta(seconds=30),
    factor=2.0,
    jitter=0.1,
    steps=5,
    cap=datetime.timedelta(minutes=10),
)

_PROFILES = {
    ErrorCategory.NETWORK: NETWORK_BACKOFF,
    ErrorCategory.TIMEOUT: NETWORK_BACKOFF,
    ErrorCategory.AUTH: AUTH_BACKOFF,
    ErrorCategory.VALIDATION: VALIDATION_BACKOFF,
}


@dataclass(frozen=True)
class ClassifiedError:
    """An error along with how it should be retried."""

    error: BaseException
    category: ErrorCategory
    retry_after: datetime.timedelta
    retryable: bool

    def __str__(self) -> str:
        return f"{self.category}: {self.error}"


def _contains_any(message: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in message for keyword in keywords)


def error_text(err: BaseException) -> str:
    """Return the text searched for keywords when classifying the error."""
    if isinstance(err, CommandException) and err.output is not None:
        return err.output
    return str(err)


def categorize(err: BaseException) -> ErrorCategory:
    """Return the category of the error based on its type and message."""
    message = error_text(err).lower()
    if isinstance(err, _NETWORK_ERRORS) or _contains_any(message, NETWORK_KEYWORDS):
        return ErrorCategory.NETWORK
    if _contains_any(message, AUTH_KEYWORDS):
        return ErrorCategory.AUTH
    if _contains_any(message, NOT_FOUND_KEYWORDS):
        return ErrorCategory.NOT_FOUND
    if _contains_any(message, VALIDATION_KEYWORDS):
        return ErrorCategory.VALIDATION
    if isinstance(err, TimeoutError) or _contains_any(message, TIMEOUT_KEYWORDS):
        return ErrorCategory.TIMEOUT
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    """Return true if errors of this category are worth retrying soon."""
    return category in _RETRYABLE


def backoff_profile(category: ErrorCategory) -> BackoffProfile:
    """Return the backoff profile for the category."""
    return _PROFILES.get(category, DEFAULT_BACKOFF)


def retry_delay(
    category: ErrorCategory,
    attempt: int,
    rng: random.Random | None = None,
) -> datetime.timedelta:
    """Return the delay before retry number `attempt` (starting at 1).

    The base delay grows by the profile factor once per previous attempt, up
    to the profile's step count, is clamped at the cap and then perturbed by
    the jitter fraction in either direction.
    """
    profile = backoff_profile(category)
    delay = profile.base.total_seconds()
    cap = profile.cap.total_seconds()
    for _ in range(1, min(max(attempt, 1), profile.steps)):
        delay = min(delay * profile.factor, cap)
    if profile.jitter > 0:
        spread = delay * profile.jitter
        delay += (rng or random).uniform(-spread, spread)
    return datetime.timedelta(seconds=max(delay, 0.0))


def classify_error(
    err: BaseException,
    attempt: int = 1,
    rng: random.Random | None = None,
    category: ErrorCategory | None = None,
) -> ClassifiedError:
    """Classify the error and compute the delay before the next attempt.

    Callers that already know the kind of failure may pass `category` to skip
    message based classification.
    """
    category = category or categorize(err)
    classified = ClassifiedError(
        error=err,
        category=category,
        retry_after=retry_delay(category, attempt, rng),
        retryable=is_retryable(category),
    )
    _LOGGER.debug("Classified error (attempt %d): %s", attempt, classified)
    return classified
