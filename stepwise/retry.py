"""Retry policy: configuration, failure classification and the backoff loop."""

import asyncio
import dataclasses
import enum
import random
import re
import sys
from dataclasses import dataclass

from .report import ConfigError, PolicyDeniedError, RetryExhaustedError, emit_event


class ErrorCategory(str, enum.Enum):
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_SERVER = "transient_server"
    NON_RETRYABLE_CLIENT = "non_retryable_client"
    COMMAND_NOT_FOUND = "command_not_found"
    UNKNOWN = "unknown"


RETRYABLE = frozenset(
    {
        ErrorCategory.TRANSIENT_NETWORK,
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.TRANSIENT_SERVER,
        ErrorCategory.UNKNOWN,
    }
)

MAX_ATTEMPTS_LIMIT = 10
MAX_DELAY_MS_LIMIT = 60_000
DEFAULT_MAX_DELAY_MS = 30_000


# --- Configuration ---


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff settings for one retried operation."""

    max_attempts: int = 1
    delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter: float = 0.1
    continue_on_failure: bool = False

    def validate(self, source: str = "retry") -> "RetryConfig":
        """Check bounds. Raises ConfigError; returns self for chaining."""
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT:
            raise ConfigError(
                f"{source}: maxAttempts must be between 1 and {MAX_ATTEMPTS_LIMIT}, "
                f"got {self.max_attempts}"
            )
        if not 0 <= self.delay_ms <= MAX_DELAY_MS_LIMIT:
            raise ConfigError(
                f"{source}: delayMs must be between 0 and {MAX_DELAY_MS_LIMIT}, "
                f"got {self.delay_ms}"
            )
        if self.max_delay_ms < 0:
            raise ConfigError(f"{source}: maxDelayMs must be >= 0, got {self.max_delay_ms}")
        if self.multiplier < 1:
            raise ConfigError(f"{source}: multiplier must be >= 1, got {self.multiplier}")
        if not 0 <= self.jitter <= 1:
            raise ConfigError(f"{source}: jitter must be between 0 and 1, got {self.jitter}")
        return self

    @classmethod
    def from_mapping(
        cls, data: dict, *, source: str = "retry", defaults: "RetryConfig | None" = None
    ) -> "RetryConfig":
        """Build a validated config from a flow retry block.

        Accepts the flow format keys (maxAttempts, delayMs, continueOnFailure,
        maxDelayMs, jitter, multiplier) as well as the field names.
        """
        if not isinstance(data, dict):
            raise ConfigError(f"{source}: expected a mapping, got {type(data).__name__}")
        values = {}
        for key, value in data.items():
            field_name = _KEY_ALIASES.get(key, key)
            expected = _FIELD_TYPES.get(field_name)
            if expected is None:
                raise ConfigError(f"{source}: unknown retry key {key!r}")
            # bool is a subclass of int; only continue_on_failure takes bools.
            if isinstance(value, bool) and expected is not bool:
                raise ConfigError(f"{source}: {key!r} expected a number, got bool")
            if not isinstance(value, expected):
                raise ConfigError(
                    f"{source}: {key!r} expected {_type_name(expected)}, "
                    f"got {type(value).__name__}"
                )
            values[field_name] = value
        base = defaults if defaults is not None else cls()
        return dataclasses.replace(base, **values).validate(source)

    def to_dict(self) -> dict:
        return {
            "maxAttempts": self.max_attempts,
            "delayMs": self.delay_ms,
            "multiplier": self.multiplier,
            "maxDelayMs": self.max_delay_ms,
            "jitter": self.jitter,
            "continueOnFailure": self.continue_on_failure,
        }


_KEY_ALIASES = {
    "maxAttempts": "max_attempts",
    "delayMs": "delay_ms",
    "maxDelayMs": "max_delay_ms",
    "backoffMultiplier": "multiplier",
    "jitterFactor": "jitter",
    "continueOnFailure": "continue_on_failure",
}

_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "max_attempts": int,
    "delay_ms": int,
    "multiplier": (int, float),
    "max_delay_ms": int,
    "jitter": (int, float),
    "continue_on_failure": bool,
}


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def backoff_delay_ms(config: RetryConfig, attempt: int, rng=random.random) -> int:
    """Delay to wait after failed attempt number ``attempt`` (1-based).

    ``min(cap, delay * multiplier ** (attempt - 1))`` perturbed by
    ``±jitter``, then clamped to ``[0, cap]``.
    """
    base = min(config.max_delay_ms, config.delay_ms * config.multiplier ** (attempt - 1))
    spread = base * config.jitter
    delay = base - spread + rng() * 2 * spread
    return int(max(0, min(config.max_delay_ms, delay)))


# --- Classification ---

_TEXT_RULES: list[tuple[ErrorCategory, re.Pattern]] = [
    (
        ErrorCategory.COMMAND_NOT_FOUND,
        re.compile(
            r"command not found"
            r"|is not recognized as an internal or external command"
            r"|is not recognized as the name of a cmdlet",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.TRANSIENT_NETWORK,
        re.compile(
            r"network|connection|timeout|timed out|econnrefused|enotfound|etimedout"
            r"|fetch failed|socket|dns|could not resolve host",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.RATE_LIMITED,
        re.compile(r"rate.?limit|too many requests|quota exceeded|\b429\b", re.IGNORECASE),
    ),
    (
        ErrorCategory.NON_RETRYABLE_CLIENT,
        re.compile(
            r"authentication|unauthorized|forbidden|api key|invalid key|credential"
            r"|\b401\b|\b403\b",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.TRANSIENT_SERVER,
        re.compile(
            r"\b50[0234]\b|internal server error|bad gateway|service unavailable",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.NON_RETRYABLE_CLIENT,
        re.compile(r"\b400\b|bad request|invalid|validation", re.IGNORECASE),
    ),
]


def classify_text(text: str) -> ErrorCategory:
    """Categorize a failure message by keyword, first match wins."""
    for category, pattern in _TEXT_RULES:
        if pattern.search(text):
            return category
    return ErrorCategory.UNKNOWN


def classify_status(status: int) -> ErrorCategory:
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if status == 408:
        return ErrorCategory.TRANSIENT_NETWORK
    if 500 <= status < 600:
        return ErrorCategory.TRANSIENT_SERVER
    if 400 <= status < 500:
        return ErrorCategory.NON_RETRYABLE_CLIENT
    return ErrorCategory.UNKNOWN


# Checked in order; subclasses (e.g. Timeout < APIConnectionError) come first.
_LITELLM_CATEGORIES = [
    ("RateLimitError", ErrorCategory.RATE_LIMITED),
    ("Timeout", ErrorCategory.TRANSIENT_NETWORK),
    ("APIConnectionError", ErrorCategory.TRANSIENT_NETWORK),
    ("InternalServerError", ErrorCategory.TRANSIENT_SERVER),
    ("ServiceUnavailableError", ErrorCategory.TRANSIENT_SERVER),
    ("BadGatewayError", ErrorCategory.TRANSIENT_SERVER),
    ("AuthenticationError", ErrorCategory.NON_RETRYABLE_CLIENT),
    ("PermissionDeniedError", ErrorCategory.NON_RETRYABLE_CLIENT),
    ("NotFoundError", ErrorCategory.NON_RETRYABLE_CLIENT),
    ("BadRequestError", ErrorCategory.NON_RETRYABLE_CLIENT),
    ("UnprocessableEntityError", ErrorCategory.NON_RETRYABLE_CLIENT),
]


def _litellm_category(exc: BaseException) -> ErrorCategory | None:
    # An exception can only be a litellm type if litellm was imported.
    litellm = sys.modules.get("litellm")
    if litellm is None:
        return None
    for name, category in _LITELLM_CATEGORIES:
        exc_type = getattr(litellm, name, None)
        if isinstance(exc_type, type) and isinstance(exc, exc_type):
            return category
    return None


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Categorize an exception raised by a retried operation."""
    category = getattr(exc, "category", None)
    if isinstance(category, ErrorCategory):
        return category
    if isinstance(exc, (ConfigError, PolicyDeniedError)):
        return ErrorCategory.NON_RETRYABLE_CLIENT
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT_NETWORK
    by_type = _litellm_category(exc)
    if by_type is not None:
        return by_type
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return classify_status(status)
    return classify_text(str(exc))


# --- Generic retry loop ---


@dataclass(frozen=True)
class RetryOutcome:
    value: object
    attempts: int
    waited_ms: int


async def retry_call(
    operation,
    config: RetryConfig,
    *,
    label: str,
    classify=classify_exception,
    on_event=None,
    sleep=asyncio.sleep,
    rng=random.random,
) -> RetryOutcome:
    """Await ``operation()`` until it succeeds or the retry budget is spent.

    Configuration errors and policy denials propagate untouched. Other
    failures are classified; non-retryable ones stop at once. Raises
    RetryExhaustedError carrying the last failure and the attempt count.
    Cancellation is never caught.
    """
    config.validate()
    waited_ms = 0
    attempt = 0
    while True:
        attempt += 1
        emit_event(
            on_event,
            "attempt_start",
            {"target": label, "attempt": attempt, "max_attempts": config.max_attempts},
        )
        try:
            value = await operation()
        except (ConfigError, PolicyDeniedError):
            raise
        except Exception as exc:
            category = classify(exc)
            retryable = category in RETRYABLE
            emit_event(
                on_event,
                "attempt_failed",
                {
                    "target": label,
                    "attempt": attempt,
                    "category": category.value,
                    "error": str(exc),
                },
            )
            if not retryable or attempt >= config.max_attempts:
                emit_event(
                    on_event,
                    "attempts_exhausted",
                    {
                        "target": label,
                        "attempts": attempt,
                        "category": category.value,
                        "retryable": retryable,
                    },
                )
                raise RetryExhaustedError(exc, attempts=attempt, category=category) from exc
            delay = backoff_delay_ms(config, attempt, rng)
            emit_event(
                on_event,
                "attempt_waiting",
                {"target": label, "attempt": attempt, "delay_ms": delay},
            )
            await sleep(delay / 1000)
            waited_ms += delay
            continue

        emit_event(on_event, "attempt_success", {"target": label, "attempts": attempt})
        return RetryOutcome(value=value, attempts=attempt, waited_ms=waited_ms)
