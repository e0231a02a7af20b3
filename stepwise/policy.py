"""Command policy: allow/deny decisions for translated commands, and redaction."""

import os
import re
from dataclasses import dataclass
from typing import Protocol

from .report import ConfigError
from .translate import CMD, POSIX, POWERSHELL, check_dialect

DEFAULT_MAX_COMMAND_LENGTH = 8192


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None = None


ALLOW = PolicyDecision(True)


class PolicyValidator(Protocol):
    def validate(self, native_command: str) -> PolicyDecision: ...


def _compile(patterns):
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Command substitution and heredocs. Sequencing (;, |, &&) is part of the
# portable language on POSIX and stays allowed.
_INJECTION_PATTERNS = {
    POSIX: _compile([r"`", r"\$\(", r"\$\{", r"<<"]),
    POWERSHELL: _compile([r"&&", r"\$\(", r"<<", r">\s*&"]),
    CMD: _compile([r"\$\(", r"<<"]),
}

_DESTRUCTIVE_PATTERNS = _compile(
    [
        r"\brm\s+-(?:rf|fr)\b",
        r"\brm\s+(?:-r\s+-f|-f\s+-r)\b",
        r"\bdel\s+/s\b",
        r"\brd\s+/s\b",
        r"\bformat\s+[a-z]:",
        r"\bmkfs(?:\.\w+)?\b",
        r"\bremove-item\b",
        r"\bdrop\s+(?:table|database)\b",
        r"\bdd\s+if=.*\bof=/dev/",
    ]
)

_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||[;|])\s*")


def command_names(command: str) -> list[str]:
    """Lower-cased basenames of the program in each pipeline/sequence segment."""
    names = []
    for segment in _SEGMENT_SPLIT.split(command):
        words = segment.split()
        if not words:
            continue
        name = os.path.basename(words[0].strip("'\"").replace("\\", "/")).lower()
        if name.endswith(".exe"):
            name = name[: -len(".exe")]
        names.append(name)
    return names


class CommandPolicy:
    """Default validator. Immutable after construction."""

    def __init__(
        self,
        *,
        dialect: str = POSIX,
        max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH,
        allow_destructive: bool = False,
        allowed_commands: list[str] | None = None,
        deny_patterns: list[str] | None = None,
    ):
        self._dialect = check_dialect(dialect)
        if max_command_length < 1:
            raise ConfigError(f"max_command_length must be >= 1, got {max_command_length}")
        self._max_length = max_command_length
        self._allow_destructive = allow_destructive
        self._allowed = (
            frozenset(name.lower() for name in allowed_commands)
            if allowed_commands
            else None
        )
        deny = []
        for pattern in deny_patterns or []:
            try:
                deny.append(re.compile(pattern))
            except re.error as e:
                raise ConfigError(f"invalid deny pattern {pattern!r}: {e}") from e
        self._deny = tuple(deny)

    @property
    def dialect(self) -> str:
        return self._dialect

    def validate(self, native_command: str) -> PolicyDecision:
        command = native_command.strip()
        if not command:
            return PolicyDecision(False, "empty command")
        if len(command) > self._max_length:
            return PolicyDecision(
                False,
                f"command is {len(command)} characters (limit {self._max_length})",
            )
        for pattern in _INJECTION_PATTERNS[self._dialect]:
            if pattern.search(command):
                return PolicyDecision(
                    False,
                    f"contains shell metacharacter sequence {pattern.pattern!r}",
                )
        if not self._allow_destructive:
            for pattern in _DESTRUCTIVE_PATTERNS:
                if pattern.search(command):
                    return PolicyDecision(False, "destructive command")
        for pattern in self._deny:
            if pattern.search(command):
                return PolicyDecision(False, f"matches deny pattern {pattern.pattern!r}")
        if self._allowed is not None:
            for name in command_names(command):
                if name not in self._allowed:
                    return PolicyDecision(False, f"{name!r} is not in the allowed commands")
        return ALLOW


# --- Redaction ----------------------------------------------------------------

_SECRET_PATTERNS = [
    re.compile(r"(--?(?:password|token|secret|api[-_]?key)\s+)(\S+)", re.IGNORECASE),
    re.compile(r"((?:password|token|secret|api[-_]?key)\s*[=:]\s*)(\S+)", re.IGNORECASE),
    re.compile(r"(\bBearer\s+)(\S+)", re.IGNORECASE),
    re.compile(r"()\b(?:sk|hf|ghp|gho|xox[bp])[-_][A-Za-z0-9_-]{12,}"),
]


def redact(text: str) -> str:
    """Mask secret-looking values before text is logged or recorded."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1***", text)
    return text
