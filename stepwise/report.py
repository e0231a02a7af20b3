"""Error types and the JSON run report."""

import json
import logging
import time
from datetime import datetime, timezone


class StepwiseError(Exception):
    """Raised for reportable runtime failures."""


class ConfigError(StepwiseError):
    """Raised for invalid configuration (retry bounds, malformed flows, bad config files)."""


class PolicyDeniedError(StepwiseError):
    """Raised when the policy validator rejects a command. Never retried."""

    attempts = 0

    def __init__(self, reason: str, command: str):
        super().__init__(f"command denied by policy: {reason}")
        self.reason = reason
        self.command = command


class ExecutionError(StepwiseError):
    """Raised when an operation failed after its retry budget was spent."""

    def __init__(self, message: str, *, attempts: int = 1, category=None):
        super().__init__(message)
        self.attempts = attempts
        self.category = category


class CommandFailedError(ExecutionError):
    """Raised for a final failing shell command result."""

    def __init__(self, result):
        detail = "timed out" if result.timed_out else f"exit code {result.exit_code}"
        stderr = result.stderr.strip().splitlines()
        if stderr:
            detail += f": {stderr[-1]}"
        super().__init__(
            f"command failed after {result.attempts} attempt(s) ({detail})",
            attempts=result.attempts,
            category=result.category,
        )
        self.result = result


class RetryExhaustedError(ExecutionError):
    """Raised by the generic retry loop when it stops retrying."""

    def __init__(self, cause: BaseException, *, attempts: int, category):
        super().__init__(
            f"{cause} (after {attempts} attempt(s))",
            attempts=attempts,
            category=category,
        )
        self.cause = cause


class ProviderError(StepwiseError):
    """Raised when a model provider request fails."""

    def __init__(self, message: str, *, provider: str, category=None):
        super().__init__(message)
        self.provider = provider
        self.category = category

    @property
    def retryable(self) -> bool:
        from .retry import RETRYABLE

        return self.category in RETRYABLE


class PartialStreamError(ProviderError):
    """Raised when the transport failed after some chunks were delivered.

    Carries what was accumulated so the caller can decide whether the
    partial result is usable.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        provider: str,
        partial_content: str,
        partial_tool_calls: list,
        chunks: int,
        category=None,
    ):
        super().__init__(
            f"stream from {provider} failed after {chunks} chunk(s): {cause}",
            provider=provider,
            category=category,
        )
        self.cause = cause
        self.partial_content = partial_content
        self.partial_tool_calls = partial_tool_calls
        self.chunks = chunks


class ToolError(StepwiseError):
    """Raised for tool misuse: unknown tool, bad arguments, path escapes."""


class ReportCollector:
    """Accumulates events during a run for JSON report output.

    Instances are callable so they can be passed directly as an
    ``on_event`` handler.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.step_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.attempts = 0
        self.waits = 0
        self.total_wait_ms = 0
        self.denials = 0
        self._started = time.monotonic()

    def __call__(self, name: str, details: dict) -> None:
        self.record_event(name, details)

    def record_event(self, name: str, details: dict) -> None:
        if name == "attempt_start":
            self.attempts += 1
        elif name == "attempt_waiting":
            self.waits += 1
            self.total_wait_ms += int(details.get("delay_ms", 0))
        elif name == "command_denied":
            self.denials += 1
        elif name == "llm_call":
            self.llm_calls += 1
            self.total_llm_time += float(details.get("duration_s", 0.0))
        elif name in ("step_complete", "step_failed"):
            kind = details.get("kind", "unknown")
            stats = self.step_stats.setdefault(kind, {"succeeded": 0, "failed": 0})
            stats["succeeded" if name == "step_complete" else "failed"] += 1

        event = {
            "type": name,
            "t_s": round(time.monotonic() - self._started, 3),
        }
        event.update(details)
        self.events.append(event)

    def record_tool_call(
        self,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        details: dict = {
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            details["error"] = error
        self.record_event("tool_call", details)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "steps_by_kind": dict(self.step_stats),
                "attempts": self.attempts,
                "retry_waits": self.waits,
                "total_wait_ms": self.total_wait_ms,
                "policy_denials": self.denials,
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2, default=str)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for ``write``."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report


_event_logger = logging.getLogger("stepwise.events")


def emit_event(handler, name: str, details: dict) -> None:
    """Log an observable event and forward it to the optional handler."""
    _event_logger.info(name, extra={"event": name, "details": details})
    if handler is not None:
        handler(name, details)
