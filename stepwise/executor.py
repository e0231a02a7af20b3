"""Shell execution with translation, policy checks and categorized retries."""

import asyncio
import dataclasses
import logging
import os
import random
import sys
import time
from dataclasses import dataclass

from .policy import CommandPolicy, PolicyDecision, PolicyValidator, redact
from .report import PolicyDeniedError, emit_event
from .retry import (
    RETRYABLE,
    ErrorCategory,
    RetryConfig,
    backoff_delay_ms,
    classify_text,
)
from .translate import CMD, POWERSHELL, check_dialect, host_dialect, translate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0  # seconds
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


@dataclass(frozen=True)
class CommandResult:
    command: str
    native_command: str
    exit_code: int
    stdout: str
    stderr: str
    elapsed: float
    attempts: int = 1
    timed_out: bool = False
    category: ErrorCategory | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def with_attempts(self, attempts: int, elapsed: float | None = None) -> "CommandResult":
        """Copy carrying the totals of a retried run. ``elapsed`` excludes backoff waits."""
        if elapsed is None:
            elapsed = self.elapsed
        return dataclasses.replace(self, attempts=attempts, elapsed=elapsed)

    def format_output(self) -> str:
        """Tool-facing rendering of the captured streams."""
        return f"Stdout:\n{self.stdout}\nStderr:\n{self.stderr}\nExit Code: {self.exit_code}"


# --- One attempt ----------------------------------------------------------------


def shell_argv(native_command: str, dialect: str) -> list[str]:
    if dialect == POWERSHELL:
        exe = "powershell" if sys.platform == "win32" else "pwsh"
        return [exe, "-NoProfile", "-NonInteractive", "-Command", native_command]
    if dialect == CMD:
        return ["cmd.exe", "/d", "/s", "/c", native_command]
    return ["/bin/sh", "-c", native_command]


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the shell runs in its own session, so the whole process group
    is signalled. On Windows, taskkill /T handles the tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/T", "/F", "/PID", str(proc.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(killer.wait(), _KILL_WAIT_TIMEOUT)
        except (OSError, asyncio.TimeoutError):
            pass  # best-effort
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already dead
    try:
        await asyncio.wait_for(proc.wait(), _KILL_WAIT_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Process {proc.pid} did not exit after kill")


def _decode(payload: bytes | None) -> str:
    return (payload or b"").decode("utf-8", errors="replace")


async def run_shell(
    native_command: str,
    *,
    dialect: str,
    timeout: float | None = DEFAULT_TIMEOUT,
    cwd: str | None = None,
    command: str | None = None,
) -> CommandResult:
    """Run one attempt of an already-translated command through the host shell."""
    argv = shell_argv(native_command, dialect)
    started = time.monotonic()

    def _result(exit_code, stdout, stderr, timed_out=False):
        return CommandResult(
            command=native_command if command is None else command,
            native_command=native_command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            elapsed=time.monotonic() - started,
            timed_out=timed_out,
        )

    kwargs: dict = dict(
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    if sys.platform != "win32":
        kwargs["start_new_session"] = True

    try:
        proc = await asyncio.create_subprocess_exec(*argv, **kwargs)
    except FileNotFoundError as e:
        return _result(NOT_FOUND_EXIT_CODE, "", f"shell not found: {argv[0]}: {e}")
    except PermissionError as e:
        return _result(126, "", f"permission denied executing {argv[0]}: {e}")

    communicate = asyncio.ensure_future(proc.communicate())
    try:
        stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout)
    except asyncio.TimeoutError:
        await _kill_process_tree(proc)
        try:
            stdout, stderr = await asyncio.wait_for(communicate, 2)
        except asyncio.TimeoutError:
            communicate.cancel()
            stdout, stderr = b"", b""
        message = f"command timed out after {timeout:g}s"
        err = _decode(stderr)
        return _result(
            TIMEOUT_EXIT_CODE,
            _decode(stdout),
            f"{err}\n{message}" if err else message,
            timed_out=True,
        )
    except asyncio.CancelledError:
        await _kill_process_tree(proc)
        raise

    return _result(proc.returncode, _decode(stdout), _decode(stderr))


def classify_result(result: CommandResult) -> ErrorCategory | None:
    """Failure category of one attempt, or None for success."""
    if result.ok:
        return None
    if result.timed_out:
        return ErrorCategory.TRANSIENT_NETWORK
    if result.exit_code == NOT_FOUND_EXIT_CODE:
        return ErrorCategory.COMMAND_NOT_FOUND
    category = classify_text(result.stderr)
    if category is ErrorCategory.UNKNOWN:
        category = classify_text(result.stdout)
    return category


# --- Retrying executor ---------------------------------------------------------


class RetryExecutor:
    """Translate, validate and run commands, retrying categorized failures."""

    def __init__(
        self,
        *,
        dialect: str | None = None,
        policy: PolicyValidator | None = None,
        runner=run_shell,
        on_event=None,
        sleep=asyncio.sleep,
        rng=random.random,
        cwd: str | None = None,
        default_timeout: float | None = DEFAULT_TIMEOUT,
    ):
        self.dialect = check_dialect(dialect or host_dialect())
        self.policy = policy if policy is not None else CommandPolicy(dialect=self.dialect)
        self.runner = runner
        self.on_event = on_event
        self.sleep = sleep
        self.rng = rng
        self.cwd = cwd
        self.default_timeout = default_timeout

    def plan(self, command: str) -> tuple[str, PolicyDecision]:
        """Translate and validate without running anything."""
        native = translate(command, self.dialect)
        return native, self.policy.validate(native)

    def _emit(self, name: str, command: str, **details) -> None:
        emit_event(self.on_event, name, {"command": redact(command), **details})

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        retry: RetryConfig | None = None,
    ) -> CommandResult:
        """Run ``command`` until it succeeds or the retry budget is spent.

        A policy denial raises PolicyDeniedError before anything runs. A
        final failure is returned as a CommandResult carrying the total
        attempt count and its category; callers decide whether it is fatal.
        """
        config = (retry or RetryConfig()).validate()
        timeout = self.default_timeout if timeout is None else timeout

        native, decision = self.plan(command)
        if not decision.allowed:
            self._emit("command_denied", command, reason=decision.reason)
            raise PolicyDeniedError(decision.reason or "denied", command)

        attempt = 0
        elapsed = 0.0
        while True:
            attempt += 1
            self._emit(
                "attempt_start",
                command,
                attempt=attempt,
                max_attempts=config.max_attempts,
                native_command=redact(native),
            )
            result = await self.runner(
                native, dialect=self.dialect, timeout=timeout, cwd=self.cwd, command=command
            )
            elapsed += result.elapsed
            category = classify_result(result)
            if category is None:
                self._emit("attempt_success", command, attempts=attempt)
                return result.with_attempts(attempt, elapsed)

            retryable = category in RETRYABLE
            self._emit(
                "attempt_failed",
                command,
                attempt=attempt,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                category=category.value,
            )
            if not retryable or attempt >= config.max_attempts:
                self._emit(
                    "attempts_exhausted",
                    command,
                    attempts=attempt,
                    category=category.value,
                    retryable=retryable,
                )
                return dataclasses.replace(
                    result.with_attempts(attempt, elapsed), category=category
                )

            delay = backoff_delay_ms(config, attempt, self.rng)
            self._emit("attempt_waiting", command, attempt=attempt, delay_ms=delay)
            await self.sleep(delay / 1000)
