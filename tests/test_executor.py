"""Tests for shell execution and the retrying executor."""

import asyncio
import sys

import pytest

from stepwise.executor import (
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CommandResult,
    RetryExecutor,
    classify_result,
    run_shell,
    shell_argv,
)
from stepwise.policy import CommandPolicy
from stepwise.report import PolicyDeniedError
from stepwise.retry import ErrorCategory, RetryConfig
from stepwise.translate import CMD, POSIX, POWERSHELL

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


def _result(exit_code=0, stdout="", stderr="", timed_out=False, command="cmd", elapsed=0.01):
    return CommandResult(
        command=command,
        native_command=command,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        elapsed=elapsed,
        timed_out=timed_out,
    )


class FakeRunner:
    """Returns scripted results in order and records each call."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, native, *, dialect, timeout, cwd, command):
        self.calls.append({"native": native, "dialect": dialect, "timeout": timeout, "command": command})
        return self.results.pop(0)


class Recorder:
    def __init__(self):
        self.events = []
        self.sleeps = []

    def __call__(self, name, details):
        self.events.append((name, details))

    async def sleep(self, seconds):
        self.sleeps.append(seconds)

    def names(self):
        return [name for name, _ in self.events]


def _executor(runner, recorder, dialect=POSIX, **kwargs):
    return RetryExecutor(
        dialect=dialect,
        runner=runner,
        on_event=recorder,
        sleep=recorder.sleep,
        rng=lambda: 0.5,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# CommandResult / classification
# ---------------------------------------------------------------------------


class TestCommandResult:
    def test_format_output(self):
        result = _result(1, stdout="out", stderr="err")
        assert result.format_output() == "Stdout:\nout\nStderr:\nerr\nExit Code: 1"

    def test_ok(self):
        assert _result(0).ok
        assert not _result(1).ok
        assert not _result(0, timed_out=True).ok

    def test_classify(self):
        assert classify_result(_result(0)) is None
        assert classify_result(_result(TIMEOUT_EXIT_CODE, timed_out=True)) is ErrorCategory.TRANSIENT_NETWORK
        assert classify_result(_result(NOT_FOUND_EXIT_CODE)) is ErrorCategory.COMMAND_NOT_FOUND
        assert classify_result(_result(1, stderr="429 Too Many Requests")) is ErrorCategory.RATE_LIMITED
        assert classify_result(_result(1, stdout="502 Bad Gateway")) is ErrorCategory.TRANSIENT_SERVER
        assert classify_result(_result(1)) is ErrorCategory.UNKNOWN

    def test_shell_argv(self):
        assert shell_argv("ls", POSIX) == ["/bin/sh", "-c", "ls"]
        assert shell_argv("dir", CMD)[:1] == ["cmd.exe"]
        argv = shell_argv("Get-Location", POWERSHELL)
        assert argv[-2:] == ["-Command", "Get-Location"]
        assert "-NoProfile" in argv


# ---------------------------------------------------------------------------
# RetryExecutor
# ---------------------------------------------------------------------------


class TestRetryExecutor:
    def test_success(self):
        runner = FakeRunner(_result(0, stdout="hi"))
        rec = Recorder()
        result = asyncio.run(_executor(runner, rec).execute("echo hi"))
        assert result.ok
        assert result.attempts == 1
        assert rec.names() == ["attempt_start", "attempt_success"]

    def test_elapsed_sums_every_attempt(self):
        runner = FakeRunner(
            _result(1, stderr="503 Service Unavailable", elapsed=0.5),
            _result(1, stderr="503 Service Unavailable", elapsed=0.25),
            _result(0, elapsed=1.0),
        )
        rec = Recorder()
        result = asyncio.run(
            _executor(runner, rec).execute("curl x", retry=RetryConfig(max_attempts=3, delay_ms=100))
        )
        assert result.attempts == 3
        assert result.elapsed == pytest.approx(1.75)

    def test_elapsed_sums_failed_attempts(self):
        runner = FakeRunner(_result(1, elapsed=0.5), _result(1, elapsed=0.5))
        rec = Recorder()
        result = asyncio.run(
            _executor(runner, rec).execute("flaky", retry=RetryConfig(max_attempts=2, delay_ms=0))
        )
        assert not result.ok
        assert result.category is ErrorCategory.UNKNOWN
        assert result.elapsed == pytest.approx(1.0)

    def test_translates_before_running(self):
        runner = FakeRunner(_result(0))
        rec = Recorder()
        asyncio.run(_executor(runner, rec, dialect=POWERSHELL).execute("pwd", timeout=3))
        assert runner.calls[0]["native"] == "Get-Location"
        assert runner.calls[0]["command"] == "pwd"
        assert runner.calls[0]["dialect"] == POWERSHELL
        assert runner.calls[0]["timeout"] == 3

    def test_default_timeout(self):
        runner = FakeRunner(_result(0))
        asyncio.run(_executor(runner, Recorder(), default_timeout=7.5).execute("ls"))
        assert runner.calls[0]["timeout"] == 7.5

    def test_rate_limited_then_success(self):
        runner = FakeRunner(
            _result(22, stderr="HTTP 429 rate limit"),
            _result(22, stderr="HTTP 429 rate limit"),
            _result(0, stdout="{}"),
        )
        rec = Recorder()
        retry = RetryConfig(max_attempts=3, delay_ms=1000)
        result = asyncio.run(_executor(runner, rec).execute("curl example.com", retry=retry))
        assert result.ok
        assert result.attempts == 3
        assert rec.names().count("attempt_start") == 3
        waits = [d["delay_ms"] for name, d in rec.events if name == "attempt_waiting"]
        assert waits == [1000, 2000]
        assert rec.sleeps == [1.0, 2.0]
        assert rec.names()[-1] == "attempt_success"

    def test_command_not_found_is_not_retried(self):
        runner = FakeRunner(_result(NOT_FOUND_EXIT_CODE, stderr="sh: nosuch: not found"))
        rec = Recorder()
        result = asyncio.run(
            _executor(runner, rec).execute("nosuch", retry=RetryConfig(max_attempts=5))
        )
        assert not result.ok
        assert result.attempts == 1
        assert result.category is ErrorCategory.COMMAND_NOT_FOUND
        assert rec.sleeps == []
        assert "attempt_waiting" not in rec.names()
        exhausted = [d for name, d in rec.events if name == "attempts_exhausted"]
        assert exhausted == [
            {
                "command": "nosuch",
                "attempts": 1,
                "category": "command_not_found",
                "retryable": False,
            }
        ]

    def test_exhausts_budget(self):
        runner = FakeRunner(*[_result(1, stderr="connection reset")] * 3)
        rec = Recorder()
        result = asyncio.run(
            _executor(runner, rec).execute("fetch", retry=RetryConfig(max_attempts=3, delay_ms=10))
        )
        assert result.attempts == 3
        assert result.category is ErrorCategory.TRANSIENT_NETWORK
        assert len(runner.calls) == 3
        assert len(rec.sleeps) == 2

    def test_policy_denial_runs_nothing(self):
        runner = FakeRunner()
        rec = Recorder()
        with pytest.raises(PolicyDeniedError) as exc_info:
            asyncio.run(_executor(runner, rec).execute("rm -rf /", retry=RetryConfig(max_attempts=3)))
        assert exc_info.value.attempts == 0
        assert runner.calls == []
        assert rec.names() == ["command_denied"]

    def test_custom_policy(self):
        runner = FakeRunner()
        rec = Recorder()
        policy = CommandPolicy(allowed_commands=["ls"])
        with pytest.raises(PolicyDeniedError, match="not in the allowed commands"):
            asyncio.run(_executor(runner, rec, policy=policy).execute("curl x"))

    def test_events_are_redacted(self):
        runner = FakeRunner(_result(0))
        rec = Recorder()
        asyncio.run(_executor(runner, rec).execute("deploy --token s3cr3t"))
        for _, details in rec.events:
            assert "s3cr3t" not in str(details)

    def test_plan(self):
        executor = _executor(FakeRunner(), Recorder(), dialect=CMD)
        native, decision = executor.plan("test -f a.txt")
        assert native == 'if exist "a.txt" (exit /b 0) else (exit /b 1)'
        assert decision.allowed


# ---------------------------------------------------------------------------
# run_shell (real subprocesses)
# ---------------------------------------------------------------------------


@posix_only
class TestRunShell:
    def test_exit_code_and_streams(self, tmp_path):
        result = asyncio.run(
            run_shell("echo out; echo err >&2; exit 3", dialect=POSIX, cwd=str(tmp_path))
        )
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert not result.timed_out

    def test_file_test_against_existing_file(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        ok = asyncio.run(run_shell("test -f package.json", dialect=POSIX, cwd=str(tmp_path)))
        missing = asyncio.run(run_shell("test -f nope.json", dialect=POSIX, cwd=str(tmp_path)))
        assert ok.exit_code == 0
        assert missing.exit_code == 1

    def test_timeout(self):
        result = asyncio.run(run_shell("sleep 5", dialect=POSIX, timeout=0.2))
        assert result.timed_out
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert "timed out after 0.2s" in result.stderr
        assert result.elapsed < 5

    def test_command_not_found(self):
        result = asyncio.run(run_shell("definitely-not-a-command-xyz", dialect=POSIX))
        assert result.exit_code == NOT_FOUND_EXIT_CODE
        assert classify_result(result) is ErrorCategory.COMMAND_NOT_FOUND

    def test_missing_shell(self):
        result = asyncio.run(run_shell("Get-Location", dialect=CMD))
        assert result.exit_code == NOT_FOUND_EXIT_CODE
        assert "shell not found" in result.stderr
