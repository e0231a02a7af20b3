"""Tests for the tool registry, bounded reads and tool-call handling."""

import asyncio
import json

import pytest

from stepwise.executor import CommandResult
from stepwise.report import CommandFailedError, ConfigError, PolicyDeniedError, ToolError
from stepwise.retry import RetryConfig
from stepwise.stream import ToolCall
from stepwise.tools import (
    TOOLS,
    ToolRegistry,
    handle_tool_call,
    parse_shell_args,
    read_file_bounded,
    safe_resolve,
)


def _result(exit_code=0, stdout="", stderr="", attempts=1):
    return CommandResult(
        command="c",
        native_command="c",
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        elapsed=0.0,
        attempts=attempts,
    )


class FakeExecutor:
    def __init__(self, result=None, error=None):
        self.result = result or _result(0, stdout="ok")
        self.error = error
        self.calls = []

    async def execute(self, command, timeout=None, retry=None):
        self.calls.append({"command": command, "timeout": timeout, "retry": retry})
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


class TestReadFile:
    def test_reads_text(self, tmp_path):
        (tmp_path / "a.txt").write_text("hello\n")
        assert read_file_bounded("a.txt", str(tmp_path)) == "hello\n"

    def test_truncates(self, tmp_path):
        (tmp_path / "big.txt").write_text("x" * 100)
        text = read_file_bounded("big.txt", str(tmp_path), max_bytes=10)
        assert text == "x" * 10 + "\n[truncated at 10 bytes]"

    def test_multibyte_cut_at_boundary(self, tmp_path):
        (tmp_path / "u.txt").write_text("abéé", encoding="utf-8")
        text = read_file_bounded("u.txt", str(tmp_path), max_bytes=3)
        assert text.startswith("ab\n[truncated")

    def test_binary_rejected(self, tmp_path):
        (tmp_path / "b.bin").write_bytes(b"\x00\x01\x02")
        with pytest.raises(ToolError, match="binary file"):
            read_file_bounded("b.bin", str(tmp_path))

    def test_directory_listing(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "f.txt").write_text("")
        assert read_file_bounded(".", str(tmp_path)) == "f.txt\nsub/"

    def test_missing(self, tmp_path):
        with pytest.raises(ToolError, match="does not exist"):
            read_file_bounded("nope.txt", str(tmp_path))

    def test_escape_rejected(self, tmp_path):
        with pytest.raises(ToolError, match="outside base directory"):
            safe_resolve("../etc/passwd", str(tmp_path))

    def test_symlink_escape_rejected(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        base = tmp_path / "base"
        base.mkdir()
        (base / "link").symlink_to(outside)
        with pytest.raises(ToolError):
            safe_resolve("link/x", str(base))

    def test_bad_limit(self, tmp_path):
        with pytest.raises(ConfigError):
            read_file_bounded("a", str(tmp_path), max_bytes=0)


# ---------------------------------------------------------------------------
# shell_exec
# ---------------------------------------------------------------------------


class TestParseShellArgs:
    def test_minimal(self):
        args = parse_shell_args({"command": "ls"})
        assert args.command == "ls"
        assert args.timeout_ms is None
        assert args.retry is None

    def test_full(self):
        args = parse_shell_args(
            {"command": "curl x", "timeoutMs": 500, "retry": {"maxAttempts": 3, "delayMs": 10}}
        )
        assert args.timeout_ms == 500
        assert args.retry.max_attempts == 3

    @pytest.mark.parametrize(
        "bad",
        [{}, {"command": ""}, {"command": 3}, {"command": "ls", "timeoutMs": 0}, {"command": "ls", "timeoutMs": True}],
    )
    def test_invalid(self, bad):
        with pytest.raises(ConfigError):
            parse_shell_args(bad)

    def test_bad_retry_block(self):
        with pytest.raises(ConfigError, match="maxAttempts"):
            parse_shell_args({"command": "ls", "retry": {"maxAttempts": 99}})


class TestRegistry:
    def test_schemas(self):
        registry = ToolRegistry(FakeExecutor())
        assert registry.names() == ["read_file", "shell_exec"]
        assert {s["function"]["name"] for s in registry.schemas()} == {
            s["function"]["name"] for s in TOOLS
        }

    def test_shell_exec_success(self):
        executor = FakeExecutor(_result(0, stdout="hi"))
        registry = ToolRegistry(executor)
        out = asyncio.run(registry.call("shell_exec", {"command": "echo hi", "timeoutMs": 2000}))
        assert out == "Stdout:\nhi\nStderr:\n\nExit Code: 0"
        assert executor.calls[0]["timeout"] == 2.0

    def test_shell_exec_failure_raises(self):
        registry = ToolRegistry(FakeExecutor(_result(2, stderr="boom", attempts=3)))
        with pytest.raises(CommandFailedError) as exc_info:
            asyncio.run(registry.shell_exec({"command": "false"}))
        assert exc_info.value.attempts == 3
        assert "boom" in str(exc_info.value)

    def test_shell_exec_continue_on_failure(self):
        registry = ToolRegistry(FakeExecutor(_result(2, stderr="boom")))
        retry = RetryConfig(continue_on_failure=True)
        out = asyncio.run(registry.shell_exec({"command": "false"}, retry=retry))
        assert out.endswith("Exit Code: 2")

    def test_retry_precedence(self):
        executor = FakeExecutor()
        default = RetryConfig(max_attempts=2)
        registry = ToolRegistry(executor, default_retry=default)
        asyncio.run(registry.shell_exec({"command": "ls"}))
        asyncio.run(registry.shell_exec({"command": "ls", "retry": {"maxAttempts": 4}}))
        step = RetryConfig(max_attempts=5)
        asyncio.run(registry.shell_exec({"command": "ls", "retry": {"maxAttempts": 4}}, retry=step))
        assert [c["retry"].max_attempts for c in executor.calls] == [2, 4, 5]

    def test_custom_tool(self):
        registry = ToolRegistry(FakeExecutor())

        async def echo(args):
            return {"echo": args["x"]}

        registry.register("echo", echo)
        assert json.loads(asyncio.run(registry.call("echo", {"x": 1}))) == {"echo": 1}
        assert "echo" not in [s["function"]["name"] for s in registry.schemas()]

    def test_unknown_tool(self):
        with pytest.raises(ToolError, match="unknown tool 'nope'"):
            asyncio.run(ToolRegistry(FakeExecutor()).call("nope", {}))

    def test_read_file_tool(self, tmp_path):
        (tmp_path / "a.txt").write_text("content")
        registry = ToolRegistry(FakeExecutor(), base_dir=str(tmp_path))
        assert asyncio.run(registry.call("read_file", {"path": "a.txt"})) == "content"


# ---------------------------------------------------------------------------
# handle_tool_call
# ---------------------------------------------------------------------------


class TestHandleToolCall:
    def test_success(self):
        registry = ToolRegistry(FakeExecutor(_result(0, stdout="hi")))
        msg, meta = asyncio.run(
            handle_tool_call(registry, ToolCall("c1", "shell_exec", '{"command": "echo hi"}'))
        )
        assert msg["role"] == "tool"
        assert msg["tool_call_id"] == "c1"
        assert "hi" in msg["content"]
        assert meta["succeeded"] is True
        assert meta["error"] is None

    def test_invalid_json(self):
        registry = ToolRegistry(FakeExecutor())
        msg, meta = asyncio.run(handle_tool_call(registry, ToolCall("c1", "shell_exec", "{bad")))
        assert msg["content"].startswith("error: invalid JSON")
        assert meta["succeeded"] is False

    def test_command_failure_includes_output(self):
        registry = ToolRegistry(FakeExecutor(_result(1, stdout="partial", stderr="nope")))
        msg, meta = asyncio.run(
            handle_tool_call(registry, ToolCall("c1", "shell_exec", '{"command": "false"}'))
        )
        first, rest = msg["content"].split("\n", 1)
        assert first.startswith("error: command failed after 1 attempt(s)")
        assert "Stdout:\npartial" in rest
        assert meta["succeeded"] is False

    def test_policy_denial_is_tool_error(self):
        executor = FakeExecutor(error=PolicyDeniedError("destructive command", "rm -rf /"))
        msg, meta = asyncio.run(
            handle_tool_call(ToolRegistry(executor), ToolCall("c1", "shell_exec", '{"command": "rm -rf /"}'))
        )
        assert msg["content"] == "error: command denied by policy: destructive command"
        assert meta["succeeded"] is False

    def test_unexpected_exception(self):
        registry = ToolRegistry(FakeExecutor(error=RuntimeError("kaboom")))
        msg, _ = asyncio.run(
            handle_tool_call(registry, ToolCall("c1", "shell_exec", '{"command": "ls"}'))
        )
        assert msg["content"] == "error: RuntimeError: kaboom"

    def test_arguments_redacted(self):
        registry = ToolRegistry(FakeExecutor())
        _, meta = asyncio.run(
            handle_tool_call(
                registry,
                ToolCall("c1", "shell_exec", '{"command": "login --password hunter2"}'),
            )
        )
        assert meta["arguments"] == {"command": "login --password ***"}
