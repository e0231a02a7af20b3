"""Local tools exposed to the model: shell execution and bounded file reads."""

import inspect
import json
import time
from dataclasses import dataclass
from pathlib import Path

from .policy import redact
from .report import CommandFailedError, ConfigError, StepwiseError, ToolError
from .retry import RetryConfig

SHELL_EXEC_TOOL = {
    "type": "function",
    "function": {
        "name": "shell_exec",
        "description": (
            "Run a shell command and return its stdout, stderr and exit code. "
            "Simple POSIX idioms (pwd, ls, cat, head -n, tail -n, test -f/-d) are "
            "translated to the host shell automatically. "
            "Transient failures can be retried with the optional retry block."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command line to run.",
                },
                "timeoutMs": {
                    "type": "integer",
                    "description": "Timeout in milliseconds. Defaults to 15000.",
                },
                "retry": {
                    "type": "object",
                    "description": "Retry policy for transient failures.",
                    "properties": {
                        "maxAttempts": {"type": "integer", "minimum": 1, "maximum": 10},
                        "delayMs": {"type": "integer", "minimum": 0, "maximum": 60000},
                        "continueOnFailure": {"type": "boolean"},
                    },
                },
            },
            "required": ["command"],
        },
    },
}

READ_FILE_TOOL = {
    "type": "function",
    "function": {
        "name": "read_file",
        "description": (
            "Read a text file or list a directory. "
            "Large files are truncated; binary files are rejected."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file or directory, relative to the working directory.",
                },
            },
            "required": ["path"],
        },
    },
}

TOOLS = [READ_FILE_TOOL, SHELL_EXEC_TOOL]

DEFAULT_MAX_READ_BYTES = 50_000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB


# --- read_file -----------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path (symlinks included) and require it to stay inside base_dir."""
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def read_file_bounded(path: str, base_dir: str, max_bytes: int = DEFAULT_MAX_READ_BYTES) -> str:
    """Read a text file, or list a directory, capped at ``max_bytes``."""
    if max_bytes < 1:
        raise ConfigError(f"max_bytes must be >= 1, got {max_bytes}")
    resolved = safe_resolve(path, base_dir)
    if not resolved.exists():
        raise ToolError(f"path does not exist: {path}")

    if resolved.is_dir():
        output_parts = []
        total_bytes = 0
        truncated = False
        try:
            for child in sorted(resolved.iterdir()):
                name = child.name + ("/" if child.is_dir() else "")
                encoded_len = len(name.encode("utf-8")) + 1  # +1 for newline
                if total_bytes + encoded_len > max_bytes:
                    truncated = True
                    break
                output_parts.append(name)
                total_bytes += encoded_len
        except PermissionError as exc:
            raise ToolError(str(exc)) from exc
        result = "\n".join(output_parts)
        if truncated:
            result += f"\n[truncated at {max_bytes} bytes]"
        return result

    try:
        with open(resolved, "rb") as f:
            data = f.read(max_bytes + 1)
    except OSError as exc:
        raise ToolError(str(exc)) from exc

    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        raise ToolError(f"binary file detected: {path}")

    truncated = len(data) > max_bytes
    data = data[:max_bytes]
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut by the size cap is not a decoding error.
        if not (truncated and exc.start >= len(data) - 3):
            raise ToolError(f"failed to decode {path} as UTF-8: {exc}") from exc
        text = data[: exc.start].decode("utf-8")

    if truncated:
        text += f"\n[truncated at {max_bytes} bytes]"
    return text


# --- shell_exec ----------------------------------------------------------------


@dataclass(frozen=True)
class ShellArgs:
    command: str
    timeout_ms: int | None = None
    retry: RetryConfig | None = None


def parse_shell_args(args) -> ShellArgs:
    """Validate ``{command, timeoutMs?, retry?}``. Raises ConfigError."""
    if not isinstance(args, dict):
        raise ConfigError(f"shell_exec arguments must be an object, got {type(args).__name__}")
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConfigError("shell_exec requires a non-empty 'command' string")

    timeout_ms = args.get("timeoutMs", args.get("timeout_ms"))
    if timeout_ms is not None:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms < 1:
            raise ConfigError(f"'timeoutMs' must be a positive integer, got {timeout_ms!r}")

    retry = args.get("retry")
    if retry is not None:
        retry = RetryConfig.from_mapping(retry, source="shell_exec retry")
    return ShellArgs(command=command, timeout_ms=timeout_ms, retry=retry)


# --- Registry --------------------------------------------------------------------


class ToolRegistry:
    """Named tools callable by the model and by flow steps."""

    def __init__(
        self,
        executor,
        base_dir: str = ".",
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        default_retry: RetryConfig | None = None,
    ):
        self.executor = executor
        self.default_retry = default_retry
        self.base_dir = base_dir
        self.max_read_bytes = max_read_bytes
        self._tools: dict[str, tuple] = {}
        self.register("read_file", self._read_file, READ_FILE_TOOL)
        self.register("shell_exec", self.shell_exec, SHELL_EXEC_TOOL)

    def register(self, name: str, func, schema: dict | None = None) -> None:
        """Add a tool. ``func(args)`` may be sync or async and returns text."""
        self._tools[name] = (func, schema)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [schema for _, schema in self._tools.values() if schema is not None]

    async def call(self, name: str, args: dict) -> str:
        entry = self._tools.get(name)
        if entry is None:
            raise ToolError(
                f"unknown tool {name!r} (available: {', '.join(sorted(self._tools))})"
            )
        if not isinstance(args, dict):
            raise ToolError(f"arguments for {name!r} must be an object")
        result = entry[0](args)
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else json.dumps(result)

    def _read_file(self, args: dict) -> str:
        path = args.get("path", args.get("file_path"))
        if not isinstance(path, str) or not path:
            raise ConfigError("read_file requires a 'path' string")
        return read_file_bounded(path, self.base_dir, self.max_read_bytes)

    async def shell_exec(self, args: dict, retry: RetryConfig | None = None) -> str:
        """Run a command through the retrying executor.

        ``retry`` overrides the block in ``args``, which overrides
        ``default_retry``. A final failure raises
        CommandFailedError unless the effective retry config continues on
        failure, in which case the failing output is returned.
        """
        parsed = parse_shell_args(args)
        retry = retry or parsed.retry or self.default_retry
        timeout = parsed.timeout_ms / 1000 if parsed.timeout_ms is not None else None
        result = await self.executor.execute(parsed.command, timeout=timeout, retry=retry)
        if not result.ok and not (retry is not None and retry.continue_on_failure):
            raise CommandFailedError(result)
        return result.format_output()


def _tool_message(tool_call, content: str) -> dict:
    return {"role": "tool", "tool_call_id": tool_call.id, "content": content}


def _redact_values(value):
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {k: _redact_values(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_values(v) for v in value]
    return value


async def handle_tool_call(registry: ToolRegistry, tool_call) -> tuple[dict, dict]:
    """Execute a single tool call and return (tool_msg, metadata).

    tool_msg is the message dict for the LLM conversation. Failures become
    ``error: ...`` tool messages. metadata has stable keys: name,
    arguments, elapsed, succeeded, error.
    """
    name = tool_call.name
    try:
        parsed_args = json.loads(tool_call.arguments or "{}")
    except (json.JSONDecodeError, TypeError) as e:
        error = f"error: invalid JSON in tool arguments: {e}"
        return (
            _tool_message(tool_call, error),
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False, "error": error},
        )

    t0 = time.monotonic()
    error = None
    try:
        result = await registry.call(name, parsed_args)
    except CommandFailedError as e:
        error = f"error: {e}"
        result = f"{error}\n{e.result.format_output()}"
    except StepwiseError as e:
        error = result = f"error: {e}"
    except Exception as e:
        error = result = f"error: {type(e).__name__}: {e}"
    elapsed = time.monotonic() - t0

    logged_args = _redact_values(parsed_args)
    return (
        _tool_message(tool_call, result),
        {
            "name": name,
            "arguments": logged_args,
            "elapsed": elapsed,
            "succeeded": error is None,
            "error": error,
        },
    )
