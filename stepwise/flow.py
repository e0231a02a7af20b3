"""Declarative flows: parsing, the shared context, and the step state machine.

A flow is an ordered list of typed steps (chat, tool_call, read_file,
approval) run one after another against a single FlowContext. The engine
owns the transitions; handlers do the work. Dry runs swap in
DryRunHandlers and go through exactly the same loop.
"""

import asyncio
import dataclasses
import enum
import json
import logging
import random
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .policy import redact
from .report import ConfigError, PolicyDeniedError, StepwiseError, ToolError, emit_event
from .retry import RetryConfig, retry_call
from .tools import parse_shell_args, read_file_bounded, safe_resolve

logger = logging.getLogger(__name__)


# --- Step types ------------------------------------------------------------------


@dataclass(frozen=True)
class ChatStep:
    prompt: str
    model: str | None = None
    system: str | None = None
    output_to: str | None = None
    use_tools: bool = False
    retry: RetryConfig | None = None
    kind = "chat"


@dataclass(frozen=True)
class ToolCallStep:
    tool_name: str
    args: dict = field(default_factory=dict)
    output_to: str | None = None
    retry: RetryConfig | None = None
    kind = "tool_call"


@dataclass(frozen=True)
class ReadFileStep:
    path: str
    output_to: str | None = None
    max_bytes: int | None = None
    retry: RetryConfig | None = None
    kind = "read_file"


@dataclass(frozen=True)
class ApprovalStep:
    message: str | None = None
    variable_to_approve: str | None = None
    retry: RetryConfig | None = None
    kind = "approval"


@dataclass(frozen=True)
class Flow:
    name: str
    steps: tuple
    description: str | None = None


# field name -> (accepted type, required)
_STEP_SCHEMAS = {
    "chat": (
        ChatStep,
        {
            "prompt": (str, True),
            "model": (str, False),
            "system": (str, False),
            "output_to": (str, False),
            "use_tools": (bool, False),
        },
    ),
    "tool_call": (
        ToolCallStep,
        {
            "tool_name": (str, True),
            "args": (dict, False),
            "output_to": (str, False),
        },
    ),
    "read_file": (
        ReadFileStep,
        {
            "path": (str, True),
            "output_to": (str, False),
            "max_bytes": (int, False),
        },
    ),
    "approval": (
        ApprovalStep,
        {
            "message": (str, False),
            "variable_to_approve": (str, False),
        },
    ),
}


def parse_step(data, index: int):
    where = f"step {index}"
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(data).__name__}")
    kind = data.get("type")
    if kind is None:
        raise ConfigError(f"{where}: missing 'type'")
    if kind not in _STEP_SCHEMAS:
        raise ConfigError(
            f"{where}: unknown type {kind!r} (expected one of: {', '.join(_STEP_SCHEMAS)})"
        )
    where = f"step {index} ({kind})"
    cls, schema = _STEP_SCHEMAS[kind]

    values = {}
    for key, value in data.items():
        if key == "type":
            continue
        if key == "retry":
            values["retry"] = RetryConfig.from_mapping(value, source=f"{where} retry")
            continue
        if key not in schema:
            raise ConfigError(f"{where}: unknown field {key!r}")
        expected, _ = schema[key]
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{where}: {key!r} must be {expected.__name__}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{where}: {key!r} must be {expected.__name__}, got {type(value).__name__}"
            )
        values[key] = value

    for key, (_, required) in schema.items():
        if required and key not in values:
            raise ConfigError(f"{where}: missing required field {key!r}")
    if kind == "read_file" and values.get("max_bytes") is not None and values["max_bytes"] < 1:
        raise ConfigError(f"{where}: 'max_bytes' must be >= 1")
    if kind == "tool_call" and values["tool_name"] == "shell_exec":
        try:
            parse_shell_args(values.get("args", {}))
        except ConfigError as e:
            raise ConfigError(f"{where}: {e}") from e
    retry = values.get("retry")
    if kind == "approval" and retry is not None and retry.max_attempts > 1:
        raise ConfigError(f"{where}: approval steps cannot be retried (maxAttempts must be 1)")
    return cls(**values)


def parse_flow(data) -> Flow:
    """Validate a decoded flow description. Raises ConfigError before anything runs."""
    if not isinstance(data, dict):
        raise ConfigError(f"flow must be a mapping, got {type(data).__name__}")
    unknown = set(data) - {"name", "description", "steps"}
    if unknown:
        raise ConfigError(f"flow: unknown field(s): {', '.join(sorted(unknown))}")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("flow: 'name' must be a non-empty string")
    description = data.get("description")
    if description is not None and not isinstance(description, str):
        raise ConfigError("flow: 'description' must be a string")
    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ConfigError("flow: 'steps' must be a non-empty list")
    return Flow(
        name=name,
        description=description,
        steps=tuple(parse_step(step, i) for i, step in enumerate(steps)),
    )


def load_flow(path: str) -> Flow:
    """Read and validate a YAML (or JSON) flow file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read flow file {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    return parse_flow(data)


# --- Context -------------------------------------------------------------------------


@dataclass(frozen=True)
class StepFailure:
    index: int
    kind: str
    error: str
    category: str | None
    attempts: int


_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class FlowContext:
    """Flow-scoped state threaded through every step of one run.

    Not shared between runs and not safe for concurrent access.
    """

    def __init__(self, values: dict | None = None):
        self.values: dict = dict(values or {})
        self.messages: list[dict] = []
        self.tool_calls: list = []
        self.failures: list[StepFailure] = []

    def get(self, name: str, default=None):
        return self.values.get(name, default)

    def set(self, name: str, value) -> None:
        self.values[name] = value

    def render(self, template: str) -> str:
        """Substitute ``{{ name }}`` placeholders. Unknown names are left as-is."""

        def _sub(m):
            name = m.group(1)
            if name not in self.values:
                logger.warning(f"Flow variable {name!r} is not set")
                return m.group(0)
            value = self.values[name]
            if isinstance(value, str):
                return value
            return json.dumps(value, default=str)

        return _PLACEHOLDER.sub(_sub, template)

    def render_value(self, value):
        if isinstance(value, str):
            return self.render(value)
        if isinstance(value, dict):
            return {k: self.render_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render_value(v) for v in value]
        return value


# --- Handlers ----------------------------------------------------------------------


class StepHandlers:
    """Real step execution.

    ``approver(message, content)`` is awaited for approval steps unless
    ``non_interactive`` is set, in which case every approval passes.
    """

    def __init__(
        self,
        *,
        client=None,
        registry=None,
        approver=None,
        non_interactive: bool = False,
        on_content=None,
    ):
        self.client = client
        self.registry = registry
        self.approver = approver
        self.non_interactive = non_interactive
        self.on_content = on_content

    async def chat(self, step: ChatStep, context: FlowContext) -> str:
        if self.client is None:
            raise ConfigError("chat step requires a configured model provider")
        messages = list(context.messages)
        if step.system and not messages:
            messages.append({"role": "system", "content": context.render(step.system)})
        user_msg = {"role": "user", "content": context.render(step.prompt)}
        messages.append(user_msg)

        tools = self.registry.schemas() if step.use_tools and self.registry else None
        response = await self.client.send_chat(
            messages, tools=tools, model=step.model, on_content=self.on_content
        )
        for bad in response.invalid_tool_calls:
            logger.warning(f"Ignoring invalid tool call {bad.name!r}: {bad.reason}")

        # Only committed once the turn succeeded, so retries start clean.
        if step.system and not context.messages:
            context.messages.append(messages[0])
        context.messages.append(user_msg)
        context.messages.append({"role": "assistant", "content": response.content})
        context.tool_calls.extend(response.tool_calls)
        return response.content

    async def tool_call(self, step: ToolCallStep, context: FlowContext):
        if self.registry is None:
            raise ConfigError("tool_call step requires a tool registry")
        args = context.render_value(step.args)
        if step.tool_name == "shell_exec":
            retry = step.retry
            if retry is not None and retry.continue_on_failure:
                # The engine records the failure and moves on.
                retry = dataclasses.replace(retry, continue_on_failure=False)
            return await self.registry.shell_exec(args, retry=retry)
        return await self.registry.call(step.tool_name, args)

    async def read_file(self, step: ReadFileStep, context: FlowContext) -> str:
        base_dir = self.registry.base_dir if self.registry else "."
        max_bytes = step.max_bytes or (
            self.registry.max_read_bytes if self.registry else None
        )
        args = (context.render(step.path), base_dir)
        if max_bytes:
            args += (max_bytes,)
        return await asyncio.to_thread(read_file_bounded, *args)

    async def approval(self, step: ApprovalStep, context: FlowContext) -> bool:
        if self.non_interactive:
            logger.info("Auto-approving in non-interactive mode")
            return True
        if self.approver is None:
            raise StepwiseError("approval step requires an interactive approver")
        content = None
        if step.variable_to_approve:
            content = context.get(step.variable_to_approve)
        message = context.render(step.message or "Please approve.")
        return bool(await self.approver(message, content))


class DryRunHandlers:
    """Reports what each step would do without side effects.

    Shell commands are still translated and validated, so policy denials
    show up in a dry run exactly as they would for real.
    """

    def __init__(self, *, executor=None, registry=None, base_dir: str = "."):
        self.executor = executor
        self.registry = registry
        self.base_dir = registry.base_dir if registry is not None else base_dir

    async def chat(self, step: ChatStep, context: FlowContext) -> str:
        prompt = context.render(step.prompt)
        model = step.model or "default model"
        return f"[dry-run] would send prompt to {model}: {prompt[:200]}"

    async def tool_call(self, step: ToolCallStep, context: FlowContext) -> str:
        args = context.render_value(step.args)
        if step.tool_name == "shell_exec":
            parsed = parse_shell_args(args)
            if self.executor is None:
                return f"[dry-run] would run: {redact(parsed.command)}"
            native, decision = self.executor.plan(parsed.command)
            if not decision.allowed:
                emit_event(
                    self.executor.on_event,
                    "command_denied",
                    {"command": redact(parsed.command), "reason": decision.reason},
                )
                raise PolicyDeniedError(decision.reason or "denied", parsed.command)
            return f"[dry-run] would run: {redact(native)}"
        if self.registry is not None and step.tool_name not in self.registry.names():
            raise ToolError(f"unknown tool {step.tool_name!r}")
        return f"[dry-run] would call {step.tool_name} with {json.dumps(args, default=str)}"

    async def read_file(self, step: ReadFileStep, context: FlowContext) -> str:
        path = context.render(step.path)
        safe_resolve(path, self.base_dir)
        return f"[dry-run] would read {path}"

    async def approval(self, step: ApprovalStep, context: FlowContext) -> bool:
        return True


# --- Engine ----------------------------------------------------------------------------


class FlowState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class FlowRun:
    state: FlowState
    step_index: int
    context: FlowContext
    error: BaseException | None = None
    visited: list[int] = field(default_factory=list)
    reason: str | None = None


def _category_value(exc: BaseException) -> str | None:
    category = getattr(exc, "category", None)
    return getattr(category, "value", category)


class FlowEngine:
    """Runs one flow to a terminal state.

    Steps run strictly in order. ``cancel`` (anything with ``is_set()``,
    typically an asyncio.Event) is checked before each step starts and
    never interrupts a step in flight.
    """

    def __init__(
        self,
        flow: Flow,
        handlers,
        *,
        dry_run: bool = False,
        on_event=None,
        cancel=None,
        sleep=asyncio.sleep,
        rng=random.random,
        context: FlowContext | None = None,
    ):
        self.flow = flow
        self.handlers = handlers
        self.dry_run = dry_run
        self.on_event = on_event
        self.cancel = cancel
        self.sleep = sleep
        self.rng = rng
        self.context = context if context is not None else FlowContext()
        self.state = FlowState.PENDING
        self.step_index = 0
        self._visited: list[int] = []

    def _emit(self, name: str, **details) -> None:
        emit_event(self.on_event, name, {"flow": self.flow.name, **details})

    async def _with_retry(self, index: int, step, handler, default: RetryConfig | None = None):
        config = step.retry or default
        if config is None or self.dry_run:
            return await handler(step, self.context)
        outcome = await retry_call(
            lambda: handler(step, self.context),
            config,
            label=f"step {index} ({step.kind})",
            on_event=self.on_event,
            sleep=self.sleep,
            rng=self.rng,
        )
        return outcome.value

    async def _dispatch(self, index: int, step):
        if isinstance(step, ChatStep):
            return await self._with_retry(index, step, self.handlers.chat, RetryConfig())
        if isinstance(step, ToolCallStep):
            if step.tool_name == "shell_exec":
                # Shell retries happen per attempt inside the executor.
                return await self.handlers.tool_call(step, self.context)
            return await self._with_retry(index, step, self.handlers.tool_call)
        if isinstance(step, ReadFileStep):
            return await self._with_retry(index, step, self.handlers.read_file)
        if isinstance(step, ApprovalStep):
            return await self.handlers.approval(step, self.context)
        raise ConfigError(f"step {index}: unsupported step {type(step).__name__}")

    def _finish(self, state: FlowState, error=None, reason=None) -> FlowRun:
        self.state = state
        details = {"step_index": self.step_index, "dry_run": self.dry_run}
        if reason is not None:
            details["reason"] = reason
        if error is not None:
            details["error"] = str(error)
        self._emit(f"flow_{state.value}", **details)
        return FlowRun(
            state=state,
            step_index=self.step_index,
            context=self.context,
            error=error,
            visited=list(self._visited),
            reason=reason,
        )

    async def run(self) -> FlowRun:
        if self.state is not FlowState.PENDING:
            raise RuntimeError(f"flow {self.flow.name!r} already ran (state {self.state.value})")
        self.state = FlowState.RUNNING
        self._emit(
            "flow_start",
            steps=len(self.flow.steps),
            dry_run=self.dry_run,
            description=self.flow.description,
        )

        for index, step in enumerate(self.flow.steps):
            self.step_index = index
            if self.cancel is not None and self.cancel.is_set():
                return self._finish(FlowState.ABORTED, reason="cancelled")

            self._visited.append(index)
            self._emit("step_start", index=index, kind=step.kind, dry_run=self.dry_run)
            try:
                result = await self._dispatch(index, step)
            except Exception as exc:
                attempts = getattr(exc, "attempts", 1)
                category = _category_value(exc)
                continue_on_failure = step.retry is not None and step.retry.continue_on_failure
                self._emit(
                    "step_failed",
                    index=index,
                    kind=step.kind,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    category=category,
                    attempts=attempts,
                    continue_on_failure=continue_on_failure,
                )
                if not continue_on_failure:
                    return self._finish(FlowState.FAILED, error=exc)
                self.context.failures.append(
                    StepFailure(index, step.kind, str(exc), category, attempts)
                )
                output_to = getattr(step, "output_to", None)
                if output_to:
                    self.context.set(output_to, f"Error: {exc}")
                self._emit("step_skipped_failure", index=index, kind=step.kind)
                continue

            if isinstance(step, ApprovalStep) and not result:
                self._emit("step_complete", index=index, kind=step.kind, approved=False)
                return self._finish(FlowState.ABORTED, reason="approval rejected")

            output_to = getattr(step, "output_to", None)
            if output_to:
                self.context.set(output_to, result)
            details = {"index": index, "kind": step.kind}
            if isinstance(result, str):
                details["result_length"] = len(result)
            self._emit("step_complete", **details)

        self.step_index = len(self.flow.steps)
        return self._finish(FlowState.COMPLETED)
