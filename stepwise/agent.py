"""Command-line entry point: the tool-calling chat loop and the flow runner."""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
    retry_config_from_args,
)
from .executor import RetryExecutor
from .flow import DryRunHandlers, FlowEngine, FlowState, StepHandlers, load_flow
from .policy import CommandPolicy
from .providers import PROVIDERS, ChatClient, estimate_tokens, make_provider
from .report import ConfigError, ReportCollector, StepwiseError
from .retry import RetryConfig, retry_call
from .tools import ToolRegistry, handle_tool_call
from .translate import DIALECTS, host_dialect

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful assistant working in a local project directory. "
    "Use the read_file tool to inspect files and the shell_exec tool to run "
    "commands. Commands run in a {dialect} shell; simple POSIX idioms are "
    "translated for you. When you are done, answer in plain text without "
    "calling any more tools."
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 2

_FLOW_EXIT_CODES = {
    FlowState.COMPLETED: EXIT_OK,
    FlowState.FAILED: EXIT_ERROR,
    FlowState.ABORTED: EXIT_ABORTED,
}


def _canonical_error(error: str) -> str:
    """Extract a stable error fingerprint for repeat detection."""
    return error.split("\n", 1)[0]


# ---------------------------------------------------------------------------
# Chat loop
# ---------------------------------------------------------------------------


async def run_agent_loop(
    client,
    registry: ToolRegistry,
    messages: list,
    *,
    max_turns: int,
    report: ReportCollector | None = None,
    verbose: bool = False,
    retry: RetryConfig | None = None,
    on_event=None,
    sleep=asyncio.sleep,
) -> tuple[str | None, bool]:
    """Run the tool-calling loop until a final answer or max turns.

    Mutates `messages` in place (appends assistant/tool messages).
    Returns (final_answer, exhausted). final_answer is the last
    assistant text (may be None). exhausted is True if max_turns hit.
    """
    tools = registry.schemas()
    consecutive_errors: dict[str, tuple[str, int]] = {}
    turns = 0

    while turns < max_turns:
        turns += 1
        if verbose:
            fmt.turn_header(turns, max_turns, estimate_tokens(messages, tools))

        spinner = fmt.llm_spinner() if verbose else contextlib.nullcontext()
        with spinner:
            outcome = await retry_call(
                lambda: client.send_chat(messages, tools=tools),
                retry or RetryConfig(),
                label=f"turn {turns} (chat)",
                on_event=on_event,
                sleep=sleep,
            )
        response = outcome.value
        messages.append(response.to_message())

        if response.content and (response.tool_calls or response.invalid_tool_calls) and verbose:
            fmt.assistant_text(response.content)

        if not response.tool_calls and not response.invalid_tool_calls:
            if verbose:
                fmt.completion(turns, "ok")
            return response.content or "", False

        interventions: list[str] = []
        for bad in response.invalid_tool_calls:
            error = f"error: invalid tool call {bad.name or '(unnamed)'}: {bad.reason}"
            if verbose:
                fmt.tool_error(bad.name or "(unnamed)", bad.reason)
            if report:
                report.record_tool_call(
                    bad.name or "(unnamed)", None, False, 0.0, len(error), error=error
                )
            if bad.id and bad.name:
                # Listed in the assistant message, so it needs a tool reply.
                messages.append({"role": "tool", "tool_call_id": bad.id, "content": error})
            else:
                interventions.append(
                    f"Your tool call #{bad.index} could not be parsed ({bad.reason}). "
                    "Send it again with a tool name and valid JSON arguments."
                )

        for tool_call in response.tool_calls:
            if verbose:
                fmt.tool_call(tool_call.name, tool_call.arguments)
            tool_msg, tool_meta = await handle_tool_call(registry, tool_call)
            messages.append(tool_msg)

            result = tool_msg["content"]
            tool_name = tool_meta["name"]
            if report:
                report.record_tool_call(
                    tool_name,
                    tool_meta["arguments"],
                    tool_meta["succeeded"],
                    tool_meta["elapsed"],
                    len(result),
                    error=tool_meta["error"],
                )
            if verbose:
                if tool_meta["succeeded"]:
                    fmt.tool_result(tool_name, tool_meta["elapsed"], result[:200])
                else:
                    fmt.tool_error(tool_name, _canonical_error(result))

            if result.startswith("error:"):
                canonical_error = _canonical_error(result)
                prev_error, prev_count = consecutive_errors.get(tool_name, ("", 0))
                if canonical_error == prev_error:
                    count = prev_count + 1
                else:
                    count = 1
                consecutive_errors[tool_name] = (canonical_error, count)

                if count >= 2:
                    if count >= 3:
                        interventions.append(
                            f"STOP: `{tool_name}` has now failed {count} times in a row with: "
                            f"{canonical_error}\n"
                            "Do not send the same call again. Retries of transient failures "
                            "already happen inside the tool, so repeating it will not help. "
                            "Change the command or path, or answer with what you know."
                        )
                    else:
                        interventions.append(
                            f"IMPORTANT: `{tool_name}` failed twice with the same error: "
                            f"{canonical_error}\n"
                            "Check the command, the path or the arguments before calling it "
                            "again. A denied command stays denied, and a missing command or file "
                            "will not appear on a retry."
                        )
                    if report:
                        report.record_event(
                            "guardrail",
                            {"tool": tool_name, "count": count, "level": "stop" if count >= 3 else "nudge"},
                        )
                    if verbose:
                        fmt.guardrail(tool_name, count, canonical_error)
            else:
                consecutive_errors.pop(tool_name, None)

        if interventions:
            messages.append({"role": "user", "content": "\n\n".join(interventions)})

    # max_turns exhausted: return the last assistant text
    if verbose:
        fmt.completion(turns, "max_turns")
    last_text = None
    for m in reversed(messages):
        if m.get("role") == "assistant" and m.get("content"):
            last_text = m["content"]
            break
    return last_text, True


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


class EventPrinter:
    """``on_event`` handler that feeds the report and renders progress lines."""

    def __init__(self, report: ReportCollector | None = None, verbose: bool = True):
        self.report = report
        self.verbose = verbose
        self.steps = 0

    def __call__(self, name: str, details: dict) -> None:
        if self.report is not None:
            self.report(name, details)
        if not self.verbose:
            return

        if name == "flow_start":
            self.steps = details["steps"]
            fmt.flow_header(details["flow"], self.steps, details.get("dry_run", False))
        elif name == "step_start":
            fmt.step_header(details["index"], self.steps, details["kind"])
        elif name == "step_complete":
            if details.get("approved") is False:
                fmt.step_result("rejected")
            elif "result_length" in details:
                fmt.step_result(f"{details['kind']} ({details['result_length']} chars)")
            else:
                fmt.step_result(details["kind"])
        elif name == "step_failed":
            fmt.step_failed(
                details["index"],
                details["kind"],
                details["error"],
                skipped=details.get("continue_on_failure", False),
            )
        elif name == "attempt_start":
            target = details.get("command") or details.get("target", "")
            fmt.attempt(target, details["attempt"], details["max_attempts"])
        elif name == "attempt_failed":
            detail = details.get("error")
            if detail is None:
                detail = "timed out" if details.get("timed_out") else f"exit code {details.get('exit_code')}"
            fmt.attempt_failed(details["attempt"], details["category"], detail)
        elif name == "attempt_waiting":
            fmt.waiting(details["delay_ms"])
        elif name == "attempts_exhausted":
            fmt.exhausted(details["attempts"], details["category"], details["retryable"])
        elif name == "command_denied":
            fmt.denied(details.get("command", ""), details.get("reason") or "denied")
        elif name == "llm_call" and details.get("succeeded"):
            fmt.llm_timing(details["duration_s"], details.get("tool_calls", 0))


async def prompt_approval(message: str, content) -> bool:
    """Ask on the terminal whether a flow may continue."""
    from prompt_toolkit import PromptSession

    if content is not None and not isinstance(content, str):
        content = json.dumps(content, indent=2, default=str)
    fmt.approval_request(message, content)
    session = PromptSession()
    try:
        answer = await session.prompt_async("Approve? [y/N] ")
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="stepwise",
        usage="%(prog)s [options] <question>\n       %(prog)s --flow FILE [--dry-run] [options]",
        description="Run a tool-calling chat or a declarative flow with policy-checked, retried shell commands.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--flow",
        metavar="FILE",
        default=None,
        help="Run the steps of a YAML or JSON flow file instead of a chat.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="With --flow: translate and validate every step without running anything.",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        default=_UNSET,
        help="Approve every approval step automatically.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier for the provider.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        default=_UNSET,
        help="Request complete responses instead of streamed chunks.",
    )
    parser.add_argument(
        "--shell",
        choices=list(DIALECTS),
        default=_UNSET,
        help="Shell dialect for commands (default: follows the host).",
    )
    parser.add_argument(
        "--timeout-ms",
        dest="command_timeout_ms",
        type=int,
        default=_UNSET,
        help="Per-attempt command timeout in milliseconds (default: 15000).",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=_UNSET,
        help="Attempts for chat turns and commands without their own retry block (1-10, default: 1).",
    )
    parser.add_argument(
        "--retry-delay-ms",
        type=int,
        default=_UNSET,
        help="Base delay between attempts in milliseconds (default: 1000).",
    )
    parser.add_argument(
        "--max-read-bytes",
        type=int,
        default=_UNSET,
        help="Maximum bytes returned by read_file (default: 50000).",
    )
    parser.add_argument(
        "--allowed-commands",
        type=str,
        default=_UNSET,
        help='Comma-separated list of allowed command basenames (e.g. "ls,git,curl").',
    )
    parser.add_argument(
        "--allow-destructive",
        action="store_true",
        default=_UNSET,
        help="Allow commands that match the destructive-command patterns.",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations (default: 50).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to include.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for commands and file reads (default: current directory).",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config: template for <base-dir>/stepwise.toml.",
    )

    return parser


def _split_list(value) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    names = [v.strip() for v in value if v.strip()]
    return names or None


def _build_runtime(args, on_event):
    """Create the executor, tool registry and chat client from resolved args."""
    dialect = args.shell or host_dialect()
    policy = CommandPolicy(
        dialect=dialect,
        max_command_length=args.max_command_length,
        allow_destructive=args.allow_destructive,
        allowed_commands=args.allowed_commands,
        deny_patterns=args.deny_patterns,
    )
    executor = RetryExecutor(
        dialect=dialect,
        policy=policy,
        on_event=on_event,
        cwd=args.base_dir,
        default_timeout=args.command_timeout_ms / 1000,
    )
    registry = ToolRegistry(
        executor,
        base_dir=args.base_dir,
        max_read_bytes=args.max_read_bytes,
        default_retry=args.retry,
    )
    provider = make_provider(
        args.provider,
        args.model,
        base_url=args.base_url,
        api_key=resolve_api_key(args.provider, args.api_key),
        stream=args.stream,
    )
    client = ChatClient(provider, on_event=on_event)
    return executor, registry, client


def _report_settings(args) -> dict:
    return {
        "shell": args.shell or host_dialect(),
        "stream": args.stream,
        "command_timeout_ms": args.command_timeout_ms,
        "retry": args.retry.to_dict(),
        "max_read_bytes": args.max_read_bytes,
        "max_turns": args.max_turns,
        "allowed_commands": sorted(args.allowed_commands or []),
        "allow_destructive": args.allow_destructive,
        "non_interactive": args.non_interactive,
        "dry_run": args.dry_run,
    }


def main():
    parser = build_parser()
    args = parser.parse_args()

    # Handle --version first
    if args.version:
        try:
            version = metadata.version("stepwise")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if args.question is None and args.flow is None:
        parser.error("question is required (or use --flow)")
    if args.question is not None and args.flow is not None:
        parser.error("a question cannot be combined with --flow")
    if args.dry_run and args.flow is None:
        parser.error("--dry-run requires --flow")

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config)
        args.allowed_commands = _split_list(args.allowed_commands)
        args.retry = retry_config_from_args(args)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or args.flow or "",
            model=args.model or "unknown",
            provider=args.provider,
            settings=_report_settings(args),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = asyncio.run(_run_main(args, report, _write_report))
    except StepwiseError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=EXIT_ERROR, error_message=str(e))
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        fmt.error("interrupted")
        _write_report("aborted", exit_code=EXIT_ABORTED, error_message="interrupted")
        sys.exit(EXIT_ABORTED)
    sys.exit(exit_code)


async def _run_main(args, report, _write_report) -> int:
    printer = EventPrinter(report, verbose=args.verbose)
    executor, registry, client = _build_runtime(args, printer)
    if args.verbose:
        fmt.model_info(
            f"Provider: {args.provider}  Model: {args.model or '(provider default)'}  "
            f"Shell: {executor.dialect}"
        )

    if args.flow is not None:
        return await _run_flow(args, executor, registry, client, printer, _write_report)

    system_prompt = args.system_prompt or DEFAULT_SYSTEM_PROMPT.format(
        dialect=executor.dialect
    )
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": args.question},
    ]
    answer, exhausted = await run_agent_loop(
        client,
        registry,
        messages,
        max_turns=args.max_turns,
        report=report,
        verbose=args.verbose,
        retry=args.retry,
        on_event=printer,
    )
    if answer is not None:
        print(answer)
    _write_report(
        "exhausted" if exhausted else "success",
        answer=answer,
        exit_code=EXIT_ABORTED if exhausted else EXIT_OK,
    )
    if exhausted:
        fmt.warning("max turns reached, agent stopped.")
        return EXIT_ABORTED
    return EXIT_OK


def _install_cancel_handler(cancel: asyncio.Event) -> None:
    """First Ctrl-C stops the flow before its next step; the second interrupts."""
    loop = asyncio.get_running_loop()

    def _on_sigint():
        loop.remove_signal_handler(signal.SIGINT)
        fmt.warning("interrupt received, stopping before the next step (Ctrl-C again to force)")
        cancel.set()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except NotImplementedError:
        # Proactor event loops on Windows have no signal handlers.
        logger.debug("SIGINT handler unavailable; Ctrl-C interrupts immediately")


async def _run_flow(args, executor, registry, client, printer, _write_report) -> int:
    flow = load_flow(args.flow)
    if args.dry_run:
        handlers = DryRunHandlers(executor=executor, registry=registry)
    else:
        handlers = StepHandlers(
            client=client,
            registry=registry,
            approver=prompt_approval,
            non_interactive=args.non_interactive,
        )

    cancel = asyncio.Event()
    _install_cancel_handler(cancel)
    engine = FlowEngine(
        flow, handlers, dry_run=args.dry_run, on_event=printer, cancel=cancel
    )
    run = await engine.run()

    exit_code = _FLOW_EXIT_CODES[run.state]
    if args.verbose:
        fmt.flow_outcome(run.state.value, len(run.visited), len(flow.steps), run.reason)
    if run.context.values:
        print(json.dumps(run.context.values, indent=2, default=str))
    error_message = str(run.error) if run.error is not None else run.reason
    if run.state is FlowState.FAILED and args.verbose:
        fmt.error(error_message)
    _write_report(
        run.state.value,
        answer=None,
        exit_code=exit_code,
        error_message=error_message,
    )
    return exit_code
