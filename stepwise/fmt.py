"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, tool_calls: int) -> None:
    style = "green" if tool_calls == 0 else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  tool_calls={tool_calls}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def guardrail(tool_name: str, count: int, error: str) -> None:
    line = Text()
    line.append("  ⚠ Guardrail: ", style="bold yellow")
    line.append(
        f"{tool_name} repeated the same error {count} times. Last error: {error}",
        style="yellow",
    )
    _console.print(line)


# -- Flows -------------------------------------------------------------------


def flow_header(name: str, steps: int, dry_run: bool) -> None:
    title = f"Flow {name} ({steps} steps{', dry run' if dry_run else ''})"
    _console.print(Rule(escape(title), style="cyan"))


def step_header(index: int, total: int, kind: str) -> None:
    line = Text()
    line.append(f"  [step {index + 1}/{total}] ", style="bold cyan")
    line.append(kind, style="cyan")
    _console.print(line)


def step_result(preview: str) -> None:
    _console.print(Text(f"    ✓ {preview}", style="green"))


def step_failed(index: int, kind: str, error: str, *, skipped: bool) -> None:
    line = Text()
    line.append(f"    ✗ step {index + 1} ({kind}) failed: ", style="bold red")
    line.append(error, style="red")
    _console.print(line)
    if skipped:
        _console.print(Text("    continuing (continueOnFailure)", style="yellow"))


def flow_outcome(state: str, visited: int, total: int, reason: str | None = None) -> None:
    msg = f"  Flow {state}: {visited}/{total} steps visited"
    if reason:
        msg += f" ({reason})"
    if state == "completed":
        _console.print(Text(f"  ✓{msg[1:]}", style="bold green"))
    elif state == "aborted":
        _console.print(Text(msg, style="bold yellow"))
    else:
        _console.print(Text(msg, style="bold red"))


def approval_request(message: str, content: str | None) -> None:
    line = Text()
    line.append("  ? Approval: ", style="bold magenta")
    line.append(message, style="magenta")
    _console.print(line)
    if content:
        for text_line in content.splitlines():
            _console.print(Text(f"    {text_line}", style="dim"))


# -- Retries -----------------------------------------------------------------


def attempt(target: str, n: int, max_n: int) -> None:
    if max_n > 1:
        _console.print(Text(f"    attempt {n}/{max_n}: {target}", style="dim"))


def attempt_failed(n: int, category: str, detail: str) -> None:
    line = Text()
    line.append(f"    ✗ attempt {n} failed", style="yellow")
    line.append(f"  category={category}", style="yellow")
    if detail:
        line.append(f"  {detail}", style="dim")
    _console.print(line)


def waiting(delay_ms: int) -> None:
    _console.print(Text(f"    waiting {delay_ms / 1000:.1f}s before retrying", style="dim"))


def exhausted(attempts: int, category: str, retryable: bool) -> None:
    why = "attempts exhausted" if retryable else "not retryable"
    _console.print(
        Text(f"    giving up after {attempts} attempt(s): {why} ({category})", style="red")
    )


def denied(command: str, reason: str) -> None:
    line = Text()
    line.append("  ⛔ Denied: ", style="bold red")
    line.append(f"{command}  ({reason})", style="red")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
