"""Portable command translation into the host shell's dialect.

Only a fixed table of simple POSIX idioms is recognized, each as a full
match of the command. Anything else passes through unchanged and the
host shell gets to try it natively.
"""

import logging
import os
import re

from .report import ConfigError

logger = logging.getLogger(__name__)

POSIX = "posix"
POWERSHELL = "powershell"
CMD = "cmd"
DIALECTS = (POSIX, POWERSHELL, CMD)


def host_dialect() -> str:
    return POWERSHELL if os.name == "nt" else POSIX


def check_dialect(dialect: str) -> str:
    if dialect not in DIALECTS:
        raise ConfigError(
            f"unknown shell dialect {dialect!r} (expected one of: {', '.join(DIALECTS)})"
        )
    return dialect


# --- Native renderings ------------------------------------------------------

# Path operand: one quoted string or a bare word without shell metacharacters.
_PATH = r"""(?P<path>"[^"]+"|'[^']+'|[^\s'"`$;&|<>(){}\[\]]+)"""
_COUNT = r"(?P<count>\d+)"


def _unquote(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
        return token[1:-1]
    return token


def _ps_literal(path: str) -> str:
    return "'" + path.replace("'", "''") + "'"


def _cmd_literal(path: str) -> str | None:
    # cmd.exe has no escape for a double quote inside a quoted argument.
    if '"' in path or "%" in path:
        return None
    return f'"{path}"'


def _ps_exists(kind: str, path: str) -> str:
    path_type = "Leaf" if kind == "f" else "Container"
    return f"Test-Path -LiteralPath {_ps_literal(path)} -PathType {path_type}"


def _cmd_exists(kind: str, path: str) -> str | None:
    literal = _cmd_literal(path.rstrip("\\/") + ("\\*" if kind == "d" else ""))
    return None if literal is None else f"if exist {literal}"


def _render_pwd(dialect, m):
    return "Get-Location" if dialect == POWERSHELL else "cd"


def _render_ls(dialect, m):
    return "Get-ChildItem" if dialect == POWERSHELL else "dir"


def _render_ls_hidden(dialect, m):
    return "Get-ChildItem -Force" if dialect == POWERSHELL else "dir /a"


def _render_cat(dialect, m):
    path = _unquote(m.group("path"))
    if dialect == POWERSHELL:
        return f"Get-Content -LiteralPath {_ps_literal(path)}"
    literal = _cmd_literal(path)
    return None if literal is None else f"type {literal}"


def _render_head(dialect, m):
    if dialect != POWERSHELL:
        return None
    path = _ps_literal(_unquote(m.group("path")))
    return f"Get-Content -LiteralPath {path} -TotalCount {m.group('count')}"


def _render_tail(dialect, m):
    if dialect != POWERSHELL:
        return None
    path = _ps_literal(_unquote(m.group("path")))
    return f"Get-Content -LiteralPath {path} -Tail {m.group('count')}"


_TEST = rf"(?:test\s+-(?P<kind>[fd])\s+{_PATH}|\[\s+-(?P<bkind>[fd])\s+{_PATH.replace('path', 'bpath')}\s+\])"


_TEST_RE = re.compile(_TEST)


def _test_groups(m) -> tuple[str, str]:
    if m.group("kind"):
        return m.group("kind"), _unquote(m.group("path"))
    return m.group("bkind"), _unquote(m.group("bpath"))


def _render_test_any(dialect, m):
    kind, path = _test_groups(m)
    if dialect == POWERSHELL:
        return f"if ({_ps_exists(kind, path)}) {{ exit 0 }} else {{ exit 1 }}"
    cond = _cmd_exists(kind, path)
    return None if cond is None else f"{cond} (exit /b 0) else (exit /b 1)"


def _render_if(dialect, m):
    kind, path = _test_groups(m)
    then_body = _translate_simple(m.group("then").strip(), dialect) or m.group("then").strip()
    else_body = _translate_simple(m.group("else").strip(), dialect) or m.group("else").strip()
    if dialect == POWERSHELL:
        return f"if ({_ps_exists(kind, path)}) {{ {then_body} }} else {{ {else_body} }}"
    cond = _cmd_exists(kind, path)
    if cond is None:
        return None
    return f"{cond} ({then_body}) else ({else_body})"


# Order matters only for readability: every pattern is anchored.
_TABLE = [
    (re.compile(r"pwd"), _render_pwd),
    (re.compile(r"ls(?:\s+-l)?"), _render_ls),
    (re.compile(r"ls\s+-(?:a|la|al)"), _render_ls_hidden),
    (_TEST_RE, _render_test_any),
    (re.compile(rf"cat\s+{_PATH}"), _render_cat),
    (re.compile(rf"head\s+-n\s*{_COUNT}\s+{_PATH}"), _render_head),
    (re.compile(rf"tail\s+-n\s*{_COUNT}\s+{_PATH}"), _render_tail),
]

_IF = re.compile(
    rf"if\s+{_TEST}\s*;\s*then\s+(?P<then>[^;]+?)\s*;\s*else\s+(?P<else>[^;]+?)\s*;\s*fi"
)

_PS_WRAPPER = re.compile(
    r"""(?:powershell|pwsh)(?:\.exe)?\s+(?:-NoProfile\s+)?(?:-Command|-c)\s+(?P<q>["'])(?P<inner>.*)(?P=q)""",
    re.IGNORECASE | re.DOTALL,
)

_CHAIN = re.compile(r"\s+&&\s+")


def _join_chain(natives: list[str], dialect: str) -> str:
    """Run each native command only if the previous one succeeded."""
    if dialect == CMD:
        return " && ".join(natives)
    joined = natives[-1]
    for native in reversed(natives[:-1]):
        joined = f"{native}; if ($?) {{ {joined} }}"
    return joined


def _translate_simple(command: str, dialect: str) -> str | None:
    """Translate a single table entry, or return None."""
    for pattern, render in _TABLE:
        m = pattern.fullmatch(command)
        if m:
            return render(dialect, m)
    return None


def _ends_shell(segment: str) -> bool:
    return bool(_TEST_RE.fullmatch(segment) or _IF.fullmatch(segment))


def _translate_one(command: str, dialect: str) -> str | None:
    m = _IF.fullmatch(command)
    if m:
        return _render_if(dialect, m)
    return _translate_simple(command, dialect)


# --- Public API ---------------------------------------------------------------


def untranslatable_constructs(command: str) -> list[str]:
    """POSIX constructs that no non-POSIX dialect will run as intended."""
    found = []
    if "||" in command:
        found.append("'||' (conditional or) has no translation")
    if "$(" in command:
        found.append("'$(...)' command substitution has no translation")
    if "`" in command:
        found.append("backtick command substitution has no translation")
    if "[[" in command:
        found.append("'[[ ]]' extended test has no translation")
    return found


def translate(command: str, dialect: str) -> str:
    """Translate a portable command into ``dialect``.

    Pure and idempotent. Unrecognized or partially matching input is
    returned unchanged.
    """
    check_dialect(dialect)
    if dialect == POSIX:
        return command

    stripped = command.strip()
    if dialect == POWERSHELL:
        wrapper = _PS_WRAPPER.fullmatch(stripped)
        if wrapper:
            stripped = wrapper.group("inner").strip()
            logger.debug(f"Stripped PowerShell wrapper from {command[:100]!r}")

    for warning in untranslatable_constructs(stripped):
        logger.warning(f"{warning}: {stripped[:100]!r}")

    native = _translate_one(stripped, dialect)
    if native is not None:
        return native

    segments = _CHAIN.split(stripped)
    # Existence tests and if blocks end the shell, so nothing may follow them.
    if len(segments) > 1 and not any(_ends_shell(s) for s in segments):
        natives = [_translate_simple(segment, dialect) for segment in segments]
        if all(n is not None for n in natives):
            return _join_chain(natives, dialect)

    return stripped if stripped != command.strip() else command
