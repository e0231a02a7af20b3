"""Configuration file loading and merging for stepwise.

Reads TOML config from ~/.config/stepwise/config.toml (global) and
<base_dir>/stepwise.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError
from .retry import DEFAULT_MAX_DELAY_MS, RetryConfig
from .tools import DEFAULT_MAX_READ_BYTES

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "stream": bool,
    "shell": str,
    "command_timeout_ms": int,
    "max_attempts": int,
    "retry_delay_ms": int,
    "retry_max_delay_ms": int,
    "retry_jitter": (int, float),
    "retry_multiplier": (int, float),
    "max_read_bytes": int,
    "max_command_length": int,
    "allowed_commands": list,
    "deny_patterns": list,
    "allow_destructive": bool,
    "non_interactive": bool,
    "max_turns": int,
    "system_prompt": str,
    "quiet": bool,
    "color": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands", "deny_patterns"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "stream": True,
    "shell": None,
    "command_timeout_ms": 15_000,
    "max_attempts": 1,
    "retry_delay_ms": 1000,
    "retry_max_delay_ms": DEFAULT_MAX_DELAY_MS,
    "retry_jitter": 0.1,
    "retry_multiplier": 2.0,
    "max_read_bytes": DEFAULT_MAX_READ_BYTES,
    "max_command_length": 8192,
    "allowed_commands": None,
    "deny_patterns": None,
    "allow_destructive": False,
    "non_interactive": False,
    "max_turns": 50,
    "system_prompt": None,
    "quiet": False,
    "color": False,
    "no_color": False,
}

# Environment fallbacks for the API key, by provider.
_API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "huggingface": "HF_TOKEN",
    "openai": "OPENAI_API_KEY",
}
_GENERIC_API_KEY_ENV = "STEPWISE_API_KEY"


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "stepwise"
    return Path.home() / ".config" / "stepwise"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # TOML booleans must not satisfy int or float keys.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: this project is under git, so its 'api_key' "
                "could end up in a commit. Set it through the environment instead.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "stepwise.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    """Explicit key first, then the provider's environment variable."""
    if api_key:
        return api_key
    env_name = _API_KEY_ENV.get(provider)
    if env_name and os.environ.get(env_name):
        return os.environ[env_name]
    return os.environ.get(_GENERIC_API_KEY_ENV) or None


def retry_config_from_args(args: argparse.Namespace) -> RetryConfig:
    """Default RetryConfig for chat turns and model-issued shell commands."""
    return RetryConfig(
        max_attempts=args.max_attempts,
        delay_ms=args.retry_delay_ms,
        multiplier=float(args.retry_multiplier),
        max_delay_ms=args.retry_max_delay_ms,
        jitter=float(args.retry_jitter),
    ).validate("config")


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# stepwise configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/stepwise.toml' if project else '~/.config/stepwise/config.toml'}",
        "#",
        "# Command-line flags take precedence. Uncomment only the keys you want to change.",
        "",
        "# --- Model provider ---",
        '# provider = "lmstudio"          # "lmstudio" | "openrouter" | "huggingface" | "openai" | "generic"',
        '# model = "qwen/qwen3-235b-a22b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "# stream = true",
        "",
        "# --- Shell execution ---",
        '# shell = "posix"                 # "posix" | "powershell" | "cmd"; default follows the host',
        "# command_timeout_ms = 15000",
        "# max_command_length = 8192",
        '# allowed_commands = ["ls", "git", "curl"]',
        '# deny_patterns = ["\\\\bsudo\\\\b"]',
        "# allow_destructive = false",
        "",
        "# --- Retries ---",
        "# max_attempts = 1                # 1-10",
        "# retry_delay_ms = 1000           # 0-60000",
        "# retry_max_delay_ms = 30000",
        "# retry_multiplier = 2.0",
        "# retry_jitter = 0.1",
        "",
        "# --- Files ---",
        "# max_read_bytes = 50000",
        "",
        "# --- Chat loop and flows ---",
        "# max_turns = 50",
        '# system_prompt = "You are a helpful assistant."',
        "# non_interactive = false",
        "",
        "# --- Output ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
