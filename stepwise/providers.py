"""Model provider adapters and the chat client built on the stream normalizer."""

import functools
import json
import time
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import tiktoken

from .report import ConfigError, ProviderError, StepwiseError, emit_event
from .retry import classify_exception
from .stream import InvalidToolCall, ToolCall, assemble_stream, normalize_stream

PROVIDERS = ("lmstudio", "openrouter", "huggingface", "openai", "generic")
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"


class ChatProvider(Protocol):
    name: str
    stream_shape: str

    def get_chat_completion(self, messages: list, options: dict) -> AsyncIterator: ...


def resolve_model(
    provider: str, model: str | None, base_url: str | None = None, api_key: str | None = None
) -> tuple[str, dict]:
    """Return the LiteLLM model string and connection kwargs for a provider."""
    if not model:
        raise ConfigError(f"provider {provider!r} requires a model")

    if provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {
            "api_base": f"{(base_url or DEFAULT_LMSTUDIO_URL).rstrip('/')}/v1",
            "api_key": api_key or "lm-studio",
        }
        return model_str, kwargs

    if provider == "huggingface":
        model_str = f"huggingface/{model.removeprefix('huggingface/')}"
    elif provider == "openrouter":
        # Only strip a doubled prefix ("openrouter/openrouter/free"); org names
        # like the one in "openrouter/free" are part of the model id.
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"
    elif provider == "openai":
        model_str = f"openai/{model.removeprefix('openai/')}"
    elif provider == "generic":
        # Any LiteLLM route, already prefixed by the user.
        model_str = model
    else:
        raise ConfigError(
            f"unknown provider {provider!r} (expected one of: {', '.join(PROVIDERS)})"
        )

    kwargs = {}
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["api_base"] = base_url
    return model_str, kwargs


def _completion_kwargs(provider, messages: list, options: dict) -> dict:
    model_str, kwargs = resolve_model(
        provider.name,
        options.get("model") or provider.model,
        provider.base_url,
        provider.api_key,
    )
    completion_kwargs = dict(model=model_str, messages=messages, **kwargs)
    if options.get("tools"):
        completion_kwargs["tools"] = options["tools"]
        completion_kwargs["tool_choice"] = "auto"
    for key in ("max_tokens", "temperature", "top_p", "seed", "timeout"):
        if options.get(key) is not None:
            completion_kwargs[key] = options[key]
    return completion_kwargs


class LiteLLMProvider:
    """Streaming provider: yields OpenAI-style delta chunks from LiteLLM."""

    stream_shape = "delta"

    def __init__(self, name: str, model: str | None, *, base_url=None, api_key=None):
        self.name = name
        self.model = model
        self.base_url = base_url
        self.api_key = api_key

    async def get_chat_completion(self, messages: list, options: dict | None = None):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = _completion_kwargs(self, messages, options or {})
        response = await litellm.acompletion(stream=True, **kwargs)
        async for chunk in response:
            yield chunk


class LiteLLMMessageProvider(LiteLLMProvider):
    """Non-streaming provider: yields the single complete response."""

    stream_shape = "message"

    async def get_chat_completion(self, messages: list, options: dict | None = None):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = _completion_kwargs(self, messages, options or {})
        yield await litellm.acompletion(**kwargs)


def make_provider(name: str, model: str | None, *, base_url=None, api_key=None, stream=True):
    if name not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {name!r} (expected one of: {', '.join(PROVIDERS)})"
        )
    cls = LiteLLMProvider if stream else LiteLLMMessageProvider
    return cls(name, model, base_url=base_url, api_key=api_key)


# --- Token estimates ---------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _encoder()
    total = 0
    for m in messages:
        if isinstance(m, dict):
            content = m.get("content", "") or ""
            tool_calls = m.get("tool_calls", None)
        else:
            content = getattr(m, "content", "") or ""
            tool_calls = getattr(m, "tool_calls", None)
        if tool_calls:
            for tc in tool_calls:
                if isinstance(tc, ToolCall):
                    content += tc.name + tc.arguments
                elif isinstance(tc, dict):
                    fn = tc.get("function", {})
                    content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


# --- Chat client -------------------------------------------------------------------


@dataclass(frozen=True)
class ChatResponse:
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    invalid_tool_calls: tuple[InvalidToolCall, ...] = ()
    elapsed: float = 0.0
    prompt_tokens_est: int = 0

    def to_message(self) -> dict:
        """Assistant message for the conversation history."""
        msg: dict = {"role": "assistant", "content": self.content or None}
        calls = [tc.to_message() for tc in self.tool_calls]
        for bad in self.invalid_tool_calls:
            if bad.id and bad.name:
                calls.append(
                    {
                        "id": bad.id,
                        "type": "function",
                        "function": {"name": bad.name, "arguments": bad.arguments},
                    }
                )
        if calls:
            msg["tool_calls"] = calls
        return msg


class ChatClient:
    """Sends one chat turn through a provider and assembles the response."""

    def __init__(self, provider: ChatProvider, *, on_event=None, options: dict | None = None):
        self.provider = provider
        self.on_event = on_event
        self.options = dict(options or {})

    async def send_chat(
        self,
        messages: list,
        *,
        tools: list | None = None,
        model: str | None = None,
        on_content=None,
    ) -> ChatResponse:
        if not messages:
            raise ConfigError("cannot send an empty conversation")

        options = dict(self.options)
        if tools:
            options["tools"] = tools
        if model:
            options["model"] = model
        token_est = estimate_tokens(messages, tools)
        name = self.provider.name

        t0 = time.monotonic()
        stream = normalize_stream(
            self.provider.get_chat_completion(messages, options),
            shape=self.provider.stream_shape,
        )
        try:
            assembled = await assemble_stream(stream, on_content=on_content, provider=name)
        except StepwiseError as e:
            self._record(name, options, t0, token_est, error=str(e))
            raise
        except Exception as e:
            self._record(name, options, t0, token_est, error=str(e))
            raise ProviderError(
                f"{name} request failed: {e}",
                provider=name,
                category=classify_exception(e),
            ) from e
        finally:
            await stream.aclose()

        elapsed = self._record(
            name,
            options,
            t0,
            token_est,
            tool_calls=len(assembled.tool_calls),
            invalid_tool_calls=len(assembled.invalid_tool_calls),
        )
        return ChatResponse(
            content=assembled.content,
            tool_calls=assembled.tool_calls,
            invalid_tool_calls=assembled.invalid_tool_calls,
            elapsed=elapsed,
            prompt_tokens_est=token_est,
        )

    def _record(self, name, options, t0, token_est, *, error=None, **counts) -> float:
        elapsed = time.monotonic() - t0
        details = {
            "provider": name,
            "model": options.get("model") or getattr(self.provider, "model", None),
            "duration_s": round(elapsed, 3),
            "prompt_tokens_est": token_est,
            "succeeded": error is None,
            **counts,
        }
        if error is not None:
            details["error"] = error
        emit_event(self.on_event, "llm_call", details)
        return elapsed
