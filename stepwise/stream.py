"""Canonical streaming shape for chat completions, and tool-call accumulation.

Provider responses arrive either as OpenAI-style deltas (``choices[0].delta``)
or as one complete message. Both are turned into ``DeltaChunk`` values so the
rest of the engine only ever sees one shape.
"""

import json
import uuid
from dataclasses import dataclass, field

from .report import PartialStreamError
from .retry import classify_exception

SHAPES = ("delta", "message")


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class DeltaChunk:
    content: str | None = None
    tool_calls: tuple[ToolCallDelta, ...] = ()


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str

    def parsed_arguments(self) -> dict:
        return json.loads(self.arguments)

    def to_message(self) -> dict:
        """Entry for the ``tool_calls`` list of an assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class InvalidToolCall:
    index: int
    id: str | None
    name: str
    arguments: str
    reason: str


@dataclass(frozen=True)
class AssembledResponse:
    content: str
    tool_calls: tuple[ToolCall, ...]
    invalid_tool_calls: tuple[InvalidToolCall, ...]
    chunks: int


# --- Adapting provider objects -------------------------------------------------


def _get(obj, key):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def coerce_chunk(native) -> DeltaChunk:
    """Map one OpenAI/LiteLLM streaming chunk (object or dict) to a DeltaChunk."""
    if isinstance(native, DeltaChunk):
        return native
    choices = _get(native, "choices")
    if not choices:
        return DeltaChunk()
    delta = _get(choices[0], "delta")
    if delta is None:
        return DeltaChunk()

    deltas = []
    for position, tc in enumerate(_get(delta, "tool_calls") or []):
        index = _get(tc, "index")
        fn = _get(tc, "function")
        deltas.append(
            ToolCallDelta(
                index=position if index is None else int(index),
                id=_get(tc, "id"),
                name=_get(fn, "name"),
                arguments=_get(fn, "arguments"),
            )
        )
    return DeltaChunk(content=_get(delta, "content"), tool_calls=tuple(deltas))


def message_to_chunk(message) -> DeltaChunk:
    """Synthesize the single terminal chunk for a complete response message.

    Accepts either a full completion response (``choices[0].message``) or
    the message itself.
    """
    if isinstance(message, DeltaChunk):
        return message
    choices = _get(message, "choices")
    if choices:
        message = _get(choices[0], "message")

    deltas = []
    for position, tc in enumerate(_get(message, "tool_calls") or []):
        fn = _get(tc, "function")
        arguments = _get(fn, "arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        deltas.append(
            ToolCallDelta(
                index=position,
                id=_get(tc, "id"),
                name=_get(fn, "name"),
                arguments=arguments,
            )
        )
    return DeltaChunk(content=_get(message, "content"), tool_calls=tuple(deltas))


async def normalize_stream(source, *, shape: str = "delta"):
    """Yield DeltaChunks from a provider's native async sequence.

    Forward-only and unbuffered: each upstream item is converted as it
    arrives. Upstream failures propagate after the chunks already yielded.
    Closing this generator closes the upstream without draining it.
    """
    if shape not in SHAPES:
        raise ValueError(f"unknown stream shape {shape!r}")
    iterator = source.__aiter__()
    try:
        if shape == "delta":
            while True:
                try:
                    item = await iterator.__anext__()
                except StopAsyncIteration:
                    return
                yield coerce_chunk(item)
        else:
            last = None
            while True:
                try:
                    last = await iterator.__anext__()
                except StopAsyncIteration:
                    break
            if last is not None:
                yield message_to_chunk(last)
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


# --- Accumulation ----------------------------------------------------------------


@dataclass
class _PartialCall:
    index: int
    id: str | None = None
    name_parts: list[str] = field(default_factory=list)
    argument_parts: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Merges index-keyed tool-call fragments from one stream.

    Nothing is reported as complete until ``finish()``, which also
    validates the arguments.
    """

    def __init__(self):
        self._partials: dict[int, _PartialCall] = {}
        self._finished = False

    def add(self, delta: ToolCallDelta) -> None:
        if self._finished:
            raise RuntimeError("tool call accumulator already finished")
        partial = self._partials.get(delta.index)
        if partial is None:
            partial = self._partials[delta.index] = _PartialCall(delta.index)
        if delta.id and partial.id is None:
            partial.id = delta.id
        if delta.name:
            partial.name_parts.append(delta.name)
        if delta.arguments:
            partial.argument_parts.append(delta.arguments)

    def feed(self, chunk: DeltaChunk) -> None:
        for delta in chunk.tool_calls:
            self.add(delta)

    def snapshot(self) -> list[dict]:
        """Partial calls merged so far, in index order."""
        return [
            {
                "index": p.index,
                "id": p.id,
                "name": "".join(p.name_parts),
                "arguments": "".join(p.argument_parts),
            }
            for _, p in sorted(self._partials.items())
        ]

    def finish(self) -> tuple[list[ToolCall], list[InvalidToolCall]]:
        """Close the stream and return (complete calls, invalid calls) by index."""
        self._finished = True
        calls: list[ToolCall] = []
        invalid: list[InvalidToolCall] = []
        for index, partial in sorted(self._partials.items()):
            name = "".join(partial.name_parts)
            arguments = "".join(partial.argument_parts)
            reason = None
            if not name:
                reason = "missing function name"
            else:
                if not arguments.strip():
                    arguments = "{}"
                try:
                    parsed = json.loads(arguments)
                except json.JSONDecodeError as e:
                    reason = f"arguments are not valid JSON: {e}"
                else:
                    if not isinstance(parsed, dict):
                        reason = "arguments must be a JSON object"
            if reason is not None:
                invalid.append(InvalidToolCall(index, partial.id, name, arguments, reason))
                continue
            call_id = partial.id or f"call_{uuid.uuid4().hex[:24]}"
            calls.append(ToolCall(call_id, name, arguments))
        self._partials.clear()
        return calls, invalid


async def assemble_stream(chunks, *, on_content=None, provider: str = "unknown") -> AssembledResponse:
    """Drive a normalized stream to completion.

    A transport failure after at least one chunk is re-raised as
    PartialStreamError with what was accumulated; a failure before the
    first chunk propagates unchanged.
    """
    accumulator = ToolCallAccumulator()
    parts: list[str] = []
    count = 0
    iterator = chunks.__aiter__()
    while True:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        except Exception as exc:
            if count == 0:
                raise
            raise PartialStreamError(
                exc,
                provider=provider,
                partial_content="".join(parts),
                partial_tool_calls=accumulator.snapshot(),
                chunks=count,
                category=classify_exception(exc),
            ) from exc
        count += 1
        if chunk.content:
            parts.append(chunk.content)
            if on_content is not None:
                on_content(chunk.content)
        accumulator.feed(chunk)

    calls, invalid = accumulator.finish()
    return AssembledResponse("".join(parts), tuple(calls), tuple(invalid), count)
