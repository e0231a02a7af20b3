"""Tests for stream normalization and tool-call accumulation."""

import asyncio
import json
import types

import pytest

from stepwise.report import PartialStreamError
from stepwise.retry import ErrorCategory
from stepwise.stream import (
    DeltaChunk,
    ToolCallAccumulator,
    ToolCallDelta,
    assemble_stream,
    coerce_chunk,
    message_to_chunk,
    normalize_stream,
)


class FakeUpstream:
    """Async iterator over scripted items that may raise partway."""

    def __init__(self, items, error=None):
        self.items = list(items)
        self.error = error
        self.closed = False
        self.pulled = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.items:
            self.pulled += 1
            return self.items.pop(0)
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


def _delta_chunk(content=None, tool_calls=None):
    return {"choices": [{"delta": {"content": content, "tool_calls": tool_calls}}]}


def _collect(agen):
    async def run():
        return [item async for item in agen]

    return asyncio.run(run())


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


class TestCoerce:
    def test_dict_delta(self):
        chunk = coerce_chunk(
            _delta_chunk(
                "hi",
                [{"index": 0, "id": "c1", "function": {"name": "foo", "arguments": "{"}}],
            )
        )
        assert chunk.content == "hi"
        assert chunk.tool_calls == (ToolCallDelta(0, "c1", "foo", "{"),)

    def test_object_delta(self):
        fn = types.SimpleNamespace(name=None, arguments='"a"')
        tc = types.SimpleNamespace(index=1, id=None, function=fn)
        delta = types.SimpleNamespace(content=None, tool_calls=[tc])
        native = types.SimpleNamespace(choices=[types.SimpleNamespace(delta=delta)])
        chunk = coerce_chunk(native)
        assert chunk.tool_calls == (ToolCallDelta(1, None, None, '"a"'),)

    def test_empty_choices(self):
        assert coerce_chunk({"choices": []}) == DeltaChunk()

    def test_message_to_chunk(self):
        response = {
            "choices": [
                {
                    "message": {
                        "content": "done",
                        "tool_calls": [
                            {"id": "c1", "function": {"name": "read_file", "arguments": {"path": "a"}}}
                        ],
                    }
                }
            ]
        }
        chunk = message_to_chunk(response)
        assert chunk.content == "done"
        assert chunk.tool_calls[0].index == 0
        assert json.loads(chunk.tool_calls[0].arguments) == {"path": "a"}


# ---------------------------------------------------------------------------
# normalize_stream
# ---------------------------------------------------------------------------


class TestNormalizeStream:
    def test_delta_shape_is_one_to_one(self):
        upstream = FakeUpstream([_delta_chunk("a"), _delta_chunk("b")])
        chunks = _collect(normalize_stream(upstream, shape="delta"))
        assert [c.content for c in chunks] == ["a", "b"]
        assert upstream.closed

    def test_message_shape_yields_single_chunk(self):
        upstream = FakeUpstream([{"choices": [{"message": {"content": "full"}}]}])
        chunks = _collect(normalize_stream(upstream, shape="message"))
        assert len(chunks) == 1
        assert chunks[0].content == "full"

    def test_message_shape_empty(self):
        assert _collect(normalize_stream(FakeUpstream([]), shape="message")) == []

    def test_unknown_shape(self):
        with pytest.raises(ValueError, match="unknown stream shape"):
            _collect(normalize_stream(FakeUpstream([]), shape="sse"))

    def test_error_after_chunks(self):
        upstream = FakeUpstream([_delta_chunk("a")], error=ConnectionError("reset"))
        seen = []

        async def run():
            async for chunk in normalize_stream(upstream):
                seen.append(chunk.content)

        with pytest.raises(ConnectionError):
            asyncio.run(run())
        assert seen == ["a"]
        assert upstream.closed

    def test_early_close_does_not_drain(self):
        upstream = FakeUpstream([_delta_chunk(str(i)) for i in range(10)])

        async def run():
            stream = normalize_stream(upstream)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(run())
        assert first.content == "0"
        assert upstream.pulled == 1
        assert upstream.closed


# ---------------------------------------------------------------------------
# ToolCallAccumulator
# ---------------------------------------------------------------------------


class TestAccumulator:
    def test_fragments_merge(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c1", name="foo"))
        acc.add(ToolCallDelta(0, arguments='{"a":'))
        acc.add(ToolCallDelta(0, arguments="1}"))
        calls, invalid = acc.finish()
        assert invalid == []
        assert len(calls) == 1
        assert calls[0].name == "foo"
        assert calls[0].arguments == '{"a":1}'
        assert calls[0].parsed_arguments() == {"a": 1}

    @pytest.mark.parametrize("size", [1, 2, 3, 7])
    def test_chunking_does_not_matter(self, size):
        arguments = json.dumps({"command": "ls -la", "retry": {"maxAttempts": 2}})
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c1", name="shell_exec"))
        for i in range(0, len(arguments), size):
            acc.add(ToolCallDelta(0, arguments=arguments[i : i + size]))
        calls, _ = acc.finish()
        assert calls[0].arguments == arguments

    def test_interleaved_indices_sorted(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(1, id="b", name="second", arguments="{}"))
        acc.add(ToolCallDelta(0, id="a", name="first", arguments="{"))
        acc.add(ToolCallDelta(0, arguments="}"))
        calls, _ = acc.finish()
        assert [c.name for c in calls] == ["first", "second"]

    def test_first_id_wins(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="first", name="x"))
        acc.add(ToolCallDelta(0, id="second"))
        calls, _ = acc.finish()
        assert calls[0].id == "first"

    def test_missing_id_is_generated(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, name="x", arguments="{}"))
        calls, _ = acc.finish()
        assert calls[0].id.startswith("call_")

    def test_empty_arguments_become_object(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c", name="x"))
        calls, _ = acc.finish()
        assert calls[0].arguments == "{}"

    def test_invalid_json_reported(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c", name="x", arguments='{"a": '))
        calls, invalid = acc.finish()
        assert calls == []
        assert invalid[0].reason.startswith("arguments are not valid JSON")

    def test_non_object_reported(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c", name="x", arguments="[1]"))
        _, invalid = acc.finish()
        assert invalid[0].reason == "arguments must be a JSON object"

    def test_missing_name_reported(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c", arguments="{}"))
        _, invalid = acc.finish()
        assert invalid[0].reason == "missing function name"

    def test_snapshot(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(0, id="c", name="x", arguments='{"a"'))
        assert acc.snapshot() == [{"index": 0, "id": "c", "name": "x", "arguments": '{"a"'}]

    def test_add_after_finish(self):
        acc = ToolCallAccumulator()
        acc.finish()
        with pytest.raises(RuntimeError):
            acc.add(ToolCallDelta(0, name="x"))


# ---------------------------------------------------------------------------
# assemble_stream
# ---------------------------------------------------------------------------


class TestAssemble:
    def test_content_and_calls(self):
        upstream = FakeUpstream(
            [
                _delta_chunk("Let me "),
                _delta_chunk("check.", [{"index": 0, "id": "c1", "function": {"name": "foo"}}]),
                _delta_chunk(None, [{"index": 0, "function": {"arguments": '{"a":'}}]),
                _delta_chunk(None, [{"index": 0, "function": {"arguments": "1}"}}]),
            ]
        )
        streamed = []
        response = asyncio.run(
            assemble_stream(normalize_stream(upstream), on_content=streamed.append)
        )
        assert response.content == "Let me check."
        assert streamed == ["Let me ", "check."]
        assert response.chunks == 4
        assert response.tool_calls[0].name == "foo"
        assert response.tool_calls[0].arguments == '{"a":1}'

    def test_failure_before_first_chunk_propagates(self):
        upstream = FakeUpstream([], error=ConnectionError("refused"))
        with pytest.raises(ConnectionError):
            asyncio.run(assemble_stream(normalize_stream(upstream)))

    def test_failure_after_chunks_is_partial(self):
        upstream = FakeUpstream(
            [
                _delta_chunk("partial", [{"index": 0, "id": "c1", "function": {"name": "foo", "arguments": "{"}}]),
            ],
            error=ConnectionError("connection reset"),
        )
        with pytest.raises(PartialStreamError) as exc_info:
            asyncio.run(assemble_stream(normalize_stream(upstream), provider="openrouter"))
        err = exc_info.value
        assert err.partial_content == "partial"
        assert err.partial_tool_calls[0]["arguments"] == "{"
        assert err.chunks == 1
        assert err.provider == "openrouter"
        assert err.category is ErrorCategory.TRANSIENT_NETWORK
        assert err.retryable
