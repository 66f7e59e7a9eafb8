"""Unit tests for the StreamReducer."""
import asyncio

import pytest

from services.errors import ProviderError
from services.llm_client import StreamFragment
from services.stream_reducer import StreamReducer, ReducerState, ReductionResult, strip_reasoning


class SleepRecorder:
    """Replaces asyncio.sleep so pauses are observable and instant."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return SleepRecorder()


def reduce(reducer, fragments):
    return asyncio.run(reducer.reduce(fragments))


def test_concatenates_and_skips_empty_fragments(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    result = reduce(reducer, make_fragments(["Hel", None, "", "lo", " world"]))

    assert isinstance(result, ReductionResult)
    assert result.text == "Hello world"
    assert result.state is ReducerState.COMPLETE
    assert result.fragment_count == 5
    assert result.error is None


def test_fragment_ceiling_truncates_at_exactly_the_limit(make_fragments, sleep):
    reducer = StreamReducer(max_fragments=1000, sleep=sleep)

    result = reduce(reducer, make_fragments(["a"] * 1200))

    assert result.state is ReducerState.TRUNCATED
    assert result.truncation_reason == "fragment_limit"
    assert result.fragment_count == 1000
    assert result.text == "a" * 1000


def test_stream_of_exactly_ceiling_length_completes(make_fragments, sleep):
    reducer = StreamReducer(max_fragments=10, sleep=sleep)

    result = reduce(reducer, make_fragments(["a"] * 10))

    assert result.state is ReducerState.COMPLETE
    assert result.fragment_count == 10


def test_strips_reasoning_markup(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    result = reduce(reducer, make_fragments(["<think>", "ignored", "</think>", "kept"]))

    assert result.text == "kept"
    assert result.raw_text == "<think>ignored</think>kept"


@pytest.mark.parametrize("raw, expected", [
    ("<think>ignored</think>kept", "kept"),
    ("<think>\nmulti\nline\n</think>\n\nAnswer", "Answer"),
    ("A<think>x</think>B<think>y</think>C", "ABC"),
    ("no markup at all", "no markup at all"),
    ("<think>unclosed reasoning", ""),
    ("Answer<think>second thoughts", "Answer"),
])
def test_strip_reasoning(raw, expected):
    assert strip_reasoning(raw) == expected


def test_pauses_after_closing_marker(make_fragments, sleep):
    reducer = StreamReducer(pause_seconds=0.1, sleep=sleep)

    reduce(reducer, make_fragments(["<div>", "hi", "</div>", " more"]))

    assert sleep.calls == [0.1]


def test_pauses_for_code_fence_and_brace(make_fragments, sleep):
    reducer = StreamReducer(pause_seconds=0.05, sleep=sleep)

    reduce(reducer, make_fragments(["```py\nx = {}", "\n```", "\ndone"]))

    assert sleep.calls == [0.05, 0.05]


def test_no_pause_for_plain_text(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    reduce(reducer, make_fragments(["plain", " text", "."]))

    assert sleep.calls == []


def test_error_after_partial_text_keeps_partial(make_fragments, sleep):
    error = ProviderError("connection reset", code="CONNECTION_ERROR")
    reducer = StreamReducer(sleep=sleep)

    result = reduce(reducer, make_fragments(["Half an ", "answer"], error=error))

    assert result.state is ReducerState.TRUNCATED
    assert result.truncation_reason == "provider_error"
    assert result.text == "Half an answer"
    assert result.error is error


def test_error_before_any_text_fails(make_fragments, sleep):
    error = ProviderError("rate limited", code="RATE_LIMIT_ERROR")
    reducer = StreamReducer(sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments([None, ""], error=error))

    assert exc_info.value is error
    assert reducer.state is ReducerState.FAILED
    with pytest.raises(RuntimeError):
        reducer.result()


def test_non_provider_error_is_wrapped(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments([], error=ValueError("bad chunk")))

    assert exc_info.value.error.code == "UNKNOWN_ERROR"
    assert exc_info.value.error.details["error_type"] == "ValueError"


def test_empty_stream_fails(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments([]))

    assert exc_info.value.error.code == "EMPTY_RESPONSE"
    assert reducer.state is ReducerState.FAILED


def test_reasoning_only_response_fails(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments(["<think>just thinking</think>"]))

    assert exc_info.value.error.code == "EMPTY_RESPONSE"


def test_unclosed_reasoning_before_error_fails(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments(["<think>", "let me reason"], error=ProviderError("reset", code="API_ERROR")))

    assert exc_info.value.error.code == "API_ERROR"
    assert reducer.state is ReducerState.FAILED


def test_fragment_limit_inside_reasoning_fails(make_fragments, sleep):
    reducer = StreamReducer(max_fragments=3, sleep=sleep)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments(["<think>", "step"] + ["more"] * 10))

    assert exc_info.value.error.code == "EMPTY_RESPONSE"
    assert reducer.state is ReducerState.FAILED


def test_answer_before_unclosed_reasoning_is_kept(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    result = reduce(reducer, make_fragments(["Answer", "<think>", "hmm"], error=ProviderError("reset")))

    assert result.state is ReducerState.TRUNCATED
    assert result.text == "Answer"


def test_whitespace_before_provider_error_keeps_error_code(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)
    rate_limited = ProviderError("Rate limit exceeded.", code="RATE_LIMIT_ERROR")

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments(["  ", "\n"], error=rate_limited))

    assert exc_info.value is rate_limited
    assert reducer.state is ReducerState.FAILED


def test_pause_detection_spans_fragments(make_fragments, sleep):
    reducer = StreamReducer(pause_seconds=0.1, sleep=sleep)

    reduce(reducer, make_fragments(["<p>" + "x" * 500, "</", "html", ">", "  ", "tail"]))

    assert sleep.calls == [0.1, 0.1]


def test_deadline_truncates_partial_text():
    async def stalls_after_first():
        yield StreamFragment(content="fast")
        await asyncio.sleep(5)
        yield StreamFragment(content="slow")

    reducer = StreamReducer(timeout_seconds=0.05)

    result = reduce(reducer, stalls_after_first())

    assert result.state is ReducerState.TRUNCATED
    assert result.truncation_reason == "deadline"
    assert result.text == "fast"
    assert result.error.error.code == "TIMEOUT_ERROR"


def test_deadline_before_any_text_fails(make_fragments):
    reducer = StreamReducer(timeout_seconds=0.01)

    with pytest.raises(ProviderError) as exc_info:
        reduce(reducer, make_fragments(["late"], delay=0.2))

    assert exc_info.value.error.code == "TIMEOUT_ERROR"
    assert reducer.state is ReducerState.FAILED


def test_stream_passes_pieces_through(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)

    async def consume():
        return [piece async for piece in reducer.stream(make_fragments(["a", None, "b"]))]

    pieces = asyncio.run(consume())

    assert pieces == ["a", "b"]
    assert reducer.result().text == "ab"
    assert reducer.result().state is ReducerState.COMPLETE


def test_reducer_is_single_use(make_fragments, sleep):
    reducer = StreamReducer(sleep=sleep)
    reduce(reducer, make_fragments(["once"]))

    with pytest.raises(RuntimeError, match="single-use"):
        reduce(reducer, make_fragments(["twice"]))


def test_starts_idle():
    reducer = StreamReducer()

    assert reducer.state is ReducerState.IDLE
    with pytest.raises(RuntimeError):
        reducer.result()
