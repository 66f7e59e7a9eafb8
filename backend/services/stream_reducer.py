"""
Stream Reducer for ChatRelay.

Folds a streamed completion (a sequence of StreamFragment records) into the
final assistant message text. The reducer bounds how much it reads, both by
fragment count and by wall-clock deadline, keeps partial text when the
provider fails mid-stream, and strips paired <think>...</think> reasoning
blocks from the result, along with a trailing <think> block the stream
never closed.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

from config import (
    MAX_STREAM_CHUNKS,
    REQUEST_TIMEOUT_SECONDS,
    COMPLETION_MARKERS,
    COMPLETION_PAUSE_SECONDS,
)
from services.errors import ProviderError
from services.llm_client import StreamFragment

logger = logging.getLogger(__name__)

REASONING_PATTERN = re.compile(r"<think>.*?(?:</think>|\Z)", re.DOTALL)


def strip_reasoning(text: str) -> str:
    """Remove <think>...</think> blocks, an unclosed trailing one included, and surrounding whitespace."""
    return REASONING_PATTERN.sub("", text).strip()


class ReducerState(str, Enum):
    """Lifecycle of one reduction."""
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    TRUNCATED = "truncated"
    FAILED = "failed"


@dataclass
class ReductionResult:
    """
    Outcome of a reduction.

    Attributes:
        text: Final text with reasoning markup stripped
        raw_text: Concatenated fragment text as received
        state: Terminal state (COMPLETE or TRUNCATED)
        fragment_count: Number of fragments folded into the text
        truncation_reason: "fragment_limit", "deadline" or "provider_error"
        error: Provider error that cut the stream short, if any
    """
    text: str
    raw_text: str
    state: ReducerState
    fragment_count: int
    truncation_reason: Optional[str] = None
    error: Optional[ProviderError] = None


class StreamReducer:
    """
    Single-use fold over a fragment stream.

    ``stream()`` passes each text piece through while accumulating it, for
    callers that forward tokens to a client; ``reduce()`` simply drains it.
    Either way ``result()`` returns the ReductionResult afterwards.
    """

    def __init__(
        self,
        max_fragments: int = MAX_STREAM_CHUNKS,
        timeout_seconds: Optional[float] = REQUEST_TIMEOUT_SECONDS,
        completion_markers: Sequence[str] = COMPLETION_MARKERS,
        pause_seconds: float = COMPLETION_PAUSE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.max_fragments = max_fragments
        self.timeout_seconds = timeout_seconds
        self.completion_markers = tuple(completion_markers)
        self.pause_seconds = pause_seconds
        self._sleep = sleep

        self.state = ReducerState.IDLE
        self.fragment_count = 0
        self.truncation_reason: Optional[str] = None
        self.error: Optional[ProviderError] = None
        self._pieces: List[str] = []
        self._tail = ""
        self._tail_size = max((len(m) for m in self.completion_markers), default=0)

    @property
    def raw_text(self) -> str:
        return "".join(self._pieces)

    def looks_finished(self, text: str) -> bool:
        """Best-effort guess that the text just closed a markup or code block."""
        return text.rstrip().endswith(self.completion_markers)

    async def reduce(self, fragments: AsyncIterator[StreamFragment]) -> ReductionResult:
        """Consume the whole fragment stream and return the result."""
        async for _ in self.stream(fragments):
            pass
        return self.result()

    async def stream(self, fragments: AsyncIterator[StreamFragment]) -> AsyncIterator[str]:
        """
        Yield each non-empty text piece while folding it into the result.

        Raises:
            ProviderError: If the stream fails or times out before any text
                arrived (state FAILED)
        """
        if self.state is not ReducerState.IDLE:
            raise RuntimeError("StreamReducer instances are single-use")

        iterator = fragments.__aiter__()
        deadline = None
        if self.timeout_seconds is not None:
            deadline = time.monotonic() + self.timeout_seconds

        try:
            while True:
                try:
                    fragment = await self._next_fragment(iterator, deadline)
                except StopAsyncIteration:
                    self.state = ReducerState.COMPLETE
                    break
                except asyncio.TimeoutError:
                    self._stop_early(
                        "deadline",
                        ProviderError(
                            "Response took too long. Please try again.",
                            code="TIMEOUT_ERROR",
                            details={"timeout_seconds": self.timeout_seconds,
                                     "fragment_count": self.fragment_count}
                        )
                    )
                    break
                except ProviderError as e:
                    self._stop_early("provider_error", e)
                    break
                except Exception as e:
                    self._stop_early(
                        "provider_error",
                        ProviderError(
                            f"Unexpected error during streaming: {e}",
                            code="UNKNOWN_ERROR",
                            details={"error_type": type(e).__name__}
                        )
                    )
                    break

                self.state = ReducerState.STREAMING
                if self.fragment_count >= self.max_fragments:
                    logger.warning(
                        f"Reached maximum fragment limit ({self.max_fragments}), stopping stream"
                    )
                    self.state = ReducerState.TRUNCATED
                    self.truncation_reason = "fragment_limit"
                    break

                self.fragment_count += 1
                piece = fragment.text
                if not piece:
                    continue

                self._pieces.append(piece)
                yield piece

                if self.looks_finished(self._advance_tail(piece)):
                    await self._sleep(self.pause_seconds)
        finally:
            await self._close(iterator)

        if self.state is ReducerState.FAILED:
            raise self.error

        if not strip_reasoning(self.raw_text):
            self.state = ReducerState.FAILED
            self.error = ProviderError(
                "Provider returned an empty response",
                code="EMPTY_RESPONSE",
                details={"fragment_count": self.fragment_count}
            )
            raise self.error

    def result(self) -> ReductionResult:
        if self.state not in (ReducerState.COMPLETE, ReducerState.TRUNCATED):
            raise RuntimeError(f"No result available in state {self.state.value}")
        return ReductionResult(
            text=strip_reasoning(self.raw_text),
            raw_text=self.raw_text,
            state=self.state,
            fragment_count=self.fragment_count,
            truncation_reason=self.truncation_reason,
            error=self.error,
        )

    async def _next_fragment(self, iterator: AsyncIterator[StreamFragment], deadline: Optional[float]) -> StreamFragment:
        if deadline is None:
            return await iterator.__anext__()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(iterator.__anext__(), timeout=remaining)

    def _advance_tail(self, piece: str) -> str:
        """Keep only the end of the text that a completion marker could match."""
        tail = self._tail + piece
        keep = len(tail.rstrip())
        self._tail = tail[max(0, keep - self._tail_size):]
        return self._tail

    def _stop_early(self, reason: str, error: ProviderError) -> None:
        self.error = error
        if strip_reasoning(self.raw_text):
            logger.warning(
                f"Stream stopped early ({reason}) after {self.fragment_count} fragments; "
                f"keeping partial response: {error}"
            )
            self.state = ReducerState.TRUNCATED
            self.truncation_reason = reason
        else:
            logger.error(f"Stream failed ({reason}) before any usable content: {error}")
            self.state = ReducerState.FAILED

    @staticmethod
    async def _close(iterator: AsyncIterator[StreamFragment]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Ignoring error while closing fragment stream: {e}")
