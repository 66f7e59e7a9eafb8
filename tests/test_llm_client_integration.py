"""Integration tests for LLMClient with Groq API.

These tests require a valid GROQ_API_KEY in the environment.
They will be skipped if the API key is not available.
"""
import asyncio
import os

import pytest

from services.llm_client import LLMClient, LLMResponse, GenerationOptions
from services.stream_reducer import StreamReducer, ReducerState


@pytest.mark.skipif(
    not os.getenv("GROQ_API_KEY"),
    reason="GROQ_API_KEY not set in environment"
)
class TestLLMClientIntegration:
    """Integration tests for LLMClient with real Groq API."""

    @pytest.fixture
    def client(self):
        """Create LLMClient instance."""
        return LLMClient()

    @pytest.fixture
    def messages(self):
        return [
            {"role": "system", "content": "Answer in one short sentence."},
            {"role": "user", "content": "What colour is a clear daytime sky?"},
        ]

    def test_complete_with_versatile_model(self, client, messages):
        """Test blocking generation with llama-3.3-70b-versatile."""
        response = asyncio.run(client.complete(messages, GenerationOptions(model="llama-3.3-70b-versatile")))

        assert isinstance(response, LLMResponse)
        assert len(response.text) > 0
        assert response.tokens_input > 0
        assert response.tokens_output > 0
        assert response.model_used == "llama-3.3-70b-versatile"
        assert "blue" in response.text.lower()

    def test_stream_reduces_to_text(self, client, messages):
        """Test streaming generation folded by the StreamReducer."""
        reducer = StreamReducer()

        result = asyncio.run(reducer.reduce(
            client.stream(messages, GenerationOptions(model="llama-3.1-8b-instant"))
        ))

        assert result.state is ReducerState.COMPLETE
        assert result.fragment_count > 0
        assert "blue" in result.text.lower()

    def test_reasoning_model_output_is_stripped(self, client, messages):
        """DeepSeek R1 emits <think> blocks that must not reach the stored reply."""
        result = asyncio.run(StreamReducer().reduce(
            client.stream(messages, GenerationOptions(model="deepseek-r1-distill-llama-70b"))
        ))

        assert "<think>" not in result.text
        assert len(result.text) > 0
