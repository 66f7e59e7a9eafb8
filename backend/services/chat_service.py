"""Chat service: turns a new user message into a persisted assistant reply."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Tuple

from config import (
    CONTEXT_WINDOW,
    SYSTEM_PROMPT,
    DEFAULT_CHAT_TITLE,
    DEFAULT_USER_ID,
    TITLE_MAX_LENGTH,
    MAX_STREAM_CHUNKS,
    REQUEST_TIMEOUT_SECONDS,
)
from models.conversation import Conversation, Turn, USER_ROLE, ASSISTANT_ROLE
from services.conversation_manager import ConversationManager
from services.errors import ProviderError, ValidationError
from services.llm_client import LLMClient, GenerationOptions, ProviderMessage
from services.stream_reducer import StreamReducer, ReducerState, strip_reasoning

logger = logging.getLogger(__name__)


def derive_title(content: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """Title for a conversation taken from its first user message."""
    text = " ".join(content.split())
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


@dataclass
class ChatReply:
    """Result of one user message: both persisted turns and how the stream ended."""
    conversation: Conversation
    user_turn: Turn
    assistant_turn: Turn
    state: ReducerState
    fragment_count: int = 0


@dataclass
class CompletionResult:
    """Result of a one-off completion that is not persisted."""
    text: str
    state: ReducerState
    fragment_count: int
    prompt_tokens: Optional[int] = None


class ChatService:
    """Coordinates the message store, the context window and the LLM provider."""

    def __init__(
        self,
        conversation_manager: ConversationManager,
        llm_client: LLMClient,
        context_window: int = CONTEXT_WINDOW,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
        max_stream_chunks: int = MAX_STREAM_CHUNKS,
        timeout_seconds: Optional[float] = REQUEST_TIMEOUT_SECONDS,
        token_encoder: Any = None
    ):
        self.conversation_manager = conversation_manager
        self.llm_client = llm_client
        self.context_window = context_window
        self.system_prompt = system_prompt
        self.max_stream_chunks = max_stream_chunks
        self.timeout_seconds = timeout_seconds
        self.token_encoder = token_encoder

    def new_reducer(self) -> StreamReducer:
        return StreamReducer(
            max_fragments=self.max_stream_chunks,
            timeout_seconds=self.timeout_seconds,
        )

    def count_prompt_tokens(self, messages: List[ProviderMessage]) -> Optional[int]:
        """Approximate prompt size with tiktoken; None when no encoder is configured."""
        if self.token_encoder is None:
            return None
        return sum(len(self.token_encoder.encode(m["content"])) for m in messages)

    # ------------------------------------------------------------------
    # Reply pipeline
    # ------------------------------------------------------------------

    def start_turn(
        self,
        conversation_id: Optional[str],
        content: str,
        user_id: str = DEFAULT_USER_ID
    ) -> Tuple[Conversation, Turn]:
        """
        Validate and persist the user's message.

        A missing conversation_id starts a new conversation. While the title
        is still the default it is replaced by one derived from ``content``.

        Raises:
            ValidationError: Empty content or malformed conversation ID
            NotFoundError: Unknown conversation ID
        """
        if not content or not content.strip():
            raise ValidationError("Message content is required")

        if conversation_id is None:
            conversation = self.conversation_manager.create_conversation(user_id=user_id)
        else:
            conversation = self.conversation_manager.get_conversation(conversation_id)

        user_turn = self.conversation_manager.create_turn(conversation.conversation_id, USER_ROLE, content)

        if conversation.title == DEFAULT_CHAT_TITLE:
            conversation = self.conversation_manager.update_title(
                conversation.conversation_id, derive_title(content)
            )

        return conversation, user_turn

    def build_context(self, conversation_id: str) -> List[ProviderMessage]:
        """Most recent turns (the new user turn included) as provider messages."""
        turns = self.conversation_manager.get_context_window(conversation_id, self.context_window)
        messages = LLMClient.build_messages(turns, self.system_prompt)

        prompt_tokens = self.count_prompt_tokens(messages)
        logger.info(
            f"Built context for conversation {conversation_id}: "
            f"{len(turns)} turns, prompt_tokens={prompt_tokens}"
        )
        return messages

    def finish_turn(
        self,
        conversation: Conversation,
        user_turn: Turn,
        text: str,
        state: ReducerState,
        fragment_count: int = 0
    ) -> ChatReply:
        """Persist the assistant's reply and return the refreshed conversation."""
        assistant_turn = self.conversation_manager.create_turn(
            conversation.conversation_id, ASSISTANT_ROLE, text
        )
        conversation = self.conversation_manager.get_conversation(conversation.conversation_id)
        conversation.message_count = self.conversation_manager.count_turns(conversation.conversation_id)
        logger.info(
            f"Reply stored for conversation {conversation.conversation_id}: "
            f"state={state.value}, fragments={fragment_count}, length={len(text)}"
        )
        return ChatReply(
            conversation=conversation,
            user_turn=user_turn,
            assistant_turn=assistant_turn,
            state=state,
            fragment_count=fragment_count,
        )

    async def send_message(
        self,
        conversation_id: Optional[str],
        content: str,
        options: GenerationOptions,
        stream: bool = True
    ) -> ChatReply:
        """
        Handle one user message end to end.

        The user turn is persisted before the provider is called and is kept
        even when the provider fails; in that case no assistant turn is
        written and the ProviderError propagates.

        Store calls are synchronous and run in a worker thread so the event
        loop keeps serving other streams meanwhile.
        """
        options.validate()
        conversation, user_turn = await asyncio.to_thread(self.start_turn, conversation_id, content)
        messages = await asyncio.to_thread(self.build_context, conversation.conversation_id)

        if stream:
            result = await self.new_reducer().reduce(self.llm_client.stream(messages, options))
            return await asyncio.to_thread(
                self.finish_turn, conversation, user_turn, result.text, result.state, result.fragment_count
            )

        text = await self._complete_blocking(messages, options)
        return await asyncio.to_thread(self.finish_turn, conversation, user_turn, text, ReducerState.COMPLETE)

    async def stream_reply(
        self,
        conversation: Conversation,
        user_turn: Turn,
        options: GenerationOptions
    ) -> AsyncIterator[Tuple[str, Any]]:
        """
        Stream the reply to an already persisted user turn.

        Yields ("token", str) for each text piece, then ("done", ChatReply)
        once the assistant turn is stored. Provider failures propagate as
        ProviderError.
        """
        messages = await asyncio.to_thread(self.build_context, conversation.conversation_id)
        reducer = self.new_reducer()

        async for piece in reducer.stream(self.llm_client.stream(messages, options)):
            yield "token", piece

        result = reducer.result()
        reply = await asyncio.to_thread(
            self.finish_turn, conversation, user_turn, result.text, result.state, result.fragment_count
        )
        yield "done", reply

    async def complete_once(
        self,
        message: str,
        options: GenerationOptions,
        system_prompt: Optional[str] = None
    ) -> CompletionResult:
        """Run a single streamed completion without touching the store."""
        if not message or not message.strip():
            raise ValidationError("Message is required")
        options.validate()

        turn_messages: List[ProviderMessage] = []
        prompt = system_prompt or self.system_prompt
        if prompt:
            turn_messages.append({"role": "system", "content": prompt})
        turn_messages.append({"role": USER_ROLE, "content": message})

        result = await self.new_reducer().reduce(self.llm_client.stream(turn_messages, options))
        return CompletionResult(
            text=result.text,
            state=result.state,
            fragment_count=result.fragment_count,
            prompt_tokens=self.count_prompt_tokens(turn_messages),
        )

    async def _complete_blocking(self, messages: List[ProviderMessage], options: GenerationOptions) -> str:
        try:
            response = await asyncio.wait_for(
                self.llm_client.complete(messages, options),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise ProviderError(
                "Response took too long. Please try again.",
                code="TIMEOUT_ERROR",
                details={"timeout_seconds": self.timeout_seconds, "model": options.model}
            )

        text = strip_reasoning(response.text)
        if not text:
            raise ProviderError(
                "Provider returned an empty response",
                code="EMPTY_RESPONSE",
                details={"model": options.model}
            )
        return text
