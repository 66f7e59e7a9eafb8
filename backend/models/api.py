"""Request and response schemas for the HTTP API.

Field names are snake_case in Python and camelCase on the wire, matching the
front end's ``Chat`` / ``Message`` types.
"""
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import DEFAULT_CHAT_TITLE
from models.conversation import Conversation, Turn


class APIModel(BaseModel):
    """Base model accepting both camelCase and snake_case input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CreateChatRequest(APIModel):
    title: str = DEFAULT_CHAT_TITLE


class UpdateChatRequest(APIModel):
    title: str


class GenerationRequest(APIModel):
    """Optional generation overrides; unset fields fall back to configuration."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    top_p: Optional[float] = Field(default=None, gt=0, le=1)
    stop: Optional[Union[str, List[str]]] = None


class SendMessageRequest(GenerationRequest):
    content: str
    stream: bool = True


class StartChatRequest(SendMessageRequest):
    conversation_id: Optional[str] = None


class UpdateMessageRequest(APIModel):
    content: str


class CompletionRequest(GenerationRequest):
    message: str
    system_prompt: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ChatPayload(APIModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ChatPayload":
        return cls(
            id=conversation.conversation_id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            message_count=conversation.message_count,
        )


class MessagePayload(APIModel):
    id: str
    role: str
    content: str
    created_at: datetime

    @classmethod
    def from_turn(cls, turn: Turn) -> "MessagePayload":
        return cls(
            id=turn.message_id,
            role=turn.role,
            content=turn.content,
            created_at=turn.created_at,
        )


class ChatResponse(APIModel):
    """Envelope for chat and message endpoints; unused keys are omitted."""
    success: bool = True
    chat: Optional[ChatPayload] = None
    chats: Optional[List[ChatPayload]] = None
    messages: Optional[List[MessagePayload]] = None
    message: Optional[Union[MessagePayload, str]] = None
    user_message: Optional[MessagePayload] = None
    assistant_message: Optional[MessagePayload] = None
    state: Optional[str] = None


class ModelInfo(APIModel):
    value: str
    label: str


class ModelsResponse(APIModel):
    success: bool = True
    models: List[ModelInfo]
    default: str


class CompletionResponse(APIModel):
    success: bool = True
    response: str
    model: str
    temperature: float
    max_tokens: int
    input_message: str
    system_prompt: str
    chunk_count: int
    response_length: int
    prompt_tokens: Optional[int] = None
    state: str
