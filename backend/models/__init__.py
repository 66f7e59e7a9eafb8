"""Data models for the ChatRelay backend."""
from .conversation import Conversation, Turn, USER_ROLE, ASSISTANT_ROLE, ROLES
from .api import (
    CreateChatRequest,
    UpdateChatRequest,
    GenerationRequest,
    SendMessageRequest,
    StartChatRequest,
    UpdateMessageRequest,
    CompletionRequest,
    ChatPayload,
    MessagePayload,
    ChatResponse,
    ModelInfo,
    ModelsResponse,
    CompletionResponse,
)

__all__ = [
    "Conversation",
    "Turn",
    "USER_ROLE",
    "ASSISTANT_ROLE",
    "ROLES",
    "CreateChatRequest",
    "UpdateChatRequest",
    "GenerationRequest",
    "SendMessageRequest",
    "StartChatRequest",
    "UpdateMessageRequest",
    "CompletionRequest",
    "ChatPayload",
    "MessagePayload",
    "ChatResponse",
    "ModelInfo",
    "ModelsResponse",
    "CompletionResponse",
]
