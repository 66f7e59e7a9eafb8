"""Conversation data models."""
from dataclasses import dataclass
from datetime import datetime

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
ROLES = (USER_ROLE, ASSISTANT_ROLE)


@dataclass
class Turn:
    """Represents a single persisted message in a conversation."""
    message_id: str  # Format: "msg_{12 hex}"
    conversation_id: str
    role: str  # "user" or "assistant"
    content: str
    created_at: datetime


@dataclass
class Conversation:
    """Represents a titled, timestamped conversation owned by one user."""
    conversation_id: str  # Format: "conv_{12 hex}"
    title: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
