"""Conversation manager persisting chats and their messages in Supabase."""
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from models.conversation import Conversation, Turn, ROLES
from config import SUPABASE_URL, SUPABASE_KEY, DEFAULT_CHAT_TITLE, DEFAULT_USER_ID
from services.errors import ConfigurationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"

_CONVERSATION_ID_RE = re.compile(r"^conv_[0-9a-f]{12}$")
_MESSAGE_ID_RE = re.compile(r"^msg_[0-9a-f]{12}$")


def create_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """Build the Supabase client once at startup; it is shared by every request."""
    url = url or SUPABASE_URL
    key = key or SUPABASE_KEY
    if not url or not key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")
    return create_client(url, key)


class ConversationManager:
    """Manages conversation and message storage using Supabase PostgreSQL."""

    def __init__(self, client: Optional[Client] = None):
        """
        Initialize the conversation manager.

        Args:
            client: Supabase client to use (defaults to one built from the environment)
        """
        self.client: Client = client if client is not None else create_supabase_client()
        self._last_timestamp: Optional[datetime] = None
        logger.info("ConversationManager initialized with Supabase")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
        self,
        title: str = DEFAULT_CHAT_TITLE,
        user_id: str = DEFAULT_USER_ID
    ) -> Conversation:
        """
        Create a new, empty conversation.

        Args:
            title: Display title (defaults to "New Chat")
            user_id: Owner of the conversation

        Returns:
            The persisted Conversation
        """
        title = self._clean_title(title)
        now = self._now()
        row = {
            "conversation_id": self._generate_conversation_id(),
            "title": title,
            "user_id": user_id,
            "created_at": self._format_timestamp(now),
            "updated_at": self._format_timestamp(now),
        }

        try:
            self.client.table(CONVERSATIONS_TABLE).insert(row).execute()
        except Exception as e:
            logger.error(f"Error creating conversation: {e}")
            raise

        logger.info(f"Created new conversation: {row['conversation_id']}")
        return self._to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Conversation:
        """
        Fetch a conversation by ID.

        Raises:
            ValidationError: If the ID is malformed
            NotFoundError: If no such conversation exists
        """
        self._validate_conversation_id(conversation_id)
        result = (
            self.client.table(CONVERSATIONS_TABLE)
            .select("*")
            .eq("conversation_id", conversation_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError("Chat not found", details={"conversation_id": conversation_id})
        return self._to_conversation(result.data[0])

    def list_conversations(self, user_id: str = DEFAULT_USER_ID) -> List[Conversation]:
        """
        List a user's conversations, most recently updated first.

        Each Conversation carries its message count.
        """
        result = (
            self.client.table(CONVERSATIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("updated_at", desc=True)
            .execute()
        )
        conversations = []
        for row in result.data or []:
            conversation = self._to_conversation(row)
            conversation.message_count = self.count_turns(conversation.conversation_id)
            conversations.append(conversation)

        logger.debug(f"Listed {len(conversations)} conversations for user {user_id}")
        return conversations

    def update_title(self, conversation_id: str, title: str) -> Conversation:
        """Replace a conversation's title and bump its updated timestamp."""
        self._validate_conversation_id(conversation_id)
        title = self._clean_title(title)
        result = (
            self.client.table(CONVERSATIONS_TABLE)
            .update({"title": title, "updated_at": self._format_timestamp(self._now())})
            .eq("conversation_id", conversation_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError("Chat not found", details={"conversation_id": conversation_id})

        logger.info(f"Renamed conversation {conversation_id} to {title!r}")
        return self._to_conversation(result.data[0])

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation together with all of its messages."""
        self.get_conversation(conversation_id)

        self.client.table(MESSAGES_TABLE).delete().eq("conversation_id", conversation_id).execute()
        self.client.table(CONVERSATIONS_TABLE).delete().eq("conversation_id", conversation_id).execute()
        logger.info(f"Deleted conversation {conversation_id} and its messages")

    def _touch(self, conversation_id: str, timestamp: datetime) -> None:
        self.client.table(CONVERSATIONS_TABLE).update(
            {"updated_at": self._format_timestamp(timestamp)}
        ).eq("conversation_id", conversation_id).execute()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_turn(self, conversation_id: str, role: str, content: str) -> Turn:
        """
        Persist one message and advance the conversation's updated timestamp.

        Args:
            conversation_id: ID of the owning conversation
            role: "user" or "assistant"
            content: Message text, stored exactly as given

        Returns:
            The persisted Turn
        """
        self._validate_conversation_id(conversation_id)
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role!r}", details={"role": role})
        if not content or not content.strip():
            raise ValidationError("Message content is required")

        created_at = self._now()
        row = {
            "message_id": self._generate_message_id(),
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": self._format_timestamp(created_at),
        }

        try:
            self.client.table(MESSAGES_TABLE).insert(row).execute()
            self._touch(conversation_id, created_at)
        except Exception as e:
            logger.error(f"Error adding {role} message to conversation {conversation_id}: {e}")
            raise

        logger.info(f"Added {role} message to conversation {conversation_id}")
        return self._to_turn(row)

    def list_turns(self, conversation_id: str, limit: Optional[int] = None) -> List[Turn]:
        """
        Retrieve messages for a conversation in chronological order.

        Args:
            conversation_id: ID of the conversation
            limit: Optional limit; keeps the most recent messages

        Returns:
            List of Turn objects, oldest first (empty for unknown conversations)
        """
        self._validate_conversation_id(conversation_id)
        query = self.client.table(MESSAGES_TABLE).select("*").eq("conversation_id", conversation_id)

        if limit:
            # Newest first, then flip back to chronological order
            result = query.order("created_at", desc=True).limit(limit).execute()
            rows = list(reversed(result.data or []))
        else:
            result = query.order("created_at", desc=False).execute()
            rows = result.data or []

        return [self._to_turn(row) for row in rows]

    def get_context_window(self, conversation_id: str, window: int) -> List[Turn]:
        """
        Select the most recent ``window`` messages as provider context.

        Args:
            conversation_id: ID of the conversation
            window: Maximum number of messages to include

        Returns:
            Up to ``window`` Turns, oldest first
        """
        if window <= 0:
            return []
        turns = self.list_turns(conversation_id, limit=window)
        logger.debug(f"Selected context for conversation {conversation_id}: {len(turns)} messages")
        return turns

    def count_turns(self, conversation_id: str) -> int:
        result = (
            self.client.table(MESSAGES_TABLE)
            .select("message_id", count="exact")
            .eq("conversation_id", conversation_id)
            .execute()
        )
        if result.count is not None:
            return result.count
        return len(result.data or [])

    def get_turn(self, message_id: str) -> Turn:
        """Fetch a single message by ID."""
        self._validate_message_id(message_id)
        result = self.client.table(MESSAGES_TABLE).select("*").eq("message_id", message_id).execute()
        if not result.data:
            raise NotFoundError("Message not found", details={"message_id": message_id})
        return self._to_turn(result.data[0])

    def update_turn_content(self, message_id: str, content: str) -> Turn:
        """Replace a message's text with the trimmed new content."""
        self._validate_message_id(message_id)
        if not content or not content.strip():
            raise ValidationError("Message content is required")

        result = (
            self.client.table(MESSAGES_TABLE)
            .update({"content": content.strip()})
            .eq("message_id", message_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError("Message not found", details={"message_id": message_id})

        logger.info(f"Edited message {message_id}")
        return self._to_turn(result.data[0])

    def delete_turn(self, message_id: str) -> None:
        """Delete a single message."""
        self._validate_message_id(message_id)
        result = self.client.table(MESSAGES_TABLE).delete().eq("message_id", message_id).execute()
        if not result.data:
            raise NotFoundError("Message not found", details={"message_id": message_id})
        logger.info(f"Deleted message {message_id}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        """
        Current UTC time, strictly later than the last timestamp this manager
        issued so messages written back to back never share a timestamp.
        """
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    @staticmethod
    def _clean_title(title: str) -> str:
        if title is None or not title.strip():
            raise ValidationError("Chat title is required")
        return title.strip()

    @staticmethod
    def _validate_conversation_id(conversation_id: str) -> None:
        if not conversation_id or not _CONVERSATION_ID_RE.match(conversation_id):
            raise ValidationError("Invalid chat ID", details={"conversation_id": conversation_id})

    @staticmethod
    def _validate_message_id(message_id: str) -> None:
        if not message_id or not _MESSAGE_ID_RE.match(message_id):
            raise ValidationError("Invalid message ID", details={"message_id": message_id})

    def _generate_conversation_id(self) -> str:
        return f"conv_{uuid.uuid4().hex[:12]}"

    def _generate_message_id(self) -> str:
        return f"msg_{uuid.uuid4().hex[:12]}"

    def _to_conversation(self, row: Dict[str, Any]) -> Conversation:
        return Conversation(
            conversation_id=row["conversation_id"],
            title=row["title"],
            user_id=row.get("user_id") or DEFAULT_USER_ID,
            created_at=self._parse_timestamp(row["created_at"]),
            updated_at=self._parse_timestamp(row["updated_at"]),
        )

    def _to_turn(self, row: Dict[str, Any]) -> Turn:
        return Turn(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            created_at=self._parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _format_timestamp(timestamp: datetime) -> str:
        # Fixed precision keeps lexical and chronological order identical
        return timestamp.isoformat(timespec="microseconds")

    def _parse_timestamp(self, timestamp_str: str) -> datetime:
        """
        Parse timestamp string from Supabase, handling various formats.

        Supabase can return timestamps with varying fractional-second
        precision, which Python's fromisoformat() can't always handle. This
        method normalizes the fraction to exactly six digits.

        Args:
            timestamp_str: Timestamp string from Supabase

        Returns:
            Timezone-aware datetime object
        """
        timestamp_str = timestamp_str.replace("Z", "+00:00")

        # Format: 2026-02-21T02:08:26.18976+00:00
        match = re.match(r"^(.*T[\d:]+)\.(\d+)(.*)$", timestamp_str)
        if match:
            head, fraction, tz = match.groups()
            timestamp_str = f"{head}.{fraction[:6].ljust(6, '0')}{tz}"

        parsed = datetime.fromisoformat(timestamp_str)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
