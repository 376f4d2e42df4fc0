"""
Core Pydantic schemas for kbchat.

Field names follow the hosted store's column names (user_id is the owning
account) so rows round-trip straight into these models.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kbchat.utils.helpers import utcnow


# --- Enumerations ------------------------------------------------------------

class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class ChatbotStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TRAINING = "training"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Sentiment(str, Enum):
    HAPPY = "happy"
    NEUTRAL = "neutral"
    UNHAPPY = "unhappy"


SUPPORTED_MEDIA_TYPES = ("text/plain", "application/pdf")


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Documents ---------------------------------------------------------------

class Document(BaseModel):
    """
    An uploaded file.  Only the ingestion pipeline moves `status`;
    deleting a document cascades to its chunks.
    """

    id: str = Field(default_factory=_new_id)
    user_id: str
    knowledge_base_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    filename: str
    file_size: int
    file_type: str
    status: DocumentStatus = DocumentStatus.PENDING
    storage_path: Optional[str] = None     # blob key in the documents bucket
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class DocumentChunk(BaseModel):
    """One overlapping slice of a document's text plus its embedding."""

    id: str = Field(default_factory=_new_id)
    document_id: str
    user_id: str
    chunk_text: str
    embedding: list[float] = Field(default_factory=list)
    chunk_index: int
    similarity: Optional[float] = None     # populated by retrieval only
    created_at: datetime = Field(default_factory=utcnow)


class KnowledgeBase(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Chatbots ----------------------------------------------------------------

class ChatbotConfiguration(BaseModel):
    """
    Versioned chatbot settings.

    Stored as a camelCase JSON bag (the format the dashboard writes); unknown
    keys in a stored bag are ignored and every field has a default.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    version: int = 1
    template: str = ""

    # Appearance
    primary_color: str = "#2563eb"
    secondary_color: str = "#64748b"
    font_family: str = "system"
    font_size: str = "medium"
    border_radius: str = "medium"
    bot_image: str = ""
    use_custom_image: bool = False
    position: str = "bottom-right"
    size: str = "normal"

    # Behaviour
    welcome_message: str = "Hello! How can I help you today?"
    show_welcome_message: bool = True
    fallback_message: str = "I'm sorry, I didn't understand that. Could you please rephrase?"
    collect_email: bool = True
    show_typing_indicator: bool = True
    minimize_after_conversation: bool = False
    enable_sound_notifications: bool = True

    # Personality
    personality: str = "helpful"
    communication_style: str = "professional"
    tone: str = "helpful"
    response_length: str = "medium"
    language: str = "en"

    # Voice
    enable_voice: bool = False
    voice_id: Optional[str] = None
    speech_speed: float = 1.0

    # Security
    enable_rate_limit: bool = True
    max_messages_per_hour: int = 100
    profanity_filter: bool = True
    require_domain_token: bool = False

    # Advanced
    context_memory: int = 10
    enable_analytics: bool = True
    custom_css: str = Field(default="", alias="customCSS")

    @classmethod
    def from_bag(cls, bag: Optional[dict[str, Any]]) -> "ChatbotConfiguration":
        return cls.model_validate(bag or {})

    def to_bag(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def merged(self, updates: dict[str, Any]) -> "ChatbotConfiguration":
        """Return a copy with `updates` (snake_case or camelCase keys) applied."""
        fields = type(self).model_fields
        aliased = {
            (fields[key].alias or key) if key in fields else key: value
            for key, value in updates.items()
        }
        return type(self).from_bag({**self.to_bag(), **aliased})


class Chatbot(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    status: ChatbotStatus = ChatbotStatus.ACTIVE
    knowledge_base_id: Optional[str] = None
    configuration: ChatbotConfiguration = Field(default_factory=ChatbotConfiguration)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json", exclude={"configuration"})
        row["configuration"] = self.configuration.to_bag()
        return row


class ChatbotDomain(BaseModel):
    """An origin allowed to embed a chatbot, with its opaque access token."""

    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    domain: str                            # normalized: no scheme / www / trailing slash
    token: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Conversations -----------------------------------------------------------

class ConversationMessage(BaseModel):
    """A persisted turn, grouped by the per-tab session id."""

    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    session_id: str
    role: MessageRole
    content: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ContactInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class UserInteraction(BaseModel):
    """Point-in-time sentiment / contact snapshot with the transcript so far."""

    id: str = Field(default_factory=_new_id)
    chatbot_id: str
    session_id: Optional[str] = None
    sentiment: Optional[Sentiment] = None
    confidence: Optional[float] = None
    should_escalate: bool = False
    contact: ContactInfo = Field(default_factory=ContactInfo)
    transcript: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
