"""
Conversation state
-------------------
An immutable record threaded through the turn handler: every turn takes a
ConversationState and returns a new one, so a conversation can be replayed
or unit-tested without any UI.

  session_id         created lazily on the first user message, reused for
                     every later message, replaced only by reset()
  escalated          one-way: once True it is never set back to False
  sentiment_history  the last few sentiment analyses (bounded)
  messages           the visible transcript; synthetic entries (welcome,
                     escalation notice, apology) are shown but never
                     persisted nor sent to the model
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from kbchat.schemas import MessageRole, Sentiment
from kbchat.utils.helpers import utcnow


class SentimentResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sentiment: Sentiment = Sentiment.NEUTRAL
    confidence: float = 0.0
    should_escalate: bool = Field(default=False, alias="shouldEscalate")


NEUTRAL_SENTIMENT = SentimentResult()


class TranscriptMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    sources: tuple[str, ...] = ()
    synthetic: bool = False


class ConversationState(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    escalated: bool = False
    sentiment_history: tuple[SentimentResult, ...] = ()
    messages: tuple[TranscriptMessage, ...] = ()
    user_turns: int = 0

    # -- Derived views ---------------------------------------------------------

    def user_texts(self) -> list[str]:
        return [m.text for m in self.messages if m.role == MessageRole.USER]

    def model_history(self) -> list[TranscriptMessage]:
        """Messages that count as real conversation (no synthetic entries)."""
        return [m for m in self.messages if not m.synthetic]

    def transcript(self) -> list[dict]:
        return [
            {"role": m.role.value, "text": m.text, "timestamp": m.timestamp.isoformat()}
            for m in self.messages
        ]

    # -- Transitions -----------------------------------------------------------

    def ensure_session(self) -> "ConversationState":
        if self.session_id:
            return self
        return self.model_copy(update={"session_id": str(uuid.uuid4())})

    def append(self, *messages: TranscriptMessage) -> "ConversationState":
        return self.model_copy(update={"messages": self.messages + messages})

    def record_sentiment(self, result: SentimentResult, keep: int = 5) -> "ConversationState":
        history = (self.sentiment_history + (result,))[-keep:] if keep > 0 else ()
        return self.model_copy(update={"sentiment_history": history})

    def escalate(self) -> "ConversationState":
        return self.model_copy(update={"escalated": True})

    def reset(self) -> "ConversationState":
        """Start a new chat: fresh session, empty transcript, escalation cleared."""
        return ConversationState()
