"""UserInteraction snapshots: sentiment after each analysis, and captured contact details."""
from __future__ import annotations

from typing import Optional

from loguru import logger

from kbchat.conversation.state import ConversationState, SentimentResult
from kbchat.errors import KBChatError, ValidationError
from kbchat.schemas import ContactInfo, UserInteraction
from kbchat.storage.store import KnowledgeStore


class InteractionRecorder:

    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    def record_sentiment(
        self, chatbot_id: str, state: ConversationState, result: SentimentResult
    ) -> Optional[UserInteraction]:
        """Best effort: a failed write is logged and the turn continues."""
        try:
            return self.store.record_interaction(
                UserInteraction(
                    chatbot_id=chatbot_id,
                    session_id=state.session_id,
                    sentiment=result.sentiment,
                    confidence=result.confidence,
                    should_escalate=result.should_escalate,
                    transcript=state.transcript(),
                )
            )
        except KBChatError as exc:
            logger.warning(f"[Interactions] Sentiment snapshot not saved: {exc}")
            return None

    def capture_contact(
        self,
        chatbot_id: str,
        state: ConversationState,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> UserInteraction:
        contact = ContactInfo(
            name=(name or "").strip() or None,
            email=(email or "").strip() or None,
            phone=(phone or "").strip() or None,
        )
        if not (contact.name or contact.email or contact.phone):
            raise ValidationError("Provide at least a name, an email or a phone number")
        if contact.email and "@" not in contact.email:
            raise ValidationError(f"Invalid email address: {contact.email!r}")

        last = state.sentiment_history[-1] if state.sentiment_history else None
        interaction = self.store.record_interaction(
            UserInteraction(
                chatbot_id=chatbot_id,
                session_id=state.session_id,
                sentiment=last.sentiment if last else None,
                confidence=last.confidence if last else None,
                should_escalate=state.escalated,
                contact=contact,
                transcript=state.transcript(),
            )
        )
        logger.info(f"[Interactions] Contact captured for chatbot {chatbot_id}")
        return interaction
