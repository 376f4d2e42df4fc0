"""
Conversation Turn Handler
--------------------------
One user message in, an updated ConversationState out.

  1. append the user message to the transcript
  2. create the session id if the conversation has none yet
  3. persist the user message (add_session_message)
  4. unless already escalated, and on every Nth user turn: classify the
     recent user messages; if the monitor says escalate, flip the one-way
     flag and add the fixed escalation notice
  5. if the chatbot has a knowledge base: retrieve the top 5 chunks for the
     message and build a "[Source N]" context block
  6. call the chat model with the last 5 prior messages + the new one
  7. append and persist the reply
  8. any failure in 3-7 appends the fixed apology and ends the turn

Turns on one session are not serialised: two concurrent handle() calls on
the same state each persist their own messages in whatever order the store
receives them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from langsmith import traceable
from loguru import logger

from kbchat.config import ConversationSettings
from kbchat.conversation.interactions import InteractionRecorder
from kbchat.conversation.sentiment import SentimentMonitor, should_escalate
from kbchat.conversation.state import ConversationState, TranscriptMessage
from kbchat.errors import KBChatError, ValidationError
from kbchat.generation.generator import ChatGenerator
from kbchat.generation.prompts import ESCALATION_RESPONSE, TURN_FAILURE_RESPONSE
from kbchat.retrieval.retriever import Retriever, build_context
from kbchat.schemas import Chatbot, MessageRole
from kbchat.storage.store import KnowledgeStore


@dataclass
class TurnResult:
    state: ConversationState
    new_messages: list[TranscriptMessage] = field(default_factory=list)
    context: str = ""
    failed: bool = False

    @property
    def reply(self) -> Optional[TranscriptMessage]:
        for message in reversed(self.new_messages):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None


class TurnHandler:
    """
    Usage:
        handler = TurnHandler(store, generator, retriever, monitor)
        state = handler.start(chatbot)
        result = handler.handle(state, chatbot, "Where is my invoice?")
        state = result.state
    """

    def __init__(
        self,
        store: KnowledgeStore,
        generator: ChatGenerator,
        retriever: Retriever,
        monitor: SentimentMonitor,
        recorder: Optional[InteractionRecorder] = None,
        settings: Optional[ConversationSettings] = None,
        top_k: int = 5,
    ) -> None:
        self.store = store
        self.generator = generator
        self.retriever = retriever
        self.monitor = monitor
        self.recorder = recorder
        self.settings = settings or ConversationSettings()
        self.top_k = top_k

    def start(self, chatbot: Chatbot) -> ConversationState:
        """A fresh conversation, seeded with the chatbot's welcome message if enabled."""
        state = ConversationState()
        config = chatbot.configuration
        if config.show_welcome_message and config.welcome_message:
            state = state.append(
                TranscriptMessage(
                    role=MessageRole.ASSISTANT, text=config.welcome_message, synthetic=True
                )
            )
        return state

    @traceable(name="chat_turn", run_type="chain")
    def handle(
        self,
        state: ConversationState,
        chatbot: Chatbot,
        text: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        attachment_text: Optional[str] = None,
    ) -> TurnResult:
        text = text.strip()
        if not text:
            raise ValidationError("Message text is empty")

        user_message = TranscriptMessage(role=MessageRole.USER, text=text)
        prior = state.model_history()
        state = state.append(user_message).model_copy(update={"user_turns": state.user_turns + 1})
        state = state.ensure_session()
        new_messages = [user_message]
        context = ""

        try:
            self.store.add_session_message(
                chatbot.id, state.session_id, text, MessageRole.USER, ip_address, user_agent
            )

            state = self._check_sentiment(state, chatbot, new_messages)

            if chatbot.knowledge_base_id:
                chunks = self.retriever.retrieve(text, self.top_k, chatbot_id=chatbot.id)
                context = build_context(chunks)
            if attachment_text:
                attached = f"[Attachment]: {attachment_text}"
                context = f"{context}\n\n{attached}" if context else attached

            window = self.settings.history_window
            history = [
                {"role": m.role.value, "content": m.text}
                for m in (prior[-window:] if window > 0 else [])
            ]
            history.append({"role": MessageRole.USER.value, "content": text})

            config = chatbot.configuration
            reply = self.generator.complete(
                history,
                context=context,
                personality=config.personality,
                communication_style=config.communication_style,
                escalated=state.escalated,
            )

            bot_message = TranscriptMessage(
                role=MessageRole.ASSISTANT, text=reply.message, sources=tuple(reply.sources)
            )
            state = state.append(bot_message)
            new_messages.append(bot_message)

            self.store.add_session_message(
                chatbot.id, state.session_id, reply.message, MessageRole.ASSISTANT,
                ip_address, user_agent,
            )

        except Exception as exc:
            logger.error(f"[TurnHandler] Turn failed for chatbot {chatbot.id}: {exc!r}")
            apology = TranscriptMessage(
                role=MessageRole.ASSISTANT, text=TURN_FAILURE_RESPONSE, synthetic=True
            )
            return TurnResult(
                state=state.append(apology),
                new_messages=new_messages + [apology],
                context=context,
                failed=True,
            )

        logger.info(
            f"[TurnHandler] session={state.session_id} turn={state.user_turns} "
            f"context={'yes' if context else 'no'} escalated={state.escalated}"
            f" tokens={reply.total_tokens} cost=${reply.estimated_cost_usd:.5f}"
        )
        return TurnResult(state=state, new_messages=new_messages, context=context)

    def _check_sentiment(
        self,
        state: ConversationState,
        chatbot: Chatbot,
        new_messages: list[TranscriptMessage],
    ) -> ConversationState:
        every = max(self.settings.sentiment_every_n_turns, 1)
        if state.escalated or state.user_turns % every != 0:
            return state

        result = self.monitor.analyze(state.user_texts()[-self.settings.sentiment_window:])
        state = state.record_sentiment(result, keep=self.settings.sentiment_history_size)
        if self.recorder is not None:
            self.recorder.record_sentiment(chatbot.id, state, result)

        if should_escalate(state.sentiment_history):
            notice = TranscriptMessage(
                role=MessageRole.ASSISTANT, text=ESCALATION_RESPONSE, synthetic=True
            )
            state = state.escalate().append(notice)
            new_messages.append(notice)
            logger.warning(f"[TurnHandler] Conversation {state.session_id} escalated")
        return state


# --- Conversation view ------------------------------------------------------

@dataclass
class ChatbotSelection:
    """The chatbot currently picked in a dashboard, if any."""

    selected: Optional[Chatbot] = None


class ConversationView:
    """
    A single chat window: holds the current state and resolves which chatbot
    it talks to from an explicit chatbot or, failing that, an optional
    dashboard selection.
    """

    def __init__(
        self,
        handler: TurnHandler,
        chatbot: Optional[Chatbot] = None,
        selection: Optional[ChatbotSelection] = None,
    ) -> None:
        self.handler = handler
        self._chatbot = chatbot
        self._selection = selection
        self.state = handler.start(self.chatbot) if self.chatbot else ConversationState()

    @property
    def chatbot(self) -> Optional[Chatbot]:
        if self._chatbot is not None:
            return self._chatbot
        return self._selection.selected if self._selection is not None else None

    def send(self, text: str, **requester) -> TurnResult:
        bot = self.chatbot
        if bot is None:
            raise ValidationError("No chatbot selected")
        result = self.handler.handle(self.state, bot, text, **requester)
        self.state = result.state
        return result

    def reset(self) -> ConversationState:
        """New chat: drops the session id and re-seeds the welcome message."""
        bot = self.chatbot
        self.state = self.handler.start(bot) if bot else self.state.reset()
        return self.state
