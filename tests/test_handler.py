"""Tests for the conversation turn handler and the conversation view."""
from unittest.mock import MagicMock

import openai
import pytest

from conftest import SAMPLE_TEXT, FakeOpenAI
from kbchat.config import ConversationSettings
from kbchat.conversation.handler import ChatbotSelection, ConversationView, TurnHandler
from kbchat.conversation.interactions import InteractionRecorder
from kbchat.conversation.sentiment import SentimentMonitor
from kbchat.conversation.state import NEUTRAL_SENTIMENT, SentimentResult
from kbchat.errors import ValidationError
from kbchat.generation.generator import ChatGenerator
from kbchat.generation.prompts import ESCALATION_RESPONSE, TURN_FAILURE_RESPONSE
from kbchat.retrieval.retriever import Retriever
from kbchat.schemas import MessageRole, Sentiment

UNHAPPY = SentimentResult(sentiment=Sentiment.UNHAPPY, confidence=0.9, should_escalate=True)
HAPPY = SentimentResult(sentiment=Sentiment.HAPPY, confidence=0.9, should_escalate=False)


class ScriptedMonitor:
    """Returns the queued results in order, then neutral."""

    def __init__(self, results=()):
        self.results = list(results)
        self.calls = []

    def analyze(self, messages):
        self.calls.append(list(messages))
        return self.results.pop(0) if self.results else NEUTRAL_SENTIMENT


@pytest.fixture
def chat_client():
    return FakeOpenAI(default_reply="Happy to help.")


@pytest.fixture
def make_handler(store, embedder, chat_client):
    def factory(monitor=None, retriever=None, **settings):
        return TurnHandler(
            store,
            ChatGenerator("sk-test", client=chat_client),
            retriever or Retriever(store, embedder),
            monitor or ScriptedMonitor(),
            recorder=InteractionRecorder(store),
            settings=ConversationSettings(**settings),
        )

    return factory


class TestTurn:

    def test_no_knowledge_base_means_no_retrieval(self, make_handler, bare_chatbot, chat_client):
        retriever = MagicMock(spec=Retriever)
        handler = make_handler(retriever=retriever)

        result = handler.handle(handler.start(bare_chatbot), bare_chatbot, "Tell me a joke")

        retriever.retrieve.assert_not_called()
        assert result.context == ""
        system = chat_client.chat_calls[0]["messages"][0]["content"]
        assert "[Source" not in system
        assert result.reply.sources == ()

    def test_knowledge_base_context_reaches_the_model(self, make_handler, pipeline, knowledge_base, chatbot, chat_client):
        pipeline.ingest("owner-1", "faq.txt", SAMPLE_TEXT.encode(), "text/plain", knowledge_base_id=knowledge_base.id)
        handler = make_handler()

        result = handler.handle(handler.start(chatbot), chatbot, "How do I reset my password?")

        assert result.context.startswith("[Source 1]: ")
        assert "[Source 1]: " in chat_client.chat_calls[0]["messages"][0]["content"]
        assert result.reply.sources == ("Knowledge Base",)

    def test_messages_persisted_under_one_session(self, make_handler, bare_chatbot, store):
        handler = make_handler()
        state = handler.start(bare_chatbot)

        first = handler.handle(state, bare_chatbot, "Hello", ip_address="10.0.0.1", user_agent="pytest")
        second = handler.handle(first.state, bare_chatbot, "Are you there?")

        assert first.state.session_id is not None
        assert second.state.session_id == first.state.session_id
        assert [(m.role, m.content) for m in store.messages] == [
            (MessageRole.USER, "Hello"),
            (MessageRole.ASSISTANT, "Happy to help."),
            (MessageRole.USER, "Are you there?"),
            (MessageRole.ASSISTANT, "Happy to help."),
        ]
        assert store.messages[0].ip_address == "10.0.0.1"
        assert {m.session_id for m in store.messages} == {first.state.session_id}

    def test_welcome_message_shown_but_not_sent_or_saved(self, make_handler, bare_chatbot, store, chat_client):
        handler = make_handler()
        state = handler.start(bare_chatbot)
        assert state.messages[0].synthetic
        assert state.messages[0].text == bare_chatbot.configuration.welcome_message

        handler.handle(state, bare_chatbot, "Hi")

        sent = chat_client.chat_calls[0]["messages"]
        assert [m["role"] for m in sent] == ["system", "user"]
        assert len(store.messages) == 2

    def test_history_window_bounds_prior_messages(self, make_handler, bare_chatbot, chat_client):
        handler = make_handler(history_window=2)
        state = handler.start(bare_chatbot)
        for text in ("one", "two", "three"):
            state = handler.handle(state, bare_chatbot, text).state

        last_call = chat_client.chat_calls[-1]["messages"]
        assert [m["content"] for m in last_call[1:]] == ["two", "Happy to help.", "three"]

    def test_failure_appends_apology(self, make_handler, bare_chatbot, chat_client):
        chat_client.error = openai.OpenAIError("boom")
        handler = make_handler()

        result = handler.handle(handler.start(bare_chatbot), bare_chatbot, "Hello")

        assert result.failed
        assert result.reply.text == TURN_FAILURE_RESPONSE
        assert result.reply.synthetic
        assert result.state.messages[-2].text == "Hello"

    def test_unexpected_error_still_apologises(self, make_handler, chatbot, chat_client):
        retriever = MagicMock(spec=Retriever)
        retriever.retrieve.side_effect = KeyError("chunk_index")
        handler = make_handler(retriever=retriever)

        result = handler.handle(handler.start(chatbot), chatbot, "Where is my order?")

        assert result.failed
        assert result.reply.text == TURN_FAILURE_RESPONSE
        assert chat_client.chat_calls == []

    def test_empty_message_rejected(self, make_handler, bare_chatbot):
        handler = make_handler()
        with pytest.raises(ValidationError):
            handler.handle(handler.start(bare_chatbot), bare_chatbot, "   ")

    def test_attachment_text_joins_context(self, make_handler, bare_chatbot, chat_client):
        handler = make_handler()
        result = handler.handle(
            handler.start(bare_chatbot), bare_chatbot, "Summarise this", attachment_text="Invoice total: $40"
        )
        assert result.context == "[Attachment]: Invoice total: $40"
        assert "Invoice total: $40" in chat_client.chat_calls[0]["messages"][0]["content"]


class TestEscalation:

    def test_escalation_is_one_way(self, make_handler, bare_chatbot):
        monitor = ScriptedMonitor([UNHAPPY, UNHAPPY, UNHAPPY, HAPPY])
        handler = make_handler(monitor=monitor)
        state = handler.start(bare_chatbot)

        texts = ("This is broken", "Still broken", "Useless", "Thanks, that worked")
        for text in texts:
            state = handler.handle(state, bare_chatbot, text).state

        assert state.escalated is True
        # analysis stops once the conversation is escalated
        assert len(monitor.calls) == 1

    def test_escalation_after_later_turn(self, make_handler, bare_chatbot, chat_client):
        monitor = ScriptedMonitor([HAPPY, UNHAPPY, HAPPY])
        handler = make_handler(monitor=monitor)
        state = handler.start(bare_chatbot)

        state = handler.handle(state, bare_chatbot, "Hi").state
        assert not state.escalated

        result = handler.handle(state, bare_chatbot, "This is ridiculous")
        assert result.state.escalated
        assert [m.text for m in result.new_messages][1] == ESCALATION_RESPONSE

        state = handler.handle(result.state, bare_chatbot, "ok").state
        assert state.escalated
        # the prompt switches to the escalated guidance once flagged
        assert "frustration" in chat_client.chat_calls[-1]["messages"][0]["content"]

    def test_sentiment_cadence(self, make_handler, bare_chatbot):
        monitor = ScriptedMonitor()
        handler = make_handler(monitor=monitor, sentiment_every_n_turns=2)
        state = handler.start(bare_chatbot)
        for text in ("a1", "b2", "c3", "d4"):
            state = handler.handle(state, bare_chatbot, text).state

        assert monitor.calls == [["a1", "b2"], ["a1", "b2", "c3", "d4"]]

    def test_sentiment_snapshots_recorded(self, make_handler, bare_chatbot, store):
        handler = make_handler(monitor=ScriptedMonitor([UNHAPPY]))
        handler.handle(handler.start(bare_chatbot), bare_chatbot, "Terrible")

        (snapshot,) = store.interactions
        assert snapshot.sentiment == Sentiment.UNHAPPY
        assert snapshot.should_escalate
        assert snapshot.transcript[-1]["text"] == "Terrible"

    def test_sentiment_history_is_bounded(self, make_handler, bare_chatbot):
        handler = make_handler(monitor=ScriptedMonitor([HAPPY] * 4), sentiment_history_size=3)
        state = handler.start(bare_chatbot)
        for text in ("a", "b", "c", "d"):
            state = handler.handle(state, bare_chatbot, text).state
        assert len(state.sentiment_history) == 3

    def test_real_monitor_without_key_never_escalates(self, make_handler, bare_chatbot):
        handler = make_handler(monitor=SentimentMonitor(None))
        result = handler.handle(handler.start(bare_chatbot), bare_chatbot, "I hate this")
        assert not result.state.escalated


class TestConversationView:

    def test_explicit_chatbot_wins_over_selection(self, make_handler, bare_chatbot, chatbot):
        view = ConversationView(make_handler(), chatbot=bare_chatbot, selection=ChatbotSelection(chatbot))
        assert view.chatbot is bare_chatbot

    def test_selection_used_when_no_chatbot_given(self, make_handler, bare_chatbot):
        selection = ChatbotSelection()
        view = ConversationView(make_handler(), selection=selection)

        with pytest.raises(ValidationError):
            view.send("hello")

        selection.selected = bare_chatbot
        assert view.send("hello").reply.text == "Happy to help."

    def test_reset_starts_new_session(self, make_handler, bare_chatbot):
        view = ConversationView(make_handler(), chatbot=bare_chatbot)
        view.send("hello")
        old_session = view.state.session_id

        state = view.reset()

        assert state.session_id is None
        assert not state.escalated
        assert len(state.messages) == 1 and state.messages[0].synthetic
        view.send("again")
        assert view.state.session_id != old_session
