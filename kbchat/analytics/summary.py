"""
Usage analytics for an owner's chatbots
-----------------------------------------
Totals come straight from the stored messages and interactions:

  total_conversations   distinct session ids
  total_messages        persisted messages (both roles)
  unique_users          max(distinct sessions, distinct captured emails)
  *_today               same counts since UTC midnight
  top_questions         keyword / phrase frequency over user messages

Top questions: stop-word-filtered keywords (3+ letters) seen at least three
times, plus question phrases ("how do I ...", "what is ...") and common
service phrases ("reset password", "business hours"), which count double.
The ten heaviest are phrased as questions and the top five returned.
"""
from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, time, timezone
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

from kbchat.schemas import MessageRole
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.helpers import utcnow

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been being
    have has had do does did will would could should may might can i you he she
    it we they me him her us them my your his its our their this that these those
    what where when why how who which if then else so just now here there up down
    out off over under again further once
    """.split()
)

QUESTION_PATTERNS = [
    re.compile(p)
    for p in (
        r"how (?:do|can|to) (?:i|we) ([^?]+)",
        r"what (?:is|are) ([^?]+)",
        r"where (?:is|can|do) ([^?]+)",
        r"when (?:is|do|can) ([^?]+)",
        r"why (?:is|do|can) ([^?]+)",
        r"can (?:i|we|you) ([^?]+)",
        r"do (?:i|we|you) ([^?]+)",
        r"is (?:there|it) ([^?]+)",
        r"are (?:there|you) ([^?]+)",
    )
]

SERVICE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?:reset|change|update) (?:password|account|profile)",
        r"(?:business|office|working) hours?",
        r"(?:contact|customer|technical) support",
        r"(?:pricing|price|cost|fee) (?:information|details|plan)",
        r"(?:cancel|delete|remove) (?:subscription|account|service)",
        r"(?:sign|log) (?:in|up|out)",
        r"(?:payment|billing) (?:method|information|issue)",
        r"(?:refund|return) (?:policy|request)",
        r"(?:shipping|delivery) (?:time|cost|information)",
        r"(?:account|profile) (?:settings|information)",
    )
]

_WORD = re.compile(r"\b[a-z]{2,}\b")
_QUESTION_START = re.compile(r"^(how|what|where|when|why|can|do|is|are)")


class TopQuestion(BaseModel):
    question: str
    count: int


class AnalyticsSummary(BaseModel):
    total_conversations: int = 0
    total_messages: int = 0
    unique_users: int = 0
    conversations_today: int = 0
    messages_today: int = 0
    top_questions: list[TopQuestion] = Field(default_factory=list)


def _as_question(item: str) -> str:
    if _QUESTION_START.match(item):
        question = item[:1].upper() + item[1:]
        return question if question.endswith("?") else question + "?"
    if "hours" in item:
        return f"What are your {item}?"
    if "support" in item:
        return f"How can I contact {item}?"
    if "pricing" in item or "cost" in item:
        return f"Where can I find {item}?"
    return f"How do I {item}?"


def top_questions(messages: list[str], limit: int = 5) -> list[TopQuestion]:
    """Rank recurring keywords and phrases in user messages, phrased as questions."""
    keywords: Counter[str] = Counter()
    phrases: Counter[str] = Counter()

    for message in messages:
        text = message.lower().strip()
        if len(text) < 3:
            continue

        keywords.update(w for w in _WORD.findall(text) if len(w) > 2 and w not in STOP_WORDS)

        for pattern in QUESTION_PATTERNS:
            for match in pattern.finditer(text):
                phrase = match.group(1).strip()
                if len(phrase) > 3:
                    phrases[phrase] += 1

        for pattern in SERVICE_PATTERNS:
            phrases.update(m.group(0) for m in pattern.finditer(text))

    weighted: dict[str, int] = {k: c for k, c in keywords.items() if c >= 3}
    for phrase, count in phrases.items():
        weighted[phrase] = count * 2

    ranked = sorted(weighted.items(), key=lambda kv: kv[1], reverse=True)[:10]
    return [TopQuestion(question=_as_question(item), count=count) for item, count in ranked][:limit]


class AnalyticsService:

    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    def summarize(self, user_id: str, now: Optional[datetime] = None) -> AnalyticsSummary:
        chatbot_ids = [bot.id for bot in self.store.list_chatbots(user_id)]
        if not chatbot_ids:
            return AnalyticsSummary()

        messages = self.store.list_messages(chatbot_ids)
        interactions = self.store.list_interactions(chatbot_ids)

        now = now or utcnow()
        midnight = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo or timezone.utc)

        sessions = {m.session_id for m in messages if m.session_id}
        first_seen: dict[str, datetime] = {}
        for m in messages:
            if m.session_id and (m.session_id not in first_seen or m.created_at < first_seen[m.session_id]):
                first_seen[m.session_id] = m.created_at
        emails = {i.contact.email for i in interactions if i.contact.email}

        user_texts = [
            m.content
            for m in messages
            if m.role == MessageRole.USER and m.content and 3 < len(m.content.strip()) and len(m.content) < 500
        ]

        summary = AnalyticsSummary(
            total_conversations=len(sessions),
            total_messages=len(messages),
            unique_users=max(len(sessions), len(emails)),
            conversations_today=sum(1 for ts in first_seen.values() if ts >= midnight),
            messages_today=sum(1 for m in messages if m.created_at >= midnight),
            top_questions=top_questions(user_texts),
        )
        logger.info(
            f"[Analytics] user={user_id} bots={len(chatbot_ids)} "
            f"conversations={summary.total_conversations} messages={summary.total_messages}"
        )
        return summary
