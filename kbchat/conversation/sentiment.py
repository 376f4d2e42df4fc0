"""
Sentiment / Escalation Monitor
-------------------------------
Classifies the tone of the user's recent messages with the chat-completion
endpoint and recommends escalation.

The model is asked for a strict JSON object:
    {"sentiment": "happy"|"neutral"|"unhappy", "confidence": 0..1,
     "shouldEscalate": bool}

Any missing key, upstream error, empty reply, unparseable JSON or
out-of-range field yields the neutral / no-escalate default.  analyze()
never raises for those cases.
"""
from __future__ import annotations

from typing import Optional

import orjson
from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError

from kbchat.conversation.state import NEUTRAL_SENTIMENT, SentimentResult
from kbchat.errors import ValidationError
from kbchat.generation.prompts import SENTIMENT_SYSTEM_PROMPT
from kbchat.schemas import Sentiment

_VALID_SENTIMENTS = {s.value for s in Sentiment}


def parse_sentiment(raw: Optional[str]) -> SentimentResult:
    """Strictly validate the model's JSON reply; raise ValidationError on any defect."""
    if not raw:
        raise ValidationError("Empty sentiment response")
    try:
        parsed = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ValidationError(f"Sentiment response is not JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValidationError("Sentiment response is not a JSON object")

    sentiment = parsed.get("sentiment")
    if sentiment not in _VALID_SENTIMENTS:
        raise ValidationError(f"Invalid sentiment value: {sentiment!r}")

    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValidationError(f"Invalid confidence value: {confidence!r}")
    if not 0.0 <= confidence <= 1.0:
        raise ValidationError(f"Confidence out of range: {confidence}")

    should_escalate = parsed.get("shouldEscalate")
    if not isinstance(should_escalate, bool):
        raise ValidationError(f"Invalid shouldEscalate value: {should_escalate!r}")

    return SentimentResult(
        sentiment=Sentiment(sentiment),
        confidence=float(confidence),
        should_escalate=should_escalate,
    )


def should_escalate(history: tuple[SentimentResult, ...] | list[SentimentResult]) -> bool:
    """The latest analysis decides."""
    return bool(history) and history[-1].should_escalate


class SentimentMonitor:

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        window: int = 5,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.window = window
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    @traceable(name="analyze_sentiment", run_type="llm")
    def analyze(self, messages: list[str]) -> SentimentResult:
        """Classify the last `window` user messages."""
        if not self._api_key:
            logger.debug("[Sentiment] No API key -- neutral default")
            return NEUTRAL_SENTIMENT

        recent = [m for m in messages if m.strip()][-self.window:]
        if not recent:
            return NEUTRAL_SENTIMENT

        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SENTIMENT_SYSTEM_PROMPT},
                    {"role": "user", "content": "\n".join(recent)},
                ],
                max_tokens=100,
                temperature=0.1,
            )
        except OpenAIError as exc:
            logger.warning(f"[Sentiment] Analysis call failed: {exc}")
            return NEUTRAL_SENTIMENT

        raw = response.choices[0].message.content if response.choices else None
        try:
            result = parse_sentiment(raw)
        except ValidationError as exc:
            logger.warning(f"[Sentiment] Discarding malformed result: {exc}")
            return NEUTRAL_SENTIMENT

        logger.info(
            f"[Sentiment] {result.sentiment.value} ({result.confidence:.2f}) "
            f"escalate={result.should_escalate}"
        )
        return result
