"""
Chat Generator
---------------
Conversational replies from the hosted chat-completion endpoint.

  system prompt (personality + optional retrieved context)
  + bounded history window (oldest first, ending with the new user message)
  -> one completion call, no retry

With no API key configured the generator answers with the fixed demo-mode
reply instead of calling out.  Any SDK error surfaces as UpstreamError; the
turn handler turns that into its apology message.

Context budget:
  - System prompt + up to 5 retrieved chunks of ~800 chars
  - Completion cap: 500 tokens (config: conversation.max_completion_tokens)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError

from kbchat.errors import UpstreamError
from kbchat.generation.prompts import (
    DEMO_MODE_RESPONSE,
    EMPTY_COMPLETION_RESPONSE,
    ESCALATED_GUIDANCE,
    PERSONA_TEMPLATE,
    SYSTEM_PROMPT_NO_CONTEXT,
    SYSTEM_PROMPT_WITH_CONTEXT,
)

KNOWLEDGE_BASE_SOURCE = "Knowledge Base"


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":   (0.150, 0.600),
    "gpt-4o":        (2.500, 10.000),
    "gpt-3.5-turbo": (0.500, 1.500),
}


def _cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = _MODEL_PRICING.get(model, (0.150, 0.600))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------

@dataclass
class ChatReply:
    """Structured result from a single completion call."""

    message: str
    model: str
    sources: list[str] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    demo: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def estimated_cost_usd(self) -> float:
        return _cost_usd(self.model, self.prompt_tokens, self.completion_tokens)


def build_system_prompt(
    context: str = "",
    personality: str = "",
    communication_style: str = "",
    escalated: bool = False,
) -> str:
    persona = ""
    if personality:
        persona = PERSONA_TEMPLATE.format(
            personality=personality, style=communication_style or "professional"
        )
    if context:
        prompt = SYSTEM_PROMPT_WITH_CONTEXT.format(persona=persona, context=context)
    else:
        prompt = SYSTEM_PROMPT_NO_CONTEXT.format(persona=persona)
    if escalated:
        prompt += ESCALATED_GUIDANCE
    return prompt


# ---------------------------------------------------------------------------
# OpenAI Generator
# ---------------------------------------------------------------------------

class ChatGenerator:
    """
    Usage:
        generator = ChatGenerator(api_key=settings.credentials.openai_api_key)
        reply = generator.complete(
            [{"role": "user", "content": "How do I reset my password?"}],
            context="[Source 1]: ...",
        )
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        max_tokens: int = 500,
        temperature: float = 0.7,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    @traceable(name="chat_completion", run_type="llm")
    def complete(
        self,
        history: list[dict[str, str]],
        context: str = "",
        personality: str = "",
        communication_style: str = "",
        escalated: bool = False,
    ) -> ChatReply:
        """
        Args:
            history:  [{"role": "user"|"assistant", "content": ...}], oldest
                      first, already bounded by the caller.
            context:  Retrieved "[Source N]" block, or "" for none.
        """
        sources = [KNOWLEDGE_BASE_SOURCE] if context else []
        if not self._api_key:
            logger.debug("[ChatGenerator] No API key -- returning demo reply")
            return ChatReply(message=DEMO_MODE_RESPONSE, model=self.model, sources=sources, demo=True)

        system_message = build_system_prompt(context, personality, communication_style, escalated)
        logger.debug(
            f"[ChatGenerator] {self.model} | {len(history)} history messages | "
            f"context={len(context)} chars | escalated={escalated}"
        )

        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": system_message}, *history],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            raise UpstreamError(f"Chat completion failed: {exc}") from exc

        message = response.choices[0].message.content if response.choices else None
        usage = response.usage
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0

        logger.info(
            f"[ChatGenerator] Done | prompt={prompt_tokens} "
            f"completion={completion_tokens} | "
            f"cost=${_cost_usd(self.model, prompt_tokens, completion_tokens):.5f}"
        )

        return ChatReply(
            message=message or EMPTY_COMPLETION_RESPONSE,
            model=self.model,
            sources=sources,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
