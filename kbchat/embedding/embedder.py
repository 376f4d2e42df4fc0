"""
OpenAI Embedding Client with LangSmith instrumentation
---------------------------------------------------------
One text in, one vector out:
  - whitespace-normalises the input
  - fails fast (no network call) when no API key is configured or the
    normalised text is empty
  - exactly one embeddings API call per invocation, no batching, no retry
  - token usage logging
"""
from __future__ import annotations

import time
from typing import Optional

from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError

from kbchat.errors import ConfigurationError, UpstreamError
from kbchat.utils.helpers import collapse_whitespace

MODEL = "text-embedding-ada-002"
DIMENSIONS = 1536


class Embedder:
    """
    Wraps the hosted embeddings endpoint.

    The OpenAI client is built lazily on first use, so a missing key is
    reported as ConfigurationError rather than an SDK constructor error.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = MODEL,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._client = client
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    @traceable(name="embed_text", run_type="embedding")
    def embed(self, text: str) -> list[float]:
        """Embed a single string and return its vector."""
        if not self._api_key:
            raise ConfigurationError("OpenAI API key not configured")

        clean = collapse_whitespace(text)
        if not clean:
            raise ConfigurationError("No text content found to generate embeddings")

        start = time.perf_counter()
        try:
            response = self._get_client().embeddings.create(model=self.model, input=clean)
        except OpenAIError as exc:
            raise UpstreamError(f"Failed to generate embeddings: {exc}") from exc
        elapsed = time.perf_counter() - start

        self.total_api_calls += 1
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        self.total_tokens_used += tokens

        logger.debug(
            f"[Embedder] {len(clean)} chars | {tokens} tokens | {elapsed:.2f}s | "
            f"running total: {self.total_tokens_used} tokens"
        )
        return list(response.data[0].embedding)

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
        }
