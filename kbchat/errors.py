"""
Error taxonomy shared by every kbchat component.

Each hosted-service client translates its library's exceptions into one of
these at the boundary, so callers only ever handle kbchat errors.
"""
from __future__ import annotations


class KBChatError(Exception):
    """Base class for all kbchat errors."""


class ConfigurationError(KBChatError):
    """A required credential or setting is missing."""


class ExtractionError(KBChatError):
    """An uploaded file is unsupported or has no readable text."""


class StorageError(KBChatError):
    """A blob or row read/write against the hosted store failed."""


class IngestionCancelledError(StorageError):
    """An in-flight upload was aborted through its handle."""


class ValidationError(KBChatError):
    """Malformed input: domain, token, sentiment JSON, empty audio, ..."""


class NoSpeechDetectedError(ValidationError):
    """Transcription came back empty."""


class UpstreamError(KBChatError):
    """A hosted API (LLM, embeddings, speech) returned a non-success response."""


class AccessDeniedError(KBChatError, PermissionError):
    """Domain/token validation failed for an embedded chatbot."""
