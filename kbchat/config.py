"""
Configuration
--------------
Non-secret tunables live in config/config.yaml; credentials come from the
environment (a local .env is loaded with python-dotenv).

Every field carries a default so a missing YAML file, or a partial one,
still yields a complete Settings object.  Missing credentials never raise
here -- the dependent feature reports itself disabled and its client raises
ConfigurationError on first use.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "config/config.yaml"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/kbchat.log"
    json_lines: bool = False


class ModelSettings(BaseModel):
    chat: str = "gpt-4o-mini"
    sentiment: str = "gpt-4o-mini"
    embedding: str = "text-embedding-ada-002"
    transcription: str = "whisper-1"


class ChunkingSettings(BaseModel):
    strategy: Literal["overlap", "token"] = "overlap"
    chunk_size: int = 800
    overlap: int = 300
    min_chunk_chars: int = 50
    token_window: int = 256
    token_overlap: int = 64


class IngestionSettings(BaseModel):
    # Applies to the chat-attachment path only; knowledge-base ingestion is uncapped.
    chat_attachment_max_pages: int = 5


class RetrievalSettings(BaseModel):
    top_k: int = 5


class ConversationSettings(BaseModel):
    history_window: int = 5
    sentiment_window: int = 5
    sentiment_every_n_turns: int = 1
    sentiment_history_size: int = 5
    max_completion_tokens: int = 500
    temperature: float = 0.7


class VoiceSettings(BaseModel):
    api_base: str = "https://api.elevenlabs.io/v1"
    voice_id: str = "56AoDkrOh6qfVPDXZ7Pt"
    model_id: str = "eleven_monolingual_v1"
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.0
    use_speaker_boost: bool = True
    language: str = "en"
    timeout_seconds: float = 30.0
    cache_size: int = 256


class StorageSettings(BaseModel):
    documents_bucket: str = "documents"
    logos_bucket: str = "chatbot-logos"


class Credentials(BaseModel):
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Credentials":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_key=os.getenv("SUPABASE_KEY") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY") or None,
        )


class Settings(BaseModel):
    project_name: str = "kbchat"
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    models: ModelSettings = Field(default_factory=ModelSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)
    voice: VoiceSettings = Field(default_factory=VoiceSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    credentials: Credentials = Field(default_factory=Credentials)

    def features(self) -> dict[str, bool]:
        """Which credential-backed features are usable in this process."""
        creds = self.credentials
        return {
            "hosted_store": bool(creds.supabase_url and creds.supabase_key),
            "llm": bool(creds.openai_api_key),
            "transcription": bool(creds.openai_api_key),
            "speech_synthesis": bool(creds.elevenlabs_api_key),
        }


def load_settings(path: str | Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Read YAML tunables plus environment credentials into a Settings object."""
    load_dotenv()
    p = Path(path)
    raw: dict = {}
    if p.exists():
        with open(p, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.warning(f"[Config] {p} not found -- using defaults")

    project = raw.pop("project", {}) or {}
    settings = Settings(
        project_name=project.get("name", "kbchat"),
        credentials=Credentials.from_env(),
        **raw,
    )

    disabled = [name for name, on in settings.features().items() if not on]
    if disabled:
        logger.warning(f"[Config] Features disabled (missing credentials): {disabled}")
    return settings
