"""
Service wiring
---------------
Builds every kbchat component from one Settings object so the CLI and the
HTTP server share the same graph:

    KnowledgeStore (Supabase, or in-memory demo)
        |
        +-- Embedder ------------+-- IngestionPipeline
        |                        +-- Retriever --+
        +-- ChatGenerator ----------------------+-- TurnHandler
        +-- SentimentMonitor -------------------+
        +-- InteractionRecorder ----------------+
        +-- DomainGate / DomainRegistry
        +-- ChatbotManager / KnowledgeBaseManager
        +-- AnalyticsService
    Transcriber / SpeechSynthesizer (voice)

Missing credentials never stop the wiring: each component degrades on its
own (demo reply, neutral sentiment, ConfigurationError on voice calls).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from kbchat.analytics.summary import AnalyticsService
from kbchat.config import Settings
from kbchat.conversation.handler import TurnHandler
from kbchat.conversation.interactions import InteractionRecorder
from kbchat.conversation.sentiment import SentimentMonitor
from kbchat.embedding.embedder import Embedder
from kbchat.generation.generator import ChatGenerator
from kbchat.ingestion.pipeline import IngestionPipeline
from kbchat.retrieval.retriever import Retriever
from kbchat.security.domains import DomainRegistry
from kbchat.security.gate import DomainGate
from kbchat.storage.factory import build_store
from kbchat.storage.store import KnowledgeStore
from kbchat.voice.synthesizer import SpeechSynthesizer
from kbchat.voice.transcriber import Transcriber
from kbchat.workspace.chatbots import ChatbotManager
from kbchat.workspace.knowledge_bases import KnowledgeBaseManager


@dataclass
class Services:
    settings: Settings
    store: KnowledgeStore
    embedder: Embedder
    ingestion: IngestionPipeline
    retriever: Retriever
    generator: ChatGenerator
    monitor: SentimentMonitor
    turns: TurnHandler
    interactions: InteractionRecorder
    gate: DomainGate
    domains: DomainRegistry
    chatbots: ChatbotManager
    knowledge_bases: KnowledgeBaseManager
    analytics: AnalyticsService
    transcriber: Transcriber
    synthesizer: SpeechSynthesizer


def build_services(settings: Settings, store: Optional[KnowledgeStore] = None) -> Services:
    """Wire every component; pass `store` to override the credential-based choice."""
    creds = settings.credentials
    models = settings.models
    conv = settings.conversation

    store = store or build_store(settings)
    embedder = Embedder(creds.openai_api_key, model=models.embedding)
    ingestion = IngestionPipeline.from_settings(settings, store, embedder)
    retriever = Retriever(store, embedder, top_k=settings.retrieval.top_k)
    generator = ChatGenerator(
        creds.openai_api_key,
        model=models.chat,
        max_tokens=conv.max_completion_tokens,
        temperature=conv.temperature,
    )
    monitor = SentimentMonitor(creds.openai_api_key, model=models.sentiment, window=conv.sentiment_window)
    interactions = InteractionRecorder(store)
    turns = TurnHandler(
        store, generator, retriever, monitor,
        recorder=interactions, settings=conv, top_k=settings.retrieval.top_k,
    )

    services = Services(
        settings=settings,
        store=store,
        embedder=embedder,
        ingestion=ingestion,
        retriever=retriever,
        generator=generator,
        monitor=monitor,
        turns=turns,
        interactions=interactions,
        gate=DomainGate(store),
        domains=DomainRegistry(store),
        chatbots=ChatbotManager(store, logos_bucket=settings.storage.logos_bucket),
        knowledge_bases=KnowledgeBaseManager(store, ingestion),
        analytics=AnalyticsService(store),
        transcriber=Transcriber(
            creds.openai_api_key, model=models.transcription, language=settings.voice.language
        ),
        synthesizer=SpeechSynthesizer(creds.elevenlabs_api_key, settings.voice),
    )
    logger.info(
        f"[Services] Ready | store={type(store).__name__} | features={settings.features()}"
    )
    return services
