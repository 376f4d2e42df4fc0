"""Pick the KnowledgeStore implementation for the current credentials."""
from __future__ import annotations

from loguru import logger

from kbchat.config import Settings
from kbchat.storage.memory_store import MemoryStore
from kbchat.storage.store import KnowledgeStore
from kbchat.storage.supabase_store import SupabaseStore


def build_store(settings: Settings) -> KnowledgeStore:
    """
    SupabaseStore when SUPABASE_URL / SUPABASE_KEY are set, otherwise an
    in-process MemoryStore (demo mode: nothing survives a restart).
    """
    creds = settings.credentials
    if settings.features()["hosted_store"]:
        return SupabaseStore.from_credentials(creds.supabase_url, creds.supabase_key)

    logger.warning("[Store] No Supabase credentials -- running on the in-memory demo store")
    return MemoryStore()
