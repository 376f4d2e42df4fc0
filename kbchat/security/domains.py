"""
Domain allow-list management for embedded chatbots.

Each ChatbotDomain row pairs one normalised domain with a random opaque
token ("cbt_" + 26 base-36 characters).  Regenerating a token is a single
update, so the old token stops validating as soon as the call returns.
"""
from __future__ import annotations

import re
import secrets
import string
from typing import Optional

from loguru import logger

from kbchat.errors import ValidationError
from kbchat.schemas import ChatbotDomain
from kbchat.security.gate import TOKEN_LENGTH, TOKEN_PREFIX, normalize_domain
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.logger import mask_secret

_TOKEN_ALPHABET = string.digits + string.ascii_lowercase

DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9](?:\.[a-zA-Z]{2,})+$")


def generate_token() -> str:
    return TOKEN_PREFIX + "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def validate_domain_format(domain: str) -> str:
    """Normalise `domain` and check it looks like a hostname; returns the clean form."""
    clean = normalize_domain(domain)
    if not DOMAIN_PATTERN.match(clean):
        raise ValidationError("Invalid domain format")
    return clean


class DomainRegistry:

    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    def list(self, chatbot_id: str) -> list[ChatbotDomain]:
        return self.store.list_domains(chatbot_id)

    def add(self, chatbot_id: str, domain: str) -> ChatbotDomain:
        clean = validate_domain_format(domain)
        if self.store.find_domain(chatbot_id, clean) is not None:
            raise ValidationError("Domain already exists for this chatbot")

        row = self.store.insert_domain(
            ChatbotDomain(chatbot_id=chatbot_id, domain=clean, token=generate_token())
        )
        logger.info(
            f"[Domains] Added {clean} to chatbot {chatbot_id} | token={mask_secret(row.token)}"
        )
        return row

    def set_active(self, domain_id: str, active: bool) -> ChatbotDomain:
        row = self.store.update_domain(domain_id, {"is_active": active})
        logger.info(f"[Domains] {row.domain} {'enabled' if active else 'disabled'}")
        return row

    def regenerate_token(self, domain_id: str) -> ChatbotDomain:
        row = self.store.update_domain(domain_id, {"token": generate_token()})
        logger.info(f"[Domains] New token for {row.domain}: {mask_secret(row.token)}")
        return row

    def delete(self, domain_id: str) -> None:
        self.store.delete_domain(domain_id)
        logger.info(f"[Domains] Deleted domain {domain_id}")

    def get(self, chatbot_id: str, domain: str) -> Optional[ChatbotDomain]:
        return self.store.find_domain(chatbot_id, normalize_domain(domain))
