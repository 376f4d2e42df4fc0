"""
Chatbot management
-------------------
Create (optionally from a template), update configuration piecemeal, change
status, upload an avatar, delete.
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from kbchat.errors import StorageError, ValidationError
from kbchat.schemas import Chatbot, ChatbotConfiguration, ChatbotStatus
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.helpers import file_extension

MAX_LOGO_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class ChatbotTemplate:
    id: str
    name: str
    description: str
    color: str
    welcome_message: str
    personality: str


TEMPLATES: dict[str, ChatbotTemplate] = {
    t.id: t
    for t in (
        ChatbotTemplate(
            "customer-support", "Customer Support",
            "Handle customer inquiries, complaints, and support tickets",
            "#2563eb",
            "Hi! I'm here to help with any questions or issues you might have.",
            "professional",
        ),
        ChatbotTemplate(
            "sales-assistant", "Sales Assistant",
            "Qualify leads, schedule demos, and assist with purchases",
            "#10b981",
            "Welcome! I'd love to help you find the perfect solution for your needs.",
            "friendly",
        ),
        ChatbotTemplate(
            "general-purpose", "General Purpose",
            "Versatile chatbot for general questions and assistance",
            "#f59e0b",
            "Hello! I'm your AI assistant. How can I help you today?",
            "helpful",
        ),
        ChatbotTemplate(
            "education", "Education Helper",
            "Assist students with learning and answer educational questions",
            "#8b5cf6",
            "Hi there! I'm here to help you learn. What would you like to explore today?",
            "encouraging",
        ),
        ChatbotTemplate(
            "healthcare", "Healthcare Assistant",
            "Provide healthcare information and appointment scheduling",
            "#ef4444",
            "Hello! I'm here to help with your healthcare questions and appointments.",
            "caring",
        ),
    )
}


def _random_suffix(length: int = 11) -> str:
    alphabet = string.digits + string.ascii_lowercase
    return "".join(secrets.choice(alphabet) for _ in range(length))


class ChatbotManager:
    """
    Usage:
        manager = ChatbotManager(store)
        bot = manager.create(user_id, "Helpdesk", template="customer-support")
        bot = manager.update_configuration(bot.id, {"primaryColor": "#000000"})
    """

    def __init__(self, store: KnowledgeStore, logos_bucket: str = "chatbot-logos") -> None:
        self.store = store
        self.logos_bucket = logos_bucket

    def create(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        template: Optional[str] = None,
        knowledge_base_id: Optional[str] = None,
        configuration: Optional[dict[str, Any]] = None,
    ) -> Chatbot:
        if not name.strip():
            raise ValidationError("Chatbot name is required")

        config = ChatbotConfiguration()
        if template:
            preset = TEMPLATES.get(template)
            if preset is None:
                raise ValidationError(f"Unknown template {template!r}; choose from {sorted(TEMPLATES)}")
            config = config.merged(
                {
                    "template": preset.id,
                    "primary_color": preset.color,
                    "welcome_message": preset.welcome_message,
                    "personality": preset.personality,
                }
            )
        if configuration:
            config = config.merged(configuration)

        bot = self.store.insert_chatbot(
            Chatbot(
                user_id=user_id,
                name=name.strip(),
                description=description,
                knowledge_base_id=knowledge_base_id,
                configuration=config,
            )
        )
        logger.info(f"[Chatbots] Created {bot.name!r} ({bot.id}) template={template or '-'}")
        return bot

    def get(self, chatbot_id: str) -> Chatbot:
        bot = self.store.get_chatbot(chatbot_id)
        if bot is None:
            raise StorageError(f"Chatbot {chatbot_id} not found")
        return bot

    def list(self, user_id: str) -> list[Chatbot]:
        return self.store.list_chatbots(user_id)

    def update_configuration(self, chatbot_id: str, updates: dict[str, Any]) -> Chatbot:
        """Merge `updates` (snake_case or camelCase keys) into the stored configuration."""
        bot = self.get(chatbot_id)
        config = bot.configuration.merged(updates)
        return self.store.update_chatbot(chatbot_id, {"configuration": config})

    def update(self, chatbot_id: str, **fields: Any) -> Chatbot:
        allowed = {"name", "description", "knowledge_base_id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Cannot update chatbot fields: {sorted(unknown)}")
        return self.store.update_chatbot(chatbot_id, fields)

    def set_status(self, chatbot_id: str, status: str | ChatbotStatus) -> Chatbot:
        try:
            value = ChatbotStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Invalid chatbot status: {status!r}") from exc
        bot = self.store.update_chatbot(chatbot_id, {"status": value})
        logger.info(f"[Chatbots] {chatbot_id} is now {value.value}")
        return bot

    def upload_logo(self, chatbot_id: str, filename: str, data: bytes, content_type: str) -> Chatbot:
        """Store an avatar under a random name and point bot_image at its public URL."""
        if not content_type.startswith("image/"):
            raise ValidationError("Please upload an image file")
        if len(data) > MAX_LOGO_BYTES:
            raise ValidationError("Image size must be less than 2MB")

        self.get(chatbot_id)
        key = f"{int(time.time() * 1000)}-{_random_suffix()}.{file_extension(filename)}"
        self.store.upload_blob(self.logos_bucket, key, data, content_type)
        url = self.store.public_url(self.logos_bucket, key)
        logger.info(f"[Chatbots] Logo for {chatbot_id} stored as {key}")
        return self.update_configuration(chatbot_id, {"bot_image": url, "use_custom_image": True})

    def delete(self, chatbot_id: str) -> None:
        self.store.delete_chatbot(chatbot_id)
        logger.info(f"[Chatbots] Deleted {chatbot_id}")
