"""
Domain/Token Security Gate
---------------------------
Decides whether an embedded widget may use a chatbot.

  - no token supplied     -> allowed (open embed; the gate is opt-in per
                             snippet)
  - token supplied        -> the claimed domain (explicit, else the
                             referrer's hostname) is normalised and a single
                             active chatbot_domains row must match chatbot id,
                             domain and token
  - anything else         -> denied with the same generic reason, whatever
                             the failing field or lookup error was

Tokens are only ever logged as their first 8 characters.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from loguru import logger

from kbchat.errors import AccessDeniedError, KBChatError
from kbchat.storage.store import KnowledgeStore
from kbchat.utils.logger import mask_secret

DENIED = "Access denied"

TOKEN_PREFIX = "cbt_"
TOKEN_LENGTH = 26
TOKEN_PATTERN = re.compile(rf"^{TOKEN_PREFIX}[0-9a-z]{{{TOKEN_LENGTH}}}$")

_SCHEME = re.compile(r"^https?://")
_WWW = re.compile(r"^www\.")


def normalize_domain(domain: str) -> str:
    """
    'https://www.Example.com/' -> 'example.com'

    Lowercase, then strip surrounding whitespace, scheme, leading 'www.' and
    one trailing slash until nothing changes, so
    normalize(normalize(d)) == normalize(d).
    """
    current = domain.strip().lower()
    while True:
        stripped = _SCHEME.sub("", current, count=1).strip()
        stripped = _WWW.sub("", stripped, count=1).strip()
        if stripped.endswith("/"):
            stripped = stripped[:-1].strip()
        if stripped == current:
            return current
        current = stripped


def is_well_formed_token(token: Optional[str]) -> bool:
    """True for 'cbt_' followed by 26 lowercase base-36 characters."""
    return bool(token) and TOKEN_PATTERN.match(token) is not None


def referrer_domain(referrer: Optional[str]) -> Optional[str]:
    """Hostname of the embedding page, or None if there is no usable referrer."""
    if not referrer:
        return None
    try:
        return urlparse(referrer).hostname or None
    except ValueError:
        return None


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    chatbot_id: str
    domain: Optional[str] = None
    token_checked: bool = False
    reason: Optional[str] = None


class DomainGate:
    """
    Usage:
        gate = DomainGate(store)
        decision = gate.authorize(chatbot_id, token=token, domain=domain,
                                  referrer=request.headers.get("referer"))
    """

    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    def validate(self, domain: str, token: str, chatbot_id: str) -> GateDecision:
        """Allow iff an active row matches (chatbot_id, normalize(domain), token)."""
        clean = normalize_domain(domain)
        if not is_well_formed_token(token):
            logger.info(f"[Gate] Malformed token for chatbot={chatbot_id}")
            return GateDecision(False, chatbot_id, clean, True, DENIED)

        logger.info(
            f"[Gate] Validating domain access | chatbot={chatbot_id} "
            f"domain={clean} token={mask_secret(token)}"
        )
        try:
            row = self.store.find_active_domain(chatbot_id, clean, token)
        except KBChatError as exc:
            logger.warning(f"[Gate] Lookup failed: {exc}")
            return GateDecision(False, chatbot_id, clean, True, DENIED)

        if row is None:
            logger.info(f"[Gate] No matching domain/token for chatbot={chatbot_id}")
            return GateDecision(False, chatbot_id, clean, True, DENIED)

        logger.info(f"[Gate] Domain validation successful | chatbot={chatbot_id} domain={clean}")
        return GateDecision(True, row.chatbot_id, row.domain, True)

    def authorize(
        self,
        chatbot_id: str,
        token: Optional[str] = None,
        domain: Optional[str] = None,
        referrer: Optional[str] = None,
    ) -> GateDecision:
        """Return the decision if access is granted, else raise AccessDeniedError."""
        if not token:
            logger.warning(f"[Gate] No token provided, allowing basic access | chatbot={chatbot_id}")
            return GateDecision(True, chatbot_id, domain)

        target = domain or referrer_domain(referrer)
        if not target:
            logger.warning(f"[Gate] Unable to determine domain | chatbot={chatbot_id}")
            raise AccessDeniedError(DENIED)

        decision = self.validate(target, token, chatbot_id)
        if not decision.allowed:
            raise AccessDeniedError(DENIED)
        return decision
