"""Tests for the embed script and the generated loader snippet."""
import pytest

from kbchat.embed.snippet import (
    CONTAINER_ELEMENT_ID,
    SCRIPT_PATH,
    build_iframe_url,
    render_embed_script,
    render_embed_snippet,
)
from kbchat.errors import ValidationError


def test_script_is_fully_rendered():
    script = render_embed_script()

    assert "%(" not in script
    assert f"container.id = '{CONTAINER_ELEMENT_ID}'" in script
    assert "width: 100%; height: 100%" in script
    assert "iframe.allow = 'microphone'" in script
    assert "window.innerWidth <= 768" in script


def test_snippet_without_token():
    snippet = render_embed_snippet("https://app.example.com/", "bot-123")

    assert f'js.src = "https://app.example.com{SCRIPT_PATH}"' in snippet
    assert "js.setAttribute('data-chatbot-id', 'bot-123')" in snippet
    assert "data-token" not in snippet
    assert "'chatbot-embed'" in snippet


def test_snippet_with_domain_token():
    snippet = render_embed_snippet("https://app.example.com", "bot-123", "cbt_abc123", "example.com")

    assert "js.setAttribute('data-token', 'cbt_abc123')" in snippet
    assert "js.setAttribute('data-domain', 'example.com')" in snippet


def test_snippet_rejects_attribute_injection():
    with pytest.raises(ValidationError):
        render_embed_snippet("https://app.example.com", "bot');alert(1);//")


def test_iframe_url_matches_script_logic():
    base = "https://app.example.com"
    assert build_iframe_url(base, "bot-1") == "https://app.example.com/chatbot/bot-1?embedded=true"
    assert build_iframe_url(base, "bot-1", "cbt_x", "shop.example.com/a") == (
        "https://app.example.com/chatbot/bot-1?embedded=true&token=cbt_x&domain=shop.example.com%2Fa"
    )
