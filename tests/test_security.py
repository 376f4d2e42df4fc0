"""Tests for domain normalisation, the access gate and domain management."""
import pytest

from kbchat.errors import AccessDeniedError, StorageError, ValidationError
from kbchat.security.domains import (
    DomainRegistry,
    generate_token,
    validate_domain_format,
)
from kbchat.security.gate import (
    DENIED,
    DomainGate,
    is_well_formed_token,
    normalize_domain,
    referrer_domain,
)
from kbchat.storage.memory_store import MemoryStore


class TestNormalizeDomain:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("https://www.Example.com/", "example.com"),
            ("http://shop.example.co.uk", "shop.example.co.uk"),
            ("WWW.EXAMPLE.COM", "example.com"),
            ("example.com", "example.com"),
            ("https://https://www.example.com//", "example.com"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_domain(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "https://www.Example.com/",
            "HTTP://WWW.www.example.com/",
            "  docs.example.com/ ",
            "example.com /",
            "www. example.com",
            "https:// example.com/",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize_domain(raw)
        assert normalize_domain(once) == once
        assert once == once.strip()

    @pytest.mark.parametrize("raw", ["example.com /", "www. example.com", "https:// example.com/"])
    def test_whitespace_exposed_by_stripping(self, raw):
        assert normalize_domain(raw) == "example.com"

    def test_referrer_hostname(self):
        assert referrer_domain("https://www.example.com/pricing?x=1") == "www.example.com"
        assert referrer_domain(None) is None
        assert referrer_domain("") is None


class TestDomainGate:

    def setup_method(self):
        self.store = MemoryStore()
        self.registry = DomainRegistry(self.store)
        self.gate = DomainGate(self.store)
        self.row = self.registry.add("bot-1", "example.com")

    def test_scheme_and_www_variants_match_stored_row(self):
        decision = self.gate.validate("https://www.Example.com/", self.row.token, "bot-1")
        assert decision.allowed
        assert decision.domain == "example.com"

    @pytest.mark.parametrize(
        "domain, token, chatbot_id",
        [
            ("other.com", None, "bot-1"),
            ("example.com", "cbt_wrong", "bot-1"),
            ("example.com", None, "bot-2"),
        ],
    )
    def test_any_mismatch_is_denied(self, domain, token, chatbot_id):
        decision = self.gate.validate(domain, token or self.row.token, chatbot_id)
        assert not decision.allowed
        assert decision.reason == DENIED

    def test_malformed_token_denied_without_lookup(self, monkeypatch):
        def lookup(*args):
            raise AssertionError("store should not be queried")

        monkeypatch.setattr(self.store, "find_active_domain", lookup)
        for token in ("cbt_short", "CBT_" + "a" * 26, self.row.token.upper(), ""):
            decision = self.gate.validate("example.com", token, "bot-1")
            assert not decision.allowed
            assert decision.reason == DENIED

    def test_claimed_domain_with_inner_spaces_matches(self):
        assert self.gate.validate("https:// example.com/", self.row.token, "bot-1").allowed

    def test_inactive_row_is_denied(self):
        self.registry.set_active(self.row.id, False)
        assert not self.gate.validate("example.com", self.row.token, "bot-1").allowed

    def test_no_token_allows_basic_access(self):
        decision = self.gate.authorize("bot-1")
        assert decision.allowed
        assert not decision.token_checked

    def test_token_with_referrer_domain(self):
        decision = self.gate.authorize(
            "bot-1", token=self.row.token, referrer="https://www.example.com/contact"
        )
        assert decision.allowed and decision.token_checked

    def test_token_without_any_domain_is_denied(self):
        with pytest.raises(AccessDeniedError, match=DENIED):
            self.gate.authorize("bot-1", token=self.row.token)

    def test_denial_message_is_generic(self):
        with pytest.raises(AccessDeniedError) as wrong_token:
            self.gate.authorize("bot-1", token="cbt_nope", domain="example.com")
        with pytest.raises(AccessDeniedError) as wrong_domain:
            self.gate.authorize("bot-1", token=self.row.token, domain="evil.com")
        assert str(wrong_token.value) == str(wrong_domain.value) == DENIED

    def test_lookup_failure_is_denied(self, monkeypatch):
        def broken(*args):
            raise StorageError("connection reset")

        monkeypatch.setattr(self.store, "find_active_domain", broken)
        assert not self.gate.validate("example.com", self.row.token, "bot-1").allowed

    def test_access_denied_is_a_permission_error(self):
        with pytest.raises(PermissionError):
            self.gate.authorize("bot-1", token="cbt_nope", domain="example.com")


class TestDomainRegistry:

    def setup_method(self):
        self.store = MemoryStore()
        self.registry = DomainRegistry(self.store)
        self.gate = DomainGate(self.store)

    def test_add_normalises_and_issues_token(self):
        row = self.registry.add("bot-1", "https://www.Shop.example.com/")
        assert row.domain == "shop.example.com"
        assert is_well_formed_token(row.token)
        assert row.is_active

    def test_duplicate_domain_rejected(self):
        self.registry.add("bot-1", "example.com")
        with pytest.raises(ValidationError, match="already exists"):
            self.registry.add("bot-1", "www.example.com")
        # the same domain may be registered for another chatbot
        assert self.registry.add("bot-2", "example.com").chatbot_id == "bot-2"

    @pytest.mark.parametrize("bad", ["localhost", "-example.com", "example", "exa mple.com", "example.c"])
    def test_invalid_format_rejected(self, bad):
        with pytest.raises(ValidationError):
            validate_domain_format(bad)

    def test_regenerate_invalidates_old_token(self):
        row = self.registry.add("bot-1", "example.com")
        fresh = self.registry.regenerate_token(row.id)

        assert fresh.token != row.token
        assert not self.gate.validate("example.com", row.token, "bot-1").allowed
        assert self.gate.validate("example.com", fresh.token, "bot-1").allowed

    def test_list_and_delete(self):
        first = self.registry.add("bot-1", "docs.example.com")
        second = self.registry.add("bot-1", "blog.example.com")
        assert [r.id for r in self.registry.list("bot-1")] == [second.id, first.id]

        self.registry.delete(first.id)
        assert [r.id for r in self.registry.list("bot-1")] == [second.id]
        assert self.registry.get("bot-1", "https://blog.example.com") == second


def test_generated_tokens_are_unique_and_well_formed():
    tokens = {generate_token() for _ in range(200)}
    assert len(tokens) == 200
    assert all(len(t) == 30 and is_well_formed_token(t) for t in tokens)
