"""Tests for identifier generation — subdomains, storage keys, credentials."""

from __future__ import annotations

import re

import pytest

from orchestrator import naming


class TestSanitizeUsername:
    def test_lowercases_and_strips_symbols(self):
        assert naming.sanitize_username("Alice_Smith!") == "alicesmith"

    def test_collapses_and_trims_dashes(self):
        assert naming.sanitize_username("--a---b--") == "a-b"

    def test_truncates_to_twenty(self):
        assert len(naming.sanitize_username("x" * 50)) == 20

    def test_empty_and_none(self):
        assert naming.sanitize_username("") == ""
        assert naming.sanitize_username(None) == ""


class TestUsernameValidation:
    def test_valid(self):
        assert naming.is_valid_username("alice-01")

    def test_too_short(self):
        assert not naming.is_valid_username("ab")

    def test_leading_dash(self):
        assert not naming.is_valid_username("-alice")

    def test_reserved(self):
        assert not naming.is_valid_username("admin")

    def test_validate_returns_sanitized(self):
        assert naming.validate_username("Alice_01") == "alice01"
        assert naming.validate_username("") == ""

    @pytest.mark.parametrize("username", ["API", "Admin!", "x"])
    def test_validate_rejects(self, username):
        with pytest.raises(ValueError):
            naming.validate_username(username)


class TestSubdomain:
    def test_format(self):
        sub = naming.generate_subdomain("Alice", "agent-zero")
        assert re.fullmatch(r"alice-agent-zero-[0-9a-f]{4}", sub)

    def test_empty_username_falls_back(self):
        sub = naming.generate_subdomain("!!!", "openclaw")
        assert sub.startswith("user-openclaw-")

    def test_suffix_is_random(self):
        subs = {naming.generate_subdomain("bob", "agent-zero") for _ in range(20)}
        assert len(subs) > 1


class TestStorageKey:
    def test_deterministic_per_user_and_agent(self):
        assert naming.storage_key("u1", "agent-zero") == naming.storage_key("u1", "agent-zero")
        assert naming.storage_key("u1", "agent-zero") != naming.storage_key("u2", "agent-zero")
        assert naming.storage_key("u1", "agent-zero") != naming.storage_key("u1", "openclaw")

    def test_sixteen_hex_chars(self):
        assert re.fullmatch(r"[0-9a-f]{16}", naming.storage_key("u1", "openclaw"))

    def test_volume_and_container_names(self):
        assert naming.volume_name("abc") == "ap-storage-abc"
        assert naming.container_name("bob-agent-zero-0a1b") == "ap-bob-agent-zero-0a1b"


class TestPassword:
    def test_length_and_alphabet(self):
        password = naming.generate_password()
        assert len(password) == 24
        assert re.fullmatch(r"[A-Za-z0-9!@#$%]+", password)

    def test_unique(self):
        assert naming.generate_password() != naming.generate_password()
