"""
Identifier generation — subdomains, storage keys, container names, credentials.

Storage keys are deterministic per (user, agent) so a user's agent data
survives re-provisioning. Subdomains carry a random suffix so a stopped
runtime and its replacement never share a routing rule.
"""

from __future__ import annotations

import hashlib
import re
import secrets

STORAGE_KEY_LENGTH = 16
SUBDOMAIN_SUFFIX_BYTES = 2
MAX_USERNAME_LENGTH = 20

_PASSWORD_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%"
)

RESERVED_WORDS = frozenset(
    {
        "www", "api", "app", "admin", "mail", "smtp", "ftp", "ssh", "dns",
        "ns1", "ns2", "cdn", "static", "assets", "media", "blog", "status",
        "help", "support", "docs", "dashboard", "login", "auth", "traefik",
    }
)

_USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")


def sanitize_username(value: str) -> str:
    """Lowercase, keep [a-z0-9-], collapse dashes, trim to 20 chars."""
    text = re.sub(r"[^a-z0-9-]", "", (value or "").lower())
    text = re.sub(r"-+", "-", text).strip("-")
    return text[:MAX_USERNAME_LENGTH].rstrip("-")


def is_valid_username(username: str) -> bool:
    if not 3 <= len(username) <= MAX_USERNAME_LENGTH:
        return False
    if not _USERNAME_RE.match(username):
        return False
    return username not in RESERVED_WORDS


def validate_username(username: str) -> str:
    """
    Sanitized form of `username`, or ValueError if it cannot head a subdomain
    (too short once sanitized, or a reserved host label). Empty is allowed and
    falls back to "user".
    """
    sanitized = sanitize_username(username)
    if sanitized and not is_valid_username(sanitized):
        raise ValueError(f"Username {username!r} cannot be used in a subdomain")
    return sanitized


def generate_subdomain(username: str, agent_slug: str) -> str:
    """`{username}-{slug}-{4 hex}`; falls back to "user" for empty usernames."""
    sanitized = sanitize_username(username) or "user"
    suffix = secrets.token_hex(SUBDOMAIN_SUFFIX_BYTES)
    return f"{sanitized}-{agent_slug}-{suffix}"


def storage_key(user_id: str, agent_slug: str) -> str:
    digest = hashlib.sha256(f"{user_id}:{agent_slug}".encode("utf-8")).hexdigest()
    return digest[:STORAGE_KEY_LENGTH]


def volume_name(key: str) -> str:
    return f"ap-storage-{key}"


def container_name(subdomain: str) -> str:
    return f"ap-{subdomain}"


def generate_password(length: int = 24) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))
