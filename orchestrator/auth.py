"""
Session validation for the orchestrator.

Sign-in lives in the dashboard. The orchestrator validates sessions by
reading the shared `session` table in Postgres.

Two bearer credentials are accepted:
  1. Session token (dashboard) — `Authorization: Bearer <session-token>`,
     or the dashboard's session cookie on same-origin requests.
  2. Cron secret — `Authorization: Bearer <CRON_SECRET>`, only on the
     internal cleanup route.
"""

from __future__ import annotations

import hmac
import logging
import os

from fastapi import HTTPException, Request

from .db import get_pool

log = logging.getLogger("orchestrator.auth")

CRON_SECRET = os.getenv("CRON_SECRET", "")

SESSION_COOKIES = (
    "__Secure-agent-platform.session_token",
    "agent-platform.session_token",
)


async def get_user_id(request: Request) -> str:
    """
    Extract and validate the user ID from the request.

    Raises HTTPException(401) if no valid session is found.
    """
    tokens = _extract_tokens_from_request(request)
    if not tokens:
        raise HTTPException(401, "Missing authorization")

    for token in tokens:
        user_id = await _validate_token(token)
        if user_id:
            return user_id

    raise HTTPException(401, "Invalid or expired session")


async def get_username(user_id: str) -> str:
    """Username used in subdomains; falls back to the wallet address."""
    pool = await get_pool()
    row = await pool.fetchrow(
        "SELECT username, wallet_address FROM users WHERE id = $1", user_id
    )
    if not row:
        return ""
    return row["username"] or row["wallet_address"] or ""


async def verify_cron_secret(request: Request) -> None:
    """Dependency: constant-time check of the scheduler's bearer secret."""
    if not CRON_SECRET:
        raise HTTPException(503, "Cron secret not configured")

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(401, "Missing cron authorization")

    if not hmac.compare_digest(auth_header[7:], CRON_SECRET):
        raise HTTPException(401, "Invalid cron secret")


def _extract_tokens_from_request(request: Request) -> list[str]:
    """Candidate tokens: Authorization header first, then session cookies."""
    tokens: list[str] = []

    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        tokens.append(auth_header[7:])

    # Cookie value is token.signature
    for cookie_name in SESSION_COOKIES:
        cookie_token = request.cookies.get(cookie_name)
        if not cookie_token:
            continue
        tokens.append(cookie_token.split(".")[0])

    return list(dict.fromkeys(tokens))


async def _validate_token(token: str) -> str | None:
    pool = await get_pool()
    row = await pool.fetchrow(
        "SELECT user_id FROM session WHERE token = $1 AND expires_at > now()",
        token,
    )
    if row:
        return row["user_id"]

    log.debug("Token validation failed (no live session)")
    return None
