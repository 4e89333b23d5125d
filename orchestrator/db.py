"""Database layer — asyncpg connection pool and schema bootstrap."""

from __future__ import annotations

import os
import asyncpg

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            os.environ["DATABASE_URL"].replace(
                "postgresql+asyncpg://", "postgresql://"
            ),
            min_size=2,
            max_size=10,
        )
    return _pool


async def close_pool():
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


async def bootstrap_schema():
    """Create tables if they don't exist.

    `users` and `session` belong to the wallet-auth service; they are created
    here too so the orchestrator can start against an empty database.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute("""
            -- ── Shared auth tables ──

            CREATE TABLE IF NOT EXISTS users (
                id              TEXT PRIMARY KEY,
                wallet_address  TEXT UNIQUE,
                username        TEXT UNIQUE,
                credit_balance  INTEGER NOT NULL DEFAULT 0
                                CHECK (credit_balance >= 0),
                created_at      TIMESTAMPTZ DEFAULT now()
            );

            CREATE TABLE IF NOT EXISTS session (
                id              TEXT PRIMARY KEY,
                user_id         TEXT NOT NULL REFERENCES users(id),
                token           TEXT UNIQUE NOT NULL,
                expires_at      TIMESTAMPTZ NOT NULL,
                created_at      TIMESTAMPTZ DEFAULT now()
            );

            -- ── Catalog overrides (read once at startup) ──

            CREATE TABLE IF NOT EXISTS agent_configs (
                slug              TEXT PRIMARY KEY,
                name              TEXT,
                image             TEXT,
                internal_port     INTEGER,
                credits_per_hour  INTEGER,
                memory_limit      BIGINT,
                cpu_limit         BIGINT,
                pid_limit         INTEGER,
                active            BOOLEAN DEFAULT true
            );

            -- ── Runtime ledger ──

            CREATE TABLE IF NOT EXISTS provision_requests (
                id                TEXT PRIMARY KEY,
                user_id           TEXT NOT NULL REFERENCES users(id),
                agent_slug        TEXT NOT NULL,
                username          TEXT NOT NULL,
                hours             INTEGER NOT NULL CHECK (hours > 0),
                status            TEXT NOT NULL DEFAULT 'pending',
                attempts          INTEGER NOT NULL DEFAULT 0,
                runtime_id        TEXT,
                last_error        TEXT,
                sealed_credential TEXT,
                created_at        TIMESTAMPTZ DEFAULT now(),
                updated_at        TIMESTAMPTZ DEFAULT now()
            );

            CREATE TABLE IF NOT EXISTS runtimes (
                id                    TEXT PRIMARY KEY,
                user_id               TEXT NOT NULL REFERENCES users(id),
                agent_slug            TEXT NOT NULL,
                backend_id            TEXT UNIQUE,
                subdomain             TEXT NOT NULL,
                url                   TEXT NOT NULL,
                sealed_credential     TEXT,
                status                TEXT NOT NULL DEFAULT 'running',
                credits_charged       INTEGER NOT NULL DEFAULT 0,
                created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
                paid_until            TIMESTAMPTZ NOT NULL,
                stopped_at            TIMESTAMPTZ,
                cleanup_pending       BOOLEAN NOT NULL DEFAULT false,
                provision_request_id  TEXT UNIQUE REFERENCES provision_requests(id)
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                id          TEXT PRIMARY KEY,
                user_id     TEXT NOT NULL REFERENCES users(id),
                type        TEXT NOT NULL,
                amount      INTEGER NOT NULL,
                runtime_id  TEXT REFERENCES runtimes(id),
                description TEXT NOT NULL DEFAULT '',
                created_at  TIMESTAMPTZ DEFAULT now()
            );

            CREATE INDEX IF NOT EXISTS idx_runtimes_expiry
                ON runtimes(paid_until)
                WHERE status = 'running';

            CREATE INDEX IF NOT EXISTS idx_runtimes_user
                ON runtimes(user_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_ledger_user
                ON ledger_entries(user_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_provision_pending
                ON provision_requests(created_at)
                WHERE status = 'pending';
        """)
