"""
Credit Ledger
─────────────
The relational record of who owns which runtime and every credit movement.

Rules every write in this module follows:
  - A balance change and its ledger_entries row commit in one transaction.
  - Runtime status changes are gated by a status precondition
    (`WHERE id = $1 AND status = 'running'`), so a racing second caller
    finds nothing to update and no-ops.
  - Rows that are read and then written (the runtime, the user balance)
    are locked with SELECT ... FOR UPDATE inside the same transaction.

Bypass accounts (operator test wallets) never have their balance touched
and never get ledger entries; their displayed balance is fixed.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

import asyncpg

from .errors import (
    InsufficientCreditsError,
    LedgerIntegrityError,
    RuntimeNotFoundError,
    StateConflictError,
)
from .metering import compute_refund
from .models import (
    EntryType,
    LedgerEntry,
    ProvisionRequest,
    RequestStatus,
    Runtime,
)

log = logging.getLogger("orchestrator.ledger")

# ── Configuration ──────────────────────────────────────────

BYPASS_WALLETS = frozenset(
    w.strip()
    for w in os.getenv("BYPASS_WALLETS", "dev-bypass-wallet").split(",")
    if w.strip()
)
BYPASS_CREDITS = 1_000_000

_RUNTIME_COLUMNS = (
    "id, user_id, agent_slug, backend_id, subdomain, url, sealed_credential, "
    "status, credits_charged, created_at, paid_until, stopped_at, "
    "cleanup_pending, provision_request_id"
)
_REQUEST_COLUMNS = (
    "id, user_id, agent_slug, username, hours, status, attempts, runtime_id, "
    "last_error, sealed_credential"
)


def is_bypass_wallet(wallet: str | None) -> bool:
    return bool(wallet) and wallet in BYPASS_WALLETS


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class StopResult:
    stopped: bool
    refund: int = 0


@dataclass(frozen=True)
class ExtendResult:
    paid_until: datetime
    credits_charged: int


class CreditLedger:
    """asyncpg-backed ledger. One instance per process, built at startup."""

    def __init__(self, pool):
        self._pool = pool

    @asynccontextmanager
    async def _transaction(self):
        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    yield conn
            except asyncpg.IntegrityConstraintViolationError as e:
                log.error(f"Ledger constraint violated: {e}")
                raise LedgerIntegrityError(str(e)) from e

    async def _lock_user(self, conn, user_id: str) -> tuple[bool, int]:
        """Lock the user row. Returns (is_bypass, balance)."""
        row = await conn.fetchrow(
            "SELECT wallet_address, credit_balance FROM users WHERE id = $1 FOR UPDATE",
            user_id,
        )
        if row is None:
            return False, 0
        return is_bypass_wallet(row["wallet_address"]), row["credit_balance"]

    async def _debit(
        self, conn, user_id: str, amount: int, runtime_id: str, description: str
    ) -> None:
        row = await conn.fetchrow(
            "UPDATE users SET credit_balance = credit_balance - $2 "
            "WHERE id = $1 AND credit_balance >= $2 RETURNING credit_balance",
            user_id,
            amount,
        )
        if row is None:
            raise LedgerIntegrityError(f"Debit of {amount} failed for user {user_id}")
        await self._append(conn, user_id, EntryType.USAGE, -amount, runtime_id, description)

    async def _credit(
        self, conn, user_id: str, amount: int, runtime_id: str, description: str
    ) -> None:
        row = await conn.fetchrow(
            "UPDATE users SET credit_balance = credit_balance + $2 "
            "WHERE id = $1 RETURNING credit_balance",
            user_id,
            amount,
        )
        if row is None:
            raise LedgerIntegrityError(f"Credit of {amount} failed for user {user_id}")
        await self._append(conn, user_id, EntryType.REFUND, amount, runtime_id, description)

    async def _append(
        self,
        conn,
        user_id: str,
        entry_type: EntryType,
        amount: int,
        runtime_id: str | None,
        description: str,
    ) -> None:
        await conn.execute(
            "INSERT INTO ledger_entries (id, user_id, type, amount, runtime_id, description) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            new_id(),
            user_id,
            entry_type.value,
            amount,
            runtime_id,
            description,
        )

    # ── Reads ──────────────────────────────────────────────

    async def is_bypass_account(self, user_id: str) -> bool:
        wallet = await self._pool.fetchval(
            "SELECT wallet_address FROM users WHERE id = $1", user_id
        )
        return is_bypass_wallet(wallet)

    async def balance(self, user_id: str) -> int:
        """Displayed balance: the stored one, or the fixed bypass allowance."""
        row = await self._pool.fetchrow(
            "SELECT wallet_address, credit_balance FROM users WHERE id = $1", user_id
        )
        if row is None:
            return 0
        if is_bypass_wallet(row["wallet_address"]):
            return BYPASS_CREDITS
        return row["credit_balance"]

    async def list_entries(self, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        rows = await self._pool.fetch(
            "SELECT id, user_id, type, amount, runtime_id, description, created_at "
            "FROM ledger_entries WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
            user_id,
            limit,
        )
        return [LedgerEntry.from_record(r) for r in rows]

    async def get_runtime(self, runtime_id: str) -> Runtime | None:
        row = await self._pool.fetchrow(
            f"SELECT {_RUNTIME_COLUMNS} FROM runtimes WHERE id = $1", runtime_id
        )
        return Runtime.from_record(row) if row else None

    async def list_runtimes(self, user_id: str) -> list[Runtime]:
        rows = await self._pool.fetch(
            f"SELECT {_RUNTIME_COLUMNS} FROM runtimes WHERE user_id = $1 "
            "ORDER BY created_at DESC",
            user_id,
        )
        return [Runtime.from_record(r) for r in rows]

    async def list_expired(self, now: datetime) -> list[Runtime]:
        """Running past paid_until, plus errored rows still owing a cleanup."""
        rows = await self._pool.fetch(
            f"SELECT {_RUNTIME_COLUMNS} FROM runtimes "
            "WHERE (status = 'running' AND paid_until < $1) "
            "OR (status = 'error' AND cleanup_pending) "
            "ORDER BY paid_until",
            now,
        )
        return [Runtime.from_record(r) for r in rows]

    async def known_backend_ids(self, backend_ids: list[str]) -> set[str]:
        if not backend_ids:
            return set()
        rows = await self._pool.fetch(
            "SELECT backend_id FROM runtimes WHERE backend_id = ANY($1::text[])",
            backend_ids,
        )
        return {r["backend_id"] for r in rows}

    # ── Runtime writes ─────────────────────────────────────

    async def record_provision(
        self,
        runtime: Runtime,
        description: str,
        request_id: str | None = None,
        sealed_for_request: str | None = None,
    ) -> Runtime:
        """Debit, log USAGE and insert the RUNNING runtime in one transaction.

        When the runtime comes from a queued request, the request is marked
        done in the same transaction, so a redelivered request can never
        charge twice.
        """
        charge = runtime.credits_charged
        async with self._transaction() as conn:
            bypass, balance = await self._lock_user(conn, runtime.user_id)
            if not bypass and balance < charge:
                raise InsufficientCreditsError(charge, balance)

            await conn.execute(
                "INSERT INTO runtimes (id, user_id, agent_slug, backend_id, subdomain, url, "
                "sealed_credential, status, credits_charged, created_at, paid_until, "
                "provision_request_id) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, 'running', $8, $9, $10, $11)",
                runtime.id,
                runtime.user_id,
                runtime.agent_slug,
                runtime.backend_id,
                runtime.subdomain,
                runtime.url,
                runtime.sealed_credential,
                charge,
                runtime.created_at,
                runtime.paid_until,
                request_id,
            )
            if not bypass:
                await self._debit(conn, runtime.user_id, charge, runtime.id, description)

            if request_id:
                row = await conn.fetchrow(
                    "UPDATE provision_requests SET status = 'done', runtime_id = $2, "
                    "sealed_credential = $3, updated_at = now() "
                    "WHERE id = $1 AND status = 'running' RETURNING id",
                    request_id,
                    runtime.id,
                    sealed_for_request,
                )
                if row is None:
                    raise StateConflictError(request_id, "not running", "running")

        log.info(
            f"Recorded runtime {runtime.id} for user {runtime.user_id} "
            f"(charged={charge}, bypass={bypass})"
        )
        return runtime

    async def finalize_stop(self, runtime_id: str, now: datetime) -> StopResult:
        """Flip RUNNING → STOPPED and credit the unused share, atomically."""
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_RUNTIME_COLUMNS} FROM runtimes WHERE id = $1 FOR UPDATE",
                runtime_id,
            )
            if row is None:
                raise RuntimeNotFoundError(runtime_id)
            runtime = Runtime.from_record(row)
            if not runtime.is_running:
                return StopResult(stopped=False)

            await conn.execute(
                "UPDATE runtimes SET status = 'stopped', stopped_at = $2 "
                "WHERE id = $1 AND status = 'running'",
                runtime_id,
                now,
            )

            refund = compute_refund(
                runtime.credits_charged, runtime.created_at, runtime.paid_until, now
            )
            bypass, _ = await self._lock_user(conn, runtime.user_id)
            if refund > 0 and not bypass:
                await self._credit(
                    conn,
                    runtime.user_id,
                    refund,
                    runtime.id,
                    f"Refund for early stop of {runtime.subdomain}",
                )
            elif bypass:
                refund = 0

        log.info(f"Runtime {runtime_id} stopped (refund={refund})")
        return StopResult(stopped=True, refund=refund)

    async def apply_extension(
        self, runtime_id: str, hours: int, credits_per_hour: int, now: datetime
    ) -> ExtendResult:
        charge = hours * credits_per_hour
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_RUNTIME_COLUMNS} FROM runtimes WHERE id = $1 FOR UPDATE",
                runtime_id,
            )
            if row is None:
                raise RuntimeNotFoundError(runtime_id)
            runtime = Runtime.from_record(row)
            if not runtime.is_running:
                raise StateConflictError(runtime_id, runtime.status.value)
            if runtime.paid_until <= now:
                # Overdue rows belong to the expiry sweep
                raise StateConflictError(runtime_id, "overdue", "within its paid period")

            bypass, balance = await self._lock_user(conn, runtime.user_id)
            if not bypass and balance < charge:
                raise InsufficientCreditsError(charge, balance)

            updated = await conn.fetchrow(
                "UPDATE runtimes SET paid_until = paid_until + make_interval(hours := $2), "
                "credits_charged = credits_charged + $3 "
                "WHERE id = $1 AND status = 'running' RETURNING paid_until",
                runtime_id,
                hours,
                charge,
            )
            if updated is None:
                raise LedgerIntegrityError(f"Runtime {runtime_id} changed under lock")
            if not bypass:
                await self._debit(
                    conn,
                    runtime.user_id,
                    charge,
                    runtime.id,
                    f"Extended {runtime.subdomain} by {hours}h",
                )

        log.info(f"Runtime {runtime_id} extended by {hours}h (charged={charge})")
        return ExtendResult(paid_until=updated["paid_until"], credits_charged=charge)

    async def mark_expired(self, runtime_id: str, now: datetime) -> bool:
        row = await self._pool.fetchrow(
            "UPDATE runtimes SET status = 'expired', stopped_at = $2 "
            "WHERE id = $1 AND status = 'running' AND paid_until < $2 RETURNING id",
            runtime_id,
            now,
        )
        return row is not None

    async def mark_error(self, runtime_id: str, cleanup_pending: bool = False) -> bool:
        row = await self._pool.fetchrow(
            "UPDATE runtimes SET status = 'error', cleanup_pending = $2 "
            "WHERE id = $1 AND status = 'running' RETURNING id",
            runtime_id,
            cleanup_pending,
        )
        return row is not None

    async def clear_cleanup(self, runtime_id: str, now: datetime) -> bool:
        row = await self._pool.fetchrow(
            "UPDATE runtimes SET cleanup_pending = false, "
            "stopped_at = COALESCE(stopped_at, $2) "
            "WHERE id = $1 AND status = 'error' AND cleanup_pending RETURNING id",
            runtime_id,
            now,
        )
        return row is not None

    # ── Provision requests ─────────────────────────────────

    async def enqueue_provision(
        self, user_id: str, agent_slug: str, username: str, hours: int
    ) -> ProvisionRequest:
        row = await self._pool.fetchrow(
            "INSERT INTO provision_requests (id, user_id, agent_slug, username, hours) "
            f"VALUES ($1, $2, $3, $4, $5) RETURNING {_REQUEST_COLUMNS}",
            new_id(),
            user_id,
            agent_slug,
            username,
            hours,
        )
        return ProvisionRequest.from_record(row)

    async def claim_provision(self) -> ProvisionRequest | None:
        row = await self._pool.fetchrow(
            "UPDATE provision_requests SET status = 'running', "
            "attempts = attempts + 1, updated_at = now() "
            "WHERE id = ("
            "  SELECT id FROM provision_requests WHERE status = 'pending' "
            "  ORDER BY created_at LIMIT 1 FOR UPDATE SKIP LOCKED"
            f") RETURNING {_REQUEST_COLUMNS}"
        )
        return ProvisionRequest.from_record(row) if row else None

    async def release_provision(self, request_id: str, error: str) -> None:
        await self._pool.execute(
            "UPDATE provision_requests SET status = 'pending', last_error = $2, "
            "updated_at = now() WHERE id = $1 AND status = 'running'",
            request_id,
            error,
        )

    async def fail_provision(self, request_id: str, error: str) -> None:
        await self._pool.execute(
            "UPDATE provision_requests SET status = 'failed', last_error = $2, "
            "updated_at = now() WHERE id = $1 AND status = 'running'",
            request_id,
            error,
        )

    async def requeue_stale(self, older_than_seconds: int) -> int:
        rows = await self._pool.fetch(
            "UPDATE provision_requests SET status = 'pending', updated_at = now() "
            "WHERE status = 'running' "
            "AND updated_at < now() - make_interval(secs := $1) RETURNING id",
            older_than_seconds,
        )
        return len(rows)

    async def take_provision_request(
        self, request_id: str, user_id: str
    ) -> ProvisionRequest | None:
        """Read a request; a done request hands out its credential once."""
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"SELECT {_REQUEST_COLUMNS} FROM provision_requests "
                "WHERE id = $1 AND user_id = $2 FOR UPDATE",
                request_id,
                user_id,
            )
            if row is None:
                return None
            request = ProvisionRequest.from_record(row)
            if request.status == RequestStatus.DONE and request.sealed_credential:
                await conn.execute(
                    "UPDATE provision_requests SET sealed_credential = NULL WHERE id = $1",
                    request_id,
                )
        return request
