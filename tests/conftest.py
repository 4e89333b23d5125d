"""
Shared fixtures for orchestrator tests.

Provides a mock asyncpg pool for checking SQL, plus an in-memory ledger and
backend with the same contracts as CreditLedger and Backend, so behaviour
can be tested without real Postgres or Docker.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from orchestrator.backends import Backend, ManagedResource, ResourceState
from orchestrator.errors import (
    InsufficientCreditsError,
    LedgerIntegrityError,
    NotFoundError,
    RuntimeNotFoundError,
    StateConflictError,
)
from orchestrator.ledger import (
    BYPASS_CREDITS,
    ExtendResult,
    StopResult,
    is_bypass_wallet,
    new_id,
)
from orchestrator.metering import compute_refund
from orchestrator.models import (
    EntryType,
    LedgerEntry,
    ProvisionRequest,
    RequestStatus,
    Runtime,
    RuntimeStatus,
)
from orchestrator.registry import CREATED_AT_LABEL, MANAGED_LABEL, AgentCatalog, CreationSpec

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


# ── Mock asyncpg pool ──────────────────────────────────────


class MockRecord(dict):
    """Dict subclass that supports attribute-style access like asyncpg.Record."""

    def __getitem__(self, key):
        return super().__getitem__(key)


def make_record(**kwargs) -> MockRecord:
    """Create a mock asyncpg Record."""
    return MockRecord(**kwargs)


class MockPool:
    """
    In-memory mock of asyncpg.Pool.

    Tracks all SQL calls for assertion. Returns configurable responses.
    Connections from acquire() support `async with conn.transaction()`.
    """

    def __init__(self):
        self.execute = AsyncMock(return_value=None)
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=1)
        self._conn = AsyncMock()
        self._conn.execute = AsyncMock()
        self._conn.fetchrow = AsyncMock(return_value=None)
        self._conn.transaction = MagicMock(return_value=_MockTransaction())

    def acquire(self):
        """Return an async context manager that yields a mock connection."""
        return _MockAcquire(self._conn)


class _MockAcquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *args):
        pass


class _MockTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


def sql_calls(mock: AsyncMock) -> list[str]:
    """The SQL text of every call made on a pool/connection method."""
    return [c.args[0] for c in mock.call_args_list]


@pytest.fixture
def mock_pool():
    """A fresh MockPool for each test."""
    return MockPool()


@pytest.fixture
def patch_get_pool(mock_pool):
    """Patch get_pool() to return our mock pool."""

    async def _get_pool():
        return mock_pool

    with (
        patch("orchestrator.db.get_pool", _get_pool),
        patch("orchestrator.auth.get_pool", _get_pool),
        patch("orchestrator.main.get_pool", _get_pool),
    ):
        yield mock_pool


# ── Clock ──────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


# ── In-memory backend ──────────────────────────────────────


class FakeBackend(Backend):
    """
    Container lifecycle in a dict. `fail` maps a method name to the
    exception it should raise on its next calls.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _check(self, method: str, resource_id: str = "") -> None:
        self.calls.append((method, resource_id))
        if method in self.fail:
            raise self.fail[method]

    def _get(self, resource_id: str) -> dict:
        if resource_id not in self.containers:
            raise NotFoundError(resource_id)
        return self.containers[resource_id]

    def add_container(self, labels: dict, running: bool = True) -> str:
        resource_id = f"c{next(self._ids):063d}"
        self.containers[resource_id] = {
            "spec": None,
            "name": f"ap-manual-{resource_id[-4:]}",
            "labels": labels,
            "running": running,
            "paused": False,
        }
        return resource_id

    def method_calls(self, method: str) -> list[str]:
        return [rid for m, rid in self.calls if m == method]

    async def pull(self, image: str) -> None:
        await asyncio.sleep(0)
        self._check("pull", image)

    async def create(self, spec: CreationSpec) -> str:
        await asyncio.sleep(0)
        self._check("create", spec.name)
        resource_id = f"c{next(self._ids):063d}"
        self.containers[resource_id] = {
            "spec": spec,
            "name": spec.name,
            "labels": dict(spec.labels),
            "running": False,
            "paused": False,
        }
        return resource_id

    async def start(self, resource_id: str) -> None:
        await asyncio.sleep(0)
        self._check("start", resource_id)
        self._get(resource_id)["running"] = True

    async def stop(self, resource_id: str, grace_seconds: int = 10) -> None:
        await asyncio.sleep(0)
        self._check("stop", resource_id)
        self._get(resource_id)["running"] = False

    async def remove(self, resource_id: str, force: bool = True) -> None:
        await asyncio.sleep(0)
        self._check("remove", resource_id)
        self._get(resource_id)
        del self.containers[resource_id]

    async def unpause(self, resource_id: str) -> None:
        self._check("unpause", resource_id)
        self._get(resource_id)["paused"] = False

    async def inspect(self, resource_id: str) -> ResourceState:
        self._check("inspect", resource_id)
        c = self._get(resource_id)
        return ResourceState(running=c["running"], paused=c["paused"])

    async def logs(self, resource_id: str, tail_lines: int = 100) -> str:
        self._check("logs", resource_id)
        self._get(resource_id)
        return "\n".join(f"line {i}" for i in range(tail_lines))

    async def list_managed(self) -> list[ManagedResource]:
        self._check("list_managed")
        return [
            ManagedResource(
                id=rid,
                name=c["name"],
                labels=c["labels"],
                created_at=int(c["labels"][CREATED_AT_LABEL])
                if CREATED_AT_LABEL in c["labels"]
                else None,
            )
            for rid, c in self.containers.items()
            if c["labels"].get(MANAGED_LABEL) == "true"
        ]


@pytest.fixture
def backend():
    return FakeBackend()


# ── In-memory ledger ───────────────────────────────────────


class FakeLedger:
    """
    CreditLedger with the same guarantees, held in dicts. One asyncio.Lock
    stands in for row locks, so concurrent callers serialize the way
    SELECT ... FOR UPDATE makes them.
    """

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.runtimes: dict[str, Runtime] = {}
        self.entries: list[LedgerEntry] = []
        self.requests: dict[str, ProvisionRequest] = {}
        self._lock = asyncio.Lock()
        self.fail_record: Exception | None = None

    def add_user(self, user_id: str, balance: int = 0, wallet: str | None = None) -> None:
        self.users[user_id] = {"wallet": wallet or f"0x{user_id}", "balance": balance}

    def add_runtime(self, runtime: Runtime) -> Runtime:
        self.runtimes[runtime.id] = runtime
        return runtime

    def stored_balance(self, user_id: str) -> int:
        return self.users[user_id]["balance"]

    def entries_for(self, runtime_id: str) -> list[LedgerEntry]:
        return [e for e in self.entries if e.runtime_id == runtime_id]

    def _bypass(self, user_id: str) -> bool:
        user = self.users.get(user_id)
        return bool(user) and is_bypass_wallet(user["wallet"])

    def _append(self, user_id, entry_type, amount, runtime_id, description):
        self.entries.append(
            LedgerEntry(
                id=new_id(),
                user_id=user_id,
                type=entry_type,
                amount=amount,
                runtime_id=runtime_id,
                description=description,
                created_at=T0,
            )
        )

    def _debit(self, user_id, amount, runtime_id, description):
        user = self.users[user_id]
        if user["balance"] < amount:
            raise LedgerIntegrityError(f"Debit of {amount} failed for user {user_id}")
        user["balance"] -= amount
        self._append(user_id, EntryType.USAGE, -amount, runtime_id, description)

    # Reads

    async def is_bypass_account(self, user_id: str) -> bool:
        return self._bypass(user_id)

    async def balance(self, user_id: str) -> int:
        if user_id not in self.users:
            return 0
        if self._bypass(user_id):
            return BYPASS_CREDITS
        return self.users[user_id]["balance"]

    async def list_entries(self, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        return [e for e in reversed(self.entries) if e.user_id == user_id][:limit]

    async def get_runtime(self, runtime_id: str) -> Runtime | None:
        return self.runtimes.get(runtime_id)

    async def list_runtimes(self, user_id: str) -> list[Runtime]:
        return [r for r in self.runtimes.values() if r.user_id == user_id]

    async def list_expired(self, now: datetime) -> list[Runtime]:
        return [
            r
            for r in self.runtimes.values()
            if (r.status == RuntimeStatus.RUNNING and r.paid_until < now)
            or (r.status == RuntimeStatus.ERROR and r.cleanup_pending)
        ]

    async def known_backend_ids(self, backend_ids: list[str]) -> set[str]:
        known = {r.backend_id for r in self.runtimes.values()}
        return {b for b in backend_ids if b in known}

    # Runtime writes

    async def record_provision(self, runtime, description, request_id=None, sealed_for_request=None):
        async with self._lock:
            await asyncio.sleep(0)
            if self.fail_record is not None:
                raise self.fail_record
            bypass = self._bypass(runtime.user_id)
            balance = self.users.get(runtime.user_id, {"balance": 0})["balance"]
            if not bypass and balance < runtime.credits_charged:
                raise InsufficientCreditsError(runtime.credits_charged, balance)
            if request_id:
                request = self.requests.get(request_id)
                if request is None or request.status != RequestStatus.RUNNING:
                    raise StateConflictError(request_id, "not running", "running")
            self.runtimes[runtime.id] = runtime
            if not bypass:
                self._debit(runtime.user_id, runtime.credits_charged, runtime.id, description)
            if request_id:
                self.requests[request_id] = replace(
                    self.requests[request_id],
                    status=RequestStatus.DONE,
                    runtime_id=runtime.id,
                    sealed_credential=sealed_for_request,
                )
        return runtime

    async def finalize_stop(self, runtime_id: str, now: datetime) -> StopResult:
        async with self._lock:
            await asyncio.sleep(0)
            runtime = self.runtimes.get(runtime_id)
            if runtime is None:
                raise RuntimeNotFoundError(runtime_id)
            if not runtime.is_running:
                return StopResult(stopped=False)
            self.runtimes[runtime_id] = replace(
                runtime, status=RuntimeStatus.STOPPED, stopped_at=now
            )
            refund = compute_refund(
                runtime.credits_charged, runtime.created_at, runtime.paid_until, now
            )
            if self._bypass(runtime.user_id):
                return StopResult(stopped=True, refund=0)
            if refund > 0:
                self.users[runtime.user_id]["balance"] += refund
                self._append(
                    runtime.user_id,
                    EntryType.REFUND,
                    refund,
                    runtime_id,
                    f"Refund for early stop of {runtime.subdomain}",
                )
            return StopResult(stopped=True, refund=refund)

    async def apply_extension(self, runtime_id, hours, credits_per_hour, now) -> ExtendResult:
        charge = hours * credits_per_hour
        async with self._lock:
            await asyncio.sleep(0)
            runtime = self.runtimes.get(runtime_id)
            if runtime is None:
                raise RuntimeNotFoundError(runtime_id)
            if not runtime.is_running:
                raise StateConflictError(runtime_id, runtime.status.value)
            if runtime.paid_until <= now:
                raise StateConflictError(runtime_id, "overdue", "within its paid period")
            bypass = self._bypass(runtime.user_id)
            balance = self.users[runtime.user_id]["balance"]
            if not bypass and balance < charge:
                raise InsufficientCreditsError(charge, balance)
            updated = replace(
                runtime,
                paid_until=runtime.paid_until + timedelta(hours=hours),
                credits_charged=runtime.credits_charged + charge,
            )
            self.runtimes[runtime_id] = updated
            if not bypass:
                self._debit(
                    runtime.user_id,
                    charge,
                    runtime_id,
                    f"Extended {runtime.subdomain} by {hours}h",
                )
        return ExtendResult(paid_until=updated.paid_until, credits_charged=charge)

    async def _transition(self, runtime_id, expected, when=None, **changes) -> bool:
        async with self._lock:
            runtime = self.runtimes.get(runtime_id)
            if runtime is None or runtime.status != expected:
                return False
            if when is not None and not when(runtime):
                return False
            self.runtimes[runtime_id] = replace(runtime, **changes)
            return True

    async def mark_expired(self, runtime_id: str, now: datetime) -> bool:
        return await self._transition(
            runtime_id,
            RuntimeStatus.RUNNING,
            when=lambda r: r.paid_until < now,
            status=RuntimeStatus.EXPIRED,
            stopped_at=now,
        )

    async def mark_error(self, runtime_id: str, cleanup_pending: bool = False) -> bool:
        return await self._transition(
            runtime_id,
            RuntimeStatus.RUNNING,
            status=RuntimeStatus.ERROR,
            cleanup_pending=cleanup_pending,
        )

    async def clear_cleanup(self, runtime_id: str, now: datetime) -> bool:
        runtime = self.runtimes.get(runtime_id)
        if runtime is None or not runtime.cleanup_pending:
            return False
        return await self._transition(
            runtime_id,
            RuntimeStatus.ERROR,
            cleanup_pending=False,
            stopped_at=runtime.stopped_at or now,
        )

    # Provision requests

    async def enqueue_provision(self, user_id, agent_slug, username, hours) -> ProvisionRequest:
        request = ProvisionRequest(
            id=new_id(),
            user_id=user_id,
            agent_slug=agent_slug,
            username=username,
            hours=hours,
            status=RequestStatus.PENDING,
        )
        self.requests[request.id] = request
        return request

    async def claim_provision(self) -> ProvisionRequest | None:
        async with self._lock:
            for request in self.requests.values():
                if request.status == RequestStatus.PENDING:
                    claimed = replace(
                        request, status=RequestStatus.RUNNING, attempts=request.attempts + 1
                    )
                    self.requests[request.id] = claimed
                    return claimed
        return None

    async def _settle(self, request_id, status, error) -> None:
        request = self.requests[request_id]
        if request.status == RequestStatus.RUNNING:
            self.requests[request_id] = replace(request, status=status, last_error=error)

    async def release_provision(self, request_id: str, error: str) -> None:
        await self._settle(request_id, RequestStatus.PENDING, error)

    async def fail_provision(self, request_id: str, error: str) -> None:
        await self._settle(request_id, RequestStatus.FAILED, error)

    async def requeue_stale(self, older_than_seconds: int) -> int:
        return 0

    async def take_provision_request(self, request_id, user_id) -> ProvisionRequest | None:
        request = self.requests.get(request_id)
        if request is None or request.user_id != user_id:
            return None
        if request.status == RequestStatus.DONE and request.sealed_credential:
            self.requests[request_id] = replace(request, sealed_credential=None)
        return request


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def catalog():
    return AgentCatalog.builtin()


def make_runtime(**overrides) -> Runtime:
    """A RUNNING runtime paid for one hour from T0, charged 10 credits."""
    fields = dict(
        id="rt-1",
        user_id="user-1",
        agent_slug="agent-zero",
        backend_id="c" * 64,
        subdomain="alice-agent-zero-ab12",
        url="https://alice-agent-zero-ab12.example.com",
        status=RuntimeStatus.RUNNING,
        credits_charged=10,
        created_at=T0,
        paid_until=T0 + timedelta(hours=1),
    )
    fields.update(overrides)
    fields["status"] = RuntimeStatus(fields["status"])
    return Runtime(**fields)


def runtime_record(**overrides) -> MockRecord:
    """A runtimes row as asyncpg would return it."""
    runtime = make_runtime(**overrides)
    return make_record(
        id=runtime.id,
        user_id=runtime.user_id,
        agent_slug=runtime.agent_slug,
        backend_id=runtime.backend_id,
        subdomain=runtime.subdomain,
        url=runtime.url,
        sealed_credential=runtime.sealed_credential,
        status=runtime.status.value,
        credits_charged=runtime.credits_charged,
        created_at=runtime.created_at,
        paid_until=runtime.paid_until,
        stopped_at=runtime.stopped_at,
        cleanup_pending=runtime.cleanup_pending,
        provision_request_id=runtime.provision_request_id,
    )
