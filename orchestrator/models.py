"""
Ledger models — rows of the runtimes, ledger_entries and provision_requests
tables as frozen dataclasses.

Status values are stored lowercase in Postgres; the enums are `str` subclasses
so they compare equal to the raw column value.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class RuntimeStatus(str, Enum):
    """Lifecycle status of a provisioned runtime."""

    RUNNING = "running"
    STOPPED = "stopped"  # Stopped early by the user or the system, refunded
    EXPIRED = "expired"  # Paid time ran out, no refund
    ERROR = "error"  # Irrecoverable failure


TERMINAL_STATUSES = frozenset(
    {RuntimeStatus.STOPPED, RuntimeStatus.EXPIRED, RuntimeStatus.ERROR}
)


class EntryType(str, Enum):
    USAGE = "usage"
    REFUND = "refund"


class RequestStatus(str, Enum):
    """Status of a queued provisioning request."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Runtime:
    """One provisioned, billable container bound to a user and an agent."""

    id: str
    user_id: str
    agent_slug: str
    backend_id: str | None
    subdomain: str
    url: str
    status: RuntimeStatus
    credits_charged: int
    created_at: datetime
    paid_until: datetime
    stopped_at: datetime | None = None
    sealed_credential: str | None = None
    cleanup_pending: bool = False
    provision_request_id: str | None = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> Runtime:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            agent_slug=row["agent_slug"],
            backend_id=row["backend_id"],
            subdomain=row["subdomain"],
            url=row["url"],
            status=RuntimeStatus(row["status"]),
            credits_charged=row["credits_charged"],
            created_at=row["created_at"],
            paid_until=row["paid_until"],
            stopped_at=row.get("stopped_at"),
            sealed_credential=row.get("sealed_credential"),
            cleanup_pending=bool(row.get("cleanup_pending", False)),
            provision_request_id=row.get("provision_request_id"),
        )

    @property
    def is_running(self) -> bool:
        return self.status == RuntimeStatus.RUNNING

    def to_public(self) -> dict[str, Any]:
        """Serializable view for API responses. Never includes the credential."""
        return {
            "id": self.id,
            "agent_slug": self.agent_slug,
            "backend_id": self.backend_id,
            "subdomain": self.subdomain,
            "url": self.url,
            "status": self.status.value,
            "credits_charged": self.credits_charged,
            "created_at": self.created_at.isoformat(),
            "paid_until": self.paid_until.isoformat(),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only record of one credit movement."""

    id: str
    user_id: str
    type: EntryType
    amount: int  # USAGE negative, REFUND positive
    runtime_id: str | None
    description: str
    created_at: datetime

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> LedgerEntry:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=EntryType(row["type"]),
            amount=row["amount"],
            runtime_id=row.get("runtime_id"),
            description=row["description"],
            created_at=row["created_at"],
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "runtime_id": self.runtime_id,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ProvisionRequest:
    id: str
    user_id: str
    agent_slug: str
    username: str
    hours: int
    status: RequestStatus
    attempts: int = 0
    runtime_id: str | None = None
    last_error: str | None = None
    sealed_credential: str | None = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> ProvisionRequest:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            agent_slug=row["agent_slug"],
            username=row["username"],
            hours=row["hours"],
            status=RequestStatus(row["status"]),
            attempts=row.get("attempts", 0) or 0,
            runtime_id=row.get("runtime_id"),
            last_error=row.get("last_error"),
            sealed_credential=row.get("sealed_credential"),
        )
