"""
Provision queue
───────────────
Durable provisioning requests processed by background workers.

A request row goes pending → running → done | failed. Workers claim with
FOR UPDATE SKIP LOCKED; a request left in running by a dead worker is put
back to pending after PROVISION_STALE_SECONDS, so delivery is at-least-once.
Charging stays exactly-once: the request is marked done inside the same
transaction that debits the user and inserts the runtime, and that update is
gated on status = 'running'.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from . import naming
from .crypto import open_credential
from .errors import (
    InsufficientCreditsError,
    LedgerIntegrityError,
    OrchestratorError,
    StateConflictError,
    UnknownAgentError,
)
from .ledger import CreditLedger
from .metering import validate_hours
from .models import RequestStatus
from .provisioner import Provisioner

log = logging.getLogger("orchestrator.jobs")

# ── Configuration ──────────────────────────────────────────

PROVISION_MAX_ATTEMPTS = int(os.getenv("PROVISION_MAX_ATTEMPTS", "3"))
PROVISION_STALE_SECONDS = int(os.getenv("PROVISION_STALE_SECONDS", "600"))
PROVISION_POLL_INTERVAL_S = float(os.getenv("PROVISION_POLL_INTERVAL_S", "2"))


class ProvisionQueue:
    def __init__(
        self,
        ledger: CreditLedger,
        provisioner: Provisioner,
        max_attempts: int = PROVISION_MAX_ATTEMPTS,
        stale_seconds: int = PROVISION_STALE_SECONDS,
    ):
        self.ledger = ledger
        self.provisioner = provisioner
        self.max_attempts = max_attempts
        self.stale_seconds = stale_seconds

    async def submit(self, user_id: str, agent_slug: str, username: str, hours: int) -> str:
        """Validate eagerly, then queue. Raises the same errors as provision()."""
        validate_hours(hours)
        naming.validate_username(username)
        template = self.provisioner.resolve(agent_slug)
        await self.provisioner.check_affordable(user_id, template, hours)

        request = await self.ledger.enqueue_provision(user_id, agent_slug, username, hours)
        log.info(f"Queued provision {request.id}: {agent_slug} for user {user_id} ({hours}h)")
        return request.id

    async def process_one(self) -> bool:
        """Claim and run one pending request. Returns False if none was pending."""
        request = await self.ledger.claim_provision()
        if request is None:
            return False

        log.info(f"Processing provision {request.id} (attempt {request.attempts})")
        try:
            await self.provisioner.provision(
                request.user_id,
                request.agent_slug,
                request.username,
                request.hours,
                request_id=request.id,
            )
        except StateConflictError as e:
            # Another worker finished this request after a stale requeue
            log.warning(f"Provision {request.id} already settled elsewhere: {e}")
        except (UnknownAgentError, InsufficientCreditsError, ValueError) as e:
            log.info(f"Provision {request.id} failed: {e}")
            await self.ledger.fail_provision(request.id, str(e))
        except LedgerIntegrityError as e:
            await self.ledger.fail_provision(request.id, str(e))
            raise
        except OrchestratorError as e:
            await self._retry_or_fail(request.id, request.attempts, e)
        except Exception as e:
            log.error(f"Unexpected error in provision {request.id}: {e}")
            await self._retry_or_fail(request.id, request.attempts, e)
        return True

    async def _retry_or_fail(self, request_id: str, attempts: int, error: Exception) -> None:
        retryable = getattr(error, "retryable", True)
        if retryable and attempts < self.max_attempts:
            log.warning(f"Provision {request_id} attempt {attempts} failed, requeueing: {error}")
            await self.ledger.release_provision(request_id, str(error))
        else:
            log.error(f"Provision {request_id} gave up after {attempts} attempts: {error}")
            await self.ledger.fail_provision(request_id, str(error))

    async def status(self, request_id: str, user_id: str) -> dict[str, Any] | None:
        request = await self.ledger.take_provision_request(request_id, user_id)
        if request is None:
            return None
        credential = None
        if request.status == RequestStatus.DONE:
            credential = open_credential(request.sealed_credential)
        return {
            "id": request.id,
            "agent_slug": request.agent_slug,
            "hours": request.hours,
            "status": request.status.value,
            "attempts": request.attempts,
            "runtime_id": request.runtime_id,
            "error": request.last_error if request.status == RequestStatus.FAILED else None,
            "credential": credential,
        }

    async def run_worker(self, poll_interval: float = PROVISION_POLL_INTERVAL_S) -> None:
        """Background task: drain the queue, sleeping when it's empty."""
        while True:
            try:
                requeued = await self.ledger.requeue_stale(self.stale_seconds)
                if requeued:
                    log.warning(f"Requeued {requeued} stale provision request(s)")
                while await self.process_one():
                    pass
            except LedgerIntegrityError:
                log.exception("Provision worker stopping on ledger integrity failure")
                raise
            except Exception as e:
                log.error(f"Provision worker error: {e}")
            await asyncio.sleep(poll_interval)
