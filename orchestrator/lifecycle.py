"""
Runtime Lifecycle Manager
─────────────────────────
stop / extend / ensure_running for runtimes the provisioner created.

  RUNNING → STOPPED   stop() (user or system), refunds unused paid time
  RUNNING → EXPIRED   reconciler only
  RUNNING → ERROR     irrecoverable failure (e.g. backend resource vanished)

STOPPED, EXPIRED and ERROR are terminal for a runtime id.

stop() drives the backend first and only then touches the ledger. If the
backend call fails the runtime stays RUNNING, so a retry or the expiry
sweep can still act on it. A crash between backend success and the ledger
write leaves a RUNNING row whose container is gone; the expiry sweep
closes it out once paid time runs out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .backends import Backend, stop_and_remove
from .errors import NotFoundError, RuntimeNotFoundError, StateConflictError
from .ledger import CreditLedger
from .metering import utcnow, validate_hours
from .models import Runtime
from .registry import AgentCatalog

log = logging.getLogger("orchestrator.lifecycle")

STOP_GRACE_SECONDS = 10


@dataclass(frozen=True)
class StopOutcome:
    runtime_id: str
    stopped: bool  # False when the runtime was no longer running
    refund: int = 0


@dataclass(frozen=True)
class ExtendOutcome:
    runtime_id: str
    new_expiry: datetime
    credits_charged: int


class LifecycleManager:
    def __init__(
        self,
        catalog: AgentCatalog,
        backend: Backend,
        ledger: CreditLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.backend = backend
        self.ledger = ledger
        self._clock = clock

    async def get(self, runtime_id: str) -> Runtime:
        runtime = await self.ledger.get_runtime(runtime_id)
        if runtime is None:
            raise RuntimeNotFoundError(runtime_id)
        return runtime

    async def list_for_user(self, user_id: str) -> list[Runtime]:
        return await self.ledger.list_runtimes(user_id)

    async def stop(self, runtime_id: str) -> StopOutcome:
        """Stop a running runtime and refund its unused share. Idempotent."""
        runtime = await self.get(runtime_id)
        if not runtime.is_running:
            log.info(f"Stop on {runtime_id} ignored: already {runtime.status.value}")
            return StopOutcome(runtime_id=runtime_id, stopped=False)

        if runtime.backend_id:
            # Raises BackendUnavailableError; the row stays RUNNING for a retry.
            await stop_and_remove(self.backend, runtime.backend_id, STOP_GRACE_SECONDS)

        result = await self.ledger.finalize_stop(runtime_id, self._clock())
        if not result.stopped:
            log.info(f"Stop on {runtime_id} lost the race to another caller")
        return StopOutcome(
            runtime_id=runtime_id, stopped=result.stopped, refund=result.refund
        )

    async def extend(self, runtime_id: str, additional_hours: int) -> ExtendOutcome:
        validate_hours(additional_hours)
        runtime = await self.get(runtime_id)
        if not runtime.is_running:
            raise StateConflictError(runtime_id, runtime.status.value)

        template = self.catalog.lookup(runtime.agent_slug)
        if template is None:
            # Catalog lost a slug that still has live runtimes
            raise StateConflictError(runtime_id, "unbillable", "a known agent")

        result = await self.ledger.apply_extension(
            runtime_id, additional_hours, template.credits_per_hour, self._clock()
        )
        return ExtendOutcome(
            runtime_id=runtime_id,
            new_expiry=result.paid_until,
            credits_charged=result.credits_charged,
        )

    async def ensure_running(self, runtime_id: str) -> bool:
        """Resume a runtime whose container drifted. Returns True if it acted."""
        runtime = await self.get(runtime_id)
        if not runtime.is_running:
            raise StateConflictError(runtime_id, runtime.status.value)
        if not runtime.backend_id:
            raise StateConflictError(runtime_id, "unbound", "bound to a backend resource")

        try:
            state = await self.backend.inspect(runtime.backend_id)
            if state.paused:
                log.info(f"Unpausing runtime {runtime_id}")
                await self.backend.unpause(runtime.backend_id)
                return True
            if not state.running:
                log.info(f"Starting stopped runtime {runtime_id}")
                await self.backend.start(runtime.backend_id)
                return True
        except NotFoundError:
            log.error(f"Runtime {runtime_id} lost its container — marking error")
            await self.ledger.mark_error(runtime_id)
            raise
        return False

    async def get_logs(self, runtime_id: str, tail_lines: int = 100) -> str:
        runtime = await self.get(runtime_id)
        if not runtime.backend_id:
            return ""
        return await self.backend.logs(runtime.backend_id, tail_lines)
