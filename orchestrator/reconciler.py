"""
Reconciler
──────────────
Two sweeps that bring the ledger and the backend back into agreement.
Both are meant to be triggered on a fixed interval (cron route or the
in-process loop in main.py) and are safe to run overlapping:

  expiry sweep   RUNNING rows past paid_until → container removed, EXPIRED.
                 No refund: time ended the runtime, not the user.
                 Removal failures → ERROR + cleanup_pending, retried later.
  orphan sweep   managed containers with no runtime row → force-removed,
                 unless younger than the grace window (a provision may be
                 between backend create and its ledger commit).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .backends import Backend, stop_and_remove
from .errors import BackendError, NotFoundError
from .ledger import CreditLedger
from .metering import utcnow
from .models import RuntimeStatus

log = logging.getLogger("orchestrator.reconciler")

# ── Configuration ──────────────────────────────────────────

ORPHAN_GRACE_SECONDS = int(os.getenv("ORPHAN_GRACE_SECONDS", "300"))
EXPIRY_GRACE_SECONDS = 10
ORPHAN_STOP_GRACE_SECONDS = 5


@dataclass(frozen=True)
class SweepResult:
    processed: int = 0
    expired: int = 0
    errored: int = 0
    removed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "expired": self.expired,
            "errored": self.errored,
            "removed": self.removed,
            "skipped": self.skipped,
        }


class Reconciler:
    def __init__(
        self,
        backend: Backend,
        ledger: CreditLedger,
        orphan_grace_seconds: int = ORPHAN_GRACE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.ledger = ledger
        self.orphan_grace_seconds = orphan_grace_seconds
        self._clock = clock

    async def run_expiry_sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self._clock()
        candidates = await self.ledger.list_expired(now)
        expired = errored = 0

        for runtime in candidates:
            retrying = runtime.status == RuntimeStatus.ERROR
            try:
                if runtime.backend_id:
                    await stop_and_remove(
                        self.backend, runtime.backend_id, EXPIRY_GRACE_SECONDS
                    )
            except BackendError as e:
                log.error(f"Failed to clean up runtime {runtime.id}: {e}")
                if not retrying:
                    await self.ledger.mark_error(runtime.id, cleanup_pending=True)
                errored += 1
                continue

            if retrying:
                await self.ledger.clear_cleanup(runtime.id, now)
                log.info(f"Cleanup of errored runtime {runtime.id} completed")
            elif await self.ledger.mark_expired(runtime.id, now):
                expired += 1
                log.info(f"Runtime {runtime.id} ({runtime.subdomain}) expired")

        if candidates:
            log.info(
                f"Expiry sweep: {len(candidates)} candidates, "
                f"{expired} expired, {errored} errored"
            )
        return SweepResult(processed=len(candidates), expired=expired, errored=errored)

    async def run_orphan_sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self._clock()
        resources = await self.backend.list_managed()
        known = await self.ledger.known_backend_ids([r.id for r in resources])
        cutoff = int(now.timestamp()) - self.orphan_grace_seconds
        removed = skipped = 0

        for resource in resources:
            if resource.id in known:
                continue
            if resource.created_at is not None and resource.created_at > cutoff:
                # Possibly a provision between create and ledger commit
                skipped += 1
                continue

            log.warning(f"Orphaned container {resource.name or resource.id[:12]} — removing")
            try:
                await self.backend.stop(resource.id, ORPHAN_STOP_GRACE_SECONDS)
            except BackendError as e:
                log.debug(f"Orphan {resource.id[:12]} stop skipped: {e}")
            try:
                await self.backend.remove(resource.id, force=True)
            except NotFoundError:
                pass
            except BackendError as e:
                log.error(f"Failed to remove orphan {resource.id[:12]}: {e}")
                continue
            removed += 1

        return SweepResult(processed=len(resources), removed=removed, skipped=skipped)
