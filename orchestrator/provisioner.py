"""
Runtime Provisioner
───────────────────
Turns (user, agent, hours) into a running, routable, paid-for container.

Order of operations:
  1. resolve the template, check the balance (no backend call if it's short)
  2. render the creation spec and pull / create / start on the backend
  3. one ledger transaction: debit + USAGE entry + RUNNING runtime row

A failed or cancelled start removes the half-created container before the error
propagates. A ledger rejection (balance drained by a racing request)
removes the fresh container too. An infrastructure failure of the ledger
write leaves the container for the orphan sweep; rolling back across two
systems synchronously would itself be fallible.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from . import naming
from .backends import Backend
from .crypto import seal_credential
from .errors import (
    BackendError,
    InsufficientCreditsError,
    LedgerIntegrityError,
    NotFoundError,
    StateConflictError,
    UnknownAgentError,
)
from .ledger import CreditLedger, new_id
from .metering import credits_needed, paid_until_after, utcnow
from .models import Runtime, RuntimeStatus
from .registry import AgentCatalog, AgentTemplate, RenderContext, render_creation_spec

log = logging.getLogger("orchestrator.provisioner")

# ── Configuration ──────────────────────────────────────────

PUBLIC_DOMAIN = os.getenv("PUBLIC_DOMAIN", "localhost")


@dataclass(frozen=True)
class RuntimeHandle:
    runtime_id: str
    backend_id: str
    url: str
    paid_until: datetime
    credential: str | None = None  # plaintext, handed out this once


class Provisioner:
    def __init__(
        self,
        catalog: AgentCatalog,
        backend: Backend,
        ledger: CreditLedger,
        domain: str = PUBLIC_DOMAIN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.backend = backend
        self.ledger = ledger
        self.domain = domain
        self._clock = clock

    def resolve(self, agent_slug: str) -> AgentTemplate:
        template = self.catalog.lookup(agent_slug)
        if template is None or not self.catalog.is_active(agent_slug):
            raise UnknownAgentError(agent_slug)
        return template

    async def check_affordable(self, user_id: str, template: AgentTemplate, hours: int) -> int:
        """Return the charge for `hours`, or raise if the user can't cover it."""
        needed = credits_needed(hours, template.credits_per_hour)
        if await self.ledger.is_bypass_account(user_id):
            return needed
        available = await self.ledger.balance(user_id)
        if available < needed:
            raise InsufficientCreditsError(needed, available)
        return needed

    async def provision(
        self,
        user_id: str,
        agent_slug: str,
        username: str,
        hours: int,
        request_id: str | None = None,
    ) -> RuntimeHandle:
        template = self.resolve(agent_slug)
        naming.validate_username(username)
        charge = await self.check_affordable(user_id, template, hours)

        now = self._clock()
        subdomain = naming.generate_subdomain(username, template.slug)
        password = naming.generate_password()
        ctx = RenderContext(
            user_id=user_id,
            subdomain=subdomain,
            domain=self.domain,
            storage_key=naming.storage_key(user_id, template.slug),
            password=password,
            created_at=int(now.timestamp()),
        )
        spec = render_creation_spec(template, ctx)
        credential = password if template.exposes_credential else None

        # A cached image may still be usable when the registry is unreachable.
        try:
            await self.backend.pull(spec.image)
        except BackendError as e:
            log.warning(f"Image pull failed — using cached image ({e})")

        backend_id = await self.backend.create(spec)
        try:
            await self.backend.start(backend_id)
        except BaseException as e:
            # Includes cancellation by the caller's timeout
            log.error(f"Start failed for {spec.name} ({backend_id[:12]}), removing: {e!r}")
            await asyncio.shield(self._discard(backend_id))
            raise

        runtime = Runtime(
            id=new_id(),
            user_id=user_id,
            agent_slug=template.slug,
            backend_id=backend_id,
            subdomain=subdomain,
            url=f"https://{ctx.hostname}",
            status=RuntimeStatus.RUNNING,
            credits_charged=charge,
            created_at=now,
            paid_until=paid_until_after(now, hours),
            sealed_credential=seal_credential(credential),
            provision_request_id=request_id,
        )
        try:
            await self.ledger.record_provision(
                runtime,
                f"Launch {template.name} for {hours}h",
                request_id=request_id,
                sealed_for_request=runtime.sealed_credential if request_id else None,
            )
        except (InsufficientCreditsError, StateConflictError, LedgerIntegrityError):
            await self._discard(backend_id)
            raise
        except Exception as e:
            log.error(
                f"Ledger write failed after starting {backend_id[:12]}; "
                f"leaving it for the orphan sweep: {e}"
            )
            raise

        log.info(
            f"Provisioned {template.slug} for user {user_id}: {runtime.url} "
            f"({hours}h, {charge} credits)"
        )
        return RuntimeHandle(
            runtime_id=runtime.id,
            backend_id=backend_id,
            url=runtime.url,
            paid_until=runtime.paid_until,
            credential=credential,
        )

    async def _discard(self, backend_id: str) -> None:
        try:
            await self.backend.remove(backend_id, force=True)
        except NotFoundError:
            pass
        except BackendError as e:
            log.warning(f"Could not remove {backend_id[:12]}, orphan sweep will: {e}")
