"""
Agent Runtime Orchestrator
──────────────────────────
Provisioning, metering and cleanup of per-user agent containers.

Auth is handled by the dashboard; the orchestrator validates sessions by
reading the shared Postgres session table. Backend calls made on behalf of a
request are bounded by BACKEND_TIMEOUT_S; a timeout means the backend state
is unknown and the client should retry.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import get_user_id, get_username, verify_cron_secret
from .backends import Backend, build_backend
from .db import bootstrap_schema, close_pool, get_pool
from .errors import (
    BackendError,
    InsufficientCreditsError,
    LedgerIntegrityError,
    NotFoundError,
    OrchestratorError,
    RuntimeNotFoundError,
    StateConflictError,
    UnknownAgentError,
)
from .jobs import ProvisionQueue
from .ledger import CreditLedger
from .lifecycle import LifecycleManager
from .models import Runtime
from .provisioner import Provisioner
from .reconciler import Reconciler
from .registry import AgentCatalog, load_catalog

# ── Configuration ──────────────────────────────────────────

MAX_HOURS = int(os.getenv("MAX_HOURS", "72"))
BACKEND_TIMEOUT_S = float(os.getenv("BACKEND_TIMEOUT_S", "60"))
RECONCILE_INTERVAL_S = int(os.getenv("RECONCILE_INTERVAL_S", "300"))
PROVISION_WORKERS = int(os.getenv("PROVISION_WORKERS", "1"))

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("orchestrator")

app = FastAPI(title="Agent Runtime Orchestrator", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Services ───────────────────────────────────────────────


@dataclass
class Services:
    catalog: AgentCatalog
    backend: Backend
    ledger: CreditLedger
    provisioner: Provisioner
    lifecycle: LifecycleManager
    reconciler: Reconciler
    queue: ProvisionQueue

    @classmethod
    def build(cls, catalog: AgentCatalog, backend: Backend, ledger: CreditLedger) -> Services:
        provisioner = Provisioner(catalog, backend, ledger)
        return cls(
            catalog=catalog,
            backend=backend,
            ledger=ledger,
            provisioner=provisioner,
            lifecycle=LifecycleManager(catalog, backend, ledger),
            reconciler=Reconciler(backend, ledger),
            queue=ProvisionQueue(ledger, provisioner),
        )


_services: Services | None = None
_tasks: list[asyncio.Task] = []


def get_services() -> Services:
    if _services is None:
        raise HTTPException(503, "Orchestrator is starting")
    return _services


# ── Lifecycle ──────────────────────────────────────────────


@app.on_event("startup")
async def startup():
    global _services
    await bootstrap_schema()
    pool = await get_pool()

    catalog = await load_catalog(pool)
    _services = Services.build(catalog, build_backend(), CreditLedger(pool))

    # Containers left behind by a previous crash
    try:
        await _services.reconciler.run_orphan_sweep()
    except BackendError as e:
        log.warning(f"Startup orphan sweep skipped: {e}")

    for _ in range(PROVISION_WORKERS):
        _tasks.append(asyncio.create_task(_services.queue.run_worker()))
    if RECONCILE_INTERVAL_S > 0:
        _tasks.append(asyncio.create_task(_reconcile_loop()))
    log.info(
        f"Orchestrator ready ({len(catalog)} agents, {PROVISION_WORKERS} workers, "
        f"reconcile every {RECONCILE_INTERVAL_S}s)"
    )


@app.on_event("shutdown")
async def shutdown():
    global _services
    for task in _tasks:
        task.cancel()
    _tasks.clear()
    if _services is not None:
        await _services.backend.close()
        _services = None
    await close_pool()


async def _reconcile_loop():
    """Background task: expiry and orphan sweeps on a fixed interval."""
    while True:
        await asyncio.sleep(RECONCILE_INTERVAL_S)
        try:
            services = get_services()
            await services.reconciler.run_expiry_sweep()
            await services.reconciler.run_orphan_sweep()
        except LedgerIntegrityError:
            log.exception("Reconciler stopping on ledger integrity failure")
            raise
        except Exception as e:
            log.error(f"Reconcile loop error: {e}")


async def _bounded(coro):
    """Await a backend-touching operation under BACKEND_TIMEOUT_S."""
    try:
        return await asyncio.wait_for(coro, BACKEND_TIMEOUT_S)
    except asyncio.TimeoutError:
        raise HTTPException(503, "Backend timed out; state unknown, retry later")


async def _owned_runtime(services: Services, runtime_id: str, user_id: str) -> Runtime:
    runtime = await services.lifecycle.get(runtime_id)
    if runtime.user_id != user_id:
        raise RuntimeNotFoundError(runtime_id)
    return runtime


# ── Errors ─────────────────────────────────────────────────

_ERROR_STATUS: list[tuple[type[OrchestratorError], int]] = [
    (UnknownAgentError, 404),
    (InsufficientCreditsError, 402),
    (RuntimeNotFoundError, 404),
    (StateConflictError, 409),
    (NotFoundError, 410),
    (BackendError, 503),
    (LedgerIntegrityError, 500),
]


@app.exception_handler(OrchestratorError)
async def _orchestrator_error(request: Request, exc: OrchestratorError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    body: dict = {"detail": str(exc)}
    if isinstance(exc, InsufficientCreditsError):
        body.update(needed=exc.needed, available=exc.available)
    if status >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(ValueError)
async def _value_error(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ── Runtimes ───────────────────────────────────────────────


class ProvisionBody(BaseModel):
    agent_slug: str
    hours: int = Field(ge=1, le=MAX_HOURS)
    username: str | None = None


class ExtendBody(BaseModel):
    hours: int = Field(ge=1, le=MAX_HOURS)


@app.get("/api/runtimes")
async def list_runtimes(
    user_id: str = Depends(get_user_id), services: Services = Depends(get_services)
):
    runtimes = await services.lifecycle.list_for_user(user_id)
    return {"runtimes": [r.to_public() for r in runtimes]}


@app.post("/api/runtimes", status_code=201)
async def create_runtime(
    body: ProvisionBody,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    username = body.username or await get_username(user_id)
    handle = await _bounded(
        services.provisioner.provision(user_id, body.agent_slug, username, body.hours)
    )
    return {
        "runtime_id": handle.runtime_id,
        "url": handle.url,
        "paid_until": handle.paid_until.isoformat(),
        "credential": handle.credential,
    }


@app.post("/api/runtimes/requests", status_code=202)
async def queue_runtime(
    body: ProvisionBody,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    username = body.username or await get_username(user_id)
    request_id = await services.queue.submit(user_id, body.agent_slug, username, body.hours)
    return {"request_id": request_id, "status": "pending"}


@app.get("/api/runtimes/requests/{request_id}")
async def get_runtime_request(
    request_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    status = await services.queue.status(request_id, user_id)
    if status is None:
        raise HTTPException(404, "Provision request not found")
    return status


@app.get("/api/runtimes/{runtime_id}")
async def get_runtime(
    runtime_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    runtime = await _owned_runtime(services, runtime_id, user_id)
    return runtime.to_public()


@app.delete("/api/runtimes/{runtime_id}")
async def stop_runtime(
    runtime_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await _owned_runtime(services, runtime_id, user_id)
    outcome = await _bounded(services.lifecycle.stop(runtime_id))
    return {
        "runtime_id": outcome.runtime_id,
        "stopped": outcome.stopped,
        "refund": outcome.refund,
    }


@app.post("/api/runtimes/{runtime_id}/extend")
async def extend_runtime(
    runtime_id: str,
    body: ExtendBody,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await _owned_runtime(services, runtime_id, user_id)
    outcome = await services.lifecycle.extend(runtime_id, body.hours)
    return {
        "runtime_id": outcome.runtime_id,
        "paid_until": outcome.new_expiry.isoformat(),
        "credits_charged": outcome.credits_charged,
    }


@app.post("/api/runtimes/{runtime_id}/ensure-running")
async def ensure_runtime_running(
    runtime_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await _owned_runtime(services, runtime_id, user_id)
    resumed = await _bounded(services.lifecycle.ensure_running(runtime_id))
    return {"runtime_id": runtime_id, "resumed": resumed}


@app.get("/api/runtimes/{runtime_id}/logs")
async def runtime_logs(
    runtime_id: str,
    tail: int = Query(100, ge=1, le=5000),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    await _owned_runtime(services, runtime_id, user_id)
    logs = await _bounded(services.lifecycle.get_logs(runtime_id, tail))
    return {"runtime_id": runtime_id, "logs": logs}


# ── Credits ────────────────────────────────────────────────


@app.get("/api/credits")
async def get_credits(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    balance = await services.ledger.balance(user_id)
    entries = await services.ledger.list_entries(user_id, limit)
    return {"balance": balance, "entries": [e.to_public() for e in entries]}


# ── Internal ───────────────────────────────────────────────


@app.post("/api/internal/cron/cleanup", dependencies=[Depends(verify_cron_secret)])
async def cron_cleanup(services: Services = Depends(get_services)):
    """Run both sweeps once. Called by an external scheduler."""
    expiry = await services.reconciler.run_expiry_sweep()
    orphans = await services.reconciler.run_orphan_sweep()
    return {"expiry": expiry.to_dict(), "orphans": orphans.to_dict()}


# ── Health ─────────────────────────────────────────────────


@app.get("/api/health")
async def health():
    try:
        pool = await get_pool()
        await pool.fetchval("SELECT 1")
        return {"status": "ok", "db": "connected"}
    except Exception as e:
        return {"status": "degraded", "db": str(e)}
