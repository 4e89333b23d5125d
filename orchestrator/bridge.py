"""
Compute Bridge
──────────────
Small HTTP service that runs next to the container daemon and exposes the
Backend contract to orchestrators that cannot reach the daemon socket.

Run with:  uvicorn orchestrator.bridge:app --port 3001

Every route requires `X-Bridge-Api-Key: <BRIDGE_API_KEY>`. The bridge
refuses to serve at all when no key is configured.

Status codes: 404 unknown resource, 409 creation refused, 502 daemon failure.
"""

from __future__ import annotations

import hmac
import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .backends import Backend, DOCKER_NETWORK, DOCKER_SOCKET
from .errors import BackendError, CreateError, NotFoundError
from .registry import CreationSpec

BRIDGE_API_KEY = os.getenv("BRIDGE_API_KEY", "")

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("orchestrator.bridge")

app = FastAPI(title="Compute Bridge", version="0.1.0")

_backend: Backend | None = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        from .backends.docker_backend import DockerBackend

        _backend = DockerBackend.from_socket(DOCKER_SOCKET, network=DOCKER_NETWORK)
    return _backend


async def verify_bridge_key(request: Request) -> None:
    """Dependency: constant-time check of the shared bridge key."""
    if not BRIDGE_API_KEY:
        raise HTTPException(503, "Bridge API key not configured")
    supplied = request.headers.get("x-bridge-api-key", "")
    if not hmac.compare_digest(supplied, BRIDGE_API_KEY):
        raise HTTPException(401, "Unauthorized")


@app.exception_handler(BackendError)
async def _backend_error(request: Request, exc: BackendError):
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, CreateError):
        status = 409
    else:
        status = 502
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"detail": str(exc)}, status_code=status)


@app.on_event("shutdown")
async def shutdown():
    if _backend is not None:
        await _backend.close()


# ── Models ─────────────────────────────────────────────────


class PullBody(BaseModel):
    image: str


class CreateBody(BaseModel):
    image: str
    name: str
    env: dict[str, str] = {}
    port: int
    volumes: dict[str, str] = {}
    memory_limit: int
    cpu_limit: int
    pid_limit: int
    labels: dict[str, str] = {}


# ── Routes ─────────────────────────────────────────────────

_auth = [Depends(verify_bridge_key)]


@app.post("/images/pull", dependencies=_auth)
async def pull_image(body: PullBody, backend: Backend = Depends(get_backend)):
    await backend.pull(body.image)
    return {"success": True}


@app.post("/containers", dependencies=_auth)
async def create_container(body: CreateBody, backend: Backend = Depends(get_backend)):
    container_id = await backend.create(CreationSpec.from_dict(body.model_dump()))
    return {"id": container_id}


@app.get("/containers", dependencies=_auth)
async def list_containers(backend: Backend = Depends(get_backend)):
    resources = await backend.list_managed()
    return {
        "containers": [
            {
                "id": r.id,
                "name": r.name,
                "labels": r.labels,
                "created_at": r.created_at,
            }
            for r in resources
        ]
    }


@app.post("/containers/{container_id}/start", dependencies=_auth)
async def start_container(container_id: str, backend: Backend = Depends(get_backend)):
    await backend.start(container_id)
    return {"success": True}


@app.post("/containers/{container_id}/stop", dependencies=_auth)
async def stop_container(
    container_id: str, grace: int = 10, backend: Backend = Depends(get_backend)
):
    await backend.stop(container_id, grace)
    return {"success": True}


@app.post("/containers/{container_id}/unpause", dependencies=_auth)
async def unpause_container(container_id: str, backend: Backend = Depends(get_backend)):
    await backend.unpause(container_id)
    return {"success": True}


@app.delete("/containers/{container_id}", dependencies=_auth)
async def remove_container(
    container_id: str, force: bool = True, backend: Backend = Depends(get_backend)
):
    await backend.remove(container_id, force=force)
    return {"success": True}


@app.get("/containers/{container_id}/inspect", dependencies=_auth)
async def inspect_container(container_id: str, backend: Backend = Depends(get_backend)):
    state = await backend.inspect(container_id)
    return {"running": state.running, "paused": state.paused}


@app.get("/containers/{container_id}/logs", dependencies=_auth)
async def container_logs(
    container_id: str, tail: int = 100, backend: Backend = Depends(get_backend)
):
    return {"logs": await backend.logs(container_id, tail)}
