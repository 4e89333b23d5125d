"""
Provisioning backends
─────────────────────
One async contract for container lifecycle, two interchangeable adapters:

  DockerBackend  talks to the local daemon socket through the Docker SDK
  BridgeBackend  talks to a remote compute bridge over HTTP (see
                 `orchestrator.bridge`), for when the orchestrator cannot
                 reach the daemon socket itself

Every adapter translates its native failures into `orchestrator.errors`:
NotFoundError, CreateError, BackendUnavailableError. Callers treat
NotFoundError on stop/remove as success.

Backend calls carry no timeout of their own; callers wrap them.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..errors import NotFoundError
from ..registry import CreationSpec

log = logging.getLogger("orchestrator.backends")

# ── Configuration ──────────────────────────────────────────

DOCKER_SOCKET = os.getenv("DOCKER_SOCKET", "/var/run/docker.sock")
DOCKER_NETWORK = os.getenv("DOCKER_NETWORK", "traefik-net")
COMPUTE_BRIDGE_URL = os.getenv("COMPUTE_BRIDGE_URL", "").strip()
COMPUTE_BRIDGE_API_KEY = os.getenv("COMPUTE_BRIDGE_API_KEY", "")


@dataclass(frozen=True)
class ResourceState:
    running: bool
    paused: bool


@dataclass(frozen=True)
class ManagedResource:
    """A backend resource carrying the platform-managed label."""

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    created_at: int | None = None  # epoch seconds


class Backend(ABC):
    """Container lifecycle contract shared by all adapters."""

    @abstractmethod
    async def pull(self, image: str) -> None: ...

    @abstractmethod
    async def create(self, spec: CreationSpec) -> str: ...

    @abstractmethod
    async def start(self, resource_id: str) -> None: ...

    @abstractmethod
    async def stop(self, resource_id: str, grace_seconds: int = 10) -> None: ...

    @abstractmethod
    async def remove(self, resource_id: str, force: bool = True) -> None: ...

    @abstractmethod
    async def unpause(self, resource_id: str) -> None: ...

    @abstractmethod
    async def inspect(self, resource_id: str) -> ResourceState: ...

    @abstractmethod
    async def logs(self, resource_id: str, tail_lines: int = 100) -> str: ...

    @abstractmethod
    async def list_managed(self) -> list[ManagedResource]: ...

    async def close(self) -> None:
        return None


async def stop_and_remove(
    backend: Backend, resource_id: str, grace_seconds: int = 10
) -> None:
    """Drive a resource to "gone". Already stopped or already gone is success."""
    try:
        await backend.stop(resource_id, grace_seconds)
    except NotFoundError:
        log.info(f"Resource {resource_id[:12]} already gone before stop")
        return
    try:
        await backend.remove(resource_id, force=True)
    except NotFoundError:
        log.info(f"Resource {resource_id[:12]} already removed")


def build_backend() -> Backend:
    """Pick the adapter for this deployment. Called once at startup."""
    if COMPUTE_BRIDGE_URL:
        from .bridge_client import BridgeBackend

        log.info(f"Using compute bridge at {COMPUTE_BRIDGE_URL}")
        return BridgeBackend(COMPUTE_BRIDGE_URL, COMPUTE_BRIDGE_API_KEY)

    from .docker_backend import DockerBackend

    log.info(f"Using local Docker daemon at {DOCKER_SOCKET}")
    return DockerBackend.from_socket(DOCKER_SOCKET, network=DOCKER_NETWORK)


__all__ = [
    "Backend",
    "ManagedResource",
    "ResourceState",
    "build_backend",
    "stop_and_remove",
]
