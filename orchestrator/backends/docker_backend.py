"""
Docker SDK adapter.

The SDK is synchronous, so every call runs in a worker thread via
`asyncio.to_thread`. The client is built once by `build_backend()` and
owned by this adapter for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import docker
import requests
from docker.errors import (
    APIError,
    DockerException,
    ImageNotFound,
    InvalidArgument,
    NotFound,
)

from ..errors import BackendUnavailableError, CreateError, NotFoundError
from ..registry import CREATED_AT_LABEL, MANAGED_LABEL, CreationSpec
from . import Backend, ManagedResource, ResourceState

log = logging.getLogger("orchestrator.backends.docker")


def _parse_epoch(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DockerBackend(Backend):
    def __init__(self, client: docker.DockerClient, network: str = "traefik-net"):
        self._client = client
        self._network = network

    @classmethod
    def from_socket(cls, socket_path: str, network: str = "traefik-net") -> DockerBackend:
        return cls(docker.DockerClient(base_url=f"unix://{socket_path}"), network=network)

    @property
    def api(self):
        return self._client.api

    async def _call(self, fn: Callable, *args, resource_id: str = "", **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except NotFound as e:
            raise NotFoundError(resource_id, str(e)) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise BackendUnavailableError(f"Docker call failed: {e}") from e

    # ── Contract ───────────────────────────────────────────

    async def pull(self, image: str) -> None:
        log.info(f"Pulling image: {image}")
        try:
            await asyncio.to_thread(self._client.images.pull, image)
        except ImageNotFound as e:
            raise CreateError(f"Invalid image reference {image}: {e}") from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise BackendUnavailableError(f"Image pull failed for {image}: {e}") from e
        log.info(f"Image pull complete: {image}")

    async def create(self, spec: CreationSpec) -> str:
        try:
            host_config = self.api.create_host_config(
                binds={
                    volume: {"bind": path, "mode": "rw"}
                    for volume, path in spec.volumes.items()
                },
                mem_limit=spec.memory_limit,
                nano_cpus=spec.cpu_limit,
                pids_limit=spec.pid_limit,
                cap_drop=["ALL"],
                cap_add=["NET_BIND_SERVICE"],
                security_opt=["no-new-privileges"],
                privileged=False,
                network_mode=self._network,
            )
            result = await asyncio.to_thread(
                self.api.create_container,
                spec.image,
                name=spec.name,
                environment=dict(spec.env),
                ports=[spec.port],
                labels=dict(spec.labels),
                host_config=host_config,
                detach=True,
            )
        except InvalidArgument as e:
            raise CreateError(f"Invalid creation spec for {spec.name}: {e}") from e
        except NotFound as e:
            # Unknown image (ImageNotFound) or unknown network
            raise CreateError(f"Cannot create {spec.name}: {e}") from e
        except APIError as e:
            if e.status_code == 409:
                raise CreateError(f"Container name {spec.name} already in use") from e
            if e.status_code == 400:
                raise CreateError(f"Invalid creation spec for {spec.name}: {e}") from e
            raise BackendUnavailableError(f"Docker create failed: {e}") from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise BackendUnavailableError(f"Docker create failed: {e}") from e

        container_id = result["Id"]
        log.info(f"Created container {spec.name} ({container_id[:12]})")
        return container_id

    async def start(self, resource_id: str) -> None:
        await self._call(self.api.start, resource_id, resource_id=resource_id)

    async def stop(self, resource_id: str, grace_seconds: int = 10) -> None:
        await self._call(
            self.api.stop, resource_id, timeout=grace_seconds, resource_id=resource_id
        )

    async def remove(self, resource_id: str, force: bool = True) -> None:
        await self._call(
            self.api.remove_container, resource_id, force=force, resource_id=resource_id
        )

    async def unpause(self, resource_id: str) -> None:
        await self._call(self.api.unpause, resource_id, resource_id=resource_id)

    async def inspect(self, resource_id: str) -> ResourceState:
        attrs = await self._call(
            self.api.inspect_container, resource_id, resource_id=resource_id
        )
        state = attrs.get("State", {})
        return ResourceState(
            running=bool(state.get("Running")), paused=bool(state.get("Paused"))
        )

    async def logs(self, resource_id: str, tail_lines: int = 100) -> str:
        raw = await self._call(
            self.api.logs,
            resource_id,
            stdout=True,
            stderr=True,
            tail=tail_lines,
            timestamps=True,
            resource_id=resource_id,
        )
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    async def list_managed(self) -> list[ManagedResource]:
        rows = await self._call(
            self.api.containers,
            all=True,
            filters={"label": f"{MANAGED_LABEL}=true"},
        )
        resources = []
        for row in rows:
            labels = row.get("Labels") or {}
            names = row.get("Names") or []
            created_at = _parse_epoch(labels.get(CREATED_AT_LABEL))
            if created_at is None:
                created_at = _parse_epoch(row.get("Created"))
            resources.append(
                ManagedResource(
                    id=row["Id"],
                    name=names[0].lstrip("/") if names else "",
                    labels=dict(labels),
                    created_at=created_at,
                )
            )
        return resources

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
