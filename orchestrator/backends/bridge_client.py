"""
Compute bridge adapter — the Backend contract over HTTP.

Used when the orchestrator runs on a host without access to the daemon
socket. The bridge (`orchestrator.bridge`) authenticates with the
`X-Bridge-Api-Key` header and answers 404 for unknown resources and 409
for refused creations; everything else non-2xx means the backend is
unavailable.
"""

from __future__ import annotations

import logging

import httpx

from ..errors import BackendUnavailableError, CreateError, NotFoundError
from ..registry import CreationSpec
from . import Backend, ManagedResource, ResourceState

log = logging.getLogger("orchestrator.backends.bridge")


class BridgeBackend(Backend):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            # No read timeout: pulls and stops can legitimately take minutes.
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(None, connect=10.0),
            )
        return self._client

    async def _request(
        self, method: str, path: str, resource_id: str = "", **kwargs
    ) -> httpx.Response:
        try:
            resp = await self._http().request(
                method,
                path,
                headers={"X-Bridge-Api-Key": self._api_key},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Compute bridge unreachable: {e}") from e

        if resp.status_code < 400:
            return resp

        detail = _error_detail(resp)
        if resp.status_code == 404:
            raise NotFoundError(resource_id, detail)
        if resp.status_code in (409, 422):
            raise CreateError(f"Compute bridge refused {path}: {detail}")
        raise BackendUnavailableError(
            f"Compute bridge {method} {path} returned {resp.status_code}: {detail}"
        )

    # ── Contract ───────────────────────────────────────────

    async def pull(self, image: str) -> None:
        await self._request("POST", "/images/pull", json={"image": image})

    async def create(self, spec: CreationSpec) -> str:
        resp = await self._request("POST", "/containers", json=spec.to_dict())
        container_id = _json_body(resp).get("id")
        if not isinstance(container_id, str) or not container_id:
            raise BackendUnavailableError(
                f"Compute bridge created {spec.name} but returned no container id"
            )
        log.info(f"Bridge created container {spec.name} ({container_id[:12]})")
        return container_id

    async def start(self, resource_id: str) -> None:
        await self._request(
            "POST", f"/containers/{resource_id}/start", resource_id=resource_id
        )

    async def stop(self, resource_id: str, grace_seconds: int = 10) -> None:
        await self._request(
            "POST",
            f"/containers/{resource_id}/stop",
            resource_id=resource_id,
            params={"grace": grace_seconds},
        )

    async def remove(self, resource_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{resource_id}",
            resource_id=resource_id,
            params={"force": "true" if force else "false"},
        )

    async def unpause(self, resource_id: str) -> None:
        await self._request(
            "POST", f"/containers/{resource_id}/unpause", resource_id=resource_id
        )

    async def inspect(self, resource_id: str) -> ResourceState:
        resp = await self._request(
            "GET", f"/containers/{resource_id}/inspect", resource_id=resource_id
        )
        data = _json_body(resp)
        return ResourceState(
            running=bool(data.get("running")), paused=bool(data.get("paused"))
        )

    async def logs(self, resource_id: str, tail_lines: int = 100) -> str:
        resp = await self._request(
            "GET",
            f"/containers/{resource_id}/logs",
            resource_id=resource_id,
            params={"tail": tail_lines},
        )
        return _json_body(resp).get("logs", "")

    async def list_managed(self) -> list[ManagedResource]:
        resp = await self._request("GET", "/containers")
        try:
            return [
                ManagedResource(
                    id=item["id"],
                    name=item.get("name", ""),
                    labels=item.get("labels") or {},
                    created_at=item.get("created_at"),
                )
                for item in _json_body(resp).get("containers", [])
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise BackendUnavailableError(f"Malformed container list from bridge: {e!r}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


def _json_body(resp: httpx.Response) -> dict:
    """Decoded 2xx body; anything but a JSON object means the bridge misbehaved."""
    try:
        body = resp.json()
    except ValueError as e:
        raise BackendUnavailableError(f"Compute bridge sent a non-JSON reply: {e}") from e
    if not isinstance(body, dict):
        raise BackendUnavailableError(f"Compute bridge sent an unexpected reply: {body!r}")
    return body
