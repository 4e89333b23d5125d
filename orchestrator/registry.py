"""
Agent Registry
──────────────
Maps an agent slug to an immutable container template, and renders a
template into a concrete `CreationSpec` for the provisioning backend.

Rendering is a pure function per agent family (agent-zero, openclaw).
Several catalog slugs may share a family — they differ only in price,
image or limits.

The catalog is built once at startup (built-in templates, optionally
overridden by rows of the `agent_configs` table) and handed to the
provisioner. Nothing mutates it afterwards.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Mapping

from .naming import container_name, volume_name

log = logging.getLogger("orchestrator.registry")

# ── Configuration ──────────────────────────────────────────

AGENT_ZERO_IMAGE = os.getenv("AGENT_ZERO_IMAGE", "frdel/agent-zero:latest")
OPENCLAW_IMAGE = os.getenv("OPENCLAW_IMAGE", "openclaw/openclaw:latest")
CONTAINER_MAX_MEMORY = int(os.getenv("CONTAINER_MAX_MEMORY", str(4 * 1024**3)))
CONTAINER_MAX_CPU = int(os.getenv("CONTAINER_MAX_CPU", "2000000000"))  # 2 cores
CONTAINER_PID_LIMIT = int(os.getenv("CONTAINER_PID_LIMIT", "256"))
TRAEFIK_CERT_RESOLVER = os.getenv("TRAEFIK_CERT_RESOLVER", "letsencrypt")
TRAEFIK_ENTRYPOINT = os.getenv("TRAEFIK_ENTRYPOINT", "websecure")

# Labels the orphan sweep and the proxy rely on
MANAGED_LABEL = "agent-platform.managed"
USER_LABEL = "agent-platform.user-id"
SLUG_LABEL = "agent-platform.agent-slug"
CREATED_AT_LABEL = "agent-platform.created-at"


class AgentFamily(str, Enum):
    AGENT_ZERO = "agent-zero"
    OPENCLAW = "openclaw"


@dataclass(frozen=True)
class AgentTemplate:
    slug: str
    family: AgentFamily
    name: str
    image: str
    internal_port: int
    credits_per_hour: int
    memory_limit: int = CONTAINER_MAX_MEMORY  # bytes
    cpu_limit: int = CONTAINER_MAX_CPU  # nanocores
    pid_limit: int = CONTAINER_PID_LIMIT
    active: bool = True
    exposes_credential: bool = False


@dataclass(frozen=True)
class RenderContext:
    """Per-provision values substituted into a template."""

    user_id: str
    subdomain: str
    domain: str
    storage_key: str
    password: str
    created_at: int  # epoch seconds, written to the created-at label

    @property
    def hostname(self) -> str:
        return f"{self.subdomain}.{self.domain}"


@dataclass(frozen=True)
class CreationSpec:
    """Everything the backend needs to create one container."""

    image: str
    name: str
    env: Mapping[str, str]
    port: int
    volumes: Mapping[str, str]  # volume name -> mount path
    memory_limit: int
    cpu_limit: int
    pid_limit: int
    labels: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "image": self.image,
            "name": self.name,
            "env": dict(self.env),
            "port": self.port,
            "volumes": dict(self.volumes),
            "memory_limit": self.memory_limit,
            "cpu_limit": self.cpu_limit,
            "pid_limit": self.pid_limit,
            "labels": dict(self.labels),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> CreationSpec:
        return cls(
            image=data["image"],
            name=data["name"],
            env=dict(data.get("env") or {}),
            port=int(data["port"]),
            volumes=dict(data.get("volumes") or {}),
            memory_limit=int(data["memory_limit"]),
            cpu_limit=int(data["cpu_limit"]),
            pid_limit=int(data["pid_limit"]),
            labels=dict(data.get("labels") or {}),
        )


# ── Rendering ──────────────────────────────────────────────


def routing_labels(
    template: AgentTemplate, ctx: RenderContext, container: str
) -> dict[str, str]:
    """Traefik discovery labels plus the platform ownership markers."""
    return {
        "traefik.enable": "true",
        f"traefik.http.routers.{container}.rule": f"Host(`{ctx.hostname}`)",
        f"traefik.http.routers.{container}.entrypoints": TRAEFIK_ENTRYPOINT,
        f"traefik.http.routers.{container}.tls.certresolver": TRAEFIK_CERT_RESOLVER,
        f"traefik.http.services.{container}.loadbalancer.server.port": str(
            template.internal_port
        ),
        MANAGED_LABEL: "true",
        USER_LABEL: ctx.user_id,
        SLUG_LABEL: template.slug,
        CREATED_AT_LABEL: str(ctx.created_at),
    }


def _render_agent_zero(template: AgentTemplate, ctx: RenderContext) -> tuple[dict, dict]:
    env = {"SUBDOMAIN": ctx.subdomain, "DOMAIN": ctx.domain}
    volumes = {volume_name(ctx.storage_key): "/app/storage"}
    return env, volumes


def _render_openclaw(template: AgentTemplate, ctx: RenderContext) -> tuple[dict, dict]:
    env = {"PASSWORD": ctx.password}
    volumes = {volume_name(ctx.storage_key): "/app/data"}
    return env, volumes


_RENDERERS: dict[AgentFamily, Callable[[AgentTemplate, RenderContext], tuple[dict, dict]]] = {
    AgentFamily.AGENT_ZERO: _render_agent_zero,
    AgentFamily.OPENCLAW: _render_openclaw,
}


def render_creation_spec(template: AgentTemplate, ctx: RenderContext) -> CreationSpec:
    container = container_name(ctx.subdomain)
    env, volumes = _RENDERERS[template.family](template, ctx)
    return CreationSpec(
        image=template.image,
        name=container,
        env=env,
        port=template.internal_port,
        volumes=volumes,
        memory_limit=template.memory_limit,
        cpu_limit=template.cpu_limit,
        pid_limit=template.pid_limit,
        labels=routing_labels(template, ctx, container),
    )


# ── Built-in templates ─────────────────────────────────────


def builtin_templates() -> list[AgentTemplate]:
    agent_zero = AgentTemplate(
        slug="agent-zero",
        family=AgentFamily.AGENT_ZERO,
        name="Agent Zero",
        image=AGENT_ZERO_IMAGE,
        internal_port=80,
        credits_per_hour=10,
    )
    return [
        agent_zero,
        AgentTemplate(
            slug="openclaw",
            family=AgentFamily.OPENCLAW,
            name="OpenClaw",
            image=OPENCLAW_IMAGE,
            internal_port=8080,
            credits_per_hour=15,
            exposes_credential=True,
        ),
        replace(agent_zero, slug="research-assistant", name="Research Assistant"),
        replace(agent_zero, slug="code-assistant", name="Code Assistant"),
        replace(agent_zero, slug="productivity-agent", name="Productivity Agent"),
    ]


class AgentCatalog:
    """Read-only slug → template lookup."""

    def __init__(self, templates: Iterable[AgentTemplate]):
        self._templates = {t.slug: t for t in templates}

    def lookup(self, slug: str) -> AgentTemplate | None:
        return self._templates.get(slug)

    def is_active(self, slug: str) -> bool:
        template = self._templates.get(slug)
        return bool(template and template.active)

    def __len__(self) -> int:
        return len(self._templates)

    @classmethod
    def builtin(cls) -> AgentCatalog:
        return cls(builtin_templates())


def apply_overrides(
    templates: Iterable[AgentTemplate], rows: Iterable[Mapping]
) -> list[AgentTemplate]:
    """Overlay `agent_configs` rows onto known templates.

    Rows for slugs with no built-in template are ignored: there is no
    renderer to build a container from them.
    """
    by_slug = {t.slug: t for t in templates}
    for row in rows:
        slug = row["slug"]
        base = by_slug.get(slug)
        if base is None:
            log.warning(f"Ignoring agent_configs row for unknown agent {slug}")
            continue
        by_slug[slug] = replace(
            base,
            name=row.get("name") or base.name,
            image=row.get("image") or base.image,
            internal_port=row.get("internal_port") or base.internal_port,
            credits_per_hour=row.get("credits_per_hour") or base.credits_per_hour,
            memory_limit=row.get("memory_limit") or base.memory_limit,
            cpu_limit=row.get("cpu_limit") or base.cpu_limit,
            pid_limit=row.get("pid_limit") or base.pid_limit,
            active=bool(row.get("active", base.active)),
        )
    return list(by_slug.values())


async def load_catalog(pool) -> AgentCatalog:
    """Build the catalog at startup from built-ins plus `agent_configs`."""
    rows = await pool.fetch(
        "SELECT slug, name, image, internal_port, credits_per_hour, "
        "memory_limit, cpu_limit, pid_limit, active FROM agent_configs"
    )
    catalog = AgentCatalog(apply_overrides(builtin_templates(), rows))
    log.info(f"Agent catalog loaded ({len(catalog)} templates)")
    return catalog
