"""
Error taxonomy for the runtime orchestrator.

Backend-specific failures (Docker SDK exceptions, bridge HTTP status codes)
are translated into these classes inside `orchestrator.backends`, so the
provisioner, lifecycle manager and reconciler never branch on backend shapes.

  UnknownAgentError         bad or inactive template (user error)
  InsufficientCreditsError  balance too low (user-correctable)
  CreateError               backend refused to create the resource (retryable)
  NotFoundError             backend does not know the resource id (retryable)
  BackendUnavailableError   backend unreachable or failed (retryable)
  StateConflictError        runtime is not in the state the operation needs
  RuntimeNotFoundError      no runtime row with that id
  LedgerIntegrityError      a ledger invariant is broken (fatal)
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error the orchestrator raises on purpose."""

    retryable = False


class UnknownAgentError(OrchestratorError):
    def __init__(self, slug: str):
        super().__init__(f"Agent not available: {slug}")
        self.slug = slug


class InsufficientCreditsError(OrchestratorError):
    def __init__(self, needed: int, available: int):
        super().__init__(f"Insufficient credits. Need {needed}, have {available}")
        self.needed = needed
        self.available = available


class BackendError(OrchestratorError):
    """Infrastructure failure at the provisioning backend."""

    retryable = True


class CreateError(BackendError):
    pass


class NotFoundError(BackendError):
    def __init__(self, resource_id: str, detail: str = ""):
        message = f"Backend resource not found: {resource_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.resource_id = resource_id


class BackendUnavailableError(BackendError):
    pass


class StateConflictError(OrchestratorError):
    def __init__(self, runtime_id: str, status: str, expected: str = "running"):
        super().__init__(f"Runtime {runtime_id} is {status}, expected {expected}")
        self.runtime_id = runtime_id
        self.status = status


class RuntimeNotFoundError(OrchestratorError):
    def __init__(self, runtime_id: str):
        super().__init__(f"Runtime not found: {runtime_id}")
        self.runtime_id = runtime_id


class LedgerIntegrityError(OrchestratorError):
    """A ledger write violated an invariant. Never retried, never swallowed."""
