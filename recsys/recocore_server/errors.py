"""
Error types for RecoCore.

This module defines the exception taxonomy shared by all components:
- RecoCoreError: Base exception
- TransientStoreError: Store unavailable or slow, retry with backoff
- StoreTimeoutError: A store call exceeded its deadline
- ConflictError: Optimistic version check kept failing
- ClaimInProgressError: Another worker holds a live ledger claim on the event
- EventValidationError: Poison event payload, never retried
- PermanentDesyncError: Derived view diverged after exhausted retries
- ConfigurationError: Invalid startup configuration

Expected outcomes (lease busy/lost, duplicate events, cache misses) are
result values, not exceptions. Only the conditions above are raised.

Invariants:
    - All errors inherit from RecoCoreError
    - Errors carry a stable code for programmatic handling
    - Transient errors, version conflicts and claims in progress are the only
      ones subject to retry
"""

from __future__ import annotations

from typing import Any


class RecoCoreError(Exception):
    """Base exception for all RecoCore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RECOCORE_ERROR"
        self.details = details or {}


class TransientStoreError(RecoCoreError):
    """A store call failed in a way that may succeed on retry.

    Raised when:
    - The backing database is locked or busy
    - A network store is unreachable
    - A call exceeded its deadline (see StoreTimeoutError)
    """

    def __init__(self, message: str, store: str | None = None) -> None:
        super().__init__(message, code="TRANSIENT_STORE_ERROR", details={"store": store})
        self.store = store


class StoreTimeoutError(TransientStoreError):
    """A store call exceeded its deadline."""

    def __init__(self, message: str, store: str | None = None, timeout_s: float | None = None) -> None:
        super().__init__(message, store=store)
        self.code = "STORE_TIMEOUT"
        self.details["timeout_s"] = timeout_s
        self.timeout_s = timeout_s


class ConflictError(RecoCoreError):
    """Conditional write kept losing to concurrent writers.

    Raised by the graph store after the conflict retry budget is spent.
    """

    def __init__(self, entity_id: str, attempts: int) -> None:
        super().__init__(
            f"Version conflict on entity {entity_id} after {attempts} attempts",
            code="VERSION_CONFLICT",
            details={"entity_id": entity_id, "attempts": attempts},
        )
        self.entity_id = entity_id
        self.attempts = attempts


class ClaimInProgressError(RecoCoreError):
    """Another worker is applying the event right now.

    Raised by the ingestion consumer so the event is retried and, if the
    claim is still live, its offset is left uncommitted.
    """

    def __init__(self, event_id: str) -> None:
        super().__init__(
            f"Event {event_id} is claimed by another worker",
            code="CLAIM_IN_PROGRESS",
            details={"event_id": event_id},
        )
        self.event_id = event_id


class EventValidationError(RecoCoreError):
    """Event payload failed validation.

    Poison events are dead-lettered and their offsets committed.
    """

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"event_id": event_id, "errors": errors or []},
        )
        self.event_id = event_id
        self.errors = errors or []


class PermanentDesyncError(RecoCoreError):
    """A derived view could not be brought in line with the graph.

    Requires a reconciliation sweep. Surfaced to operators, never healed
    silently.
    """

    def __init__(self, entity_id: str, version: int, attempts: int, cause: str | None = None) -> None:
        super().__init__(
            f"Permanent desync for {entity_id}@{version} after {attempts} attempts",
            code="PERMANENT_DESYNC",
            details={"entity_id": entity_id, "version": version, "attempts": attempts, "cause": cause},
        )
        self.entity_id = entity_id
        self.version = version
        self.attempts = attempts


class ConfigurationError(RecoCoreError, ValueError):
    """Startup configuration is invalid."""

    def __init__(self, message: str, setting: str | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"setting": setting})
        self.setting = setting
