"""
Error types for the Strata control plane.

Every failure that crosses a service boundary is one of these types, so
callers (and remote peers, via the RPC transport) can branch on ``code``:

- ValidationError: malformed RPC params or an invalid store batch
- AuthError: missing/insufficient scope or invalid token
- NotReadyError: config store initial load not finished
- ConflictError: optimistic-concurrency commit failure (retryable)
- NotFoundError: referenced entity absent
- ResourceLimitError: tenant-count cap exceeded
- ExternalDependencyError: license server unreachable or refused
- FatalPartialFailureError: a post-commit provisioning step failed

Invariants:
    - All errors inherit from ControlPlaneError
    - ``code`` is stable and part of the wire format
    - ``details`` is JSON-serializable
"""

from __future__ import annotations

from typing import Any


class ControlPlaneError(Exception):
    """Base exception for all control plane errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether the caller may retry the same request
    """

    code = "INTERNAL"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Wire representation used by the RPC transport."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(ControlPlaneError):
    """Params or documents failed validation.

    Raised when:
    - RPC params do not match the method's JSON schema
    - A store batch has an unknown id, schema violation or dangling reference
    - A name uniqueness rule would be broken
    """

    code = "VALIDATION"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("errors", errors or [])
        super().__init__(message, details=details)
        self.errors = errors or []


class AuthError(ControlPlaneError):
    """Authentication or authorization failed."""

    code = "AUTH"


class NotReadyError(ControlPlaneError):
    """The config store has not finished its initial load."""

    code = "NOT_READY"
    retryable = True


class ConflictError(ControlPlaneError):
    """A commit was attempted against a stale revision.

    Recompute the batch against the latest snapshot and resubmit.
    """

    code = "CONFLICT"
    retryable = True

    def __init__(
        self,
        message: str,
        expected_revision: int | None = None,
        actual_revision: int | None = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "expected_revision": expected_revision,
                "actual_revision": actual_revision,
            },
        )
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class NotFoundError(ControlPlaneError):
    """Resource not found."""

    code = "NOT_FOUND"

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ResourceLimitError(ControlPlaneError):
    """A configured capacity limit would be exceeded."""

    code = "RESOURCE_LIMIT"


class ExternalDependencyError(ControlPlaneError):
    """An external dependency (license server, peer) failed."""

    code = "EXTERNAL_DEPENDENCY"


class FatalPartialFailureError(ControlPlaneError):
    """A provisioning step failed after the tenant was already committed.

    The tenant's configuration is durable; nothing is rolled back. The
    details identify the orphaned System so an operator can finish or
    remove it.
    """

    code = "FATAL_PARTIAL_FAILURE"

    def __init__(
        self,
        message: str,
        system_id: str | None = None,
        system_name: str | None = None,
        failed_step: str | None = None,
        completed_steps: list[str] | None = None,
        cause: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "system_id": system_id,
                "system_name": system_name,
                "failed_step": failed_step,
                "completed_steps": completed_steps or [],
                "cause": cause,
            },
        )
        self.system_id = system_id
        self.system_name = system_name
        self.failed_step = failed_step
        self.completed_steps = completed_steps or []


_BY_CODE: dict[str, type[ControlPlaneError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        AuthError,
        NotReadyError,
        ConflictError,
        NotFoundError,
        ResourceLimitError,
        ExternalDependencyError,
        FatalPartialFailureError,
    )
}

HTTP_STATUS: dict[str, int] = {
    "VALIDATION": 400,
    "AUTH": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RESOURCE_LIMIT": 429,
    "INTERNAL": 500,
    "EXTERNAL_DEPENDENCY": 502,
    "FATAL_PARTIAL_FAILURE": 500,
    "NOT_READY": 503,
}


def error_from_dict(data: dict[str, Any]) -> ControlPlaneError:
    """Rebuild an error received from a remote peer.

    Unknown codes become a plain ControlPlaneError carrying that code.
    """
    code = data.get("code", "INTERNAL")
    message = data.get("message", "")
    details = data.get("details") or {}
    cls = _BY_CODE.get(code)
    if cls is None:
        return ControlPlaneError(message, code=code, details=details)
    err = cls.__new__(cls)
    ControlPlaneError.__init__(err, message, details=details)
    # keep attribute access working on rebuilt subclasses
    for key, value in details.items():
        if not hasattr(err, key):
            setattr(err, key, value)
    if cls is ValidationError:
        err.errors = details.get("errors", [])
    return err
