"""Domain errors shared by the core services and the HTTP boundary.

Each error carries a stable `code` (the `error` field of ErrorResponse), the
HTTP status the boundary maps it to, and whether a client retry could help.
Expected adapter failures (storage unavailable, signing failure) are not
exceptions; they come back as typed results from the adapters.
"""

from __future__ import annotations


class AtelierError(Exception):
    code: str = "internal_error"
    status: int = 500
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class DesignNotFoundError(AtelierError):
    code = "design_not_found"
    status = 404

    def __init__(self, design_id: str) -> None:
        super().__init__(f"Design {design_id} not found")
        self.design_id = design_id


class ParentNotFoundError(AtelierError):
    code = "parent_not_found"
    status = 404

    def __init__(self, parent_id: str) -> None:
        super().__init__(f"Parent design {parent_id} not found")
        self.parent_id = parent_id


class OutputNotFoundError(AtelierError):
    code = "output_not_found"
    status = 404

    def __init__(self, output_id: str) -> None:
        super().__init__(f"Output {output_id} not found")
        self.output_id = output_id


class ForbiddenError(AtelierError):
    """Caller resolved the entity but does not own it."""

    code = "forbidden"
    status = 403


class CycleDetectedError(AtelierError):
    """parent_id links loop back on themselves (or exceed the depth cap)."""

    code = "cycle_detected"
    status = 500

    def __init__(self, design_id: str, depth: int) -> None:
        super().__init__(f"Cycle detected in design chain at {design_id} (depth {depth})")
        self.design_id = design_id
        self.depth = depth


class InvalidPayloadError(AtelierError):
    """A data URI could not be decoded into an image."""

    code = "invalid_payload"
    status = 422


class InvalidTransitionError(AtelierError):
    code = "invalid_transition"
    status = 409

    def __init__(self, design_id: str, current: str, target: str) -> None:
        super().__init__(f"Design {design_id} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class HasRegenerationsError(AtelierError):
    code = "has_regenerations"
    status = 409

    def __init__(self, design_id: str) -> None:
        super().__init__(f"Design {design_id} has regenerations and cannot be deleted")


class GenerationError(AtelierError):
    """The AI image model failed or returned no image."""

    code = "generation_failed"
    status = 502

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class UnauthenticatedError(AtelierError):
    """No caller identity was supplied by the auth layer."""

    code = "unauthenticated"
    status = 401
