"""Engine error taxonomy.

Every error carries a stable ``code`` so the HTTP adapter and job runners
can report it without string matching. Raising any of these inside a
``UnitOfWork`` rolls back the whole multi-entity change.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    code = "ENGINE_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(EngineError):
    code = "NOT_FOUND"


class Conflict(EngineError):
    """Transient concurrent-write collision that survived the internal retry."""

    code = "CONFLICT"


class HumanActorRequired(EngineError):
    code = "HUMAN_ACTOR_REQUIRED"


# ── Shipment transitions ──────────────────────


class TransitionError(EngineError):
    code = "TRANSITION_ERROR"


class InvalidTransition(TransitionError):
    code = "INVALID_TRANSITION"


class PreconditionFailed(TransitionError):
    code = "PRECONDITION_FAILED"


class PrematureClose(TransitionError):
    code = "PREMATURE_CLOSE"


# ── Capacity ──────────────────────────────────


class CapacityError(EngineError):
    code = "CAPACITY_ERROR"


class DriverAtCapacity(CapacityError):
    code = "DRIVER_AT_CAPACITY"


class CapacityExceeded(CapacityError):
    code = "CAPACITY_EXCEEDED"


# ── Assignments ───────────────────────────────


class AssignmentError(EngineError):
    code = "ASSIGNMENT_ERROR"


class AssignmentAlreadyActive(AssignmentError):
    code = "ASSIGNMENT_ALREADY_ACTIVE"


class InvalidAssignmentState(AssignmentError):
    code = "INVALID_ASSIGNMENT_STATE"


# ── Payments ──────────────────────────────────


class PaymentError(EngineError):
    code = "PAYMENT_ERROR"


class IntentAlreadyOpen(PaymentError):
    code = "INTENT_ALREADY_OPEN"


class FallbackCycleDetected(PaymentError):
    code = "FALLBACK_CYCLE_DETECTED"


class IntentNotExpired(PaymentError):
    code = "INTENT_NOT_EXPIRED"


class InvalidIntentState(PaymentError):
    code = "INVALID_INTENT_STATE"


# ── Manifests ─────────────────────────────────


class ManifestError(EngineError):
    code = "MANIFEST_ERROR"


class AlreadyManifested(ManifestError):
    code = "ALREADY_MANIFESTED"


class ManifestStateError(ManifestError):
    code = "MANIFEST_STATE_ERROR"


# ── Returns ───────────────────────────────────


class ReturnError(EngineError):
    code = "RETURN_ERROR"


class HoldNotElapsed(ReturnError):
    code = "HOLD_NOT_ELAPSED"


class HoldAlreadyDecided(ReturnError):
    code = "HOLD_ALREADY_DECIDED"


class ReturnStateError(ReturnError):
    code = "RETURN_STATE_ERROR"


# ── Admin tasks / collaborators ───────────────


class AdminTaskStateError(EngineError):
    code = "ADMIN_TASK_STATE_ERROR"


class CollaboratorUnavailable(EngineError):
    """A collaborator call made before the transaction failed or timed out."""

    code = "COLLABORATOR_UNAVAILABLE"
