"""
Platform-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Pipeline errors are local to one record and one operation. None of them is
fatal to the process: the caller fixes its input (or reloads for a fresh
revision) and retries.

Usage:
    from estateflow.core.exceptions import NotFoundError, StagePrerequisiteError

    raise NotFoundError(resource="Pipeline", resource_id="9f1c...")
    raise StagePrerequisiteError("legal_clearance", blocking_stage_id="documentation_survey")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Pipeline", "Property").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Pipeline errors ──────────────────────────────────────────────────────────


class PipelineError(Exception):
    """Base class for stage pipeline failures.

    Subclasses expose ``details`` so blueprints can serialise them without
    knowing each type.
    """

    status_code = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class UnknownStageError(ValidationError):
    """Stage id does not belong to the record's direction. Caller bug, not retryable."""

    def __init__(self, stage_id: str, direction: str) -> None:
        self.stage_id = stage_id
        self.direction = direction
        super().__init__(
            f"Unknown stage '{stage_id}' for direction {direction}",
            details={"stage_id": stage_id, "direction": direction},
        )


class InvalidTransitionError(ValidationError):
    """Requested per-stage status edge is not in the state machine."""

    def __init__(self, stage_id: str, current: str, requested: str, reason: str | None = None) -> None:
        self.stage_id = stage_id
        self.current_status = current
        self.requested_status = requested
        msg = f"Invalid transition for stage '{stage_id}': {current} → {requested}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg, details={
            "stage_id": stage_id,
            "current_status": current,
            "requested_status": requested,
        })


class StagePrerequisiteError(PipelineError):
    """A lower-order stage must be completed first."""

    def __init__(self, stage_id: str, blocking_stage_id: str) -> None:
        self.stage_id = stage_id
        self.blocking_stage_id = blocking_stage_id
        super().__init__(
            f"Stage '{stage_id}' is blocked: stage '{blocking_stage_id}' is not completed",
            details={"stage_id": stage_id, "blocking_stage_id": blocking_stage_id},
        )


class DocumentsIncompleteError(PipelineError):
    """Stage cannot be completed until the listed document types are attached."""

    def __init__(self, stage_id: str, missing_document_types: list[str]) -> None:
        self.stage_id = stage_id
        self.missing_document_types = list(missing_document_types)
        super().__init__(
            f"Stage '{stage_id}' is missing required documents: "
            f"{', '.join(self.missing_document_types)}",
            details={"stage_id": stage_id, "missing_document_types": self.missing_document_types},
        )


class PipelineClosedError(PipelineError):
    """Record is cancelled, completed or archived and rejects the operation."""

    def __init__(self, pipeline_id: str, overall_status: str, action: str) -> None:
        self.pipeline_id = pipeline_id
        self.overall_status = overall_status
        self.action = action
        super().__init__(
            f"Cannot {action} pipeline {pipeline_id} (status={overall_status})",
            details={"pipeline_id": pipeline_id, "overall_status": overall_status},
        )


class ConcurrentModificationError(PipelineError):
    """Caller's revision is stale. Reload and retry (safe to retry once automatically)."""

    def __init__(self, pipeline_id: str, expected_revision: int, actual_revision: int | None = None) -> None:
        self.pipeline_id = pipeline_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        msg = f"Pipeline {pipeline_id} was modified concurrently (expected revision {expected_revision}"
        if actual_revision is not None:
            msg += f", found {actual_revision}"
        msg += ")"
        super().__init__(msg, details={
            "pipeline_id": pipeline_id,
            "expected_revision": expected_revision,
            "actual_revision": actual_revision,
        })


class PromotionFailedError(PipelineError):
    """Downstream promotion failed; the completing mutation was rolled back."""

    status_code = 502

    def __init__(self, pipeline_id: str, reason: str) -> None:
        self.pipeline_id = pipeline_id
        self.reason = reason
        super().__init__(
            f"Promotion of pipeline {pipeline_id} failed: {reason}",
            details={"pipeline_id": pipeline_id, "reason": reason},
        )
