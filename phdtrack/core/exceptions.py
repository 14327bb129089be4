"""
Workflow-engine exception hierarchy.

Services raise these types and never return error tuples. Blueprints and
the app-level handlers in ``phdtrack.utils.errors`` map each type to a single
HTTP status, so every endpoint reports the same failure the same way.

Business-rule failures (validation family, conflicts, authorization) leave
the store untouched. ``StoreUnavailableError`` is the one infrastructure
category: it signals a failed read/commit and is safe to retry.

Usage:
    from phdtrack.core.exceptions import NotFoundError, PrerequisitesNotMet

    raise NotFoundError(resource="FormSubmission", resource_id=42)
    raise PrerequisitesNotMet("PHDEE03", missing=["PHDEE02-C"])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist or is not visible to the actor.

    Used for both missing rows and cross-student access attempts, so a
    student probing another student's submission ids learns nothing.

    Args:
        resource: Human-readable entity name (e.g. "FormSubmission", "Student").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
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


class PrerequisitesNotMet(ValidationError):
    """The student's latest submission of one or more prerequisite forms is not approved."""

    def __init__(self, form_code: str, missing: list[str]) -> None:
        self.form_code = form_code
        self.missing = list(missing)
        super().__init__(
            f"Prerequisites not met for {form_code}: {', '.join(self.missing)}",
            details={"missing": self.missing},
        )


class SubmissionLimitExceeded(ValidationError):
    """The per-student submission quota for a form type is exhausted."""

    def __init__(self, form_code: str, limit: int) -> None:
        self.form_code = form_code
        self.limit = limit
        super().__init__(
            f"Maximum {limit} submission(s) allowed for form {form_code}",
            details={"limit": limit},
        )


class AdvancementBlocked(ValidationError):
    """The current stage still has outstanding requirements."""

    def __init__(self, stage: str, missing_forms: list[str] | None = None,
                 reason: str | None = None) -> None:
        self.stage = stage
        self.missing_forms = list(missing_forms or [])
        msg = f"Cannot advance from stage {stage!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"stage": stage, "missing_forms": self.missing_forms})


class InvalidStage(ValidationError):
    """The stage is unknown, terminal, or does not match the student's stored stage."""

    def __init__(self, stage: str, reason: str = "not a valid stage") -> None:
        self.stage = stage
        super().__init__(f"Stage {stage!r} is {reason}", details={"stage": stage})


class ConflictError(Exception):
    """Raised when an operation collides with the current persisted state.

    Covers duplicate unique values, decisions on already-terminal
    submissions, and advancement attempts that lost a race.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose current value caused the conflict.
        value: The conflicting value.
        message: Optional override for the default duplicate-style message.
    """

    def __init__(self, resource: str, field: str, value: str | None = None,
                 message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class AuthorizationError(Exception):
    """The actor lacks the role or ownership the operation requires. Maps to HTTP 403."""


class StoreUnavailableError(Exception):
    """A store read or commit failed. Retryable; maps to HTTP 503.

    Args:
        operation: Name of the service operation that was running.
        context: Identifiers of the entities involved, for logs.
    """

    retryable = True

    def __init__(self, operation: str, context: dict | None = None) -> None:
        self.operation = operation
        self.context = context or {}
        super().__init__(f"Store unavailable during {operation}")


class ConfigurationError(Exception):
    """Static workflow configuration is inconsistent. Raised at startup."""
