"""Standardised API error responses.

Usage
-----
    from phdtrack.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Submission not found")
    return api_error(E.VALIDATION_REQUIRED, "form_code is required")
    return api_error(E.PREREQUISITES, "Prerequisites not met", details={"missing": [...]})

``register_error_handlers(app)`` maps the ``phdtrack.core.exceptions``
hierarchy to these envelopes once, for every blueprint.
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from phdtrack.core.exceptions import (
    AdvancementBlocked,
    AuthorizationError,
    ConflictError,
    InvalidStage,
    NotFoundError,
    PrerequisitesNotMet,
    StoreUnavailableError,
    SubmissionLimitExceeded,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • WF_   prefix for workflow-rule failures
    """

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500 / 503
    STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"

    # Workflow rules – HTTP 422
    PREREQUISITES = "WF_PREREQUISITES_NOT_MET"
    SUBMISSION_LIMIT = "WF_SUBMISSION_LIMIT"
    ADVANCEMENT_BLOCKED = "WF_ADVANCEMENT_BLOCKED"
    INVALID_STAGE = "WF_INVALID_STAGE"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.STORE_UNAVAILABLE: 503,
    E.INTERNAL: 500,
    E.PREREQUISITES: 422,
    E.SUBMISSION_LIMIT: 422,
    E.ADVANCEMENT_BLOCKED: 422,
    E.INVALID_STAGE: 422,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing prerequisite codes, limits, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# Most specific first; Flask resolves handlers by MRO, this only fixes the code
_VALIDATION_CODES = (
    (PrerequisitesNotMet, E.PREREQUISITES),
    (SubmissionLimitExceeded, E.SUBMISSION_LIMIT),
    (AdvancementBlocked, E.ADVANCEMENT_BLOCKED),
    (InvalidStage, E.INVALID_STAGE),
)


def register_error_handlers(app):
    """Register JSON handlers for the workflow exception hierarchy and HTTP errors."""

    @app.errorhandler(ValidationError)
    def _validation(error: ValidationError):
        code = next((c for cls, c in _VALIDATION_CODES if isinstance(error, cls)), E.VALIDATION_RULE)
        return api_error(code, str(error), details=error.details)

    @app.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ConflictError)
    def _conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @app.errorhandler(AuthorizationError)
    def _forbidden(error: AuthorizationError):
        logger.info("Authorization denied on %s: %s", request.path, error)
        return api_error(E.FORBIDDEN, str(error) or "Forbidden")

    @app.errorhandler(StoreUnavailableError)
    def _store(error: StoreUnavailableError):
        body, status = api_error(E.STORE_UNAVAILABLE, "Storage temporarily unavailable, retry later",
                                 details={"retryable": True, "operation": error.operation})
        body.headers["Retry-After"] = "5"
        return body, status

    @app.errorhandler(404)
    def _http_not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.FORBIDDEN, "Too many requests", status=429,
                         details={"retry_after": str(e.description)})

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
