"""Standardised API error responses.

Usage
-----
    from approval_engine.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow instance not found")
    return api_error(E.ALREADY_DECIDED, str(exc), details=exc.to_details())

``register_error_handlers(bp)`` wires every engine exception to the matching
code on a blueprint so view functions can simply let service errors raise.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from approval_engine.core.exceptions import (
    AlreadyDecidedError,
    ConflictError,
    ForbiddenError,
    ImmutableRecordError,
    InvalidRangeError,
    InvalidTemplateError,
    NotFoundError,
    SelfDelegationError,
    TemplateInactiveError,
    UnauthorizedActionError,
    ValidationError,
    WorkflowTerminalError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INVALID_TEMPLATE = "ERR_INVALID_TEMPLATE"
    INVALID_RANGE = "ERR_INVALID_RANGE"
    SELF_DELEGATION = "ERR_SELF_DELEGATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / state – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    TEMPLATE_INACTIVE = "ERR_TEMPLATE_INACTIVE"
    WORKFLOW_TERMINAL = "ERR_WORKFLOW_TERMINAL"
    ALREADY_DECIDED = "ERR_ALREADY_DECIDED"
    IMMUTABLE_RECORD = "ERR_IMMUTABLE_RECORD"

    # Permissions – HTTP 403
    UNAUTHORIZED_ACTION = "ERR_UNAUTHORIZED_ACTION"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.INVALID_TEMPLATE: 422,
    E.INVALID_RANGE: 422,
    E.SELF_DELEGATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.TEMPLATE_INACTIVE: 409,
    E.WORKFLOW_TERMINAL: 409,
    E.ALREADY_DECIDED: 409,
    E.IMMUTABLE_RECORD: 409,
    E.UNAUTHORIZED_ACTION: 403,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
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
        Extra structured payload (current stage, winning decision, ...).

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


# Most specific first: handlers are looked up along the exception MRO, but
# the table order documents which code wins for subclasses.
_EXCEPTION_CODES = (
    (InvalidTemplateError, E.INVALID_TEMPLATE),
    (InvalidRangeError, E.INVALID_RANGE),
    (SelfDelegationError, E.SELF_DELEGATION),
    (ValidationError, E.VALIDATION_INVALID),
    (NotFoundError, E.NOT_FOUND),
    (TemplateInactiveError, E.TEMPLATE_INACTIVE),
    (WorkflowTerminalError, E.WORKFLOW_TERMINAL),
    (AlreadyDecidedError, E.ALREADY_DECIDED),
    (ConflictError, E.CONFLICT_DUPLICATE),
    (UnauthorizedActionError, E.UNAUTHORIZED_ACTION),
    (ForbiddenError, E.FORBIDDEN),
    (ImmutableRecordError, E.IMMUTABLE_RECORD),
)


def register_error_handlers(bp) -> None:
    """Map engine exceptions to ``api_error`` responses on blueprint *bp*."""

    def _make_handler(code):
        def _handle(error):
            to_details = getattr(error, "to_details", None)
            details = to_details() if callable(to_details) else None
            return api_error(code, str(error), details=details)
        return _handle

    for exc_cls, code in _EXCEPTION_CODES:
        bp.register_error_handler(exc_cls, _make_handler(code))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
