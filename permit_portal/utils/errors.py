"""Standardised API error responses.

Usage
-----
    from permit_portal.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Project 12 was not found.")
    return api_error(E.VALIDATION_REQUIRED, "email and password are required")
    return error_from_exception(exc)
"""

from __future__ import annotations

from flask import jsonify

from permit_portal.core.exceptions import (
    CreationFailedError,
    ProjectPersistenceError,
    RecordNotFoundError,
    StoreConfigurationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every error code
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Backend store – HTTP 502 (or the store's own 4xx)
    UPSTREAM = "ERR_UPSTREAM"

    # Server – HTTP 500
    CONFIGURATION = "ERR_CONFIGURATION"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.UPSTREAM: 502,
    E.CONFIGURATION: 500,
    E.DATABASE: 500,
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
        Extra structured payload (backend detail, upstream status, etc.).

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


def error_from_exception(exc: ProjectPersistenceError):
    """Translate a sync-core error into an ``api_error`` response.

    Store 4xx statuses pass through; anything else from a store is a 502.
    """
    if isinstance(exc, StoreConfigurationError):
        return api_error(E.CONFIGURATION, exc.message)
    if isinstance(exc, RecordNotFoundError):
        return api_error(E.NOT_FOUND, exc.message)

    if isinstance(exc, CreationFailedError):
        return api_error(E.UPSTREAM, exc.message)

    details = {}
    if exc.status is not None:
        details["upstream_status"] = exc.status
    if exc.detail:
        details["detail"] = exc.detail

    if exc.status is None:
        # Raised by local validation before any store call
        return api_error(E.VALIDATION_INVALID, exc.message, details=details or None)
    if 400 <= exc.status < 500:
        return api_error(E.UPSTREAM, exc.message, status=exc.status, details=details)
    return api_error(E.UPSTREAM, exc.message, details=details)
