"""
Permit Portal Sync Core
Blueprint registry and shared view helpers.
"""

import functools
import logging

import requests
from flask import request

from permit_portal.core.exceptions import ProjectPersistenceError
from permit_portal.utils.errors import E, api_error, error_from_exception

logger = logging.getLogger(__name__)


def translate_store_errors(view):
    """Map sync-core and network failures to JSON error responses."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        try:
            return view(*args, **kwargs)
        except ProjectPersistenceError as exc:
            logger.warning("%s failed: %s", request.path, exc.message)
            return error_from_exception(exc)
        except requests.RequestException as exc:
            logger.error("%s could not reach the store: %s", request.path, exc)
            return api_error(E.UPSTREAM, "Backend store unreachable", details={"detail": str(exc)})

    return wrapper


def json_body() -> dict:
    """Request JSON object, or {} for a missing or non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def json_object(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}
