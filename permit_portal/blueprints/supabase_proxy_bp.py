"""
Same-origin portal store proxy.

Endpoints:
    ANY /api/supabase/<path>  — forwarded to {portal store URL}/<path>?<query>

The browser never sees the anon key: it is attached here. Request headers
are copied except host/content-length; response headers are copied except
the hop-by-hop encoding ones, and status and body are relayed unchanged.
"""

import logging

import requests
from flask import Blueprint, Response, jsonify, request

from permit_portal.core.exceptions import StoreConfigurationError
from permit_portal.integrations.store_gateway import portal_store

logger = logging.getLogger(__name__)

supabase_proxy_bp = Blueprint("supabase_proxy", __name__, url_prefix="/api/supabase")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

_DROPPED_REQUEST_HEADERS = frozenset({"host", "content-length"})
_DROPPED_RESPONSE_HEADERS = frozenset({"transfer-encoding", "content-length", "content-encoding"})


@supabase_proxy_bp.route("/<path:path>", methods=PROXY_METHODS)
def proxy(path: str):
    headers = {
        name: value for name, value in request.headers.items()
        if name.lower() not in _DROPPED_REQUEST_HEADERS
    }
    try:
        upstream = portal_store.forward(
            request.method,
            path,
            query_string=request.query_string.decode("utf-8"),
            headers=headers,
            body=request.get_data(),
        )
    except StoreConfigurationError:
        return jsonify({"error": "Supabase credentials are not configured"}), 500
    except requests.RequestException as exc:
        logger.error("Supabase proxy request failed: %s %s: %s", request.method, path, exc)
        return jsonify({"error": "Failed to reach Supabase"}), 502

    response_headers = [
        (name, value) for name, value in upstream.headers.items()
        if name.lower() not in _DROPPED_RESPONSE_HEADERS
    ]
    return Response(upstream.content, status=upstream.status_code, headers=response_headers)
