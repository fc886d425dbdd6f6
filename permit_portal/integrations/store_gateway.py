"""
Backend store gateway: reads, writes, storage uploads and password auth.

All outbound HTTP calls to the portal store and the two partner stores
(PermitFlow, ReviewWorks) go through this class. Direct `requests` calls in
services or blueprints are FORBIDDEN.

  - Credentials are resolved from the environment on every call, so a
    missing URL/key raises ``StoreConfigurationError`` before any I/O.
  - Timeout: 30 s by default (``STORE_REQUEST_TIMEOUT``); no retry, every
    operation is attempt-once.
  - Non-2xx responses raise ``ProjectPersistenceError`` carrying the status
    and the backend's ``message`` detail.
  - Empty or non-JSON response bodies are "no data", never an error.

Portal traffic can be routed through the same-origin proxy
(``PORTAL_STORE_PROXY_URL``); in that mode ``apikey``/``Authorization`` are
stripped and the proxy attaches them server-side. Partner stores are always
called directly with the key attached.

Testability: pass a fake `session` to StoreGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import quote

import requests
from flask import current_app, has_app_context

from permit_portal.config import StoreCredentials, resolve_store_credentials
from permit_portal.core.exceptions import (
    CreationFailedError,
    ProjectPersistenceError,
    StoreConfigurationError,
)
from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.utils.helpers import extract_error_detail, safe_json_parse

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30

_REST_PREFIX = "/rest/v1"
_STORAGE_PREFIX = "/storage/v1/object"
_AUTH_TOKEN_PATH = "/auth/v1/token"

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "!~*'()"

_UPSERT_PREFER = "resolution=merge-duplicates,return=representation"
_RETURN_REPRESENTATION = "return=representation"
_RETURN_MINIMAL = "return=minimal"

_SECRET_HEADERS = frozenset({"apikey", "authorization"})


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def loggable_headers(headers: dict) -> dict:
    """Copy of *headers* without the api key or bearer token."""
    return {k: v for k, v in headers.items() if k.lower() not in _SECRET_HEADERS}


class StoreGateway:
    """Gateway to one backend store.

    Instantiate once per store at module level (module-level singleton
    pattern); ``base_url``/``api_key`` overrides are for tests and scripts.

    Usage:
        from permit_portal.integrations.store_gateway import portal_store
        rows = portal_store.fetch_list("project", StoreQuery().eq("id", 7), "project")
    """

    def __init__(
        self,
        system: str,
        *,
        session: requests.Session | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        proxy_url: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.system = system
        self._session: requests.Session | None = session
        self._base_url = base_url
        self._api_key = api_key
        self._proxy_url = proxy_url
        self._timeout = timeout

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @session.setter
    def session(self, value: requests.Session | None) -> None:
        self._session = value

    # ── Credentials ──────────────────────────────────────────────────────────

    @property
    def credentials(self) -> StoreCredentials:
        resolved = resolve_store_credentials(self.system)
        if self._base_url is None and self._api_key is None:
            return resolved
        return StoreCredentials(
            system=resolved.system,
            label=resolved.label,
            base_url=(self._base_url or resolved.base_url or "").rstrip("/") or None,
            api_key=self._api_key or resolved.api_key,
            url_var=resolved.url_var,
            key_var=resolved.key_var,
        )

    @property
    def label(self) -> str:
        return self.credentials.label

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_configured

    def require_credentials(self) -> StoreCredentials:
        """Return configured credentials or raise StoreConfigurationError."""
        creds = self.credentials
        if not creds.is_configured:
            raise StoreConfigurationError(creds.label, creds.url_var, creds.key_var)
        return creds

    def _proxy_base(self) -> str | None:
        if self._proxy_url is not None:
            return self._proxy_url.rstrip("/") or None
        if self.system != "portal":
            return None
        proxy = os.getenv("PORTAL_STORE_PROXY_URL", "").strip()
        return proxy.rstrip("/") or None

    def _resolve_timeout(self) -> int:
        if self._timeout is not None:
            return self._timeout
        if has_app_context():
            return int(current_app.config.get("STORE_REQUEST_TIMEOUT", _DEFAULT_TIMEOUT))
        return _DEFAULT_TIMEOUT

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _do_request(
        self,
        method: str,
        url: str,
        headers: dict,
        *,
        json_body: dict | list | None = None,
        data: bytes | None = None,
        params: list[tuple[str, str]] | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> requests.Response:
        """Execute a single HTTP request, no retry logic here."""
        kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if json_body is not None:
            kwargs["json"] = json_body
        if data is not None:
            kwargs["data"] = data
        if params:
            kwargs["params"] = params
        return self.session.request(method, url, **kwargs)

    def execute(
        self,
        method: str,
        path: str,
        *,
        description: str,
        error_context: str,
        query: StoreQuery | None = None,
        json_body: dict | list | None = None,
        data: bytes | None = None,
        headers: dict | None = None,
        access_token: str | None = None,
    ) -> requests.Response:
        """Send one request to ``{base}{path}`` and fail on non-2xx.

        Args:
            method:        HTTP verb.
            path:          Absolute store path (``/rest/v1/project``).
            description:   What is being read/written, for logs.
            error_context: Message prefix for ``ProjectPersistenceError``.
            query:         Filter / order / select parameters.
            json_body:     JSON body (object or list for batch inserts).
            data:          Raw body for storage uploads.
            headers:       Extra headers (``Prefer``, ``content-type``...).
            access_token:  Bearer token of an authenticated partner user;
                           the anon key is used when absent.

        Returns:
            The successful ``requests.Response``.

        Raises:
            StoreConfigurationError: URL or key not configured.
            ProjectPersistenceError: Non-2xx response.
            requests.RequestException: Network failure (propagated as-is).
        """
        creds = self.require_credentials()

        request_headers = dict(headers or {})
        proxy_base = self._proxy_base()
        if proxy_base:
            url = f"{proxy_base}{path}"
            for name in list(request_headers):
                if name.lower() in _SECRET_HEADERS:
                    request_headers.pop(name)
        else:
            url = f"{creds.base_url}{path}"
            request_headers.setdefault("apikey", creds.api_key)
            request_headers.setdefault("Authorization", f"Bearer {access_token or creds.api_key}")

        log_extra = {"system": self.system, "store_method": method}
        logger.debug(
            "Store request: %s %s %s headers=%s",
            description, method, url, loggable_headers(request_headers),
            extra=log_extra,
        )
        resp = self._do_request(
            method, url, request_headers,
            json_body=json_body, data=data,
            params=query.params if query else None,
            timeout=self._resolve_timeout(),
        )
        logger.debug(
            "Store response: %s status=%s", description, resp.status_code,
            extra={**log_extra, "store_status": resp.status_code},
        )

        if not resp.ok:
            raise ProjectPersistenceError.from_failure(
                error_context, resp.status_code, extract_error_detail(resp.text),
            )
        return resp

    @staticmethod
    def parse_body(resp: requests.Response) -> Any:
        """Parsed JSON body, or None when the body is empty or not JSON."""
        if not resp.text:
            return None
        return safe_json_parse(resp.text)

    # ── Reads ────────────────────────────────────────────────────────────────

    def fetch_list(
        self,
        table: str,
        query: StoreQuery | None = None,
        description: str | None = None,
        *,
        error_context: str | None = None,
        access_token: str | None = None,
    ) -> list[dict]:
        """GET rows from *table*; empty or non-list bodies yield []."""
        description = description or table
        resp = self.execute(
            "GET", f"{_REST_PREFIX}/{table}",
            description=description,
            error_context=error_context or f"Failed to load {description}",
            query=query,
            headers={"Accept": "application/json"},
            access_token=access_token,
        )
        payload = self.parse_body(resp)
        return payload if isinstance(payload, list) else []

    # ── Writes ───────────────────────────────────────────────────────────────

    def create(
        self,
        table: str,
        payload: dict,
        *,
        upsert: bool = False,
        query: StoreQuery | None = None,
        access_token: str | None = None,
        error_context: str | None = None,
        empty_message: str | None = None,
    ) -> dict:
        """Insert one row and return it.

        With ``upsert=True`` the merge-duplicates resolution header is sent,
        so repeating the call with the same primary key updates the row.

        Raises:
            CreationFailedError: The store answered 2xx with no row.
        """
        label = self.label
        resp = self.execute(
            "POST", f"{_REST_PREFIX}/{table}",
            description=f"create {table}",
            error_context=error_context or f"{label} {table} creation failed",
            query=query,
            json_body=payload,
            headers={"Prefer": _UPSERT_PREFER if upsert else _RETURN_REPRESENTATION},
            access_token=access_token,
        )
        parsed = self.parse_body(resp)
        if isinstance(parsed, list) and parsed:
            return parsed[0]
        if isinstance(parsed, dict):
            return parsed
        raise CreationFailedError(
            empty_message or f"{label} {table} creation returned empty response."
        )

    def create_batch(
        self,
        table: str,
        payloads: list[dict],
        *,
        access_token: str | None = None,
        error_context: str | None = None,
    ) -> list[dict]:
        """Insert several rows in one request; returns the created rows (or [])."""
        resp = self.execute(
            "POST", f"{_REST_PREFIX}/{table}",
            description=f"create {table} batch",
            error_context=error_context or f"{self.label} {table} batch creation failed",
            json_body=payloads,
            headers={"Prefer": _RETURN_REPRESENTATION},
            access_token=access_token,
        )
        parsed = self.parse_body(resp)
        return parsed if isinstance(parsed, list) else []

    def insert(
        self,
        table: str,
        payload: dict | list,
        *,
        error_context: str,
        access_token: str | None = None,
    ) -> None:
        """Fire-and-check insert with ``return=minimal``."""
        self.execute(
            "POST", f"{_REST_PREFIX}/{table}",
            description=f"insert {table}",
            error_context=error_context,
            json_body=payload,
            headers={"Prefer": _RETURN_MINIMAL},
            access_token=access_token,
        )

    def patch(
        self,
        table: str,
        query: StoreQuery,
        payload: dict,
        *,
        error_context: str,
        returning: bool = False,
        access_token: str | None = None,
    ) -> list[dict]:
        """PATCH rows matching *query*; returns updated rows when *returning*."""
        resp = self.execute(
            "PATCH", f"{_REST_PREFIX}/{table}",
            description=f"update {table}",
            error_context=error_context,
            query=query,
            json_body=payload,
            headers={"Prefer": _RETURN_REPRESENTATION if returning else _RETURN_MINIMAL},
            access_token=access_token,
        )
        if not returning:
            return []
        parsed = self.parse_body(resp)
        return parsed if isinstance(parsed, list) else []

    def delete(
        self,
        table: str,
        query: StoreQuery,
        *,
        description: str,
        error_context: str | None = None,
        count_exact: bool = True,
    ) -> None:
        self.execute(
            "DELETE", f"{_REST_PREFIX}/{table}",
            description=f"delete {description}",
            error_context=error_context or f"Failed to remove {description}",
            query=query,
            headers={"Prefer": "count=exact" if count_exact else _RETURN_MINIMAL},
        )

    # ── Storage ──────────────────────────────────────────────────────────────

    def upload_object(
        self,
        bucket: str,
        object_path: str,
        content: bytes,
        *,
        content_type: str | None,
        error_context: str,
    ) -> str:
        """Upload raw bytes with ``x-upsert``; returns the stored object key."""
        path = f"{_STORAGE_PREFIX}/{encode_uri_component(bucket)}/{encode_uri_component(object_path)}"
        resp = self.execute(
            "POST", path,
            description=f"upload {bucket}/{object_path}",
            error_context=error_context,
            data=content,
            headers={
                "content-type": content_type or "application/octet-stream",
                "x-upsert": "true",
            },
        )
        parsed = self.parse_body(resp)
        if isinstance(parsed, dict):
            key = parsed.get("Key")
            if isinstance(key, str) and key:
                return key
        return object_path

    def public_url(self, bucket: str, object_path: str) -> str:
        """Public retrieval URL; a leading ``{bucket}/`` in the path is dropped."""
        base = (self.credentials.base_url or "").rstrip("/")
        bucket_url = f"{base}{_STORAGE_PREFIX}/public/{encode_uri_component(bucket)}"
        normalized = object_path.strip().lstrip("/")
        if normalized.startswith(f"{bucket}/"):
            normalized = normalized[len(bucket) + 1:]
        segments = [encode_uri_component(s) for s in normalized.split("/") if s]
        if not segments:
            return bucket_url
        return f"{bucket_url}/{'/'.join(segments)}"

    # ── Same-origin proxy ────────────────────────────────────────────────────

    def forward(
        self,
        method: str,
        path: str,
        *,
        query_string: str = "",
        headers: dict | None = None,
        body: bytes | None = None,
    ) -> requests.Response:
        """Relay a browser request to the store with the anon key attached.

        The status is not checked; the caller relays the response as is.
        """
        creds = self.require_credentials()
        url = f"{creds.base_url}/{path.lstrip('/')}"
        if query_string:
            url = f"{url}?{query_string}"
        request_headers = {
            name: value for name, value in (headers or {}).items()
            if name.lower() not in _SECRET_HEADERS
        }
        request_headers["apikey"] = creds.api_key
        request_headers["Authorization"] = f"Bearer {creds.api_key}"
        logger.debug("Store proxy: %s %s", method, url, extra={"system": self.system, "store_method": method})
        return self._do_request(
            method, url, request_headers,
            data=body if method.upper() not in ("GET", "HEAD") else None,
            timeout=self._resolve_timeout(),
        )

    # ── Password auth (partner stores) ───────────────────────────────────────

    def authenticate_password(self, email: str, password: str) -> dict:
        """Exchange email/password for an access token.

        Returns:
            ``{"access_token", "user_id", "expires_in", "refresh_token"}``.

        Raises:
            ProjectPersistenceError: Rejected credentials or malformed response.
        """
        creds = self.require_credentials()
        url = f"{creds.base_url}{_AUTH_TOKEN_PATH}"
        headers = {"apikey": creds.api_key, "content-type": "application/json"}
        logger.debug("Store auth request: %s", url, extra={"system": self.system, "store_method": "POST"})
        resp = self._do_request(
            "POST", url, headers,
            json_body={"email": email, "password": password},
            params=[("grant_type", "password")],
            timeout=self._resolve_timeout(),
        )
        if not resp.ok:
            raise ProjectPersistenceError.from_failure(
                f"{creds.label} authentication failed",
                resp.status_code,
                extract_error_detail(resp.text),
            )

        payload = self.parse_body(resp)
        if not isinstance(payload, dict):
            raise ProjectPersistenceError(f"{creds.label} authentication response was empty.")

        access_token = payload.get("access_token")
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        user_id = user.get("id")
        if not isinstance(access_token, str) or not access_token or not isinstance(user_id, str) or not user_id:
            raise ProjectPersistenceError(
                f"{creds.label} authentication response was missing required fields."
            )

        expires_in = payload.get("expires_in")
        refresh_token = payload.get("refresh_token")
        return {
            "access_token": access_token,
            "user_id": user_id,
            "expires_in": expires_in if isinstance(expires_in, (int, float)) else None,
            "refresh_token": refresh_token if isinstance(refresh_token, str) else None,
        }


# ── Module-level singletons ────────────────────────────────────────────────
portal_store = StoreGateway("portal")
permitflow_store = StoreGateway("permitflow")
reviewworks_store = StoreGateway("reviewworks")

STORES: dict[str, StoreGateway] = {
    "portal": portal_store,
    "permitflow": permitflow_store,
    "reviewworks": reviewworks_store,
}


def get_store(system: str) -> StoreGateway:
    """Return the singleton gateway for *system*.

    Raises:
        KeyError: Unknown system name.
    """
    return STORES[system]
