"""
Shared pytest fixtures for the Permit Portal Sync Core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - store_env: credentials for all three stores in the environment
    - fake_http: FakeStoreSession wired into every store singleton
    - portal / permitflow / reviewworks: StoreGateway instances on fake_http
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlparse

import pytest
import requests

from permit_portal import create_app
from permit_portal.config import STORE_ENV_CHAINS
from permit_portal.integrations.store_gateway import STORES, StoreGateway
from permit_portal.models import db as _db

PORTAL_URL = "https://portal.example.test"
PERMITFLOW_URL = "https://permitflow.example.test"
REVIEWWORKS_URL = "https://reviewworks.example.test"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Store HTTP double ────────────────────────────────────────────────────


def make_response(body=None, status: int = 200, *, text: str | None = None, headers: dict | None = None):
    """Build a real ``requests.Response`` with a JSON (or raw text) body."""
    resp = requests.Response()
    resp.status_code = status
    if text is not None:
        resp._content = text.encode("utf-8")
    elif body is None:
        resp._content = b""
    else:
        resp._content = json.dumps(body).encode("utf-8")
    resp.encoding = "utf-8"
    resp.headers["Content-Type"] = "application/json"
    for name, value in (headers or {}).items():
        resp.headers[name] = value
    return resp


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: dict
    json: object = None
    data: bytes | None = None
    params: list = field(default_factory=list)

    @property
    def path(self) -> str:
        return urlparse(self.url).path

    @property
    def table(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def param(self, name: str) -> list[str]:
        values = [value for key, value in self.params if key == name]
        values.extend(value for key, value in parse_qsl(urlparse(self.url).query) if key == name)
        return values


@dataclass
class _Route:
    method: str
    path: str
    response: requests.Response | None
    error: Exception | None
    once: bool
    match: object = None


class FakeStoreSession:
    """``requests.Session`` double shared by store gateways in tests.

    Each call is recorded. Answers come from the first matching route
    (method + path suffix, optionally a ``match(request)`` predicate), else
    from the FIFO queue, else an empty 200. A route registered with
    ``error=`` raises it instead.
    """

    def __init__(self) -> None:
        self.calls: list[RecordedRequest] = []
        self._routes: list[_Route] = []
        self._queue: list[requests.Response] = []

    def route(self, method, path, body=None, status=200, *, text=None, error=None, once=False, match=None,
              headers=None):
        response = None if error else make_response(body, status, text=text, headers=headers)
        self._routes.append(_Route(method.upper(), path, response, error, once, match))
        return self

    def queue(self, body=None, status=200, *, text=None):
        self._queue.append(make_response(body, status, text=text))
        return self

    def request(self, method, url, headers=None, json=None, data=None, params=None, timeout=None):
        recorded = RecordedRequest(
            method=method.upper(), url=url, headers=dict(headers or {}),
            json=json, data=data, params=list(params or []),
        )
        self.calls.append(recorded)
        for route in self._routes:
            if route.method != recorded.method or not recorded.path.endswith(route.path):
                continue
            if route.match is not None and not route.match(recorded):
                continue
            if route.once:
                self._routes.remove(route)
            if route.error is not None:
                raise route.error
            return route.response
        if self._queue:
            return self._queue.pop(0)
        return make_response(None)

    def calls_to(self, method: str, table: str) -> list[RecordedRequest]:
        return [c for c in self.calls if c.method == method.upper() and c.table == table]


# ── Store fixtures ───────────────────────────────────────────────────────


@pytest.fixture()
def store_env(monkeypatch):
    """Configure the three stores; every fallback variable is cleared first."""
    for _label, url_chain, key_chain in STORE_ENV_CHAINS.values():
        for name in (*url_chain, *key_chain):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("PORTAL_STORE_PROXY_URL", raising=False)
    monkeypatch.setenv("VITE_SUPABASE_URL", PORTAL_URL)
    monkeypatch.setenv("VITE_SUPABASE_ANON_KEY", "portal-anon-key")
    monkeypatch.setenv("PERMITFLOW_SUPABASE_URL", PERMITFLOW_URL)
    monkeypatch.setenv("PERMITFLOW_SUPABASE_ANON_KEY", "permitflow-anon-key")
    monkeypatch.setenv("REVIEWWORKS_SUPABASE_URL", REVIEWWORKS_URL)
    monkeypatch.setenv("REVIEWWORKS_SUPABASE_ANON_KEY", "reviewworks-anon-key")
    return monkeypatch


@pytest.fixture()
def fake_http(store_env, monkeypatch):
    """A FakeStoreSession injected into the module-level store singletons."""
    fake = FakeStoreSession()
    for store in STORES.values():
        monkeypatch.setattr(store, "_session", fake)
    return fake


@pytest.fixture()
def portal(fake_http):
    return StoreGateway("portal", session=fake_http)


@pytest.fixture()
def permitflow(fake_http):
    return StoreGateway("permitflow", session=fake_http)


@pytest.fixture()
def reviewworks(fake_http):
    return StoreGateway("reviewworks", session=fake_http)
