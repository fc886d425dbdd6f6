"""Unit tests for permit_portal.integrations (query builder + store gateway).

Test strategy
-------------
The gateway is constructed with a FakeStoreSession so every outbound
request is recorded and answered in-process. Credentials come from the
``store_env`` fixture; tests that need an unconfigured store clear the
relevant variables with monkeypatch.

Coverage
--------
    StoreQuery:   select/eq/in/ilike quoting/or/order/limit parameters
    Credentials:  fallback chains, trimming, configuration errors
    Reads:        headers, empty and non-JSON bodies, error detail extraction
    Writes:       upsert header contract, CreationFailed, batch, patch, delete
    Proxy mode:   key stripped when PORTAL_STORE_PROXY_URL is set
    Storage:      upload key, public URL synthesis
    Auth:         password grant success and failure
"""

import pytest
import requests

from permit_portal.config import resolve_store_credentials
from permit_portal.core.exceptions import (
    CreationFailedError,
    ProjectPersistenceError,
    StoreConfigurationError,
)
from permit_portal.integrations.postgrest import StoreQuery, quote_filter_value
from permit_portal.integrations.store_gateway import StoreGateway, loggable_headers

PORTAL_URL = "https://portal.example.test"


# ═════════════════════════════════════════════════════════════════════════════
# StoreQuery
# ═════════════════════════════════════════════════════════════════════════════

class TestStoreQuery:
    def test_filters_keep_insertion_order(self):
        query = (
            StoreQuery()
            .select("id", "title")
            .eq("process_model", 1)
            .in_("parent_process_id", [3, 4])
            .order("last_updated", descending=True, nulls_last=True)
            .order("id")
            .limit(5)
        )
        assert query.params == [
            ("select", "id,title"),
            ("process_model", "eq.1"),
            ("parent_process_id", "in.(3,4)"),
            ("order", "last_updated.desc.nullslast"),
            ("order", "id.asc"),
            ("limit", "5"),
        ]

    def test_ilike_value_is_quoted_and_quotes_doubled(self):
        query = StoreQuery().ilike("title", 'Bridge "North"')
        assert query.get("title") == ['ilike."Bridge ""North"""']

    def test_ilike_any_builds_single_or_clause(self):
        query = StoreQuery().ilike_any("title", ["Alpha", "Beta"])
        assert query.get("or") == ['(title.ilike."Alpha",title.ilike."Beta")']

    def test_boolean_values_are_lowercase(self):
        assert StoreQuery().eq("result_bool", True).get("result_bool") == ["eq.true"]

    def test_empty_query_is_falsy(self):
        assert not StoreQuery()
        assert StoreQuery().limit(1)

    def test_quote_filter_value(self):
        assert quote_filter_value('a"b') == '"a""b"'


# ═════════════════════════════════════════════════════════════════════════════
# Credentials
# ═════════════════════════════════════════════════════════════════════════════

class TestCredentials:
    def test_first_non_blank_value_wins(self, store_env):
        store_env.setenv("VITE_SUPABASE_URL", "   ")
        store_env.setenv("NEXT_PUBLIC_SUPABASE_URL", " https://fallback.example.test/ ")
        creds = resolve_store_credentials("portal")
        assert creds.base_url == "https://fallback.example.test"
        assert creds.is_configured

    def test_missing_key_raises_before_any_request(self, store_env, fake_http):
        store_env.delenv("PERMITFLOW_SUPABASE_ANON_KEY")
        gateway = StoreGateway("permitflow", session=fake_http)
        with pytest.raises(StoreConfigurationError) as excinfo:
            gateway.fetch_list("project")
        assert "PermitFlow credentials are not configured" in str(excinfo.value)
        assert "PERMITFLOW_SUPABASE_ANON_KEY" in str(excinfo.value)
        assert fake_http.calls == []

    def test_unknown_system_raises_key_error(self):
        with pytest.raises(KeyError):
            resolve_store_credentials("nowhere")

    def test_loggable_headers_drop_secrets(self):
        headers = {"apikey": "k", "Authorization": "Bearer k", "Prefer": "count=exact"}
        assert loggable_headers(headers) == {"Prefer": "count=exact"}


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

class TestFetchList:
    def test_get_sends_key_and_query(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [{"id": 1}])
        rows = portal.fetch_list("project", StoreQuery().eq("id", 1), "project")

        assert rows == [{"id": 1}]
        call = fake_http.calls[0]
        assert call.url == f"{PORTAL_URL}/rest/v1/project"
        assert call.headers["apikey"] == "portal-anon-key"
        assert call.headers["Authorization"] == "Bearer portal-anon-key"
        assert call.param("id") == ["eq.1"]

    def test_access_token_replaces_bearer(self, permitflow, fake_http):
        permitflow.fetch_list("project", access_token="user-token")
        assert fake_http.calls[0].headers["Authorization"] == "Bearer user-token"
        assert fake_http.calls[0].headers["apikey"] == "permitflow-anon-key"

    def test_empty_body_is_no_data(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", text="")
        assert portal.fetch_list("project") == []

    def test_non_json_body_is_no_data(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", text="<html>oops</html>")
        assert portal.fetch_list("project") == []

    def test_non_2xx_carries_status_and_message(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", {"message": "permission denied"}, status=401)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            portal.fetch_list("project", description="projects")
        err = excinfo.value
        assert err.status == 401
        assert err.detail == "permission denied"
        assert err.message == "Failed to load projects (401): permission denied"

    def test_non_2xx_without_body(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", status=503)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            portal.fetch_list("project", error_context="Supabase request failed")
        assert excinfo.value.message == "Supabase request failed (503)."

    def test_json_error_without_message_is_reserialised(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", {"code": "42P01"}, status=404)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            portal.fetch_list("project")
        assert excinfo.value.detail == '{"code": "42P01"}'

    def test_network_error_propagates_unmodified(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", error=requests.ConnectionError("down"))
        with pytest.raises(requests.ConnectionError):
            portal.fetch_list("project")


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════

class TestWrites:
    def test_upsert_sends_merge_duplicates(self, portal, fake_http):
        fake_http.route("POST", "/rest/v1/project", [{"id": 9, "title": "A"}])
        row = portal.create("project", {"id": 9, "title": "A"}, upsert=True,
                            query=StoreQuery().on_conflict("id"))

        assert row == {"id": 9, "title": "A"}
        call = fake_http.calls[0]
        assert call.headers["Prefer"] == "resolution=merge-duplicates,return=representation"
        assert call.param("on_conflict") == ["id"]

    def test_repeated_upsert_uses_same_key_and_header(self, portal, fake_http):
        fake_http.route("POST", "/rest/v1/project", [{"id": 9}])
        portal.create("project", {"id": 9, "title": "A"}, upsert=True)
        portal.create("project", {"id": 9, "title": "A"}, upsert=True)

        first, second = fake_http.calls_to("POST", "project")
        assert first.json == second.json
        assert first.headers["Prefer"] == second.headers["Prefer"]
        assert "merge-duplicates" in second.headers["Prefer"]

    def test_plain_create_asks_for_representation(self, portal, fake_http):
        fake_http.route("POST", "/rest/v1/case_event", {"id": 3})
        assert portal.create("case_event", {"name": "x"}) == {"id": 3}
        assert fake_http.calls[0].headers["Prefer"] == "return=representation"

    def test_empty_create_response_is_creation_failed(self, permitflow, fake_http):
        fake_http.route("POST", "/rest/v1/project", [])
        with pytest.raises(CreationFailedError) as excinfo:
            permitflow.create("project", {"title": "A"})
        assert str(excinfo.value) == "PermitFlow project creation returned empty response."

    def test_batch_failure_message(self, reviewworks, fake_http):
        fake_http.route("POST", "/rest/v1/case_event", {"message": "bad row"}, status=400)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            reviewworks.create_batch("case_event", [{"name": "a"}, {"name": "b"}])
        assert excinfo.value.message == "ReviewWorks case_event batch creation failed (400): bad row"
        assert fake_http.calls[0].json == [{"name": "a"}, {"name": "b"}]

    def test_patch_minimal_returns_nothing(self, portal, fake_http):
        result = portal.patch("project", StoreQuery().eq("id", 4), {"title": "B"}, error_context="x")
        assert result == []
        call = fake_http.calls[0]
        assert call.method == "PATCH"
        assert call.headers["Prefer"] == "return=minimal"
        assert call.param("id") == ["eq.4"]

    def test_delete_counts_exact(self, portal, fake_http):
        portal.delete("gis_data", StoreQuery().eq("parent_project_id", 4), description="GIS data")
        call = fake_http.calls[0]
        assert call.method == "DELETE"
        assert call.headers["Prefer"] == "count=exact"

    def test_delete_failure_default_context(self, portal, fake_http):
        fake_http.route("DELETE", "/rest/v1/gis_data", status=500)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            portal.delete("gis_data", StoreQuery().eq("id", 1), description="GIS data")
        assert excinfo.value.message == "Failed to remove GIS data (500)."


# ═════════════════════════════════════════════════════════════════════════════
# Proxy mode / storage / auth
# ═════════════════════════════════════════════════════════════════════════════

class TestProxyMode:
    def test_portal_calls_route_through_proxy_without_key(self, store_env, fake_http):
        store_env.setenv("PORTAL_STORE_PROXY_URL", "https://app.example.test/api/supabase/")
        gateway = StoreGateway("portal", session=fake_http)
        gateway.fetch_list("project")

        call = fake_http.calls[0]
        assert call.url == "https://app.example.test/api/supabase/rest/v1/project"
        assert "apikey" not in call.headers
        assert "Authorization" not in call.headers

    def test_partner_ignores_portal_proxy(self, store_env, fake_http):
        store_env.setenv("PORTAL_STORE_PROXY_URL", "https://app.example.test/api/supabase")
        StoreGateway("permitflow", session=fake_http).fetch_list("project")
        assert fake_http.calls[0].url.startswith("https://permitflow.example.test/")
        assert fake_http.calls[0].headers["apikey"] == "permitflow-anon-key"


class TestStorage:
    def test_upload_returns_key_from_response(self, portal, fake_http):
        fake_http.route("POST", "report.pdf", {"Key": "permit-documents/project-1/report.pdf"})
        key = portal.upload_object("permit-documents", "project-1/report.pdf", b"%PDF",
                                   content_type="application/pdf", error_context="Failed to upload report")

        assert key == "permit-documents/project-1/report.pdf"
        call = fake_http.calls[0]
        assert call.url == f"{PORTAL_URL}/storage/v1/object/permit-documents/project-1%2Freport.pdf"
        assert call.headers["x-upsert"] == "true"
        assert call.data == b"%PDF"

    def test_upload_without_key_falls_back_to_path(self, portal, fake_http):
        key = portal.upload_object("permit-documents", "a/b.txt", b"x", content_type=None, error_context="x")
        assert key == "a/b.txt"

    def test_public_url_strips_bucket_prefix(self, portal):
        url = portal.public_url("permit-documents", "permit-documents/project-1/my file.pdf")
        assert url == f"{PORTAL_URL}/storage/v1/object/public/permit-documents/project-1/my%20file.pdf"


class TestAuthentication:
    def test_password_grant(self, permitflow, fake_http):
        fake_http.route("POST", "/auth/v1/token", {
            "access_token": "tok", "user": {"id": "user-1"}, "expires_in": 3600, "refresh_token": "r",
        })
        result = permitflow.authenticate_password("a@example.test", "pw")

        assert result == {"access_token": "tok", "user_id": "user-1", "expires_in": 3600, "refresh_token": "r"}
        call = fake_http.calls[0]
        assert call.param("grant_type") == ["password"]
        assert call.json == {"email": "a@example.test", "password": "pw"}

    def test_rejected_credentials(self, reviewworks, fake_http):
        fake_http.route("POST", "/auth/v1/token", {"message": "Invalid login credentials"}, status=400)
        with pytest.raises(ProjectPersistenceError) as excinfo:
            reviewworks.authenticate_password("a@example.test", "bad")
        assert excinfo.value.message == "ReviewWorks authentication failed (400): Invalid login credentials"

    def test_missing_user_id(self, permitflow, fake_http):
        fake_http.route("POST", "/auth/v1/token", {"access_token": "tok"})
        with pytest.raises(ProjectPersistenceError, match="missing required fields"):
            permitflow.authenticate_password("a@example.test", "pw")
