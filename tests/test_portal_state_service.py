"""Unit tests for permit_portal.services.portal_state_service.

Test strategy
-------------
The loader, hierarchy and delete cascade run against FakeStoreSession
routes. Document lookups share the ``document`` table, so routes are told
apart by the ``document_type`` filter.

Coverage
--------
    1. parsers: contact, other bag, checklist items
    2. payload element resolution (binding / embedded id / title)
    3. loader: project + payloads + events -> form state and progress
    4. loader: missing project, missing process, document failure tolerated
    5. hierarchy grouping, ordering and checklist choice
    6. delete cascade order
"""

import json
import logging

import pytest

from permit_portal.core.exceptions import ProjectPersistenceError, RecordNotFoundError
from permit_portal.services.portal_state_service import (
    delete_project_and_related_data,
    fetch_project_hierarchy,
    load_project_portal_state,
    parse_checklist_items,
    parse_contact,
    parse_project_other,
    resolve_payload_element_id,
)


def _is_report(request):
    return request.param("document_type") == ["eq.project-report"]


def _is_supporting(request):
    return request.param("document_type") == ["eq.supporting-document"]


# ═════════════════════════════════════════════════════════════════════════════
# Parsers
# ═════════════════════════════════════════════════════════════════════════════

class TestParsers:
    def test_contact_keeps_non_blank_fields(self):
        assert parse_contact({"name": "Ann", "email": " ", "phone": 5}) == {"name": "Ann"}
        assert parse_contact({"name": ""}) is None
        assert parse_contact("Ann") is None

    def test_other_plain_text_is_notes(self):
        assert parse_project_other("Call the ranger") == {"notes": "Call the ranger"}

    def test_other_json_string(self):
        other = parse_project_other('{"notes": "N", "geospatial": {"messages": ["m", 3]}}')
        assert other == {"notes": "N", "geospatial": {"messages": ["m"]}}

    def test_other_empty(self):
        assert parse_project_other({}) is None
        assert parse_project_other("   ") is None

    def test_checklist_items(self):
        items = parse_checklist_items([
            {"label": " Sec 404 ", "completed": 1, "source": "seed", "notes": "n",
             "link": {"href": "https://x.test", "label": "Guide"}},
            {"label": "", "completed": True},
            {"label": "Sec 10", "source": "robot", "link": {"href": "https://y.test"}},
            "x",
        ])
        assert items == [
            {"label": "Sec 404", "completed": True, "source": "seed", "notes": "n",
             "link": {"href": "https://x.test", "label": "Guide"}},
            {"label": "Sec 10", "completed": False},
        ]


class TestResolvePayloadElementId:
    def test_binding_wins(self):
        assert resolve_payload_element_id({"process_decision_element": 3}, {"id": 5}, {}) == 3

    def test_embedded_numeric_id(self):
        assert resolve_payload_element_id({}, {"id": "6"}, {}) == 6

    def test_title_fallback(self):
        evaluation = {"id": "Provide resource-by-resource notes"}
        assert resolve_payload_element_id({"process_decision_element": None}, evaluation, {}) == 7

    def test_catalog_title_fallback(self):
        evaluation = {"title": "Custom permits title"}
        assert resolve_payload_element_id({}, evaluation, {4: "Custom permits title"}) == 4

    def test_unknown(self):
        assert resolve_payload_element_id({"process_decision_element": 99}, {"id": "?"}, {}) is None


# ═════════════════════════════════════════════════════════════════════════════
# Loader
# ═════════════════════════════════════════════════════════════════════════════

PROJECT_ROW = {
    "id": 12,
    "title": "Bridge",
    "location_lat": 38.5,
    "location_object": {"type": "Point", "coordinates": [1, 2]},
    "sponsor_contact": {"name": "Ann", "email": ""},
    "other": {
        "notes": "Old notes",
        "geospatial": {"lastRunAt": "2024-03-01T00:00:00Z", "nepassist": {"status": "bogus", "summary": [1]}},
    },
    "last_updated": "2024-03-01T00:00:00Z",
}

PAYLOAD_ROWS = [
    {
        "process_decision_element": 4,
        "evaluation_data": {
            "permits": [{"label": "Sec 404", "completed": True, "source": "manual"}],
            "notes": "Permit notes",
        },
        "last_updated": "2024-03-02T00:00:00Z",
    },
    {
        "process_decision_element": None,
        "evaluation_data": {"id": "Enter CE references and rationale", "ce_candidates": ["A1", " ", "B2"]},
    },
    {"process_decision_element": 3, "evaluation_data": '{"ipac_summary": {"count": 2}}'},
    {"process_decision_element": 99, "evaluation_data": {"x": 1}},
]

EVENT_ROWS = [
    {"id": 3, "type": "Pre-screening initiated", "last_updated": "2024-03-02T01:00:00Z"},
    {"id": 2, "type": "Project initiated", "last_updated": "2024-03-01T00:00:00Z"},
    {"id": 4, "type": "Pre-screening complete", "last_updated": "2024-03-03T00:00:00Z"},
]


class TestLoadProjectPortalState:
    @pytest.fixture()
    def wired(self, fake_http):
        fake_http.route("GET", "/rest/v1/project", [PROJECT_ROW])
        fake_http.route("GET", "/rest/v1/gis_data", [])
        fake_http.route("GET", "/rest/v1/process_instance", [{"id": 55, "last_updated": "2024-03-02T00:00:00Z"}])
        fake_http.route("GET", "/rest/v1/process_decision_payload", PAYLOAD_ROWS)
        fake_http.route("GET", "/rest/v1/decision_element", [])
        fake_http.route("GET", "/rest/v1/case_event", EVENT_ROWS)
        fake_http.route("GET", "/rest/v1/document", [], match=_is_report)
        fake_http.route("GET", "/rest/v1/document", [{"id": 8, "title": "Plan", "url": "p.pdf"}],
                        match=_is_supporting)
        return fake_http

    def test_form_state_rebuilt(self, portal, wired):
        state = load_project_portal_state("12", store=portal)

        form = state["formData"]
        assert form["id"] == "12"
        assert form["title"] == "Bridge"
        assert form["location_lat"] == 38.5
        assert json.loads(form["location_object"]) == {"type": "Point", "coordinates": [1, 2]}
        assert form["sponsor_contact"] == {"name": "Ann"}
        assert form["other"] == "Permit notes"
        assert form["nepa_categorical_exclusion_code"] == "A1\nB2"

        assert state["permittingChecklist"] == [{"label": "Sec 404", "completed": True, "source": "manual"}]
        geo = state["geospatialResults"]
        assert geo["lastRunAt"] == "2024-03-01T00:00:00Z"
        assert geo["nepassist"] == {"status": "idle", "summary": [1]}
        assert geo["ipac"] == {"status": "success", "summary": {"count": 2}}
        assert geo["messages"] == []

    def test_progress_and_timestamps(self, portal, wired):
        state = load_project_portal_state(12, store=portal)

        assert state["preScreeningProcessId"] == 55
        assert state["lastUpdated"] == "2024-03-03T00:00:00Z"
        assert state["portalProgress"] == {
            "projectSnapshot": {"initiatedAt": "2024-03-01T00:00:00Z"},
            "preScreening": {
                "hasDecisionPayloads": True,
                "initiatedAt": "2024-03-02T01:00:00Z",
                "completedAt": "2024-03-03T00:00:00Z",
                "lastActivityAt": "2024-03-03T00:00:00Z",
            },
        }
        assert state["projectReport"] is None
        assert [d["id"] for d in state["supportingDocuments"]] == [8]

    def test_document_failure_is_tolerated(self, portal, fake_http, caplog):
        fake_http.route("GET", "/rest/v1/document", {"message": "down"}, status=503, match=_is_supporting)
        fake_http.route("GET", "/rest/v1/project", [PROJECT_ROW])
        fake_http.route("GET", "/rest/v1/process_instance", [{"id": 55}])

        with caplog.at_level(logging.WARNING, logger="permit_portal.services.portal_state_service"):
            state = load_project_portal_state(12, store=portal)

        assert state["supportingDocuments"] == []
        assert any("supporting documents" in message for message in caplog.messages)

    def test_case_event_failure_is_tolerated(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [PROJECT_ROW])
        fake_http.route("GET", "/rest/v1/process_instance", [{"id": 55}])
        fake_http.route("GET", "/rest/v1/case_event", {"message": "boom"}, status=500)

        state = load_project_portal_state(12, store=portal)
        assert state["portalProgress"]["preScreening"]["initiatedAt"] is None

    def test_without_process(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [PROJECT_ROW])
        fake_http.route("GET", "/rest/v1/process_instance", [])

        state = load_project_portal_state(12, store=portal)

        assert state["preScreeningProcessId"] is None
        assert state["portalProgress"]["preScreening"]["hasDecisionPayloads"] is False
        assert {c.table for c in fake_http.calls} == {"project", "gis_data", "process_instance"}

    def test_missing_project(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [])
        with pytest.raises(RecordNotFoundError, match="Project 12 was not found"):
            load_project_portal_state(12, store=portal)

    def test_non_numeric_id(self, portal, fake_http):
        with pytest.raises(ProjectPersistenceError, match="must be numeric"):
            load_project_portal_state("draft", store=portal)
        assert fake_http.calls == []


# ═════════════════════════════════════════════════════════════════════════════
# Hierarchy
# ═════════════════════════════════════════════════════════════════════════════

class TestProjectHierarchy:
    def test_grouping_and_order(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [
            {"id": 1, "title": "A", "last_updated": "2024-01-01T00:00:00Z"},
            {"id": 2, "title": "B", "last_updated": "2024-02-01T00:00:00Z", "location_object": {"type": "Point"}},
        ])
        fake_http.route("GET", "/rest/v1/process_instance", [
            {"id": 10, "parent_project_id": 2, "title": "B Pre-Screening", "description": "B Pre-Screening",
             "last_updated": "2024-02-01T00:00:00Z"},
            {"id": 11, "parent_project_id": 2, "title": None, "description": "Other",
             "last_updated": "2024-02-02T00:00:00Z"},
        ])
        fake_http.route("GET", "/rest/v1/process_decision_payload", [
            {"process": 11, "evaluation_data": {"permits": [{"label": "Other permit"}]}},
            {"process": 10, "evaluation_data": {"permits": [{"label": "Pre permit", "completed": True}]}},
        ])
        fake_http.route("GET", "/rest/v1/case_event", [
            {"id": 5, "parent_process_id": 10, "type": "Project initiated", "last_updated": "2024-01-01T00:00:00Z"},
            {"id": 6, "parent_process_id": 10, "type": "Pre-screening initiated",
             "last_updated": "2024-02-01T00:00:00Z", "other": {"x": 1}},
        ])

        hierarchy = fetch_project_hierarchy(store=portal)

        assert [entry["project"]["id"] for entry in hierarchy] == [2, 1]
        newest = hierarchy[0]
        assert json.loads(newest["project"]["geometry"]) == {"type": "Point"}
        assert [p["id"] for p in newest["processes"]] == [11, 10]
        assert newest["processes"][0]["title"] == "Other"
        assert [e["id"] for e in newest["processes"][1]["caseEvents"]] == [6, 5]
        assert newest["processes"][1]["caseEvents"][0]["data"] == {"x": 1}
        assert newest["permittingChecklist"] == [{"label": "Pre permit", "completed": True}]
        assert hierarchy[1]["processes"] == []
        assert hierarchy[1]["permittingChecklist"] == []

        lookup = fake_http.calls_to("GET", "process_instance")[0]
        assert lookup.param("parent_project_id") == ["in.(1,2)"]

    def test_no_projects(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/project", [])
        assert fetch_project_hierarchy(store=portal) == []
        assert len(fake_http.calls) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Delete cascade
# ═════════════════════════════════════════════════════════════════════════════

class TestDeleteProject:
    def test_cascade_order(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/process_instance", [{"id": 10}, {"id": "x"}])

        delete_project_and_related_data("12", store=portal)

        assert [(c.method, c.table) for c in fake_http.calls] == [
            ("GET", "process_instance"),
            ("DELETE", "document"),
            ("DELETE", "process_decision_payload"),
            ("DELETE", "case_event"),
            ("DELETE", "gis_data"),
            ("DELETE", "process_instance"),
            ("DELETE", "project"),
        ]
        project_delete = fake_http.calls[-1]
        assert project_delete.param("id") == ["eq.12"]
        assert project_delete.param("data_source_system") == ["eq.project-portal"]

    def test_failure_stops_cascade(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/process_instance", [{"id": 10}])
        fake_http.route("DELETE", "/rest/v1/document", {"message": "denied"}, status=403)
        with pytest.raises(ProjectPersistenceError, match="Failed to remove documents"):
            delete_project_and_related_data(12, store=portal)
        assert fake_http.calls_to("DELETE", "project") == []
