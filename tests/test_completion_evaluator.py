"""Unit tests for permit_portal.services.completion_evaluator.

Test strategy
-------------
Records are built with the payload builder from a fully populated form, then
individual slots are blanked to exercise each check. A MagicMock sink stands
in for the logger so the check trace can be asserted without capturing
stderr.

Coverage
--------
    1. complete form passes every check in order
    2. missing project details short-circuits (no later check runs)
    3. resource notes with only empty values fail the last check
    4. permit notes satisfied by a permit entry alone
    5. JSON-string evaluation data is decoded
    6. slot-level completed titles ignore id/process noise keys
    7. sink receives one debug line per check run
"""

import json
from unittest.mock import MagicMock

from permit_portal.services.completion_evaluator import (
    COMPLETION_CHECKS,
    contains_meaningful_value,
    evaluate_decision_payloads,
    has_non_empty_value,
)
from permit_portal.services.payload_builder import (
    DECISION_SLOTS,
    build_evaluation_records,
    build_project_record,
)

CHECK_NAMES = [check.name for check in COMPLETION_CHECKS]


def _complete_records():
    form = {
        "id": "12",
        "title": "North Bridge",
        "other": "Notes",
        "nepa_categorical_exclusion_code": "A1",
        "nepa_conformance_conditions": "Cond 1",
        "nepa_extraordinary_circumstances": "None",
    }
    geo = {
        "nepassist": {"status": "success", "summary": [{"name": "wetlands"}]},
        "ipac": {"status": "success", "raw": {"species": []}, "summary": {"count": 0}},
    }
    checklist = [{"label": "Permit A", "completed": True}]
    return build_evaluation_records(build_project_record(form, geo, 12), geo, checklist, form)


class TestCompletionChain:
    def test_complete_form_passes_all_checks(self):
        result = evaluate_decision_payloads(_complete_records())
        assert result.is_complete is True
        assert result.failed_check is None
        assert result.checks_run == CHECK_NAMES
        assert result.total == 7

    def test_missing_project_details_short_circuits(self):
        records = _complete_records()
        records[0] = None
        result = evaluate_decision_payloads(records)

        assert result.is_complete is False
        assert result.failed_check == "has_project_details"
        assert result.checks_run == ["has_project_details"]

    def test_empty_project_object_fails_first_check(self):
        records = _complete_records()
        records[0] = {"evaluation_data": {"id": 1, "title": "x", "project": {}}}
        assert evaluate_decision_payloads(records).failed_check == "has_project_details"

    def test_empty_resource_notes_fail_last_check(self):
        records = _complete_records()
        records[6] = {"evaluation_data": {"id": 7, "summary": None, "notes": None, "resources": []}}
        result = evaluate_decision_payloads(records)

        assert result.is_complete is False
        assert result.failed_check == "has_resource_notes_text"
        assert result.checks_run == CHECK_NAMES

    def test_resource_entry_with_only_ignored_fields_does_not_count(self):
        records = _complete_records()
        records[6] = {"evaluation_data": {
            "resources": [{"name": "Ward Assessment", "status": "success", "meta": {"x": "y"}}],
        }}
        assert evaluate_decision_payloads(records).failed_check == "has_resource_notes_text"

    def test_permit_entry_alone_satisfies_permit_notes(self):
        records = _complete_records()
        records[3] = {"evaluation_data": {"permits": [{"label": "A", "completed": False}], "notes": None}}
        assert evaluate_decision_payloads(records).is_complete is True

    def test_screening_without_raw_or_summary_fails(self):
        records = _complete_records()
        records[1] = {"evaluation_data": {"id": 2, "nepa_assist_raw": None, "nepa_assist_summary": []}}
        result = evaluate_decision_payloads(records)
        assert result.failed_check == "has_nepassist_results"
        assert result.checks_run == CHECK_NAMES[:2]

    def test_blank_candidates_without_rationale_fail(self):
        records = _complete_records()
        records[4] = {"evaluation_data": {"ce_candidates": ["  "], "rationale": ""}}
        assert evaluate_decision_payloads(records).failed_check == "has_categorical_exclusion_text"

    def test_json_string_evaluation_data(self):
        records = _complete_records()
        records = [{"evaluation_data": json.dumps(r["evaluation_data"])} for r in records]
        assert evaluate_decision_payloads(records).is_complete is True

    def test_unparseable_string_is_no_data(self):
        records = _complete_records()
        records[0] = {"evaluation_data": "{broken"}
        assert evaluate_decision_payloads(records).failed_check == "has_project_details"

    def test_sink_receives_each_check(self):
        sink = MagicMock()
        evaluate_decision_payloads(_complete_records(), sink=sink)
        assert sink.debug.call_count == len(COMPLETION_CHECKS)
        logged = [c.args[1] for c in sink.debug.call_args_list]
        assert logged == CHECK_NAMES


class TestCompletedTitles:
    def test_noise_keys_do_not_count(self):
        records = [{"evaluation_data": {"id": 5, "process": 3}} for _ in DECISION_SLOTS]
        result = evaluate_decision_payloads(records)
        assert result.completed_titles == []

    def test_meaningful_slots_listed_in_slot_order(self):
        records = [None] * 7
        records[2] = {"evaluation_data": {"ipac_summary": {"count": 1}}}
        records[5] = {"evaluation_data": {"conditions": ["C"]}}
        result = evaluate_decision_payloads(records)
        assert result.completed_titles == [DECISION_SLOTS[2].title, DECISION_SLOTS[5].title]

    def test_to_dict_uses_camel_case(self):
        payload = evaluate_decision_payloads([]).to_dict()
        assert set(payload) == {"total", "completedTitles", "isComplete", "failedCheck", "checksRun"}


class TestValueWalkers:
    def test_has_non_empty_value(self):
        assert has_non_empty_value("x")
        assert not has_non_empty_value("  ")
        assert not has_non_empty_value([None, ""])
        assert has_non_empty_value({"a": None})
        assert not has_non_empty_value(float("inf"))
        assert not has_non_empty_value(False)

    def test_contains_meaningful_value(self):
        assert contains_meaningful_value({"nested": [{"flag": True}]})
        assert not contains_meaningful_value({"id": 3, "process": 9})
        assert not contains_meaningful_value({"values": [None, "", False]})
