"""Unit tests for permit_portal.services.document_service.

Coverage
--------
    1. safe file names
    2. supporting upload: storage object + metadata row, validation first
    3. report upload: title, object path, public URL
    4. summaries: dropped rows, title/size fallbacks
"""

import pytest

from permit_portal.core.exceptions import ProjectPersistenceError
from permit_portal.services.document_service import (
    DOCUMENT_STORAGE_BUCKET,
    build_supporting_document_summary,
    create_safe_file_name,
    fetch_latest_project_report,
    list_supporting_documents,
    save_project_report_document,
    upload_supporting_document,
)

PUBLIC_BASE = "https://portal.example.test/storage/v1/object/public/permit-documents"


class TestSafeFileName:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("My Report (final).PDF", "my-report-final.pdf"),
            ("  ", "document"),
            (None, "document"),
            (".env", "env"),
            ("###.txt", "document.txt"),
            ("archive.tar.gz", "archive-tar.gz"),
        ],
    )
    def test_sanitized(self, raw, expected):
        assert create_safe_file_name(raw) == expected


class TestUploadSupportingDocument:
    def _upload(self, store, **overrides):
        kwargs = {
            "content": b"%PDF-1.4",
            "file_name": "Site Plan.pdf",
            "content_type": "application/pdf",
            "title": " Site plan ",
            "project_id": 7,
            "project_title": "Bridge",
            "parent_process_id": "55",
            "store": store,
        }
        kwargs.update(overrides)
        return upload_supporting_document(**kwargs)

    def test_object_then_metadata(self, portal, fake_http):
        self._upload(portal)

        upload, insert = fake_http.calls
        assert upload.method == "POST"
        assert upload.path.startswith(f"/storage/v1/object/{DOCUMENT_STORAGE_BUCKET}/")
        assert upload.headers["x-upsert"] == "true"
        assert upload.headers["content-type"] == "application/pdf"
        assert upload.data == b"%PDF-1.4"

        assert insert.table == "document"
        row = insert.json
        assert row["title"] == "Site plan"
        assert row["document_type"] == "supporting-document"
        assert row["parent_process_id"] == 55
        assert row["url"].startswith("project-7/process-55/")
        assert row["url"].endswith("-site-plan.pdf")
        assert row["other"]["file_size"] == 8
        assert row["other"]["storage_object_path"] == row["url"]

    def test_storage_key_from_response(self, portal, fake_http):
        fake_http.route("POST", "", {"Key": "permit-documents/custom/key.pdf"})
        self._upload(portal)
        assert fake_http.calls_to("POST", "document")[0].json["url"] == "permit-documents/custom/key.pdf"

    def test_title_required(self, portal, fake_http):
        with pytest.raises(ProjectPersistenceError, match="Document title is required"):
            self._upload(portal, title="  ")
        assert fake_http.calls == []

    def test_process_required(self, portal, fake_http):
        with pytest.raises(ProjectPersistenceError, match="Save the project snapshot"):
            self._upload(portal, parent_process_id=None)
        assert fake_http.calls == []

    def test_storage_failure_skips_metadata(self, portal, fake_http):
        fake_http.route("POST", "", {"message": "Bucket not found"}, status=404,
                        match=lambda request: "/storage/" in request.url)
        with pytest.raises(ProjectPersistenceError, match="Failed to upload document file"):
            self._upload(portal)
        assert fake_http.calls_to("POST", "document") == []


class TestProjectReport:
    def test_report_upload(self, portal, fake_http):
        result = save_project_report_document(
            content=b"%PDF", project_id=7, project_title="North Bridge",
            parent_process_id=55, generated_at="2024-03-01T10:00:00Z", store=portal,
        )

        assert result["title"] == "North Bridge — Project report"
        assert result["generatedAt"] == "2024-03-01T10:00:00.000Z"
        assert result["url"] == f"{PUBLIC_BASE}/project-7/process-55/20240301100000000-report.pdf"
        row = fake_http.calls_to("POST", "document")[0].json
        assert row["document_type"] == "project-report"
        assert row["other"]["file_name"] == "north-bridge-project-report.pdf"

    def test_untitled_report(self, portal, fake_http):
        result = save_project_report_document(
            content=b"%PDF", project_id=7, project_title=None, parent_process_id=55, store=portal,
        )
        assert result["title"] == "Project 7 — Project report"

    def test_latest_report(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/document", [{
            "title": "", "last_updated": "2024-03-02T00:00:00Z",
            "url": "project-7/process-55/r.pdf", "other": '{"report_generated_at": "2024-03-01T00:00:00Z"}',
        }])
        report = fetch_latest_project_report(55, store=portal)
        assert report == {
            "title": "Project report",
            "url": f"{PUBLIC_BASE}/project-7/process-55/r.pdf",
            "generatedAt": "2024-03-01T00:00:00Z",
        }
        lookup = fake_http.calls[0]
        assert lookup.param("document_type") == ["eq.project-report"]


class TestSupportingDocumentSummaries:
    def test_summary_fields(self, portal):
        summary = build_supporting_document_summary({
            "id": "4",
            "title": None,
            "url": "permit-documents/project-7/a b.pdf",
            "last_updated": "2024-01-01T00:00:00Z",
            "other": {"file_name": "a b.pdf", "file_size": "2048", "mime_type": "application/pdf"},
        }, portal)
        assert summary == {
            "id": 4,
            "title": "a b.pdf",
            "url": f"{PUBLIC_BASE}/project-7/a%20b.pdf",
            "uploadedAt": "2024-01-01T00:00:00Z",
            "fileName": "a b.pdf",
            "fileSize": 2048,
            "mimeType": "application/pdf",
        }

    def test_rows_without_location_dropped(self, portal):
        assert build_supporting_document_summary({"id": 1, "other": {}}, portal) is None
        assert build_supporting_document_summary({"url": "x.pdf"}, portal) is None

    def test_list_filters_invalid_rows(self, portal, fake_http):
        fake_http.route("GET", "/rest/v1/document", [
            {"id": 2, "title": "Plan", "url": "p.pdf", "other": {"file_size": -5}},
            {"id": None, "url": "q.pdf"},
            "garbage",
        ])
        documents = list_supporting_documents("55", store=portal)
        assert [d["id"] for d in documents] == [2]
        assert documents[0]["fileSize"] is None

    def test_list_requires_process(self, portal):
        with pytest.raises(ProjectPersistenceError, match="viewing supporting documents"):
            list_supporting_documents(None, store=portal)
