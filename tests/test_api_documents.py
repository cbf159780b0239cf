"""
Document API tests.

Covers:
    - Upload (first version, new versions), listing, history, current lookup
    - Batch upload with per-item report (201 / 207 / 400)
    - Date edits and file attachments (reconcile after write)
    - Delete with re-promotion of the latest remaining version
    - Version-protocol failures mapped to 409 / 500
"""

import pytest

from solarops.core.exceptions import StoreConflictError, StoreError
from solarops.models.milestone import ProjectMilestone
from solarops.services import document_service
from solarops.services.document_store import DocumentStore
from solarops.services.document_version_writer import DocumentVersionWriter


def _upload(client, project_id, **overrides):
    body = {"doc_type_code": "tpc_review", "doc_type": "審查意見書", "title": "Review request"}
    body.update(overrides)
    return client.post(
        f"/api/v1/projects/{project_id}/documents", json=body, headers={"X-User": "alice"},
    )


def _completed_codes(project_id):
    return {
        m.milestone_code
        for m in ProjectMilestone.query.filter_by(project_id=project_id, is_completed=True)
    }


# ═════════════════════════════════════════════════════════════════════════════
# Upload / read
# ═════════════════════════════════════════════════════════════════════════════


class TestUpload:
    def test_first_upload(self, client, rules, project):
        res = _upload(
            client, project.id,
            submitted_at="2025-03-01",
            file={"original_name": "review.pdf", "storage_path": "/drive/pv/review.pdf", "file_size": 2048},
        )
        assert res.status_code == 201
        data = res.get_json()
        assert data["doc_type_code"] == "TPC_REVIEW"
        assert data["version"] == 1
        assert data["is_current"] is True
        assert data["submitted_at"].startswith("2025-03-01")
        assert data["created_by"] == "alice"
        assert data["has_attachment"] is True
        assert [f["original_name"] for f in data["files"]] == ["review.pdf"]

        # submitted + attachment: submit and opinion steps both derived
        assert {
            "ADMIN_01_CREATED", "ADMIN_02_TAIPOWER_SUBMIT", "ADMIN_03_TAIPOWER_OPINION",
        } <= _completed_codes(project.id)
        progress = client.get(f"/api/v1/projects/{project.id}/progress").get_json()
        assert progress["admin_progress"] == 30.0

    def test_new_version_replaces_current(self, client, project):
        first = _upload(client, project.id).get_json()
        second = _upload(client, project.id, title="Resubmitted").get_json()
        assert second["version"] == 2

        items = client.get(f"/api/v1/projects/{project.id}/documents").get_json()["items"]
        assert [d["id"] for d in items] == [second["id"]]

        history = client.get(f"/api/v1/projects/{project.id}/documents?history=true").get_json()
        assert history["total"] == 2

        versions = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/versions").get_json()
        assert [d["version"] for d in versions["items"]] == [2, 1]
        assert [d["is_current"] for d in versions["items"]] == [True, False]

        current = client.get(f"/api/v1/projects/{project.id}/documents/tpc_review/current").get_json()
        assert current["id"] == second["id"]
        assert current["title"] == "Resubmitted"

        detail = client.get(f"/api/v1/documents/{first['id']}").get_json()
        assert detail["is_current"] is False

    def test_filter_by_type(self, client, project):
        _upload(client, project.id)
        _upload(client, project.id, doc_type_code="MOEA_CONSENT")
        res = client.get(f"/api/v1/projects/{project.id}/documents?doc_type_code=moea_consent")
        assert [d["doc_type_code"] for d in res.get_json()["items"]] == ["MOEA_CONSENT"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"doc_type_code": ""},
            {"issued_at": "not-a-date"},
            {"file": {"original_name": "x.pdf"}},
            {"file": "x.pdf"},
        ],
    )
    def test_invalid_upload(self, client, project, overrides):
        res = _upload(client, project.id, **overrides)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_upload_to_unknown_project(self, client):
        res = _upload(client, 9999)
        assert res.status_code == 404

    def test_current_missing(self, client, project):
        res = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/current")
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Batch upload
# ═════════════════════════════════════════════════════════════════════════════


class TestBatchUpload:
    def test_mixed_batch_reports_each_item(self, client, rules, project):
        res = client.post("/api/v1/documents/batch-upload", json={"items": [
            {"project_id": project.id, "doc_type_code": "TPC_REVIEW", "submitted_at": "2025-02-01"},
            {"project_id": 9999, "doc_type_code": "TPC_REVIEW"},
            {"project_id": project.id},
            {"doc_type_code": "TPC_REVIEW"},
        ]})
        assert res.status_code == 207
        report = res.get_json()
        assert report["total"] == 4
        assert report["succeeded"] == 1
        assert report["failed"] == 3
        assert [e["index"] for e in report["errors"]] == [1, 2, 3]
        assert report["project_ids"] == [project.id]
        assert "ADMIN_02_TAIPOWER_SUBMIT" in _completed_codes(project.id)

    def test_all_succeed(self, client, make_project):
        a, b = make_project(), make_project()
        res = client.post("/api/v1/documents/batch-upload", json={"items": [
            {"project_id": a.id, "doc_type_code": "TPC_REVIEW"},
            {"project_id": a.id, "doc_type_code": "TPC_REVIEW"},
            {"project_id": b.id, "doc_type_code": "TPC_METER"},
        ]})
        assert res.status_code == 201
        report = res.get_json()
        assert [d["version"] for d in report["documents"]] == [1, 2, 1]
        assert sorted(report["project_ids"]) == sorted([a.id, b.id])

    def test_nothing_succeeds(self, client):
        res = client.post("/api/v1/documents/batch-upload", json={"items": [{"project_id": 1}]})
        assert res.status_code == 400

    def test_items_must_be_a_list(self, client):
        res = client.post("/api/v1/documents/batch-upload", json={"items": {}})
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# Dates / files / delete
# ═════════════════════════════════════════════════════════════════════════════


class TestEdit:
    def test_issued_date_completes_opinion_step(self, client, rules, project):
        doc = _upload(client, project.id, submitted_at="2025-03-01").get_json()
        assert "ADMIN_03_TAIPOWER_OPINION" not in _completed_codes(project.id)

        res = client.patch(f"/api/v1/documents/{doc['id']}", json={"issued_at": "2025-04-15"})
        assert res.status_code == 200
        assert res.get_json()["issued_at"].startswith("2025-04-15")
        assert "ADMIN_03_TAIPOWER_OPINION" in _completed_codes(project.id)

        audit = client.get(f"/api/v1/audit?action=document.update_dates&project_id={project.id}").get_json()
        assert audit["total"] == 1

    def test_dates_editable_on_older_version(self, client, project):
        first = _upload(client, project.id).get_json()
        second = _upload(client, project.id).get_json()

        res = client.patch(f"/api/v1/documents/{first['id']}", json={"submitted_at": "2025-01-20"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["is_current"] is False
        assert body["submitted_at"].startswith("2025-01-20")

        current = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/current").get_json()
        assert current["id"] == second["id"]
        assert current["submitted_at"] is None

    def test_deleted_version_dates_not_editable(self, client, project):
        doc = _upload(client, project.id).get_json()
        client.delete(f"/api/v1/documents/{doc['id']}")
        res = client.patch(f"/api/v1/documents/{doc['id']}", json={"issued_at": "2025-04-15"})
        assert res.status_code == 404

    def test_patch_requires_a_date(self, client, project):
        doc = _upload(client, project.id).get_json()
        res = client.patch(f"/api/v1/documents/{doc['id']}", json={"title": "x"})
        assert res.status_code == 400

    def test_attach_file(self, client, project):
        doc = _upload(client, project.id).get_json()
        assert doc["has_attachment"] is False

        res = client.post(
            f"/api/v1/documents/{doc['id']}/files",
            json={"original_name": "scan.pdf", "storage_path": "/drive/scan.pdf", "mime_type": "application/pdf"},
        )
        assert res.status_code == 201
        assert res.get_json()["document_id"] == doc["id"]
        assert client.get(f"/api/v1/documents/{doc['id']}").get_json()["has_attachment"] is True

    def test_attach_file_requires_path(self, client, project):
        doc = _upload(client, project.id).get_json()
        res = client.post(f"/api/v1/documents/{doc['id']}/files", json={"original_name": "scan.pdf"})
        assert res.status_code == 400


class TestDelete:
    def test_delete_current_repromotes_previous(self, client, project):
        first = _upload(client, project.id).get_json()
        second = _upload(client, project.id).get_json()

        res = client.delete(f"/api/v1/documents/{second['id']}", json={"reason": "wrong file"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["deleted_id"] == second["id"]
        assert body["promoted_id"] == first["id"]
        assert body["promoted_version"] == 1

        current = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/current").get_json()
        assert current["id"] == first["id"]
        assert client.get(f"/api/v1/documents/{second['id']}").status_code == 404

        actions = [
            a["action"]
            for a in client.get(f"/api/v1/audit?project_id={project.id}").get_json()["audit_logs"]
        ]
        assert "document.delete" in actions
        assert "document.repromote" in actions

    def test_delete_last_version_leaves_no_current(self, client, project):
        only = _upload(client, project.id).get_json()
        body = client.delete(f"/api/v1/documents/{only['id']}").get_json()
        assert body["promoted_id"] is None
        res = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/current")
        assert res.status_code == 404

    def test_delete_old_version_keeps_current(self, client, project):
        first = _upload(client, project.id).get_json()
        second = _upload(client, project.id).get_json()
        body = client.delete(f"/api/v1/documents/{first['id']}").get_json()
        assert body["promoted_id"] is None
        current = client.get(f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/current").get_json()
        assert current["id"] == second["id"]

    def test_deleted_versions_visible_on_request(self, client, project):
        first = _upload(client, project.id).get_json()
        client.delete(f"/api/v1/documents/{first['id']}")
        url = f"/api/v1/projects/{project.id}/documents/TPC_REVIEW/versions"
        assert client.get(url).get_json()["total"] == 0
        assert client.get(url + "?include_deleted=true").get_json()["total"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# Error mapping
# ═════════════════════════════════════════════════════════════════════════════


class _AlwaysConflicting(DocumentStore):
    def insert_document(self, fields):
        raise StoreConflictError("insert_document")


class _PromoteFails(DocumentStore):
    def update_documents(self, match, fields):
        if fields == {"is_current": True}:
            raise StoreError("update_documents")
        return super().update_documents(match, fields)


class TestErrorMapping:
    def test_version_conflict_is_409(self, client, project, monkeypatch):
        monkeypatch.setattr(
            document_service, "build_writer",
            lambda store=None: DocumentVersionWriter(_AlwaysConflicting(), max_retries=1),
        )
        res = _upload(client, project.id)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "DOC_VERSION_CONFLICT"
        assert body["details"]["retry"] is True

    def test_promotion_failure_is_500(self, client, project, monkeypatch):
        monkeypatch.setattr(
            document_service, "build_writer",
            lambda store=None: DocumentVersionWriter(_PromoteFails()),
        )
        res = _upload(client, project.id)
        assert res.status_code == 500
        body = res.get_json()
        assert body["code"] == "DOC_PROMOTION_FAILED"
        assert body["details"]["stage"] == "promote"
        assert body["details"]["rolled_back"] is True
