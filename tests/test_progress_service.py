"""
Reconciliation against the database: ProgressReconciler, progress_service
and milestone_service.

Covers:
  - First reconcile of a new project, idempotent second run
  - Document-derived completions and cross-track triggers
  - Monotonic completion (document deleted, completion kept)
  - Batch vs single reconcile equivalence
  - Store failures: progress cache (non-fatal), per-project batch isolation
  - Weight settings validation, reconcile-after-write switch
  - Manual milestone toggle and rule seeding
"""

from datetime import datetime, timezone

import pytest

from solarops.core.exceptions import NotFoundError, StoreError, ValidationError
from solarops.models import db as _db
from solarops.models.audit import AuditLog
from solarops.models.milestone import MilestoneRule, ProjectMilestone
from solarops.models.project import CONSTRUCTION_NOT_STARTED, CONSTRUCTION_STARTED, Project
from solarops.services import milestone_service, progress_service
from solarops.services.document_store import DocumentStore
from solarops.services.document_version_writer import DocumentVersionWriter
from solarops.services.milestone_rules import seed_default_rules
from solarops.services.progress_reconciler import ProgressReconciler, ProgressWeights

SUBMITTED = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _completed(project_id):
    rows = ProjectMilestone.query.filter_by(project_id=project_id, is_completed=True).all()
    return {r.milestone_code: r for r in rows}


def _submit_review(project_id):
    return DocumentVersionWriter().write(
        project_id, "TPC_REVIEW", {"doc_type": "審查意見書", "submitted_at": SUBMITTED},
    )


class FailingProgressStore(DocumentStore):
    def update_project_progress(self, project_id, fields):
        raise StoreError("update_project_progress")


class FailingMilestoneStore(DocumentStore):
    def __init__(self, bad_project_id):
        super().__init__()
        self.bad_project_id = bad_project_id

    def upsert_milestone(self, project_id, code, fields):
        if project_id == self.bad_project_id:
            raise StoreError("upsert_milestone")
        return super().upsert_milestone(project_id, code, fields)


# ═════════════════════════════════════════════════════════════════════════════
# Single project
# ═════════════════════════════════════════════════════════════════════════════


class TestReconcileProject:
    def test_new_project_completes_first_admin_step(self, rules, project):
        result = ProgressReconciler().reconcile_project(project.id)

        assert result.completed_codes == ["ADMIN_01_CREATED"]
        assert result.writes == 2
        assert result.progress == {
            "admin_progress": 10.0,
            "engineering_progress": 0.0,
            "overall_progress": 5.0,
            "admin_stage": "台電申請送件",
            "engineering_stage": None,
            "construction_status": CONSTRUCTION_NOT_STARTED,
        }
        stored = _db.session.get(Project, project.id)
        assert stored.admin_progress == 10.0
        assert stored.progress_updated_at is not None

    def test_second_run_writes_nothing(self, rules, project):
        reconciler = ProgressReconciler()
        first = reconciler.reconcile_project(project.id)
        second = reconciler.reconcile_project(project.id)

        assert second.writes == 0
        assert second.progress_changed is False
        assert second.completed_codes == []
        assert second.progress == first.progress

    def test_submitted_document_completes_admin_and_triggers_engineering(self, rules, project):
        _submit_review(project.id)
        result = ProgressReconciler(clock=lambda: FIXED_NOW).reconcile_project(project.id)

        done = _completed(project.id)
        assert set(done) == {"ADMIN_01_CREATED", "ADMIN_02_TAIPOWER_SUBMIT", "ENG_01_SITE_SURVEY"}
        assert done["ADMIN_02_TAIPOWER_SUBMIT"].completed_at.date() == SUBMITTED.date()
        assert done["ADMIN_02_TAIPOWER_SUBMIT"].note == "auto: TPC_REVIEW date"
        assert done["ENG_01_SITE_SURVEY"].completed_at.date() == FIXED_NOW.date()
        assert done["ENG_01_SITE_SURVEY"].note == "auto: triggered by ADMIN_02_TAIPOWER_SUBMIT"

        assert result.progress["admin_progress"] == 20.0
        assert result.progress["engineering_progress"] == 5.0
        assert result.progress["overall_progress"] == 12.5
        assert result.progress["engineering_stage"] == "現勘完成"
        assert result.progress["construction_status"] == CONSTRUCTION_STARTED

    def test_completion_survives_document_deletion(self, rules, project):
        doc = _submit_review(project.id)
        reconciler = ProgressReconciler()
        reconciler.reconcile_project(project.id)

        DocumentStore().soft_delete(doc.id)
        result = reconciler.reconcile_project(project.id)

        assert result.writes == 0
        assert "ADMIN_02_TAIPOWER_SUBMIT" in _completed(project.id)
        assert "ADMIN_02_TAIPOWER_SUBMIT" in result.admin_satisfied

    def test_attachment_counts_as_issued(self, rules, project):
        _submit_review(project.id)
        DocumentVersionWriter().write(
            project.id, "TPC_REVIEW", {"submitted_at": SUBMITTED},
            attachment={"original_name": "opinion.pdf", "storage_path": "/drive/opinion.pdf"},
        )
        ProgressReconciler().reconcile_project(project.id)
        assert "ADMIN_03_TAIPOWER_OPINION" in _completed(project.id)

    def test_inactive_rule_is_not_derived(self, rules, project):
        MilestoneRule.query.filter_by(code="ADMIN_02_TAIPOWER_SUBMIT").update({"is_active": False})
        _db.session.commit()
        _submit_review(project.id)

        result = ProgressReconciler().reconcile_project(project.id)
        assert "ADMIN_02_TAIPOWER_SUBMIT" not in result.completed_codes

    def test_custom_weights(self, rules, project):
        result = ProgressReconciler(weights=ProgressWeights(100, 0)).reconcile_project(project.id)
        assert result.progress["overall_progress"] == result.progress["admin_progress"]

    def test_progress_cache_failure_is_not_fatal(self, rules, project):
        result = ProgressReconciler(FailingProgressStore()).reconcile_project(project.id)

        assert result.progress_changed is True
        assert result.progress_persisted is False
        assert "ADMIN_01_CREATED" in _completed(project.id)
        assert _db.session.get(Project, project.id).admin_progress == 0.0

    def test_missing_project(self, rules):
        with pytest.raises(NotFoundError):
            ProgressReconciler().reconcile_project(9999)

    def test_deleted_project_is_not_reconciled(self, rules, project):
        project.soft_delete()
        _db.session.commit()
        with pytest.raises(NotFoundError):
            ProgressReconciler().reconcile_project(project.id)


# ═════════════════════════════════════════════════════════════════════════════
# Batch
# ═════════════════════════════════════════════════════════════════════════════


class TestReconcileAll:
    def test_batch_matches_single(self, rules, make_project):
        single, batched, other = make_project(), make_project(), make_project()
        _submit_review(single.id)
        _submit_review(batched.id)
        reconciler = ProgressReconciler(clock=lambda: FIXED_NOW)

        one = reconciler.reconcile_project(single.id)
        batch = reconciler.reconcile_all([batched.id, other.id])

        by_id = {r.project_id: r for r in batch.results}
        assert by_id[batched.id].progress == one.progress
        assert by_id[batched.id].completed_codes == one.completed_codes
        assert {
            code: row.note for code, row in _completed(batched.id).items()
        } == {code: row.note for code, row in _completed(single.id).items()}
        assert by_id[other.id].completed_codes == ["ADMIN_01_CREATED"]

    def test_all_active_projects_by_default(self, rules, make_project):
        make_project()
        make_project()
        batch = ProgressReconciler().reconcile_all()
        summary = batch.to_dict()
        assert summary["total"] == 2
        assert summary["synced"] == 2
        assert summary["changed"] == 2

    def test_one_failing_project_does_not_stop_the_batch(self, rules, make_project):
        good, bad = make_project(), make_project()
        batch = ProgressReconciler(FailingMilestoneStore(bad.id)).reconcile_all()

        assert [r.project_id for r in batch.results] == [good.id]
        assert bad.id in batch.failed
        summary = batch.to_dict()
        assert summary["failed"] == 1
        assert str(bad.id) in summary["errors"]
        assert "ADMIN_01_CREATED" in _completed(good.id)

    def test_empty_selection(self, rules):
        assert ProgressReconciler().reconcile_all([]).to_dict()["total"] == 0


# ═════════════════════════════════════════════════════════════════════════════
# progress_service
# ═════════════════════════════════════════════════════════════════════════════


class TestProgressSettings:
    def test_defaults_come_from_config(self):
        assert progress_service.load_weights() == ProgressWeights(50.0, 50.0)

    def test_update_weights_persists_and_audits(self):
        progress_service.update_weights({"admin_weight": 70, "engineering_weight": 30}, actor="ops")
        _db.session.commit()
        assert progress_service.load_weights() == ProgressWeights(70.0, 30.0)
        log = AuditLog.query.filter_by(action="settings.update").one()
        assert log.actor == "ops"

    @pytest.mark.parametrize(
        "data",
        [
            {"admin_weight": 60, "engineering_weight": 60},
            {"admin_weight": -10, "engineering_weight": 110},
            {"admin_weight": "abc", "engineering_weight": 50},
            {"admin_weight": 100},
        ],
    )
    def test_invalid_weights_rejected(self, data):
        with pytest.raises(ValidationError):
            progress_service.update_weights(data)

    def test_reconciler_uses_stored_weights(self, rules, project):
        progress_service.update_weights({"admin_weight": 100, "engineering_weight": 0})
        _db.session.commit()
        result = progress_service.reconcile_project(project.id)
        assert result.progress["overall_progress"] == 10.0


class TestReconcileAfterChange:
    def test_disabled_by_config(self, app, rules, project, monkeypatch):
        monkeypatch.setitem(app.config, "RECONCILE_ON_WRITE", False)
        assert progress_service.reconcile_after_change(project.id) is None
        assert _completed(project.id) == {}

    def test_runs_when_enabled(self, rules, project):
        result = progress_service.reconcile_after_change(project.id, actor="alice")
        assert result.completed_codes == ["ADMIN_01_CREATED"]
        assert _completed(project.id)["ADMIN_01_CREATED"].completed_by == "alice"

    def test_failures_are_swallowed(self, project, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(progress_service, "reconcile_project", _boom)
        assert progress_service.reconcile_after_change(project.id) is None


# ═════════════════════════════════════════════════════════════════════════════
# milestone_service
# ═════════════════════════════════════════════════════════════════════════════


class TestMilestoneToggle:
    def test_complete_by_hand(self, rules, project):
        row = milestone_service.set_milestone_completion(
            project.id, "ENG_01_SITE_SURVEY", completed=True, completed_at="2025-04-01", actor="bob",
        )
        _db.session.commit()
        assert row.is_completed is True
        assert row.completed_at.date().isoformat() == "2025-04-01"
        assert AuditLog.query.filter_by(action="milestone.complete").count() == 1

    def test_uncomplete_clears_date(self, rules, project):
        milestone_service.set_milestone_completion(project.id, "ENG_01_SITE_SURVEY", completed=True)
        row = milestone_service.set_milestone_completion(project.id, "ENG_01_SITE_SURVEY", completed=False)
        _db.session.commit()
        assert row.is_completed is False
        assert row.completed_at is None
        assert row.note == "manually reopened"

    def test_reopened_engineering_step_breaks_the_prefix(self, rules, project):
        for code in ("ENG_01_SITE_SURVEY", "ENG_02_DESIGN_FINAL", "ENG_03_MATERIAL_ORDER"):
            milestone_service.set_milestone_completion(project.id, code, completed=True)
        milestone_service.set_milestone_completion(project.id, "ENG_02_DESIGN_FINAL", completed=False)
        _db.session.commit()

        result = ProgressReconciler().reconcile_project(project.id)
        assert result.engineering_validated == ["ENG_01_SITE_SURVEY"]
        assert result.progress["engineering_stage"] == "現勘完成"

    def test_document_backed_step_is_derived_again(self, rules, project):
        _submit_review(project.id)
        ProgressReconciler().reconcile_project(project.id)
        milestone_service.set_milestone_completion(
            project.id, "ADMIN_02_TAIPOWER_SUBMIT", completed=False,
        )
        _db.session.commit()

        result = ProgressReconciler().reconcile_project(project.id)
        assert "ADMIN_02_TAIPOWER_SUBMIT" in result.completed_codes

    def test_unknown_rule(self, rules, project):
        with pytest.raises(NotFoundError):
            milestone_service.set_milestone_completion(project.id, "NOPE", completed=True)

    def test_bad_date(self, rules, project):
        with pytest.raises(ValidationError):
            milestone_service.set_milestone_completion(
                project.id, "ENG_01_SITE_SURVEY", completed=True, completed_at="someday",
            )


class TestRules:
    def test_seed_is_idempotent(self, rules):
        assert rules == 20
        assert seed_default_rules() == 0
        assert MilestoneRule.query.count() == 20

    def test_seed_keeps_edited_rows(self, rules):
        milestone_service.update_rule("ENG_04_STRUCTURE", {"weight": 25})
        _db.session.commit()
        seed_default_rules()
        assert MilestoneRule.query.filter_by(code="ENG_04_STRUCTURE").one().weight == 25.0

    def test_update_rule_audits_changes_only(self, rules):
        milestone_service.update_rule("ENG_04_STRUCTURE", {"weight": 15, "sort_order": 14})
        assert AuditLog.query.filter_by(action="rule.update").count() == 0
        milestone_service.update_rule("ENG_04_STRUCTURE", {"name": "支架完成"})
        assert AuditLog.query.filter_by(action="rule.update").count() == 1

    def test_update_rule_rejects_negative_weight(self, rules):
        with pytest.raises(ValidationError):
            milestone_service.update_rule("ENG_04_STRUCTURE", {"weight": -1})

    def test_list_project_milestones(self, rules, project):
        ProgressReconciler().reconcile_project(project.id)
        items = milestone_service.list_project_milestones(project.id, track_type="admin")
        assert len(items) == 10
        assert items[0]["milestone_code"] == "ADMIN_01_CREATED"
        assert items[0]["is_completed"] is True
        assert items[1]["is_completed"] is False
