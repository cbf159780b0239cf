"""
Milestone, progress-settings, audit and health API tests.

Covers:
    - Project milestone listing and the manual complete / reopen toggle
    - Rule table: list, seed, patch
    - Track weight settings (GET / PUT with validation)
    - Batch reconcile endpoint and CLI commands
    - Audit log listing / detail
    - Health probes
"""

from solarops.models.milestone import MilestoneRule
from solarops.models.project import CONSTRUCTION_STARTED


# ═════════════════════════════════════════════════════════════════════════════
# Project milestones
# ═════════════════════════════════════════════════════════════════════════════


def test_list_project_milestones(client, rules, project):
    client.post(f"/api/v1/projects/{project.id}/reconcile")
    res = client.get(f"/api/v1/projects/{project.id}/milestones")
    assert res.status_code == 200
    body = res.get_json()
    assert body["total"] == 20
    first = body["items"][0]
    assert first["milestone_code"] == "ADMIN_01_CREATED"
    assert first["is_completed"] is True
    assert first["note"] == "auto: project created"

    res = client.get(f"/api/v1/projects/{project.id}/milestones?track_type=engineering")
    assert res.get_json()["total"] == 10

    res = client.get(f"/api/v1/projects/{project.id}/milestones?track_type=finance")
    assert res.status_code == 400


def test_toggle_engineering_milestone(client, rules, project):
    url = f"/api/v1/projects/{project.id}/milestones/ENG_01_SITE_SURVEY"
    res = client.put(url, json={"is_completed": True, "note": "site visit", "completed_at": "2025-05-02"},
                     headers={"X-User": "bob"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["is_completed"] is True
    assert body["completed_by"] == "bob"
    assert body["completed_at"].startswith("2025-05-02")

    progress = client.get(f"/api/v1/projects/{project.id}/progress").get_json()
    assert progress["engineering_progress"] == 5.0
    assert progress["construction_status"] == CONSTRUCTION_STARTED

    res = client.put(url, json={"is_completed": False})
    assert res.status_code == 200
    assert res.get_json()["completed_at"] is None

    audit = client.get(f"/api/v1/audit?entity_type=project_milestone&project_id={project.id}").get_json()
    assert [a["action"] for a in audit["audit_logs"]] == ["milestone.uncomplete", "milestone.complete"]


def test_toggle_validation(client, rules, project):
    url = f"/api/v1/projects/{project.id}/milestones"
    assert client.put(f"{url}/ENG_01_SITE_SURVEY", json={}).status_code == 400
    for value in ("false", 0, 1, None):
        res = client.put(f"{url}/ENG_01_SITE_SURVEY", json={"is_completed": value})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
    assert client.get(f"/api/v1/projects/{project.id}/progress").get_json()["engineering_progress"] == 0.0
    assert client.put(f"{url}/NOT_A_RULE", json={"is_completed": True}).status_code == 404
    assert client.put(
        f"/api/v1/projects/9999/milestones/ENG_01_SITE_SURVEY", json={"is_completed": True},
    ).status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Rule table
# ═════════════════════════════════════════════════════════════════════════════


def test_seed_and_list_rules(client):
    res = client.post("/api/v1/milestone-rules/seed")
    assert res.status_code == 201
    assert res.get_json()["added"] == 20

    res = client.post("/api/v1/milestone-rules/seed")
    assert res.status_code == 200
    assert res.get_json()["added"] == 0

    body = client.get("/api/v1/milestone-rules?track_type=admin").get_json()
    assert body["total"] == 10
    meter = next(r for r in body["items"] if r["code"] == "ADMIN_08_METER_INSTALLED")
    assert meter["prerequisites"] == ["ADMIN_07_PPA_SIGNED"]
    assert meter["selectors"][0] == {"kind": "code", "value": "TPC_METER"}
    assert meter["selectors"][1]["kind"] == "label_list"


def test_patch_rule(client, rules):
    res = client.patch(
        "/api/v1/milestone-rules/ENG_04_STRUCTURE",
        json={"weight": 20, "is_active": False, "match_criterion": "document_issued"},
        headers={"X-User": "admin"},
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["weight"] == 20.0
    assert body["is_active"] is False
    # criterion is not editable through the API
    assert body["match_criterion"] == "manual"

    body = client.get("/api/v1/milestone-rules?include_inactive=false").get_json()
    assert "ENG_04_STRUCTURE" not in [r["code"] for r in body["items"]]

    assert client.patch("/api/v1/milestone-rules/NOPE", json={"weight": 1}).status_code == 404
    assert client.patch(
        "/api/v1/milestone-rules/ENG_04_STRUCTURE", json={"sort_order": "first"},
    ).status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# Progress settings / batch reconcile
# ═════════════════════════════════════════════════════════════════════════════


def test_progress_settings(client):
    res = client.get("/api/v1/progress/settings")
    assert res.get_json() == {"weights": {"admin_weight": 50.0, "engineering_weight": 50.0}}

    res = client.put("/api/v1/progress/settings", json={"weights": {"admin_weight": 60, "engineering_weight": 40}})
    assert res.status_code == 200
    assert res.get_json()["weights"] == {"admin_weight": 60.0, "engineering_weight": 40.0}

    res = client.put("/api/v1/progress/settings", json={"admin_weight": 30, "engineering_weight": 30})
    assert res.status_code == 400
    assert res.get_json()["details"]["total"] == 60.0

    res = client.get("/api/v1/progress/settings")
    assert res.get_json()["weights"]["admin_weight"] == 60.0


def test_reconcile_all_endpoint(client, rules, make_project):
    a, b = make_project(), make_project()
    res = client.post("/api/v1/progress/reconcile-all", json={"project_ids": [a.id]})
    assert res.status_code == 200
    assert res.get_json()["synced"] == 1

    res = client.post("/api/v1/progress/reconcile-all")
    body = res.get_json()
    assert body["total"] == 2
    assert body["changed"] == 1
    assert body["failed"] == 0

    res = client.post("/api/v1/progress/reconcile-all", json={"project_ids": "all"})
    assert res.status_code == 400
    res = client.post("/api/v1/progress/reconcile-all", json={"project_ids": ["x"]})
    assert res.status_code == 400


def test_cli_commands(app, make_project):
    make_project()
    runner = app.test_cli_runner()

    result = runner.invoke(args=["seed-milestone-rules"])
    assert result.exit_code == 0
    assert "Seeded 20" in result.output
    assert MilestoneRule.query.count() == 20

    result = runner.invoke(args=["reconcile-progress"])
    assert result.exit_code == 0
    assert "Reconciled 1/1 projects, 0 failed, 2 writes." in result.output


# ═════════════════════════════════════════════════════════════════════════════
# Audit / health
# ═════════════════════════════════════════════════════════════════════════════


def test_audit_listing_and_detail(client, project):
    client.post(
        f"/api/v1/projects/{project.id}/documents",
        json={"doc_type_code": "TPC_REVIEW"},
        headers={"X-User": "carol"},
    )
    body = client.get("/api/v1/audit?actor=carol").get_json()
    assert body["total"] == 1
    log = body["audit_logs"][0]
    assert log["action"] == "document.create"
    assert log["reason"] == "TPC_REVIEW v1"

    res = client.get(f"/api/v1/audit/{log['id']}")
    assert res.status_code == 200
    assert res.get_json()["entity_type"] == "document"
    assert client.get("/api/v1/audit/99999").status_code == 404


def test_audit_document_and_window_filters(client, project):
    first = client.post(
        f"/api/v1/projects/{project.id}/documents", json={"doc_type_code": "TPC_REVIEW"},
    ).get_json()
    client.post(f"/api/v1/projects/{project.id}/documents", json={"doc_type_code": "TPC_REVIEW"})
    client.patch(f"/api/v1/documents/{first['id']}", json={"issued_at": "2025-04-15"})

    body = client.get(f"/api/v1/audit?document_id={first['id']}").get_json()
    assert [a["action"] for a in body["audit_logs"]] == ["document.update_dates", "document.create"]

    assert client.get("/api/v1/audit?since=2000-01-01").get_json()["total"] == 3
    assert client.get("/api/v1/audit?since=2999-01-01").get_json()["total"] == 0
    res = client.get("/api/v1/audit?since=yesterday")
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
    assert client.get("/api/v1/audit?since=2025-02-01&until=2025-01-01").status_code == 400


def test_project_timeline(client, rules, project, make_project):
    other = make_project()
    client.put(
        f"/api/v1/projects/{project.id}/milestones/ENG_01_SITE_SURVEY", json={"is_completed": True},
    )
    client.post(f"/api/v1/projects/{other.id}/documents", json={"doc_type_code": "TPC_REVIEW"})

    body = client.get(f"/api/v1/projects/{project.id}/timeline").get_json()
    assert body["total"] == 1
    assert body["audit_logs"][0]["action"] == "milestone.complete"
    assert body["audit_logs"][0]["project_id"] == project.id

    assert client.get("/api/v1/projects/9999/timeline").status_code == 404


def test_health(client, rules):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    checks = res.get_json()["checks"]
    assert checks["database"]["status"] == "ok"
    assert checks["milestone_rules"]["active"] == 20
