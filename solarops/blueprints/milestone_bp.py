"""
Milestone & progress blueprint.

Endpoints:
    GET  /api/v1/projects/<pid>/milestones               — rules merged with completion state
    PUT  /api/v1/projects/<pid>/milestones/<code>        — complete / reopen by hand
    GET  /api/v1/milestone-rules                         — rule table
    POST /api/v1/milestone-rules/seed                    — insert missing default rules
    PATCH /api/v1/milestone-rules/<code>                 — weight / order / active flag
    GET  /api/v1/progress/settings                       — track weights
    PUT  /api/v1/progress/settings                       — update track weights
    POST /api/v1/progress/reconcile-all                  — batch reconcile
"""

import logging

from flask import Blueprint, jsonify, request

from solarops.blueprints import request_actor, request_flag
from solarops.core.exceptions import ValidationError
from solarops.services import milestone_service, progress_service
from solarops.services.milestone_rules import seed_default_rules
from solarops.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

milestone_bp = Blueprint("milestone", __name__, url_prefix="/api/v1")


# ── Project milestones ───────────────────────────────────────────────────────

@milestone_bp.route("/projects/<int:project_id>/milestones", methods=["GET"])
def list_milestones(project_id):
    items = milestone_service.list_project_milestones(
        project_id, track_type=request.args.get("track_type") or None,
    )
    return jsonify({"items": items, "total": len(items)}), 200


@milestone_bp.route("/projects/<int:project_id>/milestones/<code>", methods=["PUT"])
def set_milestone(project_id, code):
    """
    Body: {"is_completed": bool, "note": str?, "completed_at": date?}
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("is_completed"), bool):
        raise ValidationError("is_completed must be true or false")
    actor = request_actor()
    row = milestone_service.set_milestone_completion(
        project_id,
        code,
        completed=data["is_completed"],
        note=data.get("note"),
        completed_at=data.get("completed_at"),
        actor=actor,
    )
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    progress_service.reconcile_after_change(project_id, actor=actor)
    return jsonify(row.to_dict()), 200


# ── Rule table ───────────────────────────────────────────────────────────────

@milestone_bp.route("/milestone-rules", methods=["GET"])
def list_rules():
    rules = milestone_service.list_rules(
        track_type=request.args.get("track_type") or None,
        include_inactive=request_flag("include_inactive", default=True),
    )
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@milestone_bp.route("/milestone-rules/seed", methods=["POST"])
def seed_rules():
    added = seed_default_rules()
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    return jsonify({"added": added}), 201 if added else 200


@milestone_bp.route("/milestone-rules/<code>", methods=["PATCH"])
def update_rule(code):
    data = request.get_json(silent=True) or {}
    rule = milestone_service.update_rule(code, data, actor=request_actor())
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    return jsonify(rule.to_dict()), 200


# ── Progress settings & batch reconcile ──────────────────────────────────────

@milestone_bp.route("/progress/settings", methods=["GET"])
def get_settings():
    return jsonify({"weights": progress_service.load_weights().to_dict()}), 200


@milestone_bp.route("/progress/settings", methods=["PUT"])
def update_settings():
    data = request.get_json(silent=True) or {}
    weights = progress_service.update_weights(data.get("weights", data), actor=request_actor())
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    return jsonify({"weights": weights.to_dict()}), 200


@milestone_bp.route("/progress/reconcile-all", methods=["POST"])
def reconcile_all():
    """Body (optional): {"project_ids": [1, 2, ...]}; default is every project."""
    data = request.get_json(silent=True) or {}
    project_ids = data.get("project_ids")
    if project_ids is not None:
        if not isinstance(project_ids, list):
            raise ValidationError("project_ids must be a list")
        try:
            project_ids = [int(pid) for pid in project_ids]
        except (TypeError, ValueError):
            raise ValidationError("project_ids must contain integers")
    batch = progress_service.reconcile_all(project_ids, actor=request_actor())
    return jsonify(batch.to_dict()), 200
