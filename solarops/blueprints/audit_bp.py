"""
Audit trail blueprint.

Every document write and milestone change leaves an AuditLog row:

    document.create / document.new_version   writer inserted a version
    document.repromote                       delete promoted an older version
    document.update_dates / document.delete / document.attach_file
    milestone.complete / milestone.uncomplete
    rule.update / settings.update

Endpoints:
    GET  /api/v1/audit                          — filtered, paginated list
    GET  /api/v1/audit/<int:log_id>             — single entry
    GET  /api/v1/projects/<int:pid>/timeline    — one project's trail, newest first
"""

from flask import Blueprint, jsonify, request

from solarops.core.exceptions import ValidationError
from solarops.models import db
from solarops.models.audit import AuditLog
from solarops.models.project import Project
from solarops.utils.helpers import get_or_404, parse_datetime_input

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")

MAX_PER_PAGE = 200


def _window(q):
    """Apply ``since`` / ``until`` (inclusive, any accepted date format)."""
    try:
        since = parse_datetime_input(request.args.get("since"))
        until = parse_datetime_input(request.args.get("until"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if since and until and since > until:
        raise ValidationError("since must not be after until")
    if since:
        q = q.filter(AuditLog.timestamp >= since)
    if until:
        q = q.filter(AuditLog.timestamp <= until)
    return q


def _page(q):
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(MAX_PER_PAGE, max(1, request.args.get("per_page", 50, type=int)))
    paginated = (
        q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .paginate(page=page, per_page=per_page, error_out=False)
    )
    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Query params:
        project_id   — filter by project
        entity_type  — document | project_milestone | milestone_rule | progress_setting
        entity_id    — filter by entity PK
        document_id  — shorthand for entity_type=document&entity_id=<id>
        action       — prefix match, e.g. "document." or "milestone.complete"
        actor        — X-User of the writer
        since/until  — timestamp window
        page, per_page
    """
    q = AuditLog.query

    project_id = request.args.get("project_id", type=int)
    if project_id is not None:
        q = q.filter(AuditLog.project_id == project_id)

    document_id = request.args.get("document_id", type=int)
    if document_id is not None:
        q = q.filter(AuditLog.entity_type == "document", AuditLog.entity_id == str(document_id))

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor")
    if actor:
        q = q.filter(AuditLog.actor == actor)

    return _page(_window(q))


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        return jsonify({"error": "Audit log not found"}), 404
    return jsonify(log.to_dict())


@audit_bp.route("/projects/<int:project_id>/timeline", methods=["GET"])
def project_timeline(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    q = AuditLog.query.filter(AuditLog.project_id == project_id)
    return _page(_window(q))
