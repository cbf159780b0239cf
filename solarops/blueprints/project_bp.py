"""
Project blueprint.

Endpoints:
    GET    /api/v1/projects                      — list (status, search, limit/offset)
    POST   /api/v1/projects                      — create
    GET    /api/v1/projects/<id>                 — detail
    PUT    /api/v1/projects/<id>                 — update
    DELETE /api/v1/projects/<id>                 — soft delete
    GET    /api/v1/projects/<id>/progress        — cached progress summary
    POST   /api/v1/projects/<id>/reconcile       — recompute milestones and progress now
"""

import logging

from flask import Blueprint, jsonify, request

from solarops.blueprints import paginate_query, request_actor
from solarops.models.project import Project
from solarops.services import progress_service, project_service
from solarops.utils.helpers import db_commit_or_error, get_or_404

logger = logging.getLogger(__name__)

project_bp = Blueprint("project", __name__, url_prefix="/api/v1/projects")


@project_bp.route("", methods=["GET"])
def list_projects():
    query = project_service.list_projects(
        status=request.args.get("status") or None,
        search=request.args.get("search") or None,
    )
    items, total = paginate_query(query)
    return jsonify({"items": [p.to_dict() for p in items], "total": total}), 200


@project_bp.route("", methods=["POST"])
def create_project():
    """Create a project; its first admin milestone is derived right away."""
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    project, svc_err = project_service.create_project(data=data, actor=actor)
    if svc_err:
        return jsonify({"error": svc_err["error"]}), svc_err["status"]

    cerr = db_commit_or_error()
    if cerr:
        return cerr

    progress_service.reconcile_after_change(project.id, actor=actor)
    return jsonify(project.to_dict()), 201


@project_bp.route("/<int:project_id>", methods=["GET"])
def get_project(project_id):
    project, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(project.to_dict()), 200


@project_bp.route("/<int:project_id>", methods=["PUT"])
def update_project(project_id):
    project, err = get_or_404(Project, project_id)
    if err:
        return err

    data = request.get_json(silent=True) or {}
    project, svc_err = project_service.update_project(project=project, data=data)
    if svc_err:
        return jsonify({"error": svc_err["error"]}), svc_err["status"]

    cerr = db_commit_or_error()
    if cerr:
        return cerr
    return jsonify(project.to_dict()), 200


@project_bp.route("/<int:project_id>", methods=["DELETE"])
def delete_project(project_id):
    project, err = get_or_404(Project, project_id)
    if err:
        return err

    data = request.get_json(silent=True) or {}
    project_service.delete_project(project=project, reason=data.get("reason"))
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    logger.info("Project deleted", extra={"project_id": project_id})
    return jsonify({"message": f"Project '{project.project_code}' deleted"}), 200


@project_bp.route("/<int:project_id>/progress", methods=["GET"])
def get_progress(project_id):
    project, err = get_or_404(Project, project_id)
    if err:
        return err
    body = project.progress_dict()
    body["project_id"] = project.id
    body["progress_updated_at"] = (
        project.progress_updated_at.isoformat() if project.progress_updated_at else None
    )
    return jsonify(body), 200


@project_bp.route("/<int:project_id>/reconcile", methods=["POST"])
def reconcile_project(project_id):
    """Synchronous reconcile; store failures surface as errors here."""
    result = progress_service.reconcile_project(project_id, actor=request_actor())
    return jsonify(result.to_dict()), 200
