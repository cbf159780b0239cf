"""
Document blueprint.

Endpoints:
    GET    /api/v1/projects/<pid>/documents                      — current documents (?history=true for all)
    POST   /api/v1/projects/<pid>/documents                      — upload a new version
    GET    /api/v1/projects/<pid>/documents/<code>/versions      — version history
    GET    /api/v1/projects/<pid>/documents/<code>/current       — current version
    POST   /api/v1/documents/batch-upload                        — many uploads, per-item report
    GET    /api/v1/documents/<id>                                — detail
    PATCH  /api/v1/documents/<id>                                — edit submitted/issued/expiry dates
    DELETE /api/v1/documents/<id>                                — soft delete (re-promotes if current)
    POST   /api/v1/documents/<id>/files                          — attach a file record

Version-protocol failures map to 409 (conflict, retry) and 500 (rolled back)
through the app-level handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from solarops.blueprints import request_actor, request_flag
from solarops.services import document_service, progress_service
from solarops.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

document_bp = Blueprint("document", __name__, url_prefix="/api/v1")


@document_bp.route("/projects/<int:project_id>/documents", methods=["GET"])
def list_documents(project_id):
    documents = document_service.list_documents(
        project_id,
        include_history=request_flag("history"),
        doc_type_code=request.args.get("doc_type_code") or None,
    )
    return jsonify({"items": [d.to_dict() for d in documents], "total": len(documents)}), 200


@document_bp.route("/projects/<int:project_id>/documents", methods=["POST"])
def upload_document(project_id):
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    document = document_service.upload_document(project_id, data, actor=actor)
    progress_service.reconcile_after_change(project_id, actor=actor)
    return jsonify(document.to_dict()), 201


@document_bp.route("/projects/<int:project_id>/documents/<code>/versions", methods=["GET"])
def list_versions(project_id, code):
    versions = document_service.list_versions(
        project_id, code, include_deleted=request_flag("include_deleted"),
    )
    return jsonify({"items": [d.to_dict() for d in versions], "total": len(versions)}), 200


@document_bp.route("/projects/<int:project_id>/documents/<code>/current", methods=["GET"])
def get_current(project_id, code):
    document = document_service.get_current(project_id, code)
    return jsonify(document.to_dict()), 200


@document_bp.route("/documents/batch-upload", methods=["POST"])
def batch_upload():
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    report = document_service.batch_upload(data.get("items"), actor=actor)
    for project_id in report["project_ids"]:
        progress_service.reconcile_after_change(project_id, actor=actor)
    status = 201 if report["succeeded"] and not report["failed"] else 207
    if not report["succeeded"]:
        status = 400
    return jsonify(report), status


@document_bp.route("/documents/<int:document_id>", methods=["GET"])
def get_document(document_id):
    document = document_service.get_document(document_id)
    return jsonify(document.to_dict()), 200


@document_bp.route("/documents/<int:document_id>", methods=["PATCH"])
def update_document_dates(document_id):
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    document = document_service.update_document_dates(document_id, data, actor=actor)
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    progress_service.reconcile_after_change(document.project_id, actor=actor)
    return jsonify(document.to_dict()), 200


@document_bp.route("/documents/<int:document_id>", methods=["DELETE"])
def delete_document(document_id):
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    result = document_service.delete_document(
        document_id, reason=data.get("reason"), actor=actor,
    )
    progress_service.reconcile_after_change(result["project_id"], actor=actor)
    return jsonify(result), 200


@document_bp.route("/documents/<int:document_id>/files", methods=["POST"])
def attach_file(document_id):
    data = request.get_json(silent=True) or {}
    actor = request_actor()
    record = document_service.attach_file(document_id, data, actor=actor)
    cerr = db_commit_or_error()
    if cerr:
        return cerr
    progress_service.reconcile_after_change(record.document.project_id, actor=actor)
    return jsonify(record.to_dict()), 201
