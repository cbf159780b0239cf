"""
Document service: uploads through the version writer, date edits, file
attachments, deletion with re-promotion, and version history queries.

Uploads and deletes commit through ``DocumentStore`` call by call. Date
edits and attachments flush only; the blueprint commits.
"""

from __future__ import annotations

import logging

from flask import current_app

from solarops.core.exceptions import (
    DocumentWriteError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from solarops.models import db
from solarops.models.audit import write_audit
from solarops.models.document import Document, DocumentFile
from solarops.models.project import Project
from solarops.services.document_store import DocumentStore
from solarops.services.document_version_writer import DocumentVersionWriter, WRITABLE_FIELDS
from solarops.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

DATE_FIELDS = ("submitted_at", "issued_at", "expires_at")


def build_writer(store=None) -> DocumentVersionWriter:
    return DocumentVersionWriter.from_config(current_app.config, store or DocumentStore())


def _active_project(project_id) -> Project:
    project = db.session.get(Project, project_id)
    if project is None or project.is_deleted:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _active_document(document_id) -> Document:
    document = db.session.get(Document, document_id)
    if document is None or document.is_deleted:
        raise NotFoundError(resource="Document", resource_id=document_id)
    return document


def _parse_dates(data: dict) -> dict:
    parsed = {}
    for key in DATE_FIELDS:
        if key not in data:
            continue
        try:
            parsed[key] = parse_datetime_input(data.get(key))
        except ValueError as exc:
            raise ValidationError(str(exc), details={key: data.get(key)})
    return parsed


def _parse_attachment(raw) -> dict | None:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("file must be an object")
    missing = [k for k in ("original_name", "storage_path") if not raw.get(k)]
    if missing:
        raise ValidationError(
            f"file.{missing[0]} is required", details={"missing": missing},
        )
    return raw


# ── Writes ───────────────────────────────────────────────────────────────────


def upload_document(project_id: int, data: dict, *, actor: str = "system", writer=None) -> Document:
    """Create the next version of ``data['doc_type_code']`` for a project."""
    _active_project(project_id)
    code = str(data.get("doc_type_code", "") or "").strip().upper()
    if not code:
        raise ValidationError("doc_type_code is required")

    fields = {k: data.get(k) for k in WRITABLE_FIELDS if k in data and k not in DATE_FIELDS}
    fields.update(_parse_dates(data))
    attachment = _parse_attachment(data.get("file"))

    writer = writer or build_writer()
    return writer.write(project_id, code, fields, attachment=attachment, actor=actor)


def batch_upload(items, *, actor: str = "system", writer=None) -> dict:
    """Upload many documents, one writer call per item.

    A failing item is reported and does not stop the batch. Returns the
    per-item report plus the ids of projects that received a new version.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    writer = writer or build_writer()
    created, errors, touched = [], [], []
    for index, item in enumerate(items):
        item = item if isinstance(item, dict) else {}
        project_id = item.get("project_id")
        try:
            if project_id is None:
                raise ValidationError("project_id is required")
            document = upload_document(int(project_id), item, actor=actor, writer=writer)
        except (NotFoundError, ValidationError, DocumentWriteError, StoreError, ValueError) as exc:
            errors.append({"index": index, "project_id": project_id, "error": str(exc)})
            continue
        created.append(document.to_dict(include_files=False))
        if document.project_id not in touched:
            touched.append(document.project_id)

    logger.info("Batch upload: %d created, %d failed", len(created), len(errors))
    return {
        "total": len(items),
        "succeeded": len(created),
        "failed": len(errors),
        "documents": created,
        "errors": errors,
        "project_ids": touched,
    }


def update_document_dates(document_id: int, data: dict, *, actor: str = "system") -> Document:
    document = _active_document(document_id)
    dates = _parse_dates(data)
    if not dates:
        raise ValidationError(f"Provide at least one of {', '.join(DATE_FIELDS)}")

    diff = {}
    for key, value in dates.items():
        old = getattr(document, key)
        diff[key] = {
            "old": old.isoformat() if old else None,
            "new": value.isoformat() if value else None,
        }
        setattr(document, key, value)

    write_audit(
        entity_type="document",
        entity_id=document.id,
        action="document.update_dates",
        actor=actor,
        project_id=document.project_id,
        diff=diff,
    )
    db.session.flush()
    return document


def attach_file(document_id: int, data: dict, *, actor: str = "system") -> DocumentFile:
    document = _active_document(document_id)
    attachment = _parse_attachment(data)
    if attachment is None:
        raise ValidationError("original_name and storage_path are required")

    record = DocumentFile(
        document_id=document.id,
        original_name=attachment["original_name"],
        storage_path=attachment["storage_path"],
        file_size=attachment.get("file_size"),
        mime_type=attachment.get("mime_type"),
        uploaded_by=actor,
    )
    db.session.add(record)
    write_audit(
        entity_type="document",
        entity_id=document.id,
        action="document.attach_file",
        actor=actor,
        reason=attachment["original_name"],
        project_id=document.project_id,
    )
    db.session.flush()
    return record


def delete_document(
    document_id: int, *, reason: str | None = None, actor: str = "system", writer=None,
) -> dict:
    """Soft-delete a version; if it was current, re-promote the latest remaining one."""
    document = _active_document(document_id)
    project_id = document.project_id
    code = document.doc_type_code
    version = document.version
    was_current = bool(document.is_current)

    writer = writer or build_writer()
    store = writer.store
    store.soft_delete(document_id, reason=reason)

    promoted = None
    if was_current:
        try:
            promoted = writer.repromote_latest(project_id, code)
        except StoreError:
            logger.warning(
                "No current %s after deleting document %s; re-promotion failed",
                code, document_id,
                exc_info=True,
                extra={"project_id": project_id, "document_id": document_id},
            )

    try:
        store.record_audit(
            "document", document_id, "document.delete", reason,
            actor=actor, project_id=project_id,
            diff={"version": version, "was_current": was_current},
        )
        if promoted is not None:
            store.record_audit(
                "document", promoted.id, "document.repromote",
                f"{code} v{promoted.version} current after deleting v{version}",
                actor=actor, project_id=project_id,
            )
    except StoreError:
        logger.warning("Audit entry for deleted document %s not saved", document_id, exc_info=True)

    return {
        "deleted_id": document_id,
        "project_id": project_id,
        "promoted_id": promoted.id if promoted is not None else None,
        "promoted_version": promoted.version if promoted is not None else None,
    }


# ── Reads ────────────────────────────────────────────────────────────────────


def get_document(document_id: int) -> Document:
    return _active_document(document_id)


def list_documents(project_id: int, *, include_history: bool = False, doc_type_code: str | None = None):
    _active_project(project_id)
    query = Document.query_active().filter(Document.project_id == project_id)
    if not include_history:
        query = query.filter(Document.is_current.is_(True))
    if doc_type_code:
        query = query.filter(Document.doc_type_code == doc_type_code.upper())
    return query.order_by(Document.doc_type_code, Document.version.desc()).all()


def list_versions(project_id: int, doc_type_code: str, *, include_deleted: bool = False):
    _active_project(project_id)
    query = Document.query.filter(
        Document.project_id == project_id,
        Document.doc_type_code == doc_type_code.upper(),
    )
    if not include_deleted:
        query = query.filter(Document.is_deleted.is_(False))
    return query.order_by(Document.version.desc()).all()


def get_current(project_id: int, doc_type_code: str) -> Document:
    _active_project(project_id)
    document = Document.query_active().filter(
        Document.project_id == project_id,
        Document.doc_type_code == doc_type_code.upper(),
        Document.is_current.is_(True),
    ).first()
    if document is None:
        raise NotFoundError(resource="Document", resource_id=f"{project_id}/{doc_type_code}")
    return document
