"""SQLAlchemy-backed project/document store.

Every mutating method is one persistence call: it commits on success and,
on failure, rolls the session back and raises ``StoreError`` (or
``StoreConflictError`` for unique-index violations). The document version
writer and the progress reconciler talk to the database only through this
class, so tests can subclass it to inject failures at a given stage.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from solarops.core.exceptions import StoreConflictError, StoreError
from solarops.models import db
from solarops.models.audit import write_audit
from solarops.models.document import Document, DocumentFile
from solarops.models.milestone import MilestoneRule, ProjectMilestone
from solarops.models.project import Project

logger = logging.getLogger(__name__)


class DocumentStore:
    """Request/response style access to projects, documents and milestones."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    @contextmanager
    def _unit(self, operation: str):
        """Commit the enclosed work as one call; map DB errors to store errors."""
        try:
            yield
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("Store conflict in %s: %s", operation, exc.orig)
            raise StoreConflictError(operation, exc) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning("Store failure in %s: %s", operation, exc)
            raise StoreError(operation, exc) from exc

    @contextmanager
    def _read(self, operation: str):
        try:
            yield
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError(operation, exc) from exc

    # ── Documents ────────────────────────────────────────────────────────

    def find_max_version(self, project_id: int, doc_type_code: str) -> int:
        """Highest version among non-deleted rows of the key (0 when none)."""
        with self._read("find_max_version"):
            value = self.session.execute(
                select(func.max(Document.version)).where(
                    Document.project_id == project_id,
                    Document.doc_type_code == doc_type_code,
                    Document.is_deleted.is_(False),
                )
            ).scalar()
        return int(value or 0)

    def get_document(self, document_id: int) -> Document | None:
        with self._read("get_document"):
            return self.session.get(Document, document_id)

    def insert_document(self, fields: dict) -> Document:
        document = Document(**fields)
        with self._unit("insert_document"):
            self.session.add(document)
        return document

    def update_documents(self, match: dict, fields: dict) -> int:
        """UPDATE documents SET ``fields`` WHERE every ``match`` column equals its value."""
        with self._unit("update_documents"):
            affected = (
                Document.query.filter_by(**match)
                .update(fields, synchronize_session="fetch")
            )
        return affected

    def demote_and_promote(self, project_id: int, doc_type_code: str, document_id: int) -> int:
        """Clear the key's current row and promote ``document_id`` in one transaction."""
        with self._unit("demote_and_promote"):
            Document.query.filter(
                Document.project_id == project_id,
                Document.doc_type_code == doc_type_code,
                Document.is_current.is_(True),
                Document.is_deleted.is_(False),
            ).update({"is_current": False}, synchronize_session="fetch")
            self.session.flush()
            promoted = Document.query.filter(
                Document.id == document_id,
                Document.is_deleted.is_(False),
            ).update({"is_current": True}, synchronize_session="fetch")
            if promoted != 1:
                # Leave the previous current row in place.
                raise _NothingPromoted()
        return promoted

    def soft_delete(self, document_id: int, reason: str | None = None) -> bool:
        """Soft-delete a non-deleted document. Returns False if nothing matched."""
        with self._unit("soft_delete"):
            document = self.session.get(Document, document_id)
            if document is None or document.is_deleted:
                return False
            document.soft_delete(reason=reason)
            document.is_current = False
        return True

    def latest_live_version(self, project_id: int, doc_type_code: str) -> Document | None:
        with self._read("latest_live_version"):
            return (
                Document.query.filter(
                    Document.project_id == project_id,
                    Document.doc_type_code == doc_type_code,
                    Document.is_deleted.is_(False),
                )
                .order_by(Document.version.desc())
                .first()
            )

    def fetch_documents(self, project_ids, *, current_only: bool = True) -> list[Document]:
        ids = list(project_ids)
        if not ids:
            return []
        with self._read("fetch_documents"):
            query = Document.query.filter(
                Document.project_id.in_(ids),
                Document.is_deleted.is_(False),
            )
            if current_only:
                query = query.filter(Document.is_current.is_(True))
            return query.order_by(Document.project_id, Document.id).all()

    def add_document_file(self, document_id: int, fields: dict) -> DocumentFile:
        record = DocumentFile(document_id=document_id, **fields)
        with self._unit("add_document_file"):
            self.session.add(record)
        return record

    # ── Projects & milestones ────────────────────────────────────────────

    def fetch_projects(self, project_ids=None) -> list[Project]:
        with self._read("fetch_projects"):
            query = Project.query_active()
            if project_ids is not None:
                ids = list(project_ids)
                if not ids:
                    return []
                query = query.filter(Project.id.in_(ids))
            return query.order_by(Project.id).all()

    def fetch_milestones(self, project_ids) -> list[ProjectMilestone]:
        ids = list(project_ids)
        if not ids:
            return []
        with self._read("fetch_milestones"):
            return (
                ProjectMilestone.query.filter(ProjectMilestone.project_id.in_(ids))
                .order_by(ProjectMilestone.project_id, ProjectMilestone.id)
                .all()
            )

    def fetch_rules(self, *, active_only: bool = True) -> list[MilestoneRule]:
        with self._read("fetch_rules"):
            query = MilestoneRule.query
            if active_only:
                query = query.filter(MilestoneRule.is_active.is_(True))
            return query.order_by(MilestoneRule.sort_order, MilestoneRule.code).all()

    def upsert_milestone(self, project_id: int, code: str, fields: dict) -> ProjectMilestone:
        with self._unit("upsert_milestone"):
            row = ProjectMilestone.query.filter_by(
                project_id=project_id, milestone_code=code,
            ).first()
            if row is None:
                row = ProjectMilestone(project_id=project_id, milestone_code=code)
                self.session.add(row)
            for key, value in fields.items():
                setattr(row, key, value)
        return row

    def update_project_progress(self, project_id: int, fields: dict) -> int:
        values = dict(fields)
        values["progress_updated_at"] = datetime.now(timezone.utc)
        with self._unit("update_project_progress"):
            affected = (
                Project.query.filter_by(id=project_id)
                .update(values, synchronize_session="fetch")
            )
        return affected

    # ── Audit ────────────────────────────────────────────────────────────

    def record_audit(
        self,
        entity_type: str,
        entity_id,
        action: str,
        reason: str | None = None,
        *,
        actor: str = "system",
        project_id: int | None = None,
        diff: dict | None = None,
    ):
        with self._unit("record_audit"):
            log = write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor=actor,
                reason=reason,
                project_id=project_id,
                diff=diff,
            )
        return log


class _NothingPromoted(SQLAlchemyError):
    """The promote UPDATE matched no row (target deleted meanwhile)."""
