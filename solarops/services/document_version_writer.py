"""
Safe document version writer.

Writes a new version of a (project_id, doc_type_code) document in three
stages so that the key never ends up with two current rows:

    1. read the highest non-deleted version          -> next = max + 1
    2. insert the new row with is_current = False     (unique-index guarded)
    3a. demote every current row of the key
    3b. promote the new row

A unique-index conflict at stage 2 or 3b means a concurrent writer got there
first; the attempt is undone and retried from stage 1 a bounded number of
times. Any other failure after stage 2 soft-deletes the new row again before
the error is raised. File record and audit entry are written after 3b and are
best-effort.

When ``atomic_promotion`` is on, 3a and 3b run as one store transaction and
readers never observe a key with zero current rows.
"""

from __future__ import annotations

import logging

from solarops.core.exceptions import (
    DemotionFailed,
    PromotionFailed,
    StoreConflictError,
    StoreError,
    VersionConflict,
)
from solarops.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2

# Columns a caller may set on a new version; everything else is owned by the writer.
WRITABLE_FIELDS = (
    "doc_type",
    "agency_code",
    "title",
    "submitted_at",
    "issued_at",
    "expires_at",
    "drive_file_id",
    "drive_web_view_link",
    "drive_path",
    "notes",
)

ATTACHMENT_FIELDS = ("original_name", "storage_path", "file_size", "mime_type")


class _RetryableConflict(Exception):
    def __init__(self, stage: str, cause: StoreError, document_id=None, rolled_back=False):
        self.stage = stage
        self.cause = cause
        self.document_id = document_id
        self.rolled_back = rolled_back
        super().__init__(str(cause))


class DocumentVersionWriter:
    """Create document versions through a ``DocumentStore``."""

    def __init__(self, store=None, *, max_retries=None, atomic_promotion: bool = False):
        self.store = store or DocumentStore()
        self.max_retries = DEFAULT_MAX_RETRIES if max_retries is None else int(max_retries)
        self.atomic_promotion = atomic_promotion

    @classmethod
    def from_config(cls, config, store=None) -> "DocumentVersionWriter":
        return cls(
            store,
            max_retries=config.get("DOCUMENT_WRITE_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            atomic_promotion=bool(config.get("DOCUMENT_ATOMIC_PROMOTION", False)),
        )

    def write(
        self,
        project_id: int,
        doc_type_code: str,
        fields: dict | None = None,
        *,
        attachment: dict | None = None,
        actor: str = "system",
    ):
        """Write a new current version and return the persisted ``Document``.

        Raises:
            VersionConflict: concurrent writers kept winning until retries ran out.
            DemotionFailed: stage 3a failed (new row rolled back).
            PromotionFailed: stage 3b failed (new row rolled back).
            StoreError: stage 1 or 2 failed for a reason other than a conflict.
        """
        values = {k: v for k, v in (fields or {}).items() if k in WRITABLE_FIELDS}
        attempt = 0
        while True:
            try:
                document = self._attempt(project_id, doc_type_code, values, actor)
                break
            except _RetryableConflict as conflict:
                if attempt >= self.max_retries:
                    error_cls = VersionConflict if conflict.stage == "insert" else PromotionFailed
                    logger.warning(
                        "Document write gave up after %d retries",
                        attempt,
                        extra={"project_id": project_id, "doc_type_code": doc_type_code},
                    )
                    raise error_cls(
                        f"Concurrent update of {doc_type_code} for project {project_id}; "
                        "retry the upload",
                        project_id=project_id,
                        doc_type_code=doc_type_code,
                        document_id=conflict.document_id,
                        rolled_back=conflict.rolled_back,
                        cause=conflict.cause,
                    ) from conflict.cause
                attempt += 1
                logger.info(
                    "Version conflict at %s stage, retry %d/%d",
                    conflict.stage, attempt, self.max_retries,
                    extra={"project_id": project_id, "doc_type_code": doc_type_code},
                )

        self._attach_file(document, attachment, actor)
        self._audit(document, actor)
        return document

    # ── Stages ───────────────────────────────────────────────────────────

    def _attempt(self, project_id, doc_type_code, values, actor):
        version = self.store.find_max_version(project_id, doc_type_code) + 1

        row = dict(values)
        row.update(
            project_id=project_id,
            doc_type_code=doc_type_code,
            version=version,
            is_current=False,
            is_deleted=False,
            created_by=actor,
        )
        try:
            document = self.store.insert_document(row)
        except StoreConflictError as exc:
            raise _RetryableConflict("insert", exc) from exc
        document_id = document.id

        if self.atomic_promotion:
            self._swap_atomically(project_id, doc_type_code, document_id)
        else:
            self._demote(project_id, doc_type_code, document_id)
            self._promote(project_id, doc_type_code, document_id)

        logger.info(
            "Document version written",
            extra={
                "project_id": project_id,
                "doc_type_code": doc_type_code,
                "document_id": document_id,
                "version": version,
            },
        )
        return document

    def _demote(self, project_id, doc_type_code, document_id):
        try:
            self.store.update_documents(
                {
                    "project_id": project_id,
                    "doc_type_code": doc_type_code,
                    "is_current": True,
                    "is_deleted": False,
                },
                {"is_current": False},
            )
        except StoreError as exc:
            rolled_back = self._rollback(document_id, "demote")
            raise DemotionFailed(
                f"Could not clear the current {doc_type_code} for project {project_id}",
                project_id=project_id,
                doc_type_code=doc_type_code,
                document_id=document_id,
                rolled_back=rolled_back,
                cause=exc,
            ) from exc

    def _promote(self, project_id, doc_type_code, document_id):
        try:
            promoted = self.store.update_documents(
                {"id": document_id, "is_deleted": False},
                {"is_current": True},
            )
            if promoted != 1:
                raise StoreError("promote_document")
        except StoreConflictError as exc:
            rolled_back = self._rollback(document_id, "promote")
            raise _RetryableConflict("promote", exc, document_id, rolled_back) from exc
        except StoreError as exc:
            rolled_back = self._rollback(document_id, "promote")
            raise PromotionFailed(
                f"Could not promote the new {doc_type_code} version for project {project_id}",
                project_id=project_id,
                doc_type_code=doc_type_code,
                document_id=document_id,
                rolled_back=rolled_back,
                cause=exc,
            ) from exc

    def _swap_atomically(self, project_id, doc_type_code, document_id):
        try:
            self.store.demote_and_promote(project_id, doc_type_code, document_id)
        except StoreConflictError as exc:
            rolled_back = self._rollback(document_id, "promote")
            raise _RetryableConflict("promote", exc, document_id, rolled_back) from exc
        except StoreError as exc:
            rolled_back = self._rollback(document_id, "promote")
            raise PromotionFailed(
                f"Could not swap the current {doc_type_code} for project {project_id}",
                project_id=project_id,
                doc_type_code=doc_type_code,
                document_id=document_id,
                rolled_back=rolled_back,
                cause=exc,
            ) from exc

    def repromote_latest(self, project_id: int, doc_type_code: str):
        """Make the highest remaining live version of the key current again.

        Used after the current row is deleted. Returns the promoted document,
        or None when no live version is left. Store errors propagate; the
        existing row is never rolled back.
        """
        latest = self.store.latest_live_version(project_id, doc_type_code)
        if latest is None:
            return None
        if self.atomic_promotion:
            self.store.demote_and_promote(project_id, doc_type_code, latest.id)
        else:
            self.store.update_documents(
                {
                    "project_id": project_id,
                    "doc_type_code": doc_type_code,
                    "is_current": True,
                    "is_deleted": False,
                },
                {"is_current": False},
            )
            self.store.update_documents({"id": latest.id}, {"is_current": True})
        logger.info(
            "Re-promoted %s v%s", doc_type_code, latest.version,
            extra={"project_id": project_id, "document_id": latest.id},
        )
        return latest

    def _rollback(self, document_id, stage) -> bool:
        """Soft-delete the row inserted by this attempt. Never raises."""
        try:
            self.store.soft_delete(document_id, reason=f"rollback: {stage} failed")
        except StoreError:
            logger.error(
                "Rollback of document %s failed; manual cleanup required",
                document_id,
                exc_info=True,
                extra={"document_id": document_id},
            )
            return False
        logger.warning(
            "Rolled back document %s after %s failure", document_id, stage,
            extra={"document_id": document_id},
        )
        return True

    # ── Secondary effects ────────────────────────────────────────────────

    def _attach_file(self, document, attachment, actor):
        if not attachment:
            return
        fields = {k: attachment.get(k) for k in ATTACHMENT_FIELDS}
        fields["uploaded_by"] = actor
        try:
            self.store.add_document_file(document.id, fields)
        except StoreError:
            logger.warning(
                "File record for document %s not saved", document.id,
                exc_info=True,
                extra={"document_id": document.id},
            )

    def _audit(self, document, actor):
        action = "document.new_version" if document.version > 1 else "document.create"
        try:
            self.store.record_audit(
                "document",
                document.id,
                action,
                f"{document.doc_type_code} v{document.version}",
                actor=actor,
                project_id=document.project_id,
                diff={"version": {"old": document.version - 1 or None, "new": document.version}},
            )
        except StoreError:
            logger.warning(
                "Audit entry for document %s not saved", document.id,
                exc_info=True,
                extra={"document_id": document.id},
            )
