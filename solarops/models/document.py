"""
Solar Project Operations Platform
Document domain model.

Models:
    - Document: one version of a typed document attached to a project.
    - DocumentFile: a file attachment belonging to a document version.

Version invariants are enforced by two partial unique indexes so that
concurrent writers collide in the database rather than in application code:

    uq_documents_current  (project_id, doc_type_code)
        WHERE is_current AND NOT is_deleted
    uq_documents_version  (project_id, doc_type_code, version)
        WHERE NOT is_deleted
"""

from datetime import datetime, timezone

from solarops.models import db
from solarops.models.soft_delete import SoftDeleteMixin


class Document(SoftDeleteMixin, db.Model):
    """A single version of a document for a (project, doc_type_code) key."""

    __tablename__ = "documents"
    __table_args__ = (
        db.Index(
            "uq_documents_current",
            "project_id",
            "doc_type_code",
            unique=True,
            postgresql_where=db.text("is_current IS TRUE AND is_deleted IS FALSE"),
            sqlite_where=db.text("is_current = 1 AND is_deleted = 0"),
        ),
        db.Index(
            "uq_documents_version",
            "project_id",
            "doc_type_code",
            "version",
            unique=True,
            postgresql_where=db.text("is_deleted IS FALSE"),
            sqlite_where=db.text("is_deleted = 0"),
        ),
        db.Index("ix_documents_project_current", "project_id", "is_current"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    doc_type_code = db.Column(
        db.String(50), nullable=False,
        comment="Document type code, e.g. TPC_REVIEW | MOEA_CONSENT",
    )
    doc_type = db.Column(
        db.String(50), nullable=True,
        comment="Legacy free-text type label (審查意見書, 同意備案, ...)",
    )
    agency_code = db.Column(db.String(30), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    is_current = db.Column(db.Boolean, nullable=False, default=False)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    drive_file_id = db.Column(db.String(120), nullable=True)
    drive_web_view_link = db.Column(db.String(500), nullable=True)
    drive_path = db.Column(db.String(500), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    files = db.relationship(
        "DocumentFile",
        backref="document",
        lazy="selectin",
        order_by="DocumentFile.id",
    )

    @property
    def active_files(self) -> list:
        return [f for f in self.files if not f.is_deleted]

    @property
    def has_attachment(self) -> bool:
        """True when a non-deleted file row or a drive file is attached."""
        return bool(self.active_files) or bool(self.drive_file_id)

    def to_dict(self, include_files: bool = True) -> dict:
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "doc_type_code": self.doc_type_code,
            "doc_type": self.doc_type,
            "agency_code": self.agency_code,
            "title": self.title,
            "version": self.version,
            "is_current": self.is_current,
            "is_deleted": self.is_deleted,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "drive_file_id": self.drive_file_id,
            "drive_web_view_link": self.drive_web_view_link,
            "notes": self.notes,
            "has_attachment": self.has_attachment,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_files:
            d["files"] = [f.to_dict() for f in self.active_files]
        return d

    def __repr__(self) -> str:
        flag = " current" if self.is_current else ""
        return f"<Document {self.id}: {self.doc_type_code} v{self.version}{flag}>"


class DocumentFile(db.Model):
    """Attachment record for a stored file (drive id or local path)."""

    __tablename__ = "document_files"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.Integer,
        db.ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_name = db.Column(db.String(255), nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer, nullable=True)
    mime_type = db.Column(db.String(120), nullable=True)
    uploaded_by = db.Column(db.String(150), nullable=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "original_name": self.original_name,
            "storage_path": self.storage_path,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<DocumentFile {self.id}: {self.original_name}>"
