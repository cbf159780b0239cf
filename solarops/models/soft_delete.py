"""
Soft Delete Mixin.

Adds ``is_deleted`` / ``deleted_at`` / ``delete_reason`` columns and query
helpers. Rows are flagged rather than physically removed so that document
version history and project records survive deletion.

Usage:
    class Document(SoftDeleteMixin, db.Model):
        ...

    doc.soft_delete(reason="replaced by upload")
    db.session.commit()

    Document.query_active().filter_by(project_id=pid).all()
"""

from datetime import datetime, timezone

from solarops.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)
    delete_reason = db.Column(db.String(255), nullable=True)

    def soft_delete(self, reason=None):
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)
        if reason:
            self.delete_reason = reason[:255]

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(False))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(True))
