"""Solar installation project and its cached progress summary."""

from datetime import datetime, timezone

from solarops.models import db
from solarops.models.soft_delete import SoftDeleteMixin


# Display values of the construction status derived from engineering milestones.
CONSTRUCTION_NOT_STARTED = "尚未開工"
CONSTRUCTION_STARTED = "已開工"
CONSTRUCTION_AWAITING_METER = "待掛錶"
CONSTRUCTION_METER_INSTALLED = "已掛錶"

CONSTRUCTION_STATUSES = (
    CONSTRUCTION_NOT_STARTED,
    CONSTRUCTION_STARTED,
    CONSTRUCTION_AWAITING_METER,
    CONSTRUCTION_METER_INSTALLED,
)

# Columns that make up the derived progress cache.
PROGRESS_FIELDS = (
    "admin_progress",
    "engineering_progress",
    "overall_progress",
    "admin_stage",
    "engineering_stage",
    "construction_status",
)


class Project(SoftDeleteMixin, db.Model):
    """A solar installation site tracked through admin and engineering milestones."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    project_code = db.Column(db.String(50), nullable=False, unique=True)
    project_name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="active")
    address = db.Column(db.String(255), nullable=True)
    capacity_kwp = db.Column(db.Numeric(10, 2), nullable=True)
    drive_folder_id = db.Column(
        db.String(120), nullable=True,
        comment="Cloud drive folder receiving this project's uploads",
    )
    notes = db.Column(db.Text, nullable=True)

    # ── Derived progress cache (recomputable from milestones) ──
    admin_progress = db.Column(db.Float, nullable=False, default=0.0)
    engineering_progress = db.Column(db.Float, nullable=False, default=0.0)
    overall_progress = db.Column(db.Float, nullable=False, default=0.0)
    admin_stage = db.Column(db.String(120), nullable=True)
    engineering_stage = db.Column(db.String(120), nullable=True)
    construction_status = db.Column(
        db.String(20), nullable=False, default=CONSTRUCTION_NOT_STARTED,
        comment="尚未開工 | 已開工 | 待掛錶 | 已掛錶",
    )
    progress_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

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

    documents = db.relationship("Document", backref="project", lazy="dynamic")
    milestones = db.relationship("ProjectMilestone", backref="project", lazy="dynamic")

    def progress_dict(self) -> dict:
        return {field: getattr(self, field) for field in PROGRESS_FIELDS}

    def to_dict(self) -> dict:
        """Serialize project fields for API responses."""
        return {
            "id": self.id,
            "project_code": self.project_code,
            "project_name": self.project_name,
            "status": self.status,
            "address": self.address,
            "capacity_kwp": float(self.capacity_kwp) if self.capacity_kwp is not None else None,
            "drive_folder_id": self.drive_folder_id,
            "notes": self.notes,
            **self.progress_dict(),
            "progress_updated_at": (
                self.progress_updated_at.isoformat() if self.progress_updated_at else None
            ),
            "is_deleted": self.is_deleted,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.project_code}>"
