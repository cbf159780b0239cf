"""
Solar Project Operations Platform
Milestone domain model.

Models:
    - MilestoneRule: static definition of one step of the admin or
      engineering track (weight, order, match criterion, selectors).
    - ProjectMilestone: per-project completion record for one rule.
    - ProgressSetting: key/value JSON settings (track weights, ...).
"""

import json
from datetime import datetime, timezone

from solarops.models import db

TRACK_ADMIN = "admin"
TRACK_ENGINEERING = "engineering"
TRACK_TYPES = (TRACK_ADMIN, TRACK_ENGINEERING)

CRITERION_PROJECT_EXISTS = "project_exists"
CRITERION_DOCUMENT_SUBMITTED = "document_submitted"
CRITERION_DOCUMENT_ISSUED = "document_issued"
CRITERION_ALL_PREREQUISITES = "all_prerequisites"
CRITERION_MANUAL = "manual"
MATCH_CRITERIA = (
    CRITERION_PROJECT_EXISTS,
    CRITERION_DOCUMENT_SUBMITTED,
    CRITERION_DOCUMENT_ISSUED,
    CRITERION_ALL_PREREQUISITES,
    CRITERION_MANUAL,
)


def _load_json(raw, default):
    try:
        value = json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default
    return value if value is not None else default


class MilestoneRule(db.Model):
    """One ordered step of a progress track."""

    __tablename__ = "progress_milestones"
    __table_args__ = (
        db.Index("ix_progress_milestones_track_order", "track_type", "sort_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(120), nullable=False)
    track_type = db.Column(db.String(20), nullable=False, comment="admin | engineering")
    weight = db.Column(db.Float, nullable=False, default=0.0)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    match_criterion = db.Column(
        db.String(30), nullable=False, default=CRITERION_MANUAL,
        comment="project_exists | document_submitted | document_issued | all_prerequisites | manual",
    )
    treat_attachment_as_proof = db.Column(db.Boolean, nullable=False, default=True)
    prerequisites_json = db.Column(db.Text, default="[]", comment="JSON: [rule code, ...]")
    selectors_json = db.Column(
        db.Text, default="[]",
        comment='JSON: [{"kind": "code|label_list|legacy_label", "value": ...}, ...]',
    )
    description = db.Column(db.Text, nullable=True)
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

    @property
    def prerequisites(self) -> list:
        return _load_json(self.prerequisites_json, [])

    @prerequisites.setter
    def prerequisites(self, codes):
        self.prerequisites_json = json.dumps(list(codes or []))

    @property
    def selectors(self) -> list:
        return _load_json(self.selectors_json, [])

    @selectors.setter
    def selectors(self, items):
        self.selectors_json = json.dumps(list(items or []), ensure_ascii=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "track_type": self.track_type,
            "weight": self.weight,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "match_criterion": self.match_criterion,
            "treat_attachment_as_proof": self.treat_attachment_as_proof,
            "prerequisites": self.prerequisites,
            "selectors": self.selectors,
            "description": self.description,
        }

    def __repr__(self):
        return f"<MilestoneRule {self.code} ({self.track_type}#{self.sort_order})>"


class ProjectMilestone(db.Model):
    """Completion record of one rule for one project."""

    __tablename__ = "project_milestones"
    __table_args__ = (
        db.UniqueConstraint("project_id", "milestone_code", name="uq_project_milestones_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    milestone_code = db.Column(db.String(50), nullable=False)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(150), nullable=True)
    note = db.Column(db.String(255), nullable=True)
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

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_code": self.milestone_code,
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "note": self.note,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        state = "done" if self.is_completed else "open"
        return f"<ProjectMilestone {self.project_id}/{self.milestone_code} {state}>"


class ProgressSetting(db.Model):
    """Key/value progress configuration stored as JSON text."""

    __tablename__ = "progress_settings"

    id = db.Column(db.Integer, primary_key=True)
    setting_key = db.Column(db.String(50), nullable=False, unique=True)
    setting_value_json = db.Column(db.Text, default="{}")
    description = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def value(self) -> dict:
        return _load_json(self.setting_value_json, {})

    @value.setter
    def value(self, data):
        self.setting_value_json = json.dumps(data or {})

    def to_dict(self) -> dict:
        return {
            "setting_key": self.setting_key,
            "setting_value": self.value,
            "description": self.description,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
