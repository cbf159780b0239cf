"""
Milestone service: per-project milestone listing, the explicit user toggle,
and rule table management.

The user toggle is the only path that may mark a milestone incomplete; the
reconciler only ever completes. All functions flush and leave the commit to
the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from solarops.core.exceptions import NotFoundError, ValidationError
from solarops.models import db
from solarops.models.audit import write_audit
from solarops.models.milestone import MilestoneRule, ProjectMilestone, TRACK_TYPES
from solarops.models.project import Project
from solarops.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

_RULE_EDITABLE = ("name", "weight", "sort_order", "is_active", "treat_attachment_as_proof", "description")


def _active_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None or project.is_deleted:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def list_project_milestones(project_id: int, *, track_type: str | None = None) -> list[dict]:
    """Active rules in track order, each merged with the project's completion row."""
    _active_project(project_id)
    rules = MilestoneRule.query.filter(MilestoneRule.is_active.is_(True))
    if track_type:
        if track_type not in TRACK_TYPES:
            raise ValidationError(f"track_type must be one of {', '.join(TRACK_TYPES)}")
        rules = rules.filter(MilestoneRule.track_type == track_type)
    rules = rules.order_by(MilestoneRule.sort_order, MilestoneRule.code).all()

    rows = {
        m.milestone_code: m
        for m in ProjectMilestone.query.filter_by(project_id=project_id).all()
    }
    items = []
    for rule in rules:
        row = rows.get(rule.code)
        items.append({
            "milestone_code": rule.code,
            "name": rule.name,
            "track_type": rule.track_type,
            "weight": rule.weight,
            "sort_order": rule.sort_order,
            "is_completed": bool(row and row.is_completed),
            "completed_at": row.completed_at.isoformat() if row and row.completed_at else None,
            "completed_by": row.completed_by if row else None,
            "note": row.note if row else None,
        })
    return items


def set_milestone_completion(
    project_id: int,
    code: str,
    *,
    completed: bool,
    note: str | None = None,
    completed_at=None,
    actor: str = "system",
) -> ProjectMilestone:
    """Complete or uncomplete one milestone by hand."""
    _active_project(project_id)
    rule = MilestoneRule.query.filter_by(code=code).first()
    if rule is None:
        raise NotFoundError(resource="MilestoneRule", resource_id=code)

    try:
        when = parse_datetime_input(completed_at)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"completed_at": completed_at})

    row = ProjectMilestone.query.filter_by(project_id=project_id, milestone_code=code).first()
    old_state = bool(row and row.is_completed)
    if row is None:
        row = ProjectMilestone(project_id=project_id, milestone_code=code)
        db.session.add(row)

    row.is_completed = completed
    row.completed_at = (when or datetime.now(timezone.utc)) if completed else None
    row.completed_by = actor
    row.note = (note or ("manual" if completed else "manually reopened"))[:255]

    write_audit(
        entity_type="project_milestone",
        entity_id=code,
        action="milestone.complete" if completed else "milestone.uncomplete",
        actor=actor,
        reason=note,
        project_id=project_id,
        diff={"is_completed": {"old": old_state, "new": completed}},
    )
    db.session.flush()
    logger.info(
        "Milestone %s %s by %s", code, "completed" if completed else "reopened", actor,
        extra={"project_id": project_id},
    )
    return row


def list_rules(*, track_type: str | None = None, include_inactive: bool = True):
    query = MilestoneRule.query
    if track_type:
        query = query.filter(MilestoneRule.track_type == track_type)
    if not include_inactive:
        query = query.filter(MilestoneRule.is_active.is_(True))
    return query.order_by(MilestoneRule.sort_order, MilestoneRule.code).all()


def update_rule(code: str, data: dict, *, actor: str = "system") -> MilestoneRule:
    rule = MilestoneRule.query.filter_by(code=code).first()
    if rule is None:
        raise NotFoundError(resource="MilestoneRule", resource_id=code)

    changes = {}
    for key in _RULE_EDITABLE:
        if key not in data:
            continue
        value = data[key]
        if key == "weight":
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValidationError("weight must be a number", details={"weight": value})
            if value < 0:
                raise ValidationError("weight cannot be negative", details={"weight": value})
        elif key == "sort_order":
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError("sort_order must be an integer", details={"sort_order": value})
        elif key in ("is_active", "treat_attachment_as_proof"):
            value = bool(value)
        elif key == "name":
            value = str(value or "").strip()
            if not value:
                raise ValidationError("name cannot be empty")
        old = getattr(rule, key)
        if old != value:
            changes[key] = {"old": old, "new": value}
            setattr(rule, key, value)

    if changes:
        write_audit(
            entity_type="milestone_rule",
            entity_id=code,
            action="rule.update",
            actor=actor,
            diff=changes,
        )
    db.session.flush()
    return rule
