"""Project CRUD service. Callers own the transaction (commit or rollback)."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from solarops.models import db
from solarops.models.project import Project

_TEXT_FIELDS = ("project_name", "status", "address", "drive_folder_id", "notes")


def _parse_capacity(value):
    if value in (None, ""):
        return None, None
    try:
        capacity = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None, {"error": "capacity_kwp must be a number", "status": 400}
    if capacity < 0:
        return None, {"error": "capacity_kwp cannot be negative", "status": 400}
    return capacity, None


def list_projects(*, status: str | None = None, search: str | None = None):
    """Query of non-deleted projects, newest first."""
    query = Project.query_active()
    if status:
        query = query.filter(Project.status == status)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            db.or_(Project.project_code.ilike(like), Project.project_name.ilike(like))
        )
    return query.order_by(Project.created_at.desc(), Project.id.desc())


def create_project(*, data: dict, actor: str = "system") -> tuple[Project | None, dict | None]:
    code = str(data.get("project_code", "") or "").strip().upper()
    name = str(data.get("project_name", "") or "").strip()

    if not code:
        return None, {"error": "project_code is required", "status": 400}
    if not name:
        return None, {"error": "project_name is required", "status": 400}

    # Soft-deleted rows still hold their code (unique column)
    if Project.query.filter(Project.project_code == code).first():
        return None, {"error": "Project code already exists", "status": 409}

    capacity, err = _parse_capacity(data.get("capacity_kwp"))
    if err:
        return None, err

    project = Project(
        project_code=code,
        project_name=name,
        status=str(data.get("status", "active") or "active").strip(),
        address=data.get("address"),
        capacity_kwp=capacity,
        drive_folder_id=data.get("drive_folder_id"),
        notes=data.get("notes"),
        created_by=actor,
    )
    db.session.add(project)
    db.session.flush()
    return project, None


def update_project(*, project: Project, data: dict) -> tuple[Project | None, dict | None]:
    if "project_code" in data:
        code = str(data.get("project_code", "") or "").strip().upper()
        if not code:
            return None, {"error": "project_code cannot be empty", "status": 400}
        existing = Project.query.filter(
            Project.project_code == code,
            Project.id != project.id,
        ).first()
        if existing:
            return None, {"error": "Project code already exists", "status": 409}
        project.project_code = code

    for attr in _TEXT_FIELDS:
        if attr in data:
            value = data.get(attr)
            value = str(value).strip() if value is not None else None
            if attr in ("project_name", "status") and not value:
                return None, {"error": f"{attr} cannot be empty", "status": 400}
            setattr(project, attr, value)

    if "capacity_kwp" in data:
        capacity, err = _parse_capacity(data.get("capacity_kwp"))
        if err:
            return None, err
        project.capacity_kwp = capacity

    db.session.flush()
    return project, None


def delete_project(*, project: Project, reason: str | None = None) -> Project:
    """Soft delete; documents and milestones stay for history."""
    project.soft_delete(reason=reason)
    db.session.flush()
    return project
