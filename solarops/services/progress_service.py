"""Progress settings and reconciliation entry points used by blueprints and CLI."""

from __future__ import annotations

import logging

from flask import current_app

from solarops.core.exceptions import ValidationError
from solarops.models import db
from solarops.models.audit import write_audit
from solarops.models.milestone import ProgressSetting
from solarops.services.progress_reconciler import ProgressReconciler, ProgressWeights

logger = logging.getLogger(__name__)

WEIGHTS_KEY = "weights"


def default_weights() -> ProgressWeights:
    return ProgressWeights(
        admin_weight=float(current_app.config.get("PROGRESS_DEFAULT_ADMIN_WEIGHT", 50)),
        engineering_weight=float(current_app.config.get("PROGRESS_DEFAULT_ENGINEERING_WEIGHT", 50)),
    )


def load_weights() -> ProgressWeights:
    """Weights from ``progress_settings``, falling back to config defaults."""
    row = ProgressSetting.query.filter_by(setting_key=WEIGHTS_KEY).first()
    if row is None:
        return default_weights()
    return ProgressWeights.from_dict(row.value, default_weights())


def update_weights(data: dict, *, actor: str = "system") -> ProgressWeights:
    """Validate and store new track weights. Caller commits."""
    values = {}
    for key in ("admin_weight", "engineering_weight"):
        raw = data.get(key)
        if raw is None:
            raise ValidationError(f"{key} is required", details={key: "required"})
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number", details={key: raw})
        if not 0 <= value <= 100:
            raise ValidationError(f"{key} must be between 0 and 100", details={key: value})
        values[key] = value

    total = values["admin_weight"] + values["engineering_weight"]
    if abs(total - 100) > 0.01:
        raise ValidationError("Weights must add up to 100", details={"total": total})

    weights = ProgressWeights(**values)
    row = ProgressSetting.query.filter_by(setting_key=WEIGHTS_KEY).first()
    old = row.value if row else None
    if row is None:
        row = ProgressSetting(setting_key=WEIGHTS_KEY, description="Admin/engineering share of overall progress")
        db.session.add(row)
    row.value = weights.to_dict()
    write_audit(
        entity_type="progress_setting",
        entity_id=WEIGHTS_KEY,
        action="settings.update",
        actor=actor,
        diff={"old": old, "new": weights.to_dict()},
    )
    db.session.flush()
    return weights


def build_reconciler(*, actor: str = "system", store=None) -> ProgressReconciler:
    return ProgressReconciler(store, weights=load_weights(), actor=actor)


def reconcile_project(project_id: int, *, actor: str = "system"):
    return build_reconciler(actor=actor).reconcile_project(project_id)


def reconcile_all(project_ids=None, *, actor: str = "system"):
    return build_reconciler(actor=actor).reconcile_all(project_ids)


def reconcile_after_change(project_id: int, *, actor: str = "system"):
    """Reconcile after a document or milestone write.

    Runs only when ``RECONCILE_ON_WRITE`` is set. Failures are logged and
    never reach the request that triggered them.
    """
    if not current_app.config.get("RECONCILE_ON_WRITE", True):
        return None
    try:
        return reconcile_project(project_id, actor=actor)
    except Exception:
        db.session.rollback()
        logger.exception(
            "Background reconcile failed for project %s", project_id,
            extra={"project_id": project_id},
        )
        return None
