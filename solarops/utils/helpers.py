"""Shared utility functions for blueprints and services.

get_or_404:          tuple-return lookup used by every blueprint
parse_datetime:      lenient timestamp parsing (returns None on bad input)
parse_datetime_input: strict variant (raises ValueError)
db_commit_or_error:  commit helper mapping DB errors to JSON responses
"""
import logging
from datetime import date, datetime, timezone

from flask import jsonify

from solarops.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

    Soft-deleted rows (``is_deleted``) are treated as missing.

        obj, err = get_or_404(Project, pid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj or getattr(obj, "is_deleted", False):
        return None, (jsonify({"error": f"{label} not found"}), 404)
    return obj, None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse a timestamp to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[+offset]
    - DD.MM.YYYY and YYYY/MM/DD
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        pass
    for fmt in ("%d.%m.%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except (ValueError, TypeError):
            continue
    return None


def parse_datetime_input(value):
    """Parse a timestamp, raising ValueError on bad input.

    Same as parse_datetime() but raises instead of returning None so that
    callers can turn a malformed date into a 400 response.
    """
    if value in (None, ""):
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(
            f"Invalid date {value!r}. Use YYYY-MM-DD, an ISO timestamp or DD.MM.YYYY."
        )
    return parsed


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure — ready for ``return``.

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    Other → 500 (unexpected)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation"}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Database error"}), 500
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return jsonify({"error": "Database error"}), 500
