"""
Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-milestone-rules
    flask --app wsgi reconcile-progress [--project-id N ...]
"""

from solarops import create_app

app = create_app()
