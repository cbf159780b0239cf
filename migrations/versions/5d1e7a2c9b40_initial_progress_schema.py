"""initial_progress_schema

Create projects, documents (with version partial unique indexes),
document_files, progress_milestones, project_milestones, progress_settings
and audit_logs.

Revision ID: 5d1e7a2c9b40
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5d1e7a2c9b40"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _soft_delete():
    return [
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delete_reason", sa.String(length=255), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_code", sa.String(length=50), nullable=False),
            sa.Column("project_name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("capacity_kwp", sa.Numeric(10, 2), nullable=True),
            sa.Column("drive_folder_id", sa.String(length=120), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("admin_progress", sa.Float(), nullable=False, server_default="0"),
            sa.Column("engineering_progress", sa.Float(), nullable=False, server_default="0"),
            sa.Column("overall_progress", sa.Float(), nullable=False, server_default="0"),
            sa.Column("admin_stage", sa.String(length=120), nullable=True),
            sa.Column("engineering_stage", sa.String(length=120), nullable=True),
            sa.Column("construction_status", sa.String(length=20), nullable=False, server_default="尚未開工"),
            sa.Column("progress_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            *_timestamps(),
            *_soft_delete(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_code", name="uq_projects_project_code"),
        )
        op.create_index("ix_projects_is_deleted", "projects", ["is_deleted"])

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("doc_type_code", sa.String(length=50), nullable=False),
            sa.Column("doc_type", sa.String(length=50), nullable=True),
            sa.Column("agency_code", sa.String(length=30), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("drive_file_id", sa.String(length=120), nullable=True),
            sa.Column("drive_web_view_link", sa.String(length=500), nullable=True),
            sa.Column("drive_path", sa.String(length=500), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            *_timestamps(),
            *_soft_delete(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_documents_project_id", "documents", ["project_id"])
        op.create_index("ix_documents_is_deleted", "documents", ["is_deleted"])
        op.create_index("ix_documents_project_current", "documents", ["project_id", "is_current"])
        op.create_index(
            "uq_documents_current",
            "documents",
            ["project_id", "doc_type_code"],
            unique=True,
            postgresql_where=sa.text("is_current IS TRUE AND is_deleted IS FALSE"),
            sqlite_where=sa.text("is_current = 1 AND is_deleted = 0"),
        )
        op.create_index(
            "uq_documents_version",
            "documents",
            ["project_id", "doc_type_code", "version"],
            unique=True,
            postgresql_where=sa.text("is_deleted IS FALSE"),
            sqlite_where=sa.text("is_deleted = 0"),
        )

    if "document_files" not in existing_tables:
        op.create_table(
            "document_files",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("original_name", sa.String(length=255), nullable=False),
            sa.Column("storage_path", sa.String(length=500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("mime_type", sa.String(length=120), nullable=True),
            sa.Column("uploaded_by", sa.String(length=150), nullable=True),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_document_files_document_id", "document_files", ["document_id"])

    if "progress_milestones" not in existing_tables:
        op.create_table(
            "progress_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("track_type", sa.String(length=20), nullable=False),
            sa.Column("weight", sa.Float(), nullable=False, server_default="0"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("match_criterion", sa.String(length=30), nullable=False, server_default="manual"),
            sa.Column("treat_attachment_as_proof", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("prerequisites_json", sa.Text(), nullable=True),
            sa.Column("selectors_json", sa.Text(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code", name="uq_progress_milestones_code"),
        )
        op.create_index(
            "ix_progress_milestones_track_order", "progress_milestones", ["track_type", "sort_order"],
        )

    if "project_milestones" not in existing_tables:
        op.create_table(
            "project_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("milestone_code", sa.String(length=50), nullable=False),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.String(length=150), nullable=True),
            sa.Column("note", sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "milestone_code", name="uq_project_milestones_code"),
        )
        op.create_index("ix_project_milestones_project_id", "project_milestones", ["project_id"])

    if "progress_settings" not in existing_tables:
        op.create_table(
            "progress_settings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("setting_key", sa.String(length=50), nullable=False),
            sa.Column("setting_value_json", sa.Text(), nullable=True),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("setting_key", name="uq_progress_settings_key"),
        )

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_project", "audit_logs", ["project_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "audit_logs",
        "progress_settings",
        "project_milestones",
        "progress_milestones",
        "document_files",
        "documents",
        "projects",
    ):
        if table in existing_tables:
            op.drop_table(table)
