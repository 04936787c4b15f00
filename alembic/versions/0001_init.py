"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("department", sa.String(length=256), nullable=True),
        sa.Column("job_title", sa.String(length=256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_users_external_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_display_name", "users", ["display_name"])

    op.create_table(
        "offices",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("source_location_keys", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("name", name="uq_offices_name"),
    )

    op.create_table(
        "access_events",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("office_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("source_event_id", sa.String(length=255), nullable=False),
        sa.Column("controller", sa.String(length=128), nullable=True),
        sa.Column("device_info", sa.String(length=255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_access_events_user"),
        sa.ForeignKeyConstraint(["office_id"], ["offices.id"], name="fk_access_events_office"),
        sa.UniqueConstraint("source", "source_event_id", name="uq_access_events_source_event"),
    )
    op.create_index("ix_access_events_office_occurred", "access_events", ["office_id", "occurred_at"])
    op.create_index("ix_access_events_user_occurred", "access_events", ["user_id", "occurred_at"])

    op.create_table(
        "presence_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("office_id", sa.Uuid(), nullable=False),
        sa.Column("entry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exit_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_presence_sessions_user"),
        sa.ForeignKeyConstraint(["office_id"], ["offices.id"], name="fk_presence_sessions_office"),
    )
    op.create_index(
        "ux_presence_sessions_open",
        "presence_sessions",
        ["user_id", "office_id"],
        unique=True,
        postgresql_where=sa.text("exit_time IS NULL"),
        sqlite_where=sa.text("exit_time IS NULL"),
    )
    op.create_index("ix_presence_sessions_office_entry", "presence_sessions", ["office_id", "entry_time"])
    op.create_index("ix_presence_sessions_user_entry", "presence_sessions", ["user_id", "entry_time"])

    op.create_table(
        "daily_attendance",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("office_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("unique_visitors", sa.Integer(), nullable=False),
        sa.Column("total_entries", sa.Integer(), nullable=False),
        sa.Column("average_duration_minutes", sa.Integer(), nullable=False),
        sa.Column("peak_occupancy", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["office_id"], ["offices.id"], name="fk_daily_attendance_office"),
        sa.UniqueConstraint("office_id", "date", name="uq_daily_attendance_office_date"),
    )
    op.create_index("ix_daily_attendance_date", "daily_attendance", ["date"])

    op.create_table(
        "hourly_occupancy",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("office_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("average_occupancy", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["office_id"], ["offices.id"], name="fk_hourly_occupancy_office"),
        sa.UniqueConstraint("office_id", "date", "hour", name="uq_hourly_occupancy_office_date_hour"),
        sa.CheckConstraint("hour >= 0 AND hour <= 23", name="ck_hourly_occupancy_hour"),
    )
    op.create_index("ix_hourly_occupancy_date", "hourly_occupancy", ["date"])

    op.create_table(
        "sync_status",
        sa.Column("source", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sync_status")
    op.drop_index("ix_hourly_occupancy_date", table_name="hourly_occupancy")
    op.drop_table("hourly_occupancy")
    op.drop_index("ix_daily_attendance_date", table_name="daily_attendance")
    op.drop_table("daily_attendance")
    op.drop_index("ix_presence_sessions_user_entry", table_name="presence_sessions")
    op.drop_index("ix_presence_sessions_office_entry", table_name="presence_sessions")
    op.drop_index("ux_presence_sessions_open", table_name="presence_sessions")
    op.drop_table("presence_sessions")
    op.drop_index("ix_access_events_user_occurred", table_name="access_events")
    op.drop_index("ix_access_events_office_occurred", table_name="access_events")
    op.drop_table("access_events")
    op.drop_table("offices")
    op.drop_index("ix_users_display_name", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
