"""create data source, scraper version, agent session, and run tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "data_sources",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(length=32), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_count", sa.Integer(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column(
            "config",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
            comment="Active version mirror and per-source options",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_data_sources_is_active", "data_sources", ["is_active"], unique=False)
    op.create_index("ix_data_sources_url", "data_sources", ["url"], unique=False)

    op.create_table(
        "scraper_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("data_source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("code_hash", sa.String(length=64), nullable=False, comment="sha256 hex digest of code"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "provenance",
            sa.String(length=32),
            nullable=False,
            comment="manual, ai-generated, ai-improved",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("agent_session_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("test_results", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("data_source_id", "version_number", name="uq_scraper_versions_source_number"),
        sa.UniqueConstraint("data_source_id", "code_hash", name="uq_scraper_versions_source_hash"),
    )
    op.create_index(
        "ix_scraper_versions_data_source_id",
        "scraper_versions",
        ["data_source_id"],
        unique=False,
    )
    op.create_index(
        "uq_scraper_versions_one_active",
        "scraper_versions",
        ["data_source_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "agent_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False, comment="event-scraper, venue-info"),
        sa.Column("mode", sa.String(length=32), nullable=False, comment="create, improve, auto_repair"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("current_iteration", sa.Integer(), nullable=False),
        sa.Column("max_iterations", sa.Integer(), nullable=False),
        sa.Column("user_feedback", sa.Text(), nullable=True),
        sa.Column(
            "baseline_code",
            sa.Text(),
            nullable=True,
            comment="Prior code shown to the model as a starting point",
        ),
        sa.Column("best_code", sa.Text(), nullable=True),
        sa.Column("best_score", sa.Float(), nullable=True),
        sa.Column("extracted_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("thinking_steps", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("data_source_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("result_version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("claim_count", sa.Integer(), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["result_version_id"], ["scraper_versions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agent_sessions_status", "agent_sessions", ["status"], unique=False)
    op.create_index(
        "ix_agent_sessions_status_queued_at",
        "agent_sessions",
        ["status", "queued_at"],
        unique=False,
    )
    op.create_index("ix_agent_sessions_data_source_id", "agent_sessions", ["data_source_id"], unique=False)
    op.create_index(
        "uq_agent_sessions_inflight_source",
        "agent_sessions",
        ["data_source_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'in-progress')"),
    )

    op.create_table(
        "agent_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, comment="success, error, invalid, llm_error"),
        sa.Column("failure_type", sa.String(length=32), nullable=True),
        sa.Column("code", sa.Text(), nullable=True),
        sa.Column("code_hash", sa.String(length=64), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("completeness", sa.Float(), nullable=False),
        sa.Column("fields_found", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("fields_missing", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["agent_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "attempt_number", name="uq_agent_attempts_session_attempt"),
    )
    op.create_index("ix_agent_attempts_session_id", "agent_attempts", ["session_id"], unique=False)

    op.create_table(
        "scraper_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("data_source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("event_count", sa.Integer(), nullable=False),
        sa.Column(
            "expected_count",
            sa.Float(),
            nullable=True,
            comment="Rolling baseline at classification time",
        ),
        sa.Column("failure_type", sa.String(length=32), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scraper_runs_source_started_at",
        "scraper_runs",
        ["data_source_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_scraper_runs_status", "scraper_runs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_scraper_runs_status", table_name="scraper_runs")
    op.drop_index("ix_scraper_runs_source_started_at", table_name="scraper_runs")
    op.drop_table("scraper_runs")

    op.drop_index("ix_agent_attempts_session_id", table_name="agent_attempts")
    op.drop_table("agent_attempts")

    op.drop_index("uq_agent_sessions_inflight_source", table_name="agent_sessions")
    op.drop_index("ix_agent_sessions_data_source_id", table_name="agent_sessions")
    op.drop_index("ix_agent_sessions_status_queued_at", table_name="agent_sessions")
    op.drop_index("ix_agent_sessions_status", table_name="agent_sessions")
    op.drop_table("agent_sessions")

    op.drop_index("uq_scraper_versions_one_active", table_name="scraper_versions")
    op.drop_index("ix_scraper_versions_data_source_id", table_name="scraper_versions")
    op.drop_table("scraper_versions")

    op.drop_index("ix_data_sources_url", table_name="data_sources")
    op.drop_index("ix_data_sources_is_active", table_name="data_sources")
    op.drop_table("data_sources")
