"""Initial analysis queue schema: sessions, jobs, result cache, skill profiles."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("settings_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("org_id"),
    )

    op.create_table(
        "training_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("scenario_id", sa.String(), nullable=True),
        sa.Column("transcript_raw", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("analysis_status", sa.String(), nullable=True),
        sa.Column("analysis_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("analysis_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("analysis_error", sa.Text(), nullable=True),
        sa.Column("analysis_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overall_score", sa.Integer(), nullable=True),
        sa.Column("category_scores_json", sa.Text(), nullable=True),
        sa.Column("strengths_json", sa.Text(), nullable=True),
        sa.Column("improvements_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.org_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_training_sessions_org_id", "training_sessions", ["org_id"])
    op.create_index("ix_training_sessions_user_id", "training_sessions", ["user_id"])
    op.create_index("ix_training_sessions_scenario_id", "training_sessions", ["scenario_id"])
    op.create_index(
        "ix_training_sessions_analysis_status",
        "training_sessions",
        ["analysis_status"],
    )
    op.create_index(
        "idx_training_sessions_attempts",
        "training_sessions",
        ["user_id", "scenario_id", "analysis_status"],
    )

    op.create_table(
        "analysis_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["training_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_analysis_jobs_session_id", "analysis_jobs", ["session_id"])
    op.create_index("ix_analysis_jobs_org_id", "analysis_jobs", ["org_id"])
    op.create_index("ix_analysis_jobs_status", "analysis_jobs", ["status"])
    op.create_index("ix_analysis_jobs_locked_by", "analysis_jobs", ["locked_by"])
    op.create_index(
        "idx_analysis_jobs_queue",
        "analysis_jobs",
        ["status", "priority", "queued_at"],
    )

    op.create_table(
        "analysis_cache",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("overall_score", sa.Integer(), nullable=False),
        sa.Column("category_scores_json", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("strengths_json", sa.Text(), nullable=False),
        sa.Column("improvements_json", sa.Text(), nullable=False),
        sa.Column("key_moment_json", sa.Text(), nullable=True),
        sa.Column("next_steps_json", sa.Text(), nullable=False),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("analysis_duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["training_sessions.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("session_id"),
    )

    op.create_table(
        "skill_profiles",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("category_scores_json", sa.Text(), nullable=False),
        sa.Column("strongest_skills_json", sa.Text(), nullable=False),
        sa.Column("weakest_skills_json", sa.Text(), nullable=False),
        sa.Column("total_sessions_analyzed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_analyzed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_skill_profiles_org_id", "skill_profiles", ["org_id"])

    op.create_table(
        "skill_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("skill_category", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["skill_profiles.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_skill_history_user_id", "skill_history", ["user_id"])
    op.create_index("ix_skill_history_session_id", "skill_history", ["session_id"])
    op.create_index(
        "idx_skill_history_user_skill",
        "skill_history",
        ["user_id", "skill_category"],
    )


def downgrade() -> None:
    op.drop_table("skill_history")
    op.drop_table("skill_profiles")
    op.drop_table("analysis_cache")
    op.drop_table("analysis_jobs")
    op.drop_table("training_sessions")
    op.drop_table("organizations")
