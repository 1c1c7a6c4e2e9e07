"""SQLModel ORM tables for the analysis queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"  # type: ignore[bad-override]

    org_id: str = Field(primary_key=True)
    name: str
    industry: str | None = None
    settings_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TrainingSession(SQLModel, table=True):
    """Practice-call session; only the ``analysis_*`` and scored fields are owned here."""

    __tablename__ = "training_sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_training_sessions_attempts", "user_id", "scenario_id", "analysis_status"),
    )

    session_id: str = Field(primary_key=True)
    org_id: str = Field(
        sa_column=Column(
            ForeignKey("organizations.org_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str | None = Field(default=None, index=True)
    scenario_id: str | None = Field(default=None, index=True)
    transcript_raw: str | None = Field(default=None, sa_column=Column(Text))
    duration_seconds: int | None = None
    analysis_status: str | None = Field(default=None, index=True)
    analysis_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    analysis_completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    analysis_error: str | None = Field(default=None, sa_column=Column(Text))
    analysis_retry_count: int = Field(default=0)
    overall_score: int | None = None
    category_scores_json: str | None = Field(default=None, sa_column=Column(Text))
    strengths_json: str | None = Field(default=None, sa_column=Column(Text))
    improvements_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_analysis_jobs_queue", "status", "priority", "queued_at"),)

    job_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("training_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    org_id: str = Field(index=True)
    priority: int = Field(default=5)
    status: str = Field(index=True)
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    locked_by: str | None = Field(default=None, index=True)
    lock_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))


class AnalysisCacheEntry(SQLModel, table=True):
    __tablename__ = "analysis_cache"  # type: ignore[bad-override]

    session_id: str = Field(
        sa_column=Column(
            ForeignKey("training_sessions.session_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    overall_score: int
    category_scores_json: str = Field(sa_column=Column(Text, nullable=False))
    summary: str = Field(sa_column=Column(Text, nullable=False))
    strengths_json: str = Field(sa_column=Column(Text, nullable=False))
    improvements_json: str = Field(sa_column=Column(Text, nullable=False))
    key_moment_json: str | None = Field(default=None, sa_column=Column(Text))
    next_steps_json: str = Field(sa_column=Column(Text, nullable=False))
    model_used: str | None = None
    analysis_duration_ms: int = Field(default=0)
    cached_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SkillProfile(SQLModel, table=True):
    __tablename__ = "skill_profiles"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    org_id: str = Field(index=True)
    category_scores_json: str = Field(sa_column=Column(Text, nullable=False))
    strongest_skills_json: str = Field(sa_column=Column(Text, nullable=False))
    weakest_skills_json: str = Field(sa_column=Column(Text, nullable=False))
    total_sessions_analyzed: int = Field(default=0)
    last_analyzed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SkillHistory(SQLModel, table=True):
    __tablename__ = "skill_history"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_skill_history_user_skill", "user_id", "skill_category"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("skill_profiles.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    skill_category: str
    score: int
    session_id: str = Field(index=True)
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
