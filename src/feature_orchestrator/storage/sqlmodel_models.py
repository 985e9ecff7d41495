"""SQLModel ORM tables for feature storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class FeatureRow(SQLModel, table=True):
    __tablename__ = "features"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_features_status_priority", "status", "priority"),)

    feature_id: str = Field(primary_key=True)
    title: str | None = None
    category: str | None = None
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=2)
    status: str = Field(index=True)
    skip_tests: bool = Field(default=False)
    model: str | None = None
    planning_mode: str = Field(default="skip")
    require_plan_approval: bool = Field(default=False)
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    image_paths_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    branch_name: str | None = None
    worktree_path: str | None = None
    plan_spec_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    just_finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
