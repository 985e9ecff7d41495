"""Create features table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "features",
        sa.Column("feature_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("2")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("skip_tests", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("planning_mode", sa.String(), nullable=False, server_default="skip"),
        sa.Column(
            "require_plan_approval",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("dependencies_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("image_paths_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("worktree_path", sa.String(), nullable=True),
        sa.Column("plan_spec_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("just_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("feature_id"),
    )
    op.create_index("ix_features_status", "features", ["status"])
    op.create_index("idx_features_status_priority", "features", ["status", "priority"])


def downgrade() -> None:
    op.drop_index("idx_features_status_priority", table_name="features")
    op.drop_index("ix_features_status", table_name="features")
    op.drop_table("features")
