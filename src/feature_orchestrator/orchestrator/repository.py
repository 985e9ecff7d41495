"""Persistent feature repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, select

from feature_orchestrator.orchestrator.models import (
    Feature,
    FeatureCreate,
    FeatureStatus,
    PlanningMode,
    PlanSpec,
)
from feature_orchestrator.storage.alembic_runner import upgrade_head
from feature_orchestrator.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from feature_orchestrator.storage.sqlmodel_models import FeatureRow


class FeatureRepository:
    """Feature persistence facade for one project database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_feature(self, payload: FeatureCreate) -> Feature:
        """Insert a new feature row."""

        now = utc_now()
        feature_id = payload.feature_id or f"feature-{uuid4().hex[:12]}"
        with Session(self.engine) as session:
            if session.get(FeatureRow, feature_id) is not None:
                raise ValueError(f"Feature already exists: {feature_id}")
            row = FeatureRow(
                feature_id=feature_id,
                title=payload.title,
                category=payload.category,
                description=payload.description,
                priority=payload.priority,
                status=payload.status,
                skip_tests=payload.skip_tests,
                model=payload.model,
                planning_mode=payload.planning_mode.value,
                require_plan_approval=payload.require_plan_approval,
                dependencies_json=json.dumps(list(payload.dependencies)),
                image_paths_json=json.dumps(list(payload.image_paths)),
                branch_name=payload.branch_name,
                created_at=_to_db_datetime(now),
                updated_at=_to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feature(row)

    def get_feature(self, feature_id: str) -> Feature | None:
        with Session(self.engine) as session:
            row = session.get(FeatureRow, feature_id)
            return _to_feature(row) if row is not None else None

    def list_features(self, *, status: str | None = None) -> list[Feature]:
        with Session(self.engine) as session:
            query = select(FeatureRow)
            if status is not None:
                query = query.where(FeatureRow.status == status)
            rows = session.exec(
                query.order_by(col(FeatureRow.priority).asc(), col(FeatureRow.created_at).asc()),
            ).all()
            return [_to_feature(row) for row in rows]

    def save_feature(self, feature: Feature) -> Feature:
        """Write every mutable field of ``feature`` back to its row."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FeatureRow, feature.id)
            if row is None:
                raise RuntimeError(f"Feature not found: {feature.id}")
            row.title = feature.title
            row.category = feature.category
            row.description = feature.description
            row.priority = feature.priority
            row.status = feature.status
            row.skip_tests = feature.skip_tests
            row.model = feature.model
            row.planning_mode = feature.planning_mode.value
            row.require_plan_approval = feature.require_plan_approval
            row.dependencies_json = json.dumps(feature.dependencies)
            row.image_paths_json = json.dumps(feature.image_paths)
            row.branch_name = feature.branch_name
            row.worktree_path = feature.worktree_path
            row.plan_spec_json = (
                json.dumps(feature.plan_spec.to_dict(), ensure_ascii=False)
                if feature.plan_spec is not None
                else None
            )
            row.error = feature.error
            row.started_at = (
                _to_db_datetime(feature.started_at) if feature.started_at is not None else None
            )
            row.just_finished_at = (
                _to_db_datetime(feature.just_finished_at)
                if feature.just_finished_at is not None
                else None
            )
            row.updated_at = _to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feature(row)

    def update_status(self, feature_id: str, status: str) -> Feature | None:
        """Set status and the review timestamp that goes with it."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FeatureRow, feature_id)
            if row is None:
                return None
            row.status = status
            row.updated_at = _to_db_datetime(now)
            if status == FeatureStatus.WAITING_APPROVAL.value:
                row.just_finished_at = _to_db_datetime(now)
            else:
                row.just_finished_at = None
            if status == FeatureStatus.IN_PROGRESS.value:
                row.started_at = _to_db_datetime(now)
                row.error = None
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feature(row)

    def delete_feature(self, feature_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(FeatureRow, feature_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_feature(row: FeatureRow) -> Feature:
    plan_spec = (
        PlanSpec.from_dict(json.loads(row.plan_spec_json)) if row.plan_spec_json else None
    )
    return Feature(
        id=row.feature_id,
        title=row.title,
        category=row.category,
        description=row.description,
        priority=row.priority,
        status=row.status,
        skip_tests=row.skip_tests,
        model=row.model,
        planning_mode=PlanningMode(row.planning_mode),
        require_plan_approval=row.require_plan_approval,
        dependencies=list(json.loads(row.dependencies_json or "[]")),
        image_paths=list(json.loads(row.image_paths_json or "[]")),
        branch_name=row.branch_name,
        worktree_path=row.worktree_path,
        plan_spec=plan_spec,
        error=row.error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=to_utc_aware(row.started_at) if row.started_at is not None else None,
        just_finished_at=(
            to_utc_aware(row.just_finished_at) if row.just_finished_at is not None else None
        ),
    )
