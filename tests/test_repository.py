from __future__ import annotations

from pathlib import Path

import allure
import pytest

from feature_orchestrator.orchestrator.models import (
    FeatureCreate,
    FeatureStatus,
    ParsedTask,
    PlanningMode,
    PlanSpec,
    PlanSpecStatus,
)
from feature_orchestrator.orchestrator.repository import FeatureRepository

pytestmark = [
    allure.epic("Feature Board"),
    allure.feature("Persistence"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repo = FeatureRepository(tmp_path / "board" / "features.db")
    repo.init_schema()
    yield repo
    repo.close()


def test_alembic_schema_is_initialized_to_head(repository: FeatureRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.exec_driver_sql(
            "SELECT version_num FROM alembic_version LIMIT 1",
        ).scalar()
    assert version == "20261001_0001"


def test_create_and_list_orders_by_priority(repository: FeatureRepository) -> None:
    repository.create_feature(FeatureCreate(description="Low", feature_id="low", priority=3))
    repository.create_feature(FeatureCreate(description="High", feature_id="high", priority=1))
    repository.create_feature(
        FeatureCreate(description="Generated id", planning_mode=PlanningMode.SPEC),
    )

    features = repository.list_features()

    assert [feature.id for feature in features][:1] == ["high"]
    assert features[-1].id == "low"
    generated = features[1]
    assert generated.id.startswith("feature-")
    assert generated.status == FeatureStatus.BACKLOG.value
    assert generated.planning_mode is PlanningMode.SPEC
    assert generated.created_at is not None and generated.created_at.tzinfo is not None


def test_duplicate_feature_id_is_rejected(repository: FeatureRepository) -> None:
    repository.create_feature(FeatureCreate(description="One", feature_id="F1"))

    with pytest.raises(ValueError, match="already exists"):
        repository.create_feature(FeatureCreate(description="Two", feature_id="F1"))


def test_save_feature_persists_plan_and_dependencies(repository: FeatureRepository) -> None:
    feature = repository.create_feature(
        FeatureCreate(description="Planned", feature_id="F1", dependencies=("F0",)),
    )
    plan = PlanSpec(status=PlanSpecStatus.GENERATED)
    plan.replace_content("plan body", [ParsedTask(id="T001", description="Do it")])
    feature.plan_spec = plan
    feature.branch_name = "feature/planned"

    repository.save_feature(feature)
    loaded = repository.get_feature("F1")

    assert loaded is not None
    assert loaded.dependencies == ["F0"]
    assert loaded.branch_name == "feature/planned"
    assert loaded.plan_spec is not None
    assert loaded.plan_spec.status is PlanSpecStatus.GENERATED
    assert loaded.plan_spec.version == 1
    assert [task.id for task in loaded.plan_spec.tasks] == ["T001"]


def test_update_status_tracks_review_and_start_timestamps(
    repository: FeatureRepository,
) -> None:
    feature = repository.create_feature(FeatureCreate(description="Timed", feature_id="F1"))
    feature.error = "previous failure"
    repository.save_feature(feature)

    started = repository.update_status("F1", FeatureStatus.IN_PROGRESS.value)
    assert started is not None
    assert started.started_at is not None
    assert started.error is None

    waiting = repository.update_status("F1", FeatureStatus.WAITING_APPROVAL.value)
    assert waiting is not None
    assert waiting.just_finished_at is not None

    verified = repository.update_status("F1", FeatureStatus.VERIFIED.value)
    assert verified is not None
    assert verified.just_finished_at is None

    assert repository.update_status("missing", FeatureStatus.READY.value) is None


def test_delete_feature(repository: FeatureRepository) -> None:
    repository.create_feature(FeatureCreate(description="Gone", feature_id="F1"))

    assert repository.delete_feature("F1") is True
    assert repository.delete_feature("F1") is False
    assert repository.get_feature("F1") is None
