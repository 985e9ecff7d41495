from __future__ import annotations

import allure

from feature_orchestrator.orchestrator.dependencies import (
    dependencies_satisfied,
    resolve_dependencies,
)
from feature_orchestrator.orchestrator.models import Feature

pytestmark = [
    allure.epic("Auto Mode"),
    allure.feature("Dependency Ordering"),
]


def _feature(
    feature_id: str,
    *,
    priority: int = 2,
    status: str = "backlog",
    dependencies: tuple[str, ...] = (),
) -> Feature:
    return Feature(
        id=feature_id,
        description=feature_id,
        priority=priority,
        status=status,
        dependencies=list(dependencies),
    )


def test_prerequisite_comes_first_even_with_worse_priority() -> None:
    features = [
        _feature("F1", priority=1, dependencies=("F0",)),
        _feature("F0", priority=3),
        _feature("F2", priority=2),
    ]

    resolution = resolve_dependencies(features)

    assert [feature.id for feature in resolution.ordered] == ["F2", "F0", "F1"]
    assert resolution.blocked == {"F1": ["F0"]}
    assert resolution.circular == []


def test_missing_dependencies_are_reported_but_do_not_block_order() -> None:
    resolution = resolve_dependencies([_feature("F1", dependencies=("ghost",))])

    assert [feature.id for feature in resolution.ordered] == ["F1"]
    assert resolution.missing == {"F1": ["ghost"]}


def test_cycles_are_reported_and_appended() -> None:
    features = [
        _feature("A", dependencies=("B",)),
        _feature("B", dependencies=("A",)),
        _feature("C", priority=5),
    ]

    resolution = resolve_dependencies(features)

    assert [feature.id for feature in resolution.ordered] == ["C", "A", "B"]
    assert len(resolution.circular) == 1
    assert set(resolution.circular[0]) == {"A", "B"}


def test_dependencies_satisfied_requires_done_status() -> None:
    dependent = _feature("F1", dependencies=("F0",))

    assert not dependencies_satisfied(dependent, [_feature("F0", status="in_progress")])
    assert not dependencies_satisfied(dependent, [_feature("F0", status="waiting_approval")])
    assert not dependencies_satisfied(dependent, [])
    assert dependencies_satisfied(dependent, [_feature("F0", status="completed")])
    assert dependencies_satisfied(dependent, [_feature("F0", status="verified")])
    assert dependencies_satisfied(_feature("F2"), [])


def test_each_cycle_is_reported_once_without_its_dependents() -> None:
    features = [
        _feature("A", dependencies=("B",)),
        _feature("B", dependencies=("A",)),
        _feature("C", dependencies=("C",)),
        _feature("D", dependencies=("A",)),
    ]

    resolution = resolve_dependencies(features)

    assert resolution.circular == [["A", "B"], ["C"]]
    assert [feature.id for feature in resolution.ordered] == ["A", "B", "C", "D"]


def test_densely_linked_board_reports_one_component() -> None:
    ids = [f"F{index:02d}" for index in range(40)]
    features = [
        _feature(feature_id, dependencies=tuple(other for other in ids if other != feature_id))
        for feature_id in ids
    ]

    resolution = resolve_dependencies(features)

    assert resolution.circular == [ids]
    assert len(resolution.ordered) == 40
