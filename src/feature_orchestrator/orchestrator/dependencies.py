"""Dependency ordering and readiness checks for features."""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from dataclasses import dataclass, field

from feature_orchestrator.orchestrator.models import DONE_STATUSES, Feature


@dataclass(slots=True)
class DependencyResolution:
    """Topological order plus diagnostics for cycles and unknown ids."""

    ordered: list[Feature]
    circular: list[list[str]] = field(default_factory=list)
    missing: dict[str, list[str]] = field(default_factory=dict)
    blocked: dict[str, list[str]] = field(default_factory=dict)


def resolve_dependencies(features: list[Feature]) -> DependencyResolution:
    """Order ``features`` so prerequisites come first; ties go to lower priority value.

    Only dependencies inside ``features`` constrain the order. Unknown ids are
    reported in ``missing``; features stuck in a cycle are appended at the end
    in priority order and their cycles reported in ``circular``.
    """

    by_id = {feature.id: feature for feature in features}
    position = {feature.id: index for index, feature in enumerate(features)}
    in_degree: dict[str, int] = dict.fromkeys(by_id, 0)
    dependents: dict[str, list[str]] = {feature_id: [] for feature_id in by_id}
    missing: dict[str, list[str]] = {}
    blocked: dict[str, list[str]] = {}

    for feature in features:
        for dep_id in _unique(feature.dependencies):
            if dep_id not in by_id:
                missing.setdefault(feature.id, []).append(dep_id)
                continue
            in_degree[feature.id] += 1
            dependents[dep_id].append(feature.id)
            if by_id[dep_id].status not in DONE_STATUSES:
                blocked.setdefault(feature.id, []).append(dep_id)

    def _key(feature_id: str) -> tuple[int, int, str]:
        return (by_id[feature_id].priority, position[feature_id], feature_id)

    heap = [_key(feature_id) for feature_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(heap)
    ordered_ids: list[str] = []
    while heap:
        _, _, feature_id = heapq.heappop(heap)
        ordered_ids.append(feature_id)
        for dependent_id in dependents[feature_id]:
            in_degree[dependent_id] -= 1
            if in_degree[dependent_id] == 0:
                heapq.heappush(heap, _key(dependent_id))

    placed = set(ordered_ids)
    remaining = sorted((feature_id for feature_id in by_id if feature_id not in placed), key=_key)
    circular = _find_cycles(remaining, by_id) if remaining else []
    ordered_ids.extend(remaining)

    return DependencyResolution(
        ordered=[by_id[feature_id] for feature_id in ordered_ids],
        circular=circular,
        missing=missing,
        blocked=blocked,
    )


def dependencies_satisfied(feature: Feature, all_features: Iterable[Feature]) -> bool:
    """True when every dependency exists and is completed or verified."""

    if not feature.dependencies:
        return True
    statuses = {item.id: item.status for item in all_features}
    return all(statuses.get(dep_id) in DONE_STATUSES for dep_id in feature.dependencies)


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def _find_cycles(candidates: list[str], by_id: dict[str, Feature]) -> list[list[str]]:
    """Strongly connected components that form cycles (Tarjan, iterative).

    Linear in features plus dependency edges. Each cycle lists its members in
    ``candidates`` order; features that only depend on a cycle are not reported.
    """

    rank = {feature_id: index for index, feature_id in enumerate(candidates)}
    edges = {
        feature_id: [dep_id for dep_id in _unique(by_id[feature_id].dependencies) if dep_id in rank]
        for feature_id in candidates
    }
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []

    def _visit(feature_id: str) -> None:
        index[feature_id] = low[feature_id] = len(index)
        stack.append(feature_id)
        on_stack.add(feature_id)

    for root in candidates:
        if root in index:
            continue
        _visit(root)
        work = [(root, iter(edges[root]))]
        while work:
            node, pending = work[-1]
            descended = False
            for dep_id in pending:
                if dep_id not in index:
                    _visit(dep_id)
                    work.append((dep_id, iter(edges[dep_id])))
                    descended = True
                    break
                if dep_id in on_stack:
                    low[node] = min(low[node], index[dep_id])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] != index[node]:
                continue
            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1 or node in edges[node]:
                cycles.append(sorted(component, key=rank.__getitem__))
    return sorted(cycles, key=lambda cycle: rank[cycle[0]])
