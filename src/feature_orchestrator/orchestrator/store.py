"""Async work-item store: feature rows plus their companion transcript files."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from feature_orchestrator.config import Settings
from feature_orchestrator.orchestrator.models import Feature, FeatureCreate
from feature_orchestrator.orchestrator.repository import FeatureRepository
from feature_orchestrator.orchestrator.workdir import FeatureWorkdirManager

logger = logging.getLogger(__name__)


class FeatureStore:
    """Project-scoped store; every durable read/write runs off the event loop."""

    def __init__(self, *, repository: FeatureRepository, workdir: FeatureWorkdirManager) -> None:
        self.repository = repository
        self.workdir = workdir

    async def load(self, feature_id: str) -> Feature | None:
        return await asyncio.to_thread(self.repository.get_feature, feature_id)

    async def save(self, feature: Feature) -> Feature:
        return await asyncio.to_thread(self.repository.save_feature, feature)

    async def list_all(self) -> list[Feature]:
        return await asyncio.to_thread(self.repository.list_features)

    async def create(self, payload: FeatureCreate) -> Feature:
        return await asyncio.to_thread(self.repository.create_feature, payload)

    async def update_status(self, feature_id: str, status: str) -> Feature | None:
        updated = await asyncio.to_thread(self.repository.update_status, feature_id, status)
        if updated is None:
            logger.warning("Cannot update status of missing feature %s", feature_id)
        return updated

    async def delete(self, feature_id: str) -> bool:
        deleted = await asyncio.to_thread(self.repository.delete_feature, feature_id)
        await asyncio.to_thread(self.workdir.remove_feature_dir, feature_id)
        return deleted

    async def transcript_exists(self, feature_id: str) -> bool:
        return await asyncio.to_thread(self.workdir.transcript_exists, feature_id)

    async def read_transcript(self, feature_id: str) -> str | None:
        return await asyncio.to_thread(self.workdir.read_transcript, feature_id)

    async def write_transcript(self, feature_id: str, content: str) -> None:
        await asyncio.to_thread(self.workdir.write_transcript, feature_id, content)

    async def delete_transcript(self, feature_id: str) -> None:
        await asyncio.to_thread(self.workdir.delete_transcript, feature_id)

    async def write_analysis(self, content: str) -> Path:
        return await asyncio.to_thread(self.workdir.write_analysis, content)

    async def load_context_files(self) -> list[tuple[str, str]]:
        return await asyncio.to_thread(self.workdir.load_context_files)

    def close(self) -> None:
        self.repository.close()


class ProjectStores:
    """Owns one open ``FeatureStore`` per project path."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._stores: dict[Path, FeatureStore] = {}

    def for_project(self, project_path: Path) -> FeatureStore:
        key = project_path.resolve()
        store = self._stores.get(key)
        if store is None:
            store = open_store(key, settings=self.settings)
            self._stores[key] = store
        return store

    def close(self) -> None:
        for store in self._stores.values():
            store.close()
        self._stores.clear()


def open_store(project_path: Path, *, settings: Settings) -> FeatureStore:
    """Open (and migrate) the feature store of one project."""

    workdir = FeatureWorkdirManager(settings.data_dir(project_path))
    repository = FeatureRepository(
        workdir.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    return FeatureStore(repository=repository, workdir=workdir)
