"""Per-project and per-feature directory layout helpers."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

TRANSCRIPT_FILE_NAME = "agent-output.md"
DB_FILE_NAME = "features.db"
PIPELINE_FILE_NAME = "pipeline.json"
ANALYSIS_FILE_NAME = "project-analysis.md"


@dataclass(slots=True)
class FeatureArtifactPaths:
    """Deterministic artifact paths for one feature."""

    feature_dir: Path
    transcript_path: Path
    images_dir: Path


class FeatureWorkdirManager:
    """Creates deterministic per-feature directory layout under the data dir."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILE_NAME

    @property
    def context_dir(self) -> Path:
        return self.data_dir / "context"

    @property
    def analysis_path(self) -> Path:
        return self.data_dir / ANALYSIS_FILE_NAME

    def paths_for(self, feature_id: str) -> FeatureArtifactPaths:
        feature_dir = self.data_dir / "features" / feature_id
        return FeatureArtifactPaths(
            feature_dir=feature_dir,
            transcript_path=feature_dir / TRANSCRIPT_FILE_NAME,
            images_dir=feature_dir / "images",
        )

    def transcript_exists(self, feature_id: str) -> bool:
        return self.paths_for(feature_id).transcript_path.is_file()

    def read_transcript(self, feature_id: str) -> str | None:
        path = self.paths_for(feature_id).transcript_path
        if not path.is_file():
            return None
        return path.read_text("utf-8")

    def write_transcript(self, feature_id: str, content: str) -> Path:
        path = self.paths_for(feature_id).transcript_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".md.tmp")
        tmp_path.write_text(content, "utf-8")
        tmp_path.replace(path)
        return path

    def write_analysis(self, content: str) -> Path:
        path = self.analysis_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".md.tmp")
        tmp_path.write_text(content, "utf-8")
        tmp_path.replace(path)
        return path

    def delete_transcript(self, feature_id: str) -> None:
        self.paths_for(feature_id).transcript_path.unlink(missing_ok=True)

    def copy_images(self, feature_id: str, image_paths: list[str]) -> list[str]:
        """Copy attached images into the feature folder and return project-relative paths."""

        images_dir = self.paths_for(feature_id).images_dir
        images_dir.mkdir(parents=True, exist_ok=True)
        project_path = self.data_dir.parent
        copied: list[str] = []
        for image_path in image_paths:
            source = Path(image_path)
            destination = images_dir / source.name
            shutil.copyfile(source, destination)
            copied.append(str(destination.relative_to(project_path)))
        return copied

    def remove_feature_dir(self, feature_id: str) -> None:
        shutil.rmtree(self.paths_for(feature_id).feature_dir, ignore_errors=True)

    def load_context_files(self) -> list[tuple[str, str]]:
        """Read project context markdown files in name order."""

        if not self.context_dir.is_dir():
            return []
        return [
            (path.name, path.read_text("utf-8"))
            for path in sorted(self.context_dir.glob("*.md"))
            if path.is_file()
        ]
