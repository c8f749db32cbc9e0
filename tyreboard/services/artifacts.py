from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


def _segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("_", str(value).strip()).strip("._")
    return cleaned or "_"


class ArtifactStore:
    """Manage on-disk locations for solver workspaces and Tydex files."""

    def __init__(self, root: Optional[Path] = None, base_url: str = "/artifacts") -> None:
        resolved_root = root or Path.cwd() / "artifacts"
        self._root = resolved_root.resolve()
        self._base_url = base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def project_dir(self, project_name: str) -> Path:
        return self._ensure_dir(self._root / "projects" / _segment(project_name))

    def protocol_dir(self, project_name: str, protocol: str) -> Path:
        return self._ensure_dir(self.project_dir(project_name) / _segment(protocol))

    def run_folder(self, project_name: str, protocol: str, folder_name: str) -> Path:
        """Working folder shared by a row's solver job and its Tydex output."""
        return self._ensure_dir(self.protocol_dir(project_name, protocol) / _segment(folder_name))

    def tydex_path(self, project_name: str, protocol: str, folder_name: str, filename: str) -> Path:
        return self.run_folder(project_name, protocol, folder_name) / _segment(filename)

    def relative(self, path: Path) -> str:
        cleaned = path.resolve()
        root = self._root.resolve()
        return str(cleaned.relative_to(root))

    def url(self, path: Path) -> str:
        return f"{self._base_url}/{self.relative(path)}"

    def resolve(self, relative_path: str) -> Path:
        candidate = (self._root / relative_path).resolve()
        if self._root not in candidate.parents and candidate != self._root:
            raise ValueError("Artifact path escapes the artifact root.")
        return candidate


_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store
