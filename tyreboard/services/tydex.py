from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from tyreboard.constants import protocol_key_for_label, protocol_label
from tyreboard.services.artifacts import ArtifactStore, get_artifact_store
from tyreboard.services.storage import TyreRepository, get_repository
from tyreboard.templating import render_tydex

LOGGER = logging.getLogger("tyreboard.tydex")


class TydexService:
    """Render TYDEX result files from a row's template into its run folder."""

    def __init__(
        self,
        repo: Optional[TyreRepository] = None,
        artifacts: Optional[ArtifactStore] = None,
    ) -> None:
        self._repo = repo or get_repository()
        self._artifacts = artifacts or get_artifact_store()

    def _template_dir(self) -> Path:
        return Path(self._repo.get_config()["tydex_template_dir"])

    def generate(self, protocol: str, project_name: str, row: Dict[str, Any]) -> Dict[str, Any]:
        template_name = str(row.get("template_tydex") or "").strip()
        if not template_name:
            raise ValueError("No template_tydex found for this row")
        if not self._repo.find_project_by_name(project_name):
            raise LookupError(f"Project '{project_name}' not found")
        protocol_key = protocol_key_for_label(protocol)
        run_number = str(row["number_of_runs"])
        folder_name = f"{row.get('p', '')}_{row.get('l', '')}"
        filename = str(row.get("tydex_name") or "").strip() or Path(template_name).name

        context = {
            "project_name": project_name,
            "protocol": protocol_label(protocol_key),
            "protocol_key": protocol_key,
            "run_number": run_number,
            "row": row,
            "inputs": row.get("inputs") or {},
            "p": row.get("p", ""),
            "l": row.get("l", ""),
            "generated_at": datetime.now(tz=timezone.utc),
        }
        content = render_tydex(self._template_dir(), template_name, context)

        target = self._artifacts.tydex_path(project_name, protocol_key, folder_name, filename)
        target.write_text(content, encoding="utf-8")
        record = self._repo.create_tydex_file(
            {
                "project_name": project_name,
                "protocol": protocol_key,
                "run_number": run_number,
                "filename": target.name,
                "path": self._artifacts.relative(target),
                "url": self._artifacts.url(target),
            }
        )
        LOGGER.info(
            "Generated Tydex %s for %s run %s (%s)",
            target.name,
            project_name,
            run_number,
            protocol_key,
        )
        return record

    def read(self, file_id: str) -> Dict[str, Any]:
        record = self._repo.get_tydex_file(file_id)
        if not record:
            raise LookupError("Tydex file not found")
        path = self._artifacts.resolve(record["path"])
        if not path.exists():
            raise FileNotFoundError(f"Tydex file missing on disk: {record['path']}")
        return {"file": record, "content": path.read_text(encoding="utf-8", errors="replace")}


_tydex_service: Optional[TydexService] = None


def get_tydex_service() -> TydexService:
    global _tydex_service
    if _tydex_service is None:
        _tydex_service = TydexService()
    return _tydex_service
