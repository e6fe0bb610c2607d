"""
File-backed stores for proxy sites, stream routes and nginx.conf parameters.

Each record is one JSON file named after its id. Writes go through a temp
file and a rename so a crash never leaves a truncated record behind.
"""

import json
import logging
from pathlib import Path
from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import get_data_dir
from core.errors import NotFound
from core.file_helpers import write_atomic
from models.proxy import ProxySite, StreamRoute, TemplateParams

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class JsonRecordStore(Generic[RecordT]):
    """One JSON file per record under a directory."""

    model: Type[RecordT]
    label = "Record"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def list(self) -> list[RecordT]:
        """All readable records, sorted by id. Unreadable files are skipped."""
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                records.append(self.model.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable {self.label.lower()} file {path.name}: {e}")
        return records

    def get(self, record_id: str) -> RecordT:
        path = self._path(record_id)
        if not path.exists():
            raise NotFound(f"{self.label} not found: {record_id}")
        return self.model.model_validate_json(path.read_text(encoding="utf-8"))

    def exists(self, record_id: str) -> bool:
        return self._path(record_id).exists()

    def save(self, record: RecordT) -> RecordT:
        write_atomic(self._path(record.id), json.dumps(record.model_dump(mode="json"), indent=2) + "\n")
        logger.debug(f"{self.label} saved: {record.id}")
        return record

    def delete(self, record_id: str) -> None:
        try:
            self._path(record_id).unlink()
        except FileNotFoundError:
            raise NotFound(f"{self.label} not found: {record_id}")
        logger.debug(f"{self.label} deleted: {record_id}")


class ProxySiteStore(JsonRecordStore[ProxySite]):
    model = ProxySite
    label = "Site"

    def __init__(self, directory: Optional[Path] = None):
        super().__init__(directory or get_data_dir() / "sites")

    def referencing_certificate(self, certificate_id: str) -> list[ProxySite]:
        return [site for site in self.list() if site.ssl and site.certificate_id == certificate_id]


class StreamRouteStore(JsonRecordStore[StreamRoute]):
    model = StreamRoute
    label = "Route"

    def __init__(self, directory: Optional[Path] = None):
        super().__init__(directory or get_data_dir() / "routes")


class TemplateParamsStore:
    """Persisted nginx.conf overrides; settings supply the defaults."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_data_dir() / "template_params.json"

    def get(self) -> TemplateParams:
        if not self.path.exists():
            return TemplateParams()
        try:
            return TemplateParams.model_validate_json(self.path.read_text(encoding="utf-8"))
        except PydanticValidationError as e:
            logger.warning(f"Ignoring invalid {self.path.name}, using defaults: {e}")
            return TemplateParams()

    def save(self, params: TemplateParams) -> TemplateParams:
        write_atomic(self.path, json.dumps(params.model_dump(mode="json"), indent=2) + "\n")
        return params
