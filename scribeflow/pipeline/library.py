"""JSON file storage for the unit library and pipelines.

WHY: Units and pipelines are configured once and reused across runs and
front ends (CLI, HTTP API). A single JSON file is easy to edit by hand and
to check into a dotfiles repo.

HOW: The file holds ``units`` and ``pipelines`` arrays. It is validated
with jsonschema against library_schema.json (shipped next to this module)
before any object is built, and validated again before saving.

RULES:
- Schema violations raise ConfigError naming the offending path
- Deleting a unit also removes every pipeline reference to it
- Pipelines are looked up by id first, then by exact name
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import jsonschema

from scribeflow.errors import ConfigError
from scribeflow.pipeline.models import Pipeline, Unit, UnitLibrary, unit_from_dict

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "library_schema.json"
LIBRARY_VERSION = 1

_CACHED_SCHEMA: dict[str, Any] | None = None


def _get_schema() -> dict[str, Any]:
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        with open(_SCHEMA_PATH) as f:
            _CACHED_SCHEMA = json.load(f)
    return _CACHED_SCHEMA


def validate_library_data(data: dict) -> None:
    """Raise ConfigError when ``data`` does not match the library schema."""
    try:
        jsonschema.validate(instance=data, schema=_get_schema())
    except jsonschema.ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ConfigError("Invalid pipeline library at {}: {}".format(location, exc.message))


class PipelineLibrary:
    """Units plus the pipelines that reference them."""

    def __init__(self, units: UnitLibrary | None = None, pipelines: List[Pipeline] | None = None) -> None:
        self.units = units if units is not None else UnitLibrary()
        self._pipelines: Dict[str, Pipeline] = {}
        for pipeline in pipelines or []:
            self.add_pipeline(pipeline)

    @property
    def pipelines(self) -> List[Pipeline]:
        return list(self._pipelines.values())

    def add_unit(self, unit: Unit) -> Unit:
        return self.units.add(unit)

    def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        self._pipelines[pipeline.id] = pipeline
        return pipeline

    def delete_unit(self, unit_id: str) -> None:
        """Remove a unit and strip it from every pipeline that references it."""
        self.units.remove(unit_id)
        for pid, pipeline in list(self._pipelines.items()):
            if any(r.unit_id == unit_id for r in pipeline.references):
                self._pipelines[pid] = pipeline.without_unit(unit_id)
                logger.info("Removed unit %s from pipeline '%s'", unit_id, pipeline.name)

    def delete_pipeline(self, pipeline_id: str) -> None:
        self._pipelines.pop(pipeline_id, None)

    def find_pipeline(self, key: str) -> Pipeline | None:
        if key in self._pipelines:
            return self._pipelines[key]
        for pipeline in self._pipelines.values():
            if pipeline.name == key:
                return pipeline
        return None

    def to_dict(self) -> dict:
        return {
            "version": LIBRARY_VERSION,
            "units": [u.to_dict() for u in self.units],
            "pipelines": [p.to_dict() for p in self._pipelines.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> PipelineLibrary:
        validate_library_data(data)
        units = UnitLibrary(unit_from_dict(u) for u in data["units"])
        pipelines = [Pipeline.from_dict(p) for p in data["pipelines"]]
        return cls(units=units, pipelines=pipelines)


def load_library(path: Path) -> PipelineLibrary:
    """Read and validate a library file.

    Raises:
        ConfigError: The file is missing, not JSON, or fails the schema.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError("Pipeline library not found: {}".format(path))
    except json.JSONDecodeError as exc:
        raise ConfigError("Pipeline library {} is not valid JSON: {}".format(path.name, exc))

    library = PipelineLibrary.from_dict(data)
    logger.info(
        "Loaded %d unit(s) and %d pipeline(s) from %s",
        len(library.units), len(library.pipelines), path.name,
    )
    return library


def save_library(library: PipelineLibrary, path: Path) -> Path:
    data = library.to_dict()
    validate_library_data(data)
    path = Path(path)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.info("Saved pipeline library to %s", path)
    return path
