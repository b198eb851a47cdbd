"""Tests for units, pipelines and the JSON library file.

WHY: The library file is edited by hand. A typo must produce a clear
ConfigError before any run starts, and deleting a unit must not leave
pipelines pointing at nothing.

HOW: Libraries are written to tmp_path and loaded back; schema errors are
triggered with small hand-written dicts.
"""

from __future__ import annotations

import json

import pytest

from scribeflow.errors import ConfigError, UnresolvedUnitError
from scribeflow.pipeline.library import PipelineLibrary, load_library, save_library, validate_library_data
from scribeflow.pipeline.models import (
    Pipeline,
    PromptUnit,
    TextReplacementUnit,
    UnitLibrary,
    UnitReference,
    unit_from_dict,
)

LIBRARY_DATA = {
    "version": 1,
    "units": [
        {"type": "text_replacement", "id": "u-fix", "name": "Fix typos", "pattern": "teh", "replacement": "the"},
        {
            "type": "prompt", "id": "u-sum", "name": "Summarize", "provider": "openai",
            "model": "gpt-4o-mini", "system_prompt": "Summarize.",
        },
    ],
    "pipelines": [
        {"id": "p-notes", "name": "Meeting notes", "units": [{"unit_id": "u-fix"}, {"unit_id": "u-sum"}]},
    ],
}


@pytest.fixture
def library_file(tmp_path):
    path = tmp_path / "pipelines.json"
    path.write_text(json.dumps(LIBRARY_DATA))
    return path


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestUnits:
    def test_render_user_prompt(self):
        unit = PromptUnit(name="p", provider="openai", model="m", system_prompt="s",
                          user_prompt_template="Fix: {{input}} (and {{input}})")
        assert unit.render_user_prompt("x") == "Fix: x (and x)"

    def test_unit_from_dict_defaults(self):
        unit = unit_from_dict({"type": "prompt", "name": "p", "model": "m"})
        assert unit.provider == "openai"
        assert unit.user_prompt_template == "{{input}}"
        assert unit.enabled
        assert unit.id

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            unit_from_dict({"type": "shell", "name": "x"})

    def test_to_dict_round_trip(self):
        unit = TextReplacementUnit(name="r", pattern=r"\s+", replacement=" ", is_regex=True)
        assert unit_from_dict(unit.to_dict()) == unit


class TestUnitLibrary:
    def test_resolve_skips_disabled(self):
        a = TextReplacementUnit(name="a", pattern="a")
        b = TextReplacementUnit(name="b", pattern="b", enabled=False)
        c = TextReplacementUnit(name="c", pattern="c")
        library = UnitLibrary([a, b, c])
        pipeline = Pipeline(name="p", references=(UnitReference(a.id), UnitReference(b.id), UnitReference(c.id, enabled=False)))
        assert library.resolve(pipeline) == [a]

    def test_resolve_rejects_missing_even_when_disabled(self):
        pipeline = Pipeline(name="p", references=(UnitReference("gone", enabled=False),))
        with pytest.raises(UnresolvedUnitError, match="gone"):
            UnitLibrary().resolve(pipeline)

    def test_get_missing(self):
        with pytest.raises(UnresolvedUnitError):
            UnitLibrary().get("nope")

    def test_find_by_name(self):
        unit = TextReplacementUnit(name="Strip fillers", pattern="um")
        library = UnitLibrary([unit])
        assert library.find_by_name("Strip fillers") is unit
        assert library.find_by_name("Other") is None


# ---------------------------------------------------------------------------
# PipelineLibrary and the JSON file
# ---------------------------------------------------------------------------


class TestPipelineLibrary:
    def test_load(self, library_file):
        library = load_library(library_file)
        assert len(library.units) == 2
        pipeline = library.find_pipeline("p-notes")
        assert pipeline.name == "Meeting notes"
        assert library.find_pipeline("Meeting notes") is pipeline
        assert library.find_pipeline("missing") is None

    def test_save_and_reload(self, library_file, tmp_path):
        library = load_library(library_file)
        out = save_library(library, tmp_path / "copy.json")
        reloaded = load_library(out)
        assert reloaded.to_dict() == library.to_dict()

    def test_delete_unit_strips_references(self, library_file):
        library = load_library(library_file)
        library.delete_unit("u-fix")
        pipeline = library.find_pipeline("p-notes")
        assert [r.unit_id for r in pipeline.references] == ["u-sum"]
        assert "u-fix" not in library.units

    def test_delete_pipeline(self, library_file):
        library = load_library(library_file)
        library.delete_pipeline("p-notes")
        assert library.pipelines == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_library(tmp_path / "none.json")

    def test_not_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{units: oops")
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_library(path)

    @pytest.mark.parametrize(
        "data, location",
        [
            ({"units": []}, "<root>"),
            ({"units": [{"type": "prompt", "name": "p"}], "pipelines": []}, "units/0"),
            ({"units": [{"type": "text_replacement", "name": "r"}], "pipelines": []}, "units/0"),
            ({"units": [], "pipelines": [{"name": "p", "units": [{}]}]}, "pipelines/0/units/0"),
            ({"units": [{"type": "macro", "name": "m"}], "pipelines": []}, "units/0/type"),
        ],
    )
    def test_schema_errors(self, data, location):
        with pytest.raises(ConfigError) as exc_info:
            validate_library_data(data)
        assert location in str(exc_info.value)

    def test_empty_library(self):
        library = PipelineLibrary.from_dict({"units": [], "pipelines": []})
        assert library.pipelines == []
        assert len(library.units) == 0
