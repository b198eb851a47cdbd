"""Post-processing pipeline data model.

WHY: A pipeline is an ordered chain of text transformations the user
configures once and reuses. Units live in a shared library and pipelines
reference them by id, so the same unit can be enabled in one pipeline and
disabled in another.

HOW: Units are a closed set of two frozen dataclasses, PromptUnit and
TextReplacementUnit, distinguished by their ``type`` tag. Pipelines hold
UnitReference tuples. UnitLibrary owns the units and resolves a pipeline's
references at execution time.

RULES:
- Units and pipelines are immutable; edits produce new values
- Prompt templates use the ``{{input}}`` placeholder for the running text
- A reference that does not resolve raises UnresolvedUnitError, never skipped
- Disabled references and disabled pipelines contribute no work
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Tuple, Union

from scribeflow.errors import UnresolvedUnitError

INPUT_PLACEHOLDER = "{{input}}"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class PromptUnit:
    """Sends the running text through a chat model."""

    name: str
    provider: str
    model: str
    system_prompt: str
    user_prompt_template: str = INPUT_PLACEHOLDER
    id: str = field(default_factory=new_id)
    enabled: bool = True
    description: str = ""

    type = "prompt"

    def render_user_prompt(self, text: str) -> str:
        return self.user_prompt_template.replace(INPUT_PLACEHOLDER, text)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "provider": self.provider,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "user_prompt_template": self.user_prompt_template,
        }


@dataclass(frozen=True)
class TextReplacementUnit:
    """Local literal or regex substitution on the running text."""

    name: str
    pattern: str
    replacement: str = ""
    is_regex: bool = False
    case_sensitive: bool = True
    id: str = field(default_factory=new_id)
    enabled: bool = True
    description: str = ""

    type = "text_replacement"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "pattern": self.pattern,
            "replacement": self.replacement,
            "is_regex": self.is_regex,
            "case_sensitive": self.case_sensitive,
        }


Unit = Union[PromptUnit, TextReplacementUnit]


def unit_from_dict(data: dict) -> Unit:
    """Build a unit from its JSON form (see library.py for the schema)."""
    common = {
        "id": data.get("id") or new_id(),
        "name": data["name"],
        "enabled": data.get("enabled", True),
        "description": data.get("description", ""),
    }
    if data["type"] == PromptUnit.type:
        return PromptUnit(
            provider=data.get("provider", "openai"),
            model=data["model"],
            system_prompt=data.get("system_prompt", ""),
            user_prompt_template=data.get("user_prompt_template", INPUT_PLACEHOLDER),
            **common,
        )
    if data["type"] == TextReplacementUnit.type:
        return TextReplacementUnit(
            pattern=data["pattern"],
            replacement=data.get("replacement", ""),
            is_regex=data.get("is_regex", False),
            case_sensitive=data.get("case_sensitive", True),
            **common,
        )
    raise ValueError("Unknown unit type: {!r}".format(data["type"]))


@dataclass(frozen=True)
class UnitReference:
    unit_id: str
    enabled: bool = True


@dataclass(frozen=True)
class Pipeline:
    name: str
    references: Tuple[UnitReference, ...] = ()
    id: str = field(default_factory=new_id)
    description: str = ""
    enabled: bool = True

    @classmethod
    def of(cls, name: str, units: Iterable[Unit], **kwargs) -> Pipeline:
        """Build a pipeline that references ``units`` in order, all enabled."""
        return cls(name=name, references=tuple(UnitReference(u.id) for u in units), **kwargs)

    def without_unit(self, unit_id: str) -> Pipeline:
        return replace(self, references=tuple(r for r in self.references if r.unit_id != unit_id))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "units": [{"unit_id": r.unit_id, "enabled": r.enabled} for r in self.references],
        }

    @classmethod
    def from_dict(cls, data: dict) -> Pipeline:
        return cls(
            id=data.get("id") or new_id(),
            name=data["name"],
            description=data.get("description", ""),
            enabled=data.get("enabled", True),
            references=tuple(
                UnitReference(unit_id=r["unit_id"], enabled=r.get("enabled", True))
                for r in data.get("units", [])
            ),
        )


class UnitLibrary:
    """Owns units by id and resolves pipeline references."""

    def __init__(self, units: Iterable[Unit] = ()) -> None:
        self._units: Dict[str, Unit] = {}
        for unit in units:
            self.add(unit)

    def add(self, unit: Unit) -> Unit:
        self._units[unit.id] = unit
        return unit

    def remove(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)

    def get(self, unit_id: str) -> Unit:
        try:
            return self._units[unit_id]
        except KeyError:
            raise UnresolvedUnitError("Unit '{}' is not in the unit library".format(unit_id))

    def find_by_name(self, name: str) -> Unit | None:
        for unit in self._units.values():
            if unit.name == name:
                return unit
        return None

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self):
        return iter(list(self._units.values()))

    def resolve(self, pipeline: Pipeline) -> List[Unit]:
        """Return the units a run of ``pipeline`` executes, in order.

        Every reference must resolve, even a disabled one. Disabled
        references and units disabled in the library are left out.

        Raises:
            UnresolvedUnitError: A reference points at a missing unit.
        """
        missing = [r.unit_id for r in pipeline.references if r.unit_id not in self._units]
        if missing:
            raise UnresolvedUnitError(
                "Pipeline '{}' references unknown unit(s): {}".format(pipeline.name, ", ".join(missing))
            )
        return [
            self._units[r.unit_id]
            for r in pipeline.references
            if r.enabled and self._units[r.unit_id].enabled
        ]


@dataclass
class ExecutionLogEntry:
    """One executed unit or folded group within a pipeline run."""

    unit_name: str
    input_excerpt: str
    output: str
    started_at: datetime
    duration_s: float
    optimized: bool = False
    unit_names: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "unit_name": self.unit_name,
            "input_excerpt": self.input_excerpt,
            "output": self.output,
            "started_at": self.started_at.isoformat(),
            "duration_s": round(self.duration_s, 3),
            "optimized": self.optimized,
            "unit_names": list(self.unit_names),
        }
