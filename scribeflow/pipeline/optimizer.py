"""Folds runs of compatible prompt units into single upstream calls.

WHY: Each prompt unit costs one round trip to a chat model. Consecutive
prompt units that target the same provider and model can be described to
the model as one multi-step instruction, saving (run_length - 1) calls and
most of their latency.

HOW: plan() scans the enabled units and groups maximal runs of consecutive
PromptUnits with identical (provider, model). A TextReplacementUnit always
ends a run and forms its own group, since it mutates text locally between
steps. compile_chain() turns a run into one system prompt (numbered,
demarcated per step) and one user prompt that names each intermediate
result STEP_<i>_OUTPUT and asks only for the final output.

RULES:
- Step order is never changed
- Only runs of length >= 2 are folded
- The folded call approximates step-by-step execution; its output is not
  guaranteed to match sequential calls exactly
- The executor re-runs a folded group sequentially if the combined call fails
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from scribeflow.pipeline.models import INPUT_PLACEHOLDER, PromptUnit, TextReplacementUnit, Unit

logger = logging.getLogger(__name__)

CHAIN_SYSTEM_PREAMBLE = (
    "You are executing a chained processing pipeline. Process each step "
    "sequentially, using the output from each step as input to the next."
)
CHAIN_USER_PREAMBLE = "Execute the following steps in order:"
CHAIN_USER_CLOSING = "Provide ONLY the final output from the last step."


def step_output_label(step: int) -> str:
    return "STEP_{}_OUTPUT".format(step)


@dataclass(frozen=True)
class ExecutionGroup:
    """Units that run together: one folded call, or a single unit."""

    units: Tuple[Unit, ...]
    folded: bool = False

    @property
    def name(self) -> str:
        if self.folded:
            return "optimized-chain ({})".format(" -> ".join(u.name for u in self.units))
        return self.units[0].name

    @property
    def calls_saved(self) -> int:
        return len(self.units) - 1 if self.folded else 0

    @property
    def provider(self) -> str | None:
        first = self.units[0]
        return first.provider if isinstance(first, PromptUnit) else None

    @property
    def model(self) -> str | None:
        first = self.units[0]
        return first.model if isinstance(first, PromptUnit) else None


@dataclass(frozen=True)
class FoldedRun:
    unit_names: Tuple[str, ...]
    calls_saved: int

    @property
    def cost_reduction_percent(self) -> int:
        n = len(self.unit_names)
        return (self.calls_saved * 100) // n if n else 0


@dataclass
class OptimizationReport:
    folded: List[FoldedRun] = field(default_factory=list)

    @property
    def total_calls_saved(self) -> int:
        return sum(r.calls_saved for r in self.folded)

    def to_dict(self) -> dict:
        return {
            "folded": [
                {"unit_names": list(r.unit_names), "calls_saved": r.calls_saved} for r in self.folded
            ],
            "total_calls_saved": self.total_calls_saved,
        }


@dataclass(frozen=True)
class CompiledChain:
    system_prompt: str
    user_prompt: str
    provider: str
    model: str


def _close_run(groups: List[ExecutionGroup], run: List[PromptUnit]) -> None:
    if not run:
        return
    if len(run) >= 2:
        groups.append(ExecutionGroup(units=tuple(run), folded=True))
    else:
        groups.append(ExecutionGroup(units=(run[0],)))


def plan(units: Sequence[Unit], optimize: bool = True) -> List[ExecutionGroup]:
    """Group units for execution, preserving their order.

    With ``optimize=False`` every unit becomes its own group.
    """
    if not optimize:
        return [ExecutionGroup(units=(u,)) for u in units]

    groups: List[ExecutionGroup] = []
    run: List[PromptUnit] = []
    for unit in units:
        if isinstance(unit, TextReplacementUnit):
            _close_run(groups, run)
            run = []
            groups.append(ExecutionGroup(units=(unit,)))
            continue
        if run and (unit.provider, unit.model) != (run[0].provider, run[0].model):
            _close_run(groups, run)
            run = []
        run.append(unit)
    _close_run(groups, run)
    return groups


def report(groups: Sequence[ExecutionGroup]) -> OptimizationReport:
    """Summarize which runs a plan folds and the calls each saves."""
    return OptimizationReport(
        folded=[
            FoldedRun(unit_names=tuple(u.name for u in g.units), calls_saved=g.calls_saved)
            for g in groups
            if g.folded
        ]
    )


def compile_chain(units: Sequence[PromptUnit], text: str) -> CompiledChain:
    """Build the single request that performs ``units`` in sequence.

    Step 1's template receives the real input text. Every later step's
    ``{{input}}`` is replaced by a reference to the previous step's label,
    so the model carries intermediate results internally.
    """
    if not units:
        raise ValueError("compile_chain needs at least one prompt unit")

    system_parts = []
    user_parts = []
    for step, unit in enumerate(units, start=1):
        system_parts.append("## Step {}: {}\n{}".format(step, unit.name, unit.system_prompt))
        if step == 1:
            step_input = text
        else:
            step_input = "{" + step_output_label(step - 1) + "}"
        user_parts.append(
            "### Step {}: {}\n{}\n(Result of this step: {{{}}})".format(
                step,
                unit.name,
                unit.user_prompt_template.replace(INPUT_PLACEHOLDER, step_input),
                step_output_label(step),
            )
        )

    system_prompt = "{}\n\n{}".format(CHAIN_SYSTEM_PREAMBLE, "\n\n".join(system_parts))
    user_prompt = "{}\n\n{}\n\n{}".format(CHAIN_USER_PREAMBLE, "\n\n".join(user_parts), CHAIN_USER_CLOSING)
    return CompiledChain(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        provider=units[0].provider,
        model=units[0].model,
    )
