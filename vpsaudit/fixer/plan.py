"""
Plan builder: turn selected findings into an ordered remediation plan.

Ordering rule (reproduced exactly for report comparability):
  1. danger class ascending : safe, confirm_required, lockout_protected
  2. severity descending    : high, medium, low, info
  3. discovery order        : position in the Registry

Findings that share a fix_id collapse to one step; the step keeps the
first finding in that order (highest severity, earliest discovered).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from vpsaudit.checks.base import DANGER_RANK, SEVERITY_RANK, DangerClass, Severity
from vpsaudit.errors import EmptySelectionError, UnknownFixError
from vpsaudit.fixer.guard import classify
from vpsaudit.registry import ModuleRegistry, Registry


@dataclass(frozen=True)
class PlanStep:
    fix_id: str
    module_name: str
    finding_id: str
    danger: DangerClass
    severity: Severity
    description: str = ""


@dataclass(frozen=True)
class RemediationPlan:
    steps: tuple[PlanStep, ...]

    def fix_ids(self) -> list[str]:
        return [s.fix_id for s in self.steps]

    def requiring_ack(self) -> list[PlanStep]:
        """Steps the operator must explicitly acknowledge before they run."""
        return [s for s in self.steps if s.danger == "confirm_required"]

    def only(self, danger: DangerClass) -> "RemediationPlan":
        return RemediationPlan(tuple(s for s in self.steps if s.danger == danger))

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, idx: int) -> PlanStep:
        return self.steps[idx]


def build_plan(
    selected_modules: Iterable[str],
    selected_finding_ids: Iterable[str] | None,
    registry: Registry,
    modules: ModuleRegistry,
    danger_overrides: dict[str, str] | None = None,
) -> RemediationPlan:
    """
    Build the remediation plan for a selection.

    Args:
        selected_modules:     Module names the operator picked.
        selected_finding_ids: Finding ids the operator picked, or None for
                              every fixable finding in the selected modules.
        registry:             Findings from the audit run.
        modules:              Registered modules (source of FixSpecs).
        danger_overrides:     Optional fix_id → danger class from config.

    Raises:
        UnknownFixError:     a candidate finding names an undeclared fix_id.
        EmptySelectionError: nothing to do.
    """
    module_set = set(selected_modules)
    finding_set = None if selected_finding_ids is None else set(selected_finding_ids)

    candidates = []
    for position, finding in enumerate(registry.findings()):
        if not finding.fixable:
            continue
        if finding.module_name not in module_set:
            continue
        if finding_set is not None and finding.id not in finding_set:
            continue

        try:
            _, spec = modules.resolve(finding.fix_id)
        except UnknownFixError:
            raise UnknownFixError(finding.fix_id, finding.id) from None

        danger = classify(spec, danger_overrides)
        step = PlanStep(
            fix_id=spec.fix_id,
            module_name=finding.module_name,
            finding_id=finding.id,
            danger=danger,
            severity=finding.severity,
            description=spec.description,
        )
        candidates.append((DANGER_RANK[danger], -SEVERITY_RANK[finding.severity], position, step))

    candidates.sort(key=lambda c: c[:3])

    seen: set[str] = set()
    steps: list[PlanStep] = []
    for *_, step in candidates:
        if step.fix_id in seen:
            continue
        seen.add(step.fix_id)
        steps.append(step)

    if not steps:
        raise EmptySelectionError("Selection contains no fixable failed findings")

    return RemediationPlan(tuple(steps))
