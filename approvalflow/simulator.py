"""Dry-run a template against scripted approver behaviour.

The simulator never touches persisted instances. It walks the steps in
order, accumulates virtual days and reports where the configuration would
stall or end early, with a few heuristic recommendations.
"""

from __future__ import annotations

import random
from enum import Enum
from typing import List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .config import ApprovalFlowConfig
from .models import WorkflowTemplate


class SimulatedAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    TIMEOUT = "timeout"
    DELEGATE = "delegate"


class SimulatedStep(BaseModel):
    step_number: int
    step_name: str
    assignee: Optional[str] = None
    action: SimulatedAction
    status: Literal["approved", "rejected", "timeout"]
    days: int
    comments: str = ""


class SimulationReport(BaseModel):
    final_status: Literal["approved", "rejected", "timeout"] = "approved"
    total_duration: int = 0
    steps: List[SimulatedStep] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


Script = Union[Sequence[Union[SimulatedAction, str]], Mapping[int, Union[SimulatedAction, str]]]


def _action_for(script: Script, index: int, step_number: int) -> SimulatedAction:
    if isinstance(script, Mapping):
        raw = script.get(step_number, SimulatedAction.APPROVE)
    else:
        raw = script[index] if index < len(script) else SimulatedAction.APPROVE
    return SimulatedAction(raw)


def simulate(
    template: WorkflowTemplate,
    script: Script,
    rng: Optional[random.Random] = None,
    config: Optional[ApprovalFlowConfig] = None,
) -> SimulationReport:
    """Replay ``template`` with one scripted action per step.

    ``script`` is either a list aligned with the steps in step-number order
    or a mapping of step number to action; missing entries approve.
    """
    rng = rng or random.Random()
    config = config or ApprovalFlowConfig()
    sim = config.simulation
    report = SimulationReport()
    steps = sorted(template.steps, key=lambda s: s.step_number)

    for index, step in enumerate(steps):
        action = _action_for(script, index, step.step_number)
        assignee = step.assigned_user or step.required_role
        if action is SimulatedAction.TIMEOUT:
            days = step.timeout_days or sim.default_timeout_days
        else:
            days = rng.randint(1, step.timeout_days or sim.default_processing_days)
        report.total_duration += days

        if action is SimulatedAction.APPROVE:
            result = SimulatedStep(
                step_number=step.step_number, step_name=step.step_name, assignee=assignee,
                action=action, status="approved", days=days, comments="Simulated approval",
            )
        elif action is SimulatedAction.DELEGATE:
            result = SimulatedStep(
                step_number=step.step_number, step_name=step.step_name, assignee=assignee,
                action=action, status="approved", days=days,
                comments="Simulated delegation and approval",
            )
            if not step.can_delegate:
                report.issues.append(
                    f"Step {step.step_number} was delegated but does not allow delegation"
                )
        elif action is SimulatedAction.REJECT:
            result = SimulatedStep(
                step_number=step.step_number, step_name=step.step_name, assignee=assignee,
                action=action, status="rejected", days=days, comments="Simulated rejection",
            )
            report.issues.append(
                f"Workflow rejected at step {step.step_number}: {step.step_name}"
            )
            report.final_status = "rejected"
        else:
            result = SimulatedStep(
                step_number=step.step_number, step_name=step.step_name, assignee=assignee,
                action=action, status="timeout", days=days,
                comments=f"Timed out after {days} days",
            )
            report.issues.append(f"Step {step.step_number} timed out: {step.step_name}")
            if step.escalation_role:
                result.status = "approved"
                result.comments += f" - Escalated to {step.escalation_role}"
            else:
                report.issues.append(
                    f"No escalation configured for step {step.step_number}"
                )
                report.final_status = "timeout"

        report.steps.append(result)
        if report.final_status != "approved":
            break

    _recommend(template, report, config)
    return report


def _recommend(
    template: WorkflowTemplate, report: SimulationReport, config: ApprovalFlowConfig
) -> None:
    threshold = config.validation.max_total_timeout_days
    if report.total_duration > threshold:
        report.recommendations.append(
            f"Workflow takes more than {threshold} days - consider reducing timeout periods"
        )
    if any(not s.timeout_days for s in template.steps):
        report.recommendations.append(
            "Some steps lack timeout configuration - add timeouts to prevent delays"
        )
    if any(not s.can_delegate for s in template.steps):
        report.recommendations.append(
            "Consider enabling delegation for critical steps to prevent bottlenecks"
        )
    for step in sorted(template.steps, key=lambda s: s.step_number):
        if not step.escalation_role:
            report.recommendations.append(
                f"Step {step.step_number} has no escalation path configured"
            )
