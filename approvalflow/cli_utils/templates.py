from __future__ import annotations

from pathlib import Path

import yaml

from ..models import WorkflowStep, WorkflowTemplate
from ..validation import ValidationReport


def load_template_file(path: Path) -> WorkflowTemplate:
    """Read a template definition from a YAML document.

    Steps without an explicit ``step_number`` are numbered by position.
    """
    data = yaml.safe_load(Path(path).read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    steps = []
    for position, raw in enumerate(data.pop("steps", None) or [], start=1):
        raw = dict(raw)
        raw.setdefault("step_number", position)
        steps.append(WorkflowStep(**raw))
    return WorkflowTemplate(**data, steps=steps)


def format_report(report: ValidationReport) -> list[str]:
    """Render validation issues one per line, errors first."""
    lines = []
    for issue in report.errors + report.warnings:
        where = f"step {issue.step_index + 1}: " if issue.step_index is not None else ""
        field = f" [{issue.field}]" if issue.field else ""
        lines.append(f"{issue.severity.upper()} {where}{issue.message}{field}")
    return lines
