from .database import ApprovalDB
from .models import (
    AuditEntryRow,
    StepExecutionRow,
    WorkflowInstanceRow,
    WorkflowStepRow,
    WorkflowTemplateRow,
)

__all__ = [
    "ApprovalDB",
    "AuditEntryRow",
    "StepExecutionRow",
    "WorkflowInstanceRow",
    "WorkflowStepRow",
    "WorkflowTemplateRow",
]
