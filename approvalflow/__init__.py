"""approvalflow: configurable multi-step approval workflows."""

from .config import ApprovalFlowConfig, load_config
from .engine import ApprovalEngine
from .errors import (
    ApprovalFlowError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Decision,
    ExecutionStatus,
    InstanceStatus,
    Module,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from .persistence import get_repository
from .simulator import SimulatedAction, SimulationReport, simulate
from .sinks import EntityStatusRegistry, EventSink, LoggingEventSink, StaticRoleDirectory
from .validation import TemplateValidator, ValidationReport, validate_template

__version__ = "0.1.0"
__all__ = [
    "ApprovalEngine",
    "ApprovalFlowConfig",
    "ApprovalFlowError",
    "ConfigurationError",
    "ConflictError",
    "Decision",
    "EntityStatusRegistry",
    "EventSink",
    "ExecutionStatus",
    "InstanceStatus",
    "LoggingEventSink",
    "Module",
    "NotFoundError",
    "SimulatedAction",
    "SimulationReport",
    "StaticRoleDirectory",
    "StepExecution",
    "TemplateValidator",
    "ValidationError",
    "ValidationReport",
    "WorkflowInstance",
    "WorkflowStep",
    "WorkflowTemplate",
    "get_repository",
    "load_config",
    "simulate",
    "validate_template",
]
