"""Exception hierarchy raised by the approval engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .validation import ValidationReport


class ApprovalFlowError(Exception):
    """Base class for all engine errors.

    ``code`` is a stable identifier callers can match on without parsing
    the message.
    """

    code = "E_APPROVALFLOW"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ApprovalFlowError):
    """A template or step is structurally invalid and was not persisted."""

    code = "E_VALIDATION"

    def __init__(self, report: "ValidationReport", message: Optional[str] = None) -> None:
        super().__init__(message or f"Template failed validation: {report.summary()}")
        self.report = report

    @property
    def errors(self):
        return self.report.errors


class ConfigurationError(ApprovalFlowError):
    """A template is valid but cannot be run as configured."""

    code = "E_CONFIGURATION"


class ConflictError(ApprovalFlowError):
    """The requested transition collides with the current state."""

    code = "E_CONFLICT"


class NotFoundError(ApprovalFlowError):
    """An unknown template, instance or execution id was referenced."""

    code = "E_NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier!r} not found")
        self.kind = kind
        self.identifier = identifier
