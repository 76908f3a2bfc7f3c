from __future__ import annotations

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_STEP_TIMEOUT_DAYS,
    DEFAULT_MAX_STEPS,
    DEFAULT_MAX_TOTAL_TIMEOUT_DAYS,
    DEFAULT_SIMULATED_PROCESSING_DAYS,
    DEFAULT_SIMULATED_TIMEOUT_DAYS,
)


class ValidationConfig(BaseModel):
    """Limits applied by the template validator."""

    max_steps: int = DEFAULT_MAX_STEPS
    max_total_timeout_days: int = DEFAULT_MAX_TOTAL_TIMEOUT_DAYS
    max_step_timeout_days: int = DEFAULT_MAX_STEP_TIMEOUT_DAYS


class SimulationConfig(BaseModel):
    """Fallback durations used when simulating steps without timeouts."""

    default_timeout_days: int = DEFAULT_SIMULATED_TIMEOUT_DAYS
    default_processing_days: int = DEFAULT_SIMULATED_PROCESSING_DAYS


def _default_status_labels() -> Dict[str, str]:
    return {"approved": "Approved", "rejected": "Rejected", "cancelled": "Cancelled"}


class ApprovalFlowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    validation: ValidationConfig = ValidationConfig()
    simulation: SimulationConfig = SimulationConfig()
    status_labels: Dict[str, str] = Field(default_factory=_default_status_labels)

    def status_label(self, outcome: str) -> str:
        """Entity status written for a terminal workflow outcome."""
        return self.status_labels.get(outcome, outcome.capitalize())


def load_config(path: Optional[str] = None) -> ApprovalFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to APPROVALFLOW_CONFIG env
            variable or 'approvalflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("APPROVALFLOW_CONFIG", "approvalflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ApprovalFlowConfig(**data)
    else:
        config = ApprovalFlowConfig()

    env_db_url = os.getenv("APPROVALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
