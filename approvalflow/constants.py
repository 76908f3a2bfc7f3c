"""Default limits shared across the engine."""

MAX_TEMPLATE_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
DEFAULT_MAX_STEPS = 20
DEFAULT_MAX_TOTAL_TIMEOUT_DAYS = 21
DEFAULT_MAX_STEP_TIMEOUT_DAYS = 30

# Simulator fallbacks when a step has no timeout configured
DEFAULT_SIMULATED_TIMEOUT_DAYS = 7
DEFAULT_SIMULATED_PROCESSING_DAYS = 3
