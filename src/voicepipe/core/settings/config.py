"""
Centralized application configuration.

Edit the variables below to configure development settings.
"""

import logging

# =============================================================================
# DEVELOPMENT SETTINGS - Edit these for local development
# =============================================================================
LOG_LEVEL = "DEBUG"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_TO_CONSOLE = True  # Set to True to output logs to terminal
# =============================================================================

# =============================================================================
# HISTORY SETTINGS
# =============================================================================
MAX_HISTORY_ENTRIES = 20  # Number of transcription history records to keep
# =============================================================================

# =============================================================================
# PIPELINE DEFAULTS
# =============================================================================
DEFAULT_ENGINE_IDLE_TIMEOUT = 300.0  # Seconds before an idle engine is unloaded
DEFAULT_RATE_LIMIT_INTERVAL = 1.0  # Seconds between calls to the same provider
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_TIMEOUT = 10.0  # Per-attempt timeout and first backoff delay
DEFAULT_MAX_DELAY = 30.0  # Backoff ceiling
# =============================================================================


def get_log_level() -> int:
    """Get the logging level as an integer."""
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)
