"""
Centralized application configuration.

Edit the variables below to configure development settings.
"""

import logging
import os

# =============================================================================
# DEVELOPMENT SETTINGS - Edit these for local development
# =============================================================================
LOG_LEVEL = os.environ.get("MURMUR_LOG_LEVEL", "INFO")  # DEBUG, INFO, WARNING, ...
LOG_TO_CONSOLE = True  # Set to True to output logs to terminal
# =============================================================================

# =============================================================================
# PIPELINE SETTINGS
# =============================================================================
TARGET_SAMPLE_RATE = 16000  # Every model and provider consumes 16 kHz mono
METERING_INTERVAL_SECONDS = 0.05  # Minimum spacing between audio level events
DEVICE_OPEN_ATTEMPTS = 3  # Momentary "device busy" retries before giving up
DEVICE_OPEN_BACKOFF_SECONDS = 0.2  # Doubled after every failed attempt
DOWNLOAD_MAX_ATTEMPTS = 4
DOWNLOAD_BACKOFF_BASE_SECONDS = 1.0
DOWNLOAD_BACKOFF_CAP_SECONDS = 30.0
DOWNLOAD_CHUNK_SIZE = 8192
MAX_CHUNK_SECONDS = 30.0  # Local engines see at most this much audio per call
# =============================================================================


def get_log_level() -> int:
    """Get the logging level as an integer."""
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)
