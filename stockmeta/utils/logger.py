"""
Centralized Logging and Secret Filtering
========================================

This module provides the logging infrastructure for Stockmeta, with a heavy
emphasis on keeping API keys out of log output. The tool is driven entirely
by client-held Gemini keys, so every handler installed here redacts them.

Key Features:
-------------
- Sensitive Data Masking: Automatic redaction of Gemini API keys, bearer
  tokens, and long secrets using regex and recursive dictionary filtering.
- API Instrumentation: Helpers for logging REST requests/responses with
  masked headers and truncated bodies.
- Contextual Logging: Formatting including timestamps, module origin, and
  line numbers.

Dependencies:
-------------
- logging: Standard library for output routing.
- re: Used for pattern-based masking of sensitive strings.
"""

import json
import logging
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from stockmeta.core import config


# Log directory configuration
LOG_DIR = config.APP_DATA_DIR / "logs"

# Sensitive field patterns to mask
SENSITIVE_FIELDS = {
    'password', 'passwd', 'secret', 'token', 'api_key',
    'apikey', 'auth', 'authorization', 'credentials', 'x-goog-api-key'
}

# Regex patterns for sensitive data in strings
SENSITIVE_PATTERNS = [
    (re.compile(r'(AIza[0-9A-Za-z\-_]{20,})'), lambda m: f"***{m.group(1)[-4:]}"),  # Google API keys
    (re.compile(r'(Bearer\s+[a-zA-Z0-9\-._~+/]+=*)'), 'Bearer ***'),  # Bearer tokens
    (re.compile(r'([a-zA-Z0-9]{40,})'), lambda m: f"***{m.group(1)[-4:]}"),  # Long alphanumeric (likely keys)
]


def _mask_string(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SensitiveDataFilter(logging.Filter):
    """
    Filtering hook to intercept and redact sensitive information.

    This filter is attached to both file and console handlers. It scans
    log records for patterns matching credentials (Gemini keys, Bearer
    tokens) and replaces them with masks (e.g., '***' or '***4a1b')
    before the data is persisted or displayed.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _mask_string(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_sensitive_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    mask_sensitive_data(arg) if isinstance(arg, (dict, str)) else arg
                    for arg in record.args
                )

        return True


def mask_sensitive_data(data: Any, mask_value: str = "***") -> Any:
    """
    Recursively redact sensitive fields from complex data structures.

    Keys that look like credential labels (e.g. 'api_key', 'x-goog-api-key')
    keep only their last four characters; string values anywhere in the
    structure are scanned with the regex patterns.

    Args:
        data: The input data structure (dict, list, str, etc.) to be scrubbed.
        mask_value: The string used to replace sensitive content.

    Returns:
        A copy of the input data with sensitive values masked.
    """
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            key_lower = str(key).lower()

            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                if ('key' in key_lower or 'token' in key_lower) and isinstance(value, str) and len(value) > 4:
                    masked[key] = f"{mask_value}{value[-4:]}"
                else:
                    masked[key] = mask_value
            else:
                masked[key] = mask_sensitive_data(value, mask_value)
        return masked

    elif isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item, mask_value) for item in data)

    elif isinstance(data, str):
        return _mask_string(data)

    return data


def mask_key(api_key: str) -> str:
    """Short display form of an API key, e.g. '...x9Qa'."""
    if not api_key:
        return "<none>"
    return f"...{api_key[-4:]}"


def setup_logging(
    log_level: int = logging.DEBUG,
    console_level: int = logging.INFO,
    log_format: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> Path:
    """
    Initialize application-wide logging.

    Configs include:
    - Root Logger: Set to DEBUG to capture all events.
    - File Handler: Persists detailed DEBUG logs to 'logs/stockmeta.log'.
    - Console Handler: Displays INFO logs on stderr so stdout stays clean
      for command output.

    Args:
        log_level: Granularity for the persistent log file.
        console_level: Granularity for the terminal output.
        log_format: Optional custom formatting string.
        log_dir: Override for the log directory.

    Returns:
        Path: The absolute path to the log file.
    """
    target_dir = log_dir or LOG_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    log_file = target_dir / "stockmeta.log"

    if log_format is None:
        log_format = (
            '%(asctime)s - %(name)s - %(levelname)s - '
            '[%(filename)s:%(lineno)d] - %(message)s'
        )

    formatter = logging.Formatter(log_format, datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture everything, handlers will filter

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    console_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(console_handler)

    # Chatty third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

    logging.debug("=" * 80)
    logging.debug(f"Stockmeta started - Log file: {log_file}")
    logging.debug("=" * 80)

    return log_file


def shutdown_logging():
    """Flush and close all root handlers. Call before process exit."""
    for handler in list(logging.root.handlers):
        try:
            handler.flush()
            handler.close()
        except Exception:
            pass
    logging.root.handlers.clear()


def log_config(config_name: str, config_data: Dict[str, Any], logger: Optional[logging.Logger] = None):
    """
    Log configuration settings with automatic sensitive data masking.

    Args:
        config_name: Name of the configuration being logged
        config_data: Dictionary of configuration settings
        logger: Optional logger instance
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    masked_config = mask_sensitive_data(config_data)

    logger.info(f"Configuration: {config_name}")
    logger.debug(f"{config_name} details: {json.dumps(masked_config, indent=2, default=str)}")


def log_api_request(
    logger: logging.Logger,
    method: str,
    endpoint: str,
    headers: Optional[Dict] = None,
    params: Optional[Dict] = None,
):
    """
    Log an outgoing API request with masked sensitive data.

    Request bodies are not logged; metadata requests embed whole images.
    """
    logger.debug(f"API Request: {method} {endpoint}")

    if headers:
        logger.debug(f"Request headers: {mask_sensitive_data(headers)}")

    if params:
        logger.debug(f"Request params: {mask_sensitive_data(params)}")


def log_api_response(
    logger: logging.Logger,
    status_code: int,
    response_data: Optional[Any] = None,
    elapsed_time: Optional[float] = None,
):
    """
    Log an API response with timing information.

    Args:
        logger: Logger instance to use
        status_code: HTTP status code
        response_data: Response body data
        elapsed_time: Request duration in seconds
    """
    timing_info = f" ({elapsed_time:.3f}s)" if elapsed_time else ""
    logger.debug(f"API Response: {status_code}{timing_info}")

    if response_data:
        masked_response = mask_sensitive_data(response_data)

        # Truncate large responses for readability
        response_str = json.dumps(masked_response, indent=2, default=str)
        if len(response_str) > 1000:
            response_str = response_str[:1000] + "\n... (truncated)"

        logger.debug(f"Response body: {response_str}")
