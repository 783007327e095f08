"""
Application Configuration and Constants
=======================================

This module contains all global configuration values, constants, and defaults used
throughout the Stockmeta application. It serves as a single source of truth for:

- Gemini API endpoints, versions, and timeouts
- Adobe Stock metadata rules (title, description, keyword limits)
- Upload constraints (formats, file size, batch size)
- Batch pacing intervals
- Persistent storage keys and CSV layout

Note:
    All constants use UPPER_SNAKE_CASE naming convention. Modify these values to
    change application-wide behavior without touching business logic.
"""

from pathlib import Path

# ============================================================================
# APPLICATION SETTINGS
# ============================================================================

APP_NAME = "Adobe Stock CSV Generator"

# Per-user data directory (key-value storage file and logs live here)
APP_DATA_DIR = Path.home() / ".stockmeta"

# ============================================================================
# GEMINI API CONFIGURATION
# ============================================================================
# The API is reachable under two versions. v1beta carries the newest models and
# is tried first; v1 is the fallback when listing under v1beta is rejected.

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
API_VARIANT_PRIMARY = "v1beta"
API_VARIANT_FALLBACK = "v1"
API_VARIANTS = (API_VARIANT_PRIMARY, API_VARIANT_FALLBACK)

# Capability a model must advertise to be usable for image analysis
GENERATE_CONTENT_METHOD = "generateContent"

# Namespace prefix returned by the model listing ("models/gemini-2.5-flash")
MODEL_NAME_PREFIX = "models/"

# Model preference order: fast models first, then high quality, then any Gemini
MODEL_PREFERENCE_PATTERNS = (
    r"gemini-.*-flash",
    r"gemini-.*-pro",
    r"gemini",
)

# Hard timeout for a single generateContent call
REQUEST_TIMEOUT_SECONDS = 30

# Timeout for the model listing call
LIST_MODELS_TIMEOUT_SECONDS = 15

# Response bodies are read in chunks so the timeout covers the whole call
RESPONSE_CHUNK_BYTES = 8192

# Generation parameters sent with every metadata request
GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 2048,
    "responseMimeType": "application/json",
}

# Prompt used by the connectivity test
CONNECTIVITY_TEST_PROMPT = 'Say "test"'

# google.rpc detail types found in 429 error bodies
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
QUOTA_FAILURE_TYPE = "type.googleapis.com/google.rpc.QuotaFailure"

# Where users can inspect their quota
QUOTA_USAGE_URL = "https://ai.dev/usage?tab=rate-limit"

# ============================================================================
# CREDENTIALS
# ============================================================================

# Shortest string accepted as an API key (syntactic check only)
MIN_API_KEY_LENGTH = 20

# Number of leading key characters used to key the resolved-model cache
KEY_PREFIX_LENGTH = 10

# Separators accepted between keys in multi-key mode
API_KEY_SEPARATOR_PATTERN = r"[\n,]+"

# ============================================================================
# ADOBE STOCK RULES
# ============================================================================
# Advisory limits checked on the normalized output of every generation.

TITLE_MIN_LENGTH = 10
TITLE_MAX_LENGTH = 70

DESCRIPTION_MIN_LENGTH = 120
DESCRIPTION_MAX_LENGTH = 200

KEYWORDS_MIN_COUNT = 25
KEYWORDS_MAX_COUNT = 49

# ============================================================================
# UPLOAD CONFIGURATION
# ============================================================================

MAX_FILE_SIZE_MB = 10
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

# Maximum number of files accepted by one intake call
MAX_FILES_PER_BATCH = 20

SUPPORTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")
SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")

# Maps Pillow format names to MIME types
PIL_FORMAT_MIME_MAP = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

# Longest edge of the embedded preview thumbnail
PREVIEW_MAX_EDGE = 256
PREVIEW_JPEG_QUALITY = 80

# ============================================================================
# BATCH PACING
# ============================================================================
# Requests are sent one at a time; these delays separate consecutive rows.

PACING_SUCCESS_DELAY_SECONDS = 2.0
PACING_FAILURE_DELAY_SECONDS = 5.0

# How long the final progress counters stay visible after a batch
PROGRESS_RESET_DELAY_SECONDS = 2.0

# ============================================================================
# PERSISTENT STORAGE
# ============================================================================

STORAGE_FILENAME = "storage.json"

# Capacity limit of the key-value store (mirrors a browser storage quota)
STORAGE_CAPACITY_BYTES = 5 * 1024 * 1024

STORAGE_KEY_API_KEY = "gemini_api_key"
STORAGE_KEY_RESOLVED_MODEL = "gemini_resolved_model"
STORAGE_KEY_RESULTS = "csv_generator_results"

# Lock files kept beside the storage file; shared by every stockmeta process
STORAGE_LOCK_SUFFIX = ".lock"
BATCH_LOCK_SUFFIX = ".batch.lock"

# Seconds to wait for another process to finish writing the storage file
STORAGE_LOCK_TIMEOUT_SECONDS = 10

# ============================================================================
# CSV EXPORT
# ============================================================================

CSV_COLUMNS = ("Filename", "Title", "Description", "Keywords")
DEFAULT_CSV_FILENAME = "adobe-stock-metadata.csv"
