"""
Google AI Studio Client
========================

REST client for the Google Gemini API (generativelanguage.googleapis.com).
Provides model listing and multimodal (image + text) metadata generation
using the generateContent endpoint.

The client is credential-agnostic: every call takes the API key it should
use, so the batch pipeline can rotate keys over one shared HTTP session.
Authentication is via the ``x-goog-api-key`` HTTP header; keys never appear
in URLs or logs.

Failures are translated into the Stockmeta error taxonomy:

- ``GenerationTimeoutError``: the hard request timeout expired; it bounds the
  whole call (connect, response and body), not each socket read
- ``QuotaExceededError``: HTTP 429, with retry delay and quota details
- ``ApiError`` / ``NetworkError``: any other rejection or transport failure
- ``MalformedResponseError``: a 2xx answer whose content is unusable
"""

import base64
import json
import logging
import math
import re
import time
from typing import Any, Dict, List, Optional

import requests

from stockmeta.core import config
from stockmeta.core.exceptions import (
    ApiError,
    GenerationTimeoutError,
    MalformedResponseError,
    NetworkError,
    QuotaExceededError,
)
from stockmeta.core.models import GeneratedMetadata, ResolvedModel
from stockmeta.core.prompts import build_instruction
from stockmeta.utils.logger import log_api_request, log_api_response

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```) if present."""
    cleaned = text.strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_retry_delay(value: Any) -> Optional[int]:
    """Convert a google.protobuf.Duration string such as '45s' to whole seconds."""
    if value is None:
        return None
    match = _DURATION.match(str(value))
    if not match:
        return None
    return int(math.ceil(float(match.group(1))))


def parse_metadata(text: str) -> GeneratedMetadata:
    """
    Parse the model's text output into a GeneratedMetadata triple.

    Raises:
        MalformedResponseError: If the text is not JSON or a field is missing.
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Failed to parse JSON response: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedResponseError("Invalid response structure: expected a JSON object")

    title = data.get("title")
    description = data.get("description")
    keywords = data.get("keywords")

    if not isinstance(title, str) or not title.strip():
        raise MalformedResponseError("Invalid response structure: missing title")
    if not isinstance(description, str) or not description.strip():
        raise MalformedResponseError("Invalid response structure: missing description")
    if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
        raise MalformedResponseError("Invalid response structure: keywords must be a list of strings")

    return GeneratedMetadata(title=title.strip(), description=description.strip(), keywords=keywords)


def build_quota_error(error_body: Dict[str, Any]) -> QuotaExceededError:
    """Build a QuotaExceededError from a 429 error body."""
    error = error_body.get("error") or {}
    message = error.get("message") or "Rate limit exceeded"
    details = error.get("details") or []

    retry_info = next((d for d in details if d.get("@type") == config.RETRY_INFO_TYPE), None)
    quota_info = next((d for d in details if d.get("@type") == config.QUOTA_FAILURE_TYPE), None)

    detailed_message = message
    violations = (quota_info or {}).get("violations") or []
    if violations:
        violation = violations[0]
        metric_name = violation.get("quotaMetric") or ""
        metric = "Free tier daily limit" if "free_tier" in metric_name else "Quota limit"
        limit = violation.get("quotaValue")
        if limit:
            detailed_message += f"\n\n{metric}: {limit} requests. Check your plan and billing details at {config.QUOTA_USAGE_URL}"

    retry_after = parse_retry_delay((retry_info or {}).get("retryDelay"))
    if retry_after is not None:
        detailed_message += f"\n\nPlease retry in {retry_after} seconds."

    return QuotaExceededError(detailed_message, retry_after_seconds=retry_after)


def _error_body(raw: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class GoogleAIClient:
    """Client for Google AI Studio (Gemini API).

    Attributes:
        timeout: Hard timeout in seconds for generateContent calls
        base_url: API root, without version
    """

    def __init__(self, timeout: float = config.REQUEST_TIMEOUT_SECONDS, base_url: str = config.GEMINI_BASE_URL):
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
        })

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _read_body(self, resp: requests.Response, timeout: float, started: float) -> bytes:
        """Read the streamed body; the deadline covers the whole call, not each socket read."""
        chunks = []
        try:
            for chunk in resp.iter_content(chunk_size=config.RESPONSE_CHUNK_BYTES):
                chunks.append(chunk)
                if time.monotonic() - started > timeout:
                    raise GenerationTimeoutError(f"Request timeout after {timeout:g}s")
        except requests.exceptions.Timeout as exc:
            raise GenerationTimeoutError(f"Request timeout after {timeout:g}s") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"Google AI API request failed: {exc}") from exc
        return b"".join(chunks)

    def _request(self, method: str, url: str, api_key: str, timeout: float, payload: Optional[Dict] = None) -> Dict[str, Any]:
        headers = {"x-goog-api-key": api_key.strip()}
        log_api_request(logger, method, url, headers=headers)

        start = time.time()
        started = time.monotonic()
        try:
            if method == "GET":
                resp = self.session.get(url, headers=headers, timeout=timeout, stream=True)
            else:
                resp = self.session.post(url, headers=headers, json=payload, timeout=timeout, stream=True)
        except requests.exceptions.Timeout as exc:
            raise GenerationTimeoutError(f"Request timeout after {timeout:g}s") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"Google AI API request failed: {exc}") from exc

        try:
            body = self._read_body(resp, timeout, started)
            log_api_response(logger, resp.status_code, elapsed_time=time.time() - start)

            if resp.status_code == 429:
                raise build_quota_error(_error_body(body))

            if not 200 <= resp.status_code < 300:
                error = _error_body(body).get("error") or {}
                message = error.get("message") or f"API request failed with status {resp.status_code}"
                raise ApiError(message, http_status=resp.status_code)

            try:
                data = json.loads(body)
            except ValueError as exc:
                raise MalformedResponseError("Google AI returned a non-JSON body") from exc
        finally:
            resp.close()

        if not isinstance(data, dict):
            raise MalformedResponseError("Google AI returned an unexpected body")
        return data

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    def list_models(self, api_key: str, api_variant: str = config.API_VARIANT_PRIMARY) -> List[Dict]:
        """Fetch the raw model list (``name``, ``displayName``,
        ``supportedGenerationMethods``) for a key under one API version."""
        url = f"{self.base_url}/{api_variant}/models"
        data = self._request("GET", url, api_key, timeout=config.LIST_MODELS_TIMEOUT_SECONDS)
        models = data.get("models") or []
        logger.debug("Google AI %s: listed %d models", api_variant, len(models))
        return models

    # ------------------------------------------------------------------
    # Multimodal inference
    # ------------------------------------------------------------------

    def _generate_url(self, model: ResolvedModel) -> str:
        return f"{self.base_url}/{model.api_variant}/models/{model.model_id}:generateContent"

    def generate(
        self,
        api_key: str,
        model: ResolvedModel,
        image_bytes: bytes,
        mime_type: str,
    ) -> GeneratedMetadata:
        """Send the stock-metadata instruction and one inlined image to Gemini.

        Args:
            api_key: Gemini API key to authenticate this call.
            model: Resolved model and API version.
            image_bytes: Raw image file contents.
            mime_type: MIME type of the image (e.g. ``image/jpeg``).

        Returns:
            The parsed title, description, and raw keyword list.

        Raises:
            GenerationTimeoutError, QuotaExceededError, ApiError,
            MalformedResponseError
        """
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": build_instruction(mime_type)},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode(),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": dict(config.GENERATION_CONFIG),
        }

        data = self._request("POST", self._generate_url(model), api_key, timeout=self.timeout, payload=payload)
        # Free the large payload dict immediately after the request is sent
        del payload

        try:
            candidates = data.get("candidates") or []
            if not candidates:
                raise MalformedResponseError("Google AI returned no candidates")
            text = candidates[0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(f"Unexpected Google AI response structure: {exc}") from exc

        if not text:
            raise MalformedResponseError("No content in Google AI response")

        return parse_metadata(text)

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    def ping(self, api_key: str, model: ResolvedModel):
        """Send a trivial text prompt; raises on any non-success answer."""
        payload = {"contents": [{"parts": [{"text": config.CONNECTIVITY_TEST_PROMPT}]}]}
        self._request("POST", self._generate_url(model), api_key, timeout=self.timeout, payload=payload)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self):
        """Release the underlying HTTP session and connection pool."""
        try:
            self.session.close()
        except Exception:
            pass
