"""
Model Resolver
==============

Discovers which Gemini models an API key can call and picks the best one for
image metadata generation.

Resolution lists models under the primary API version (v1beta) and falls
back to v1 once when the listing is rejected for transport, auth, or
not-found reasons, or when v1beta offers no capable model. Capable models
are ranked flash, then pro, then any Gemini model, then anything else that
supports ``generateContent``.

Results are cached per key prefix (never the full key) in memory and in the
key-value store. Entries have no expiry; they are dropped only when the key
is removed.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from stockmeta.core import config
from stockmeta.core.exceptions import (
    ApiError,
    GenerationTimeoutError,
    NetworkError,
    NoModelAvailableError,
    PersistenceError,
)
from stockmeta.core.models import ResolvedModel
from stockmeta.utils.logger import mask_key

logger = logging.getLogger(__name__)

# HTTP statuses that send the listing on to the fallback API version
_FALLBACK_STATUSES = {400, 401, 403, 404}


def _fallback_eligible(error: Exception) -> bool:
    if isinstance(error, (NetworkError, GenerationTimeoutError)):
        return True
    return isinstance(error, ApiError) and error.http_status in _FALLBACK_STATUSES


def key_prefix(api_key: str) -> str:
    return api_key.strip()[:config.KEY_PREFIX_LENGTH]


def find_best_model(models: List[Dict]) -> Optional[Dict]:
    """Return the preferred model supporting generateContent, or None."""
    supported = [
        m for m in models
        if config.GENERATE_CONTENT_METHOD in (m.get("supportedGenerationMethods") or [])
    ]
    if not supported:
        return None

    for pattern in config.MODEL_PREFERENCE_PATTERNS:
        regex = re.compile(pattern, re.IGNORECASE)
        for model in supported:
            if regex.search(model.get("name", "")):
                return model

    return supported[0]


def strip_model_prefix(name: str) -> str:
    if name.startswith(config.MODEL_NAME_PREFIX):
        return name[len(config.MODEL_NAME_PREFIX):]
    return name


class ModelResolver:
    """
    Resolves and caches the model to use for each API key.

    Attributes:
        client: GoogleAIClient used for the model listing call
        storage: Optional key-value store for the persistent cache
    """

    def __init__(self, client, storage=None):
        self.client = client
        self.storage = storage
        self._cache: Dict[str, ResolvedModel] = {}
        self._load_cache()

    def _load_cache(self):
        if self.storage is None:
            return
        stored = self.storage.get(config.STORAGE_KEY_RESOLVED_MODEL) or {}
        if not isinstance(stored, dict):
            return
        for prefix, record in stored.items():
            try:
                self._cache[prefix] = ResolvedModel.from_dict(record)
            except (KeyError, TypeError):
                logger.warning("Discarding malformed resolved-model cache entry")

    def _persist_cache(self):
        if self.storage is None:
            return
        try:
            self.storage.set(
                config.STORAGE_KEY_RESOLVED_MODEL,
                {prefix: model.to_dict() for prefix, model in self._cache.items()},
            )
        except PersistenceError as e:
            # The in-memory cache stays authoritative for this session
            logger.warning(f"Could not persist resolved model cache: {e}")

    def _discover(self, api_key: str) -> Tuple[Dict, str]:
        for variant in config.API_VARIANTS:
            try:
                models = self.client.list_models(api_key, variant)
            except (ApiError, GenerationTimeoutError) as e:
                if variant == config.API_VARIANT_PRIMARY and _fallback_eligible(e):
                    logger.info(f"Model listing under {variant} failed ({e}), retrying with {config.API_VARIANT_FALLBACK}")
                    continue
                raise

            best = find_best_model(models)
            if best is not None:
                return best, variant
            logger.info(f"No generateContent model listed under {variant} for key {mask_key(api_key)}")

        raise NoModelAvailableError("No suitable model found for this API key")

    def resolve(self, api_key: str) -> ResolvedModel:
        """
        Return the model to use for ``api_key``, listing models on a cache miss.

        Raises:
            NoModelAvailableError: If no model supports generateContent.
            QuotaExceededError, ApiError, GenerationTimeoutError: From listing.
        """
        prefix = key_prefix(api_key)
        cached = self._cache.get(prefix)
        if cached is not None:
            return cached

        best, variant = self._discover(api_key)
        model_id = strip_model_prefix(best.get("name", ""))
        resolved = ResolvedModel(
            model_id=model_id,
            api_variant=variant,
            display_name=best.get("displayName") or model_id,
        )
        logger.info(f"Resolved model {resolved.model_id} ({resolved.api_variant}) for key {mask_key(api_key)}")

        self._cache[prefix] = resolved
        self._persist_cache()
        return resolved

    def invalidate(self, api_key: str):
        if self._cache.pop(key_prefix(api_key), None) is not None:
            self._persist_cache()

    def clear_cache(self):
        self._cache.clear()
        if self.storage is not None:
            try:
                self.storage.remove(config.STORAGE_KEY_RESOLVED_MODEL)
            except PersistenceError as e:
                logger.warning(f"Could not clear resolved model cache: {e}")
