"""
API Key Store
=============

Persists the Gemini API key string in the local key-value store and offers
format validation and a live connectivity test.

The stored value may hold several keys separated by newlines or commas
(multi-key mode). It is stored verbatim; ``parse_credentials`` splits it
when the batch pipeline consumes it.
"""

import logging
import re
from typing import List, Optional

from . import config
from .exceptions import PersistenceError, StockMetaError
from .models import ValidationResult
from stockmeta.utils.logger import mask_key

logger = logging.getLogger(__name__)


def parse_credentials(raw: Optional[str]) -> List[str]:
    """Split a stored key string into the ordered list of keys."""
    if not raw:
        return []
    parts = re.split(config.API_KEY_SEPARATOR_PATTERN, raw)
    return [part.strip() for part in parts if part.strip()]


class CredentialStore:
    """
    Load, save, and check the Gemini API key(s).

    Attributes:
        storage: Key-value store holding the key string
        resolver: ModelResolver whose cache is tied to the stored keys
        client: GoogleAIClient used by the connectivity test
    """

    def __init__(self, storage, resolver=None, client=None):
        self.storage = storage
        self.resolver = resolver
        self.client = client

    def load(self) -> Optional[str]:
        """Return the stored key string, or None when nothing is stored."""
        value = self.storage.get(config.STORAGE_KEY_API_KEY)
        if value is None:
            return None
        return str(value)

    def save(self, raw: str):
        """
        Persist a key string after trimming it.

        Raises:
            PersistenceError: If the store rejects the write.
        """
        try:
            self.storage.set(config.STORAGE_KEY_API_KEY, raw.strip())
        except PersistenceError as e:
            logger.error(f"Failed to save API key: {e}")
            raise PersistenceError("Failed to save API key. Please check your storage settings.") from e
        logger.info(f"Saved {len(parse_credentials(raw))} API key(s)")

    def remove(self):
        """Remove the stored key string and every cached model resolution."""
        try:
            self.storage.remove(config.STORAGE_KEY_API_KEY)
        except PersistenceError as e:
            logger.error(f"Failed to remove API key: {e}")

        if self.resolver is not None:
            self.resolver.clear_cache()
        else:
            try:
                self.storage.remove(config.STORAGE_KEY_RESOLVED_MODEL)
            except PersistenceError as e:
                logger.error(f"Failed to clear resolved model cache: {e}")
        logger.info("API key removed")

    def has_credential(self) -> bool:
        value = self.load()
        return value is not None and bool(value.strip())

    def credentials(self) -> List[str]:
        return parse_credentials(self.load())

    @staticmethod
    def validate_format(raw: str) -> ValidationResult:
        """Syntactic check of one key; says nothing about whether it works."""
        trimmed = (raw or "").strip()
        if not trimmed:
            return ValidationResult(False, "API key cannot be empty")
        if len(trimmed) < config.MIN_API_KEY_LENGTH:
            return ValidationResult(False, "API key appears to be too short")
        return ValidationResult(True)

    def test_connectivity(self, raw: str) -> ValidationResult:
        """
        Check one key against the live API.

        Resolves a model for the key and sends a trivial prompt to it. Any
        rejection or transport failure is reported as invalid with the
        server or transport message.
        """
        validation = self.validate_format(raw)
        if not validation.valid:
            return validation

        if self.resolver is None or self.client is None:
            raise RuntimeError("CredentialStore needs a resolver and client to test connectivity")

        api_key = raw.strip()
        try:
            model = self.resolver.resolve(api_key)
            self.client.ping(api_key, model)
        except StockMetaError as e:
            logger.warning(f"API key {mask_key(api_key)} failed connectivity test: {e}")
            return ValidationResult(False, str(e) or "Failed to test API key")

        logger.info(f"API key {mask_key(api_key)} passed connectivity test with {model.model_id}")
        return ValidationResult(True)
