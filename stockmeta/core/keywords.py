"""
Keyword normalization and Adobe Stock rule checks.

Everything here is pure and deterministic. The rule checks are advisory:
they produce messages for the user but never reject a generated result.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from . import config
from .models import ValidationResult


@dataclass
class ProcessedKeywords:
    """Normalized keywords, their joined form, and the count check."""
    keywords: List[str]
    normalized: str
    validation: ValidationResult


def normalize_keyword(keyword: str) -> Optional[str]:
    """Lowercase and trim one keyword; blank input yields None."""
    normalized = str(keyword).strip().lower()
    return normalized or None


def normalize_keywords(keywords: Iterable[str]) -> List[str]:
    """
    Normalize a keyword list.

    Lowercases, trims, drops empty entries, and removes duplicates while
    keeping the first occurrence in place. Applying it twice gives the same
    result as applying it once.
    """
    seen = set()
    result: List[str] = []
    for raw in keywords:
        keyword = normalize_keyword(raw)
        if keyword is None or keyword in seen:
            continue
        seen.add(keyword)
        result.append(keyword)
    return result


def parse_keywords(keyword_string: str) -> List[str]:
    """Parse a comma-separated keyword string into a normalized list."""
    if not keyword_string or not keyword_string.strip():
        return []
    return normalize_keywords(keyword_string.split(","))


def join_keywords(keywords: Iterable[str]) -> str:
    return ", ".join(keywords)


def validate_keyword_count(keywords: List[str]) -> ValidationResult:
    count = len(keywords)
    if count < config.KEYWORDS_MIN_COUNT:
        return ValidationResult(
            False, f"Too few keywords. Minimum: {config.KEYWORDS_MIN_COUNT}, Current: {count}"
        )
    if count > config.KEYWORDS_MAX_COUNT:
        return ValidationResult(
            False, f"Too many keywords. Maximum: {config.KEYWORDS_MAX_COUNT}, Current: {count}"
        )
    return ValidationResult(True)


def validate_title(title: str) -> ValidationResult:
    length = len(title.strip())
    if length < config.TITLE_MIN_LENGTH:
        return ValidationResult(
            False, f"Title too short. Minimum: {config.TITLE_MIN_LENGTH} characters, Current: {length}"
        )
    if length > config.TITLE_MAX_LENGTH:
        return ValidationResult(
            False, f"Title too long. Maximum: {config.TITLE_MAX_LENGTH} characters, Current: {length}"
        )
    return ValidationResult(True)


def validate_description(description: str) -> ValidationResult:
    length = len(description.strip())
    if length < config.DESCRIPTION_MIN_LENGTH:
        return ValidationResult(
            False,
            f"Description too short. Minimum: {config.DESCRIPTION_MIN_LENGTH} characters, Current: {length}",
        )
    if length > config.DESCRIPTION_MAX_LENGTH:
        return ValidationResult(
            False,
            f"Description too long. Maximum: {config.DESCRIPTION_MAX_LENGTH} characters, Current: {length}",
        )
    return ValidationResult(True)


def validate_metadata(title: str, description: str, keywords: List[str]) -> List[str]:
    """
    Check a normalized result against the Adobe Stock rule set.

    Returns:
        A list of human-readable warnings; empty when every rule passes.
    """
    checks = (
        validate_title(title),
        validate_description(description),
        validate_keyword_count(keywords),
    )
    return [check.reason for check in checks if not check.valid]


def process_keywords(raw_keywords: Iterable[str]) -> ProcessedKeywords:
    """Normalize raw keywords from the API and check their count."""
    keywords = normalize_keywords(raw_keywords)
    return ProcessedKeywords(
        keywords=keywords,
        normalized=join_keywords(keywords),
        validation=validate_keyword_count(keywords),
    )
