"""
Data Model and Row State Machine
================================

This module defines the data structures shared across Stockmeta:

- Row: one image's unit of generation work and its result
- RowStatus: the closed set of row states
- GeneratedMetadata: the title/description/keywords triple returned by Gemini
- ResolvedModel: the model identifier and API version chosen for a key
- ValidationResult: outcome of a syntactic or advisory check

Row status may only change through the transition functions at the bottom of
this module. They enforce the lifecycle::

    pending -> generating -> success
                          -> error -> generating (resubmit)

A successful row is final. Callers may freely toggle ``Row.selected``.
"""

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidTransitionError


# ============================================================================
# ENUMS & DATA CLASSES
# ============================================================================

class RowStatus(Enum):
    """Generation status of a row."""
    PENDING = "pending"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ValidationResult:
    """Outcome of a validation check; ``reason`` is set when invalid."""
    valid: bool
    reason: Optional[str] = None


@dataclass
class GeneratedMetadata:
    """Structured metadata parsed from a Gemini response."""
    title: str
    description: str
    keywords: List[str]


@dataclass
class ResolvedModel:
    """A concrete, callable Gemini model for one API key."""
    model_id: str
    api_variant: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedModel":
        return cls(
            model_id=data["model_id"],
            api_variant=data["api_variant"],
            display_name=data.get("display_name") or data["model_id"],
        )


@dataclass
class Row:
    """
    One image queued for metadata generation.

    Attributes:
        id: Unique identifier, assigned at creation and never reused
        filename: File name without directory
        file_size: Size of the source file in bytes
        source_path: Absolute path of the image on disk
        preview: Self-contained ``data:`` URL thumbnail
        title: Generated title (empty until success)
        description: Generated description (empty until success)
        keywords: Normalized keywords joined with ", " (empty until success)
        status: Current generation status
        error: Last failure message, only set in the error state
        warnings: Advisory rule violations of a successful result
        selected: Batch-selection flag, independent of status
        generated_at: Epoch seconds of the last generation attempt
    """
    filename: str
    file_size: int = 0
    source_path: str = ""
    preview: str = ""
    title: str = ""
    description: str = ""
    keywords: str = ""
    status: RowStatus = RowStatus.PENDING
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    selected: bool = False
    generated_at: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_exportable(self) -> bool:
        """True when the row holds a complete successful result."""
        return (
            self.status is RowStatus.SUCCESS
            and bool(self.title.strip())
            and bool(self.description.strip())
            and bool(self.keywords.strip())
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Row":
        return cls(
            id=data["id"],
            filename=data["filename"],
            file_size=int(data.get("file_size") or 0),
            source_path=data.get("source_path") or "",
            preview=data.get("preview") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            keywords=data.get("keywords") or "",
            status=RowStatus(data.get("status", RowStatus.PENDING.value)),
            error=data.get("error"),
            warnings=list(data.get("warnings") or []),
            selected=bool(data.get("selected", False)),
            generated_at=data.get("generated_at"),
        )


# ============================================================================
# STATE TRANSITIONS
# ============================================================================

def begin_generating(row: Row) -> Row:
    """Move a pending or failed row into the generating state."""
    if row.status not in (RowStatus.PENDING, RowStatus.ERROR):
        raise InvalidTransitionError(
            f"Row {row.id} cannot start generating from '{row.status.value}'"
        )
    row.status = RowStatus.GENERATING
    row.error = None
    row.generated_at = time.time()
    return row


def complete_success(
    row: Row,
    title: str,
    description: str,
    keywords: str,
    warnings: Optional[List[str]] = None,
) -> Row:
    """Record a successful generation on a generating row."""
    if row.status is not RowStatus.GENERATING:
        raise InvalidTransitionError(
            f"Row {row.id} cannot succeed from '{row.status.value}'"
        )
    row.status = RowStatus.SUCCESS
    row.title = title
    row.description = description
    row.keywords = keywords
    row.warnings = list(warnings or [])
    row.error = None
    return row


def complete_error(row: Row, reason: str) -> Row:
    """Record a failed generation on a generating row."""
    if row.status is not RowStatus.GENERATING:
        raise InvalidTransitionError(
            f"Row {row.id} cannot fail from '{row.status.value}'"
        )
    row.status = RowStatus.ERROR
    row.error = reason or "Generation failed"
    return row
