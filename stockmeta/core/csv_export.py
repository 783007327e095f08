"""
CSV Export
==========

Renders successful rows as an Adobe Stock metadata CSV.

Only rows in the terminal ``success`` state with a non-blank title,
description and keyword string are exported. Fields are escaped per RFC 4180
(quoted when they contain a comma, quote, CR or LF; embedded quotes doubled)
and lines are joined with ``\\n``.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from . import config
from .exceptions import ValidationError
from .models import Row

logger = logging.getLogger(__name__)

_SPECIAL_CHARS = (",", '"', "\r", "\n")


def escape_csv_field(value) -> str:
    text = "" if value is None else str(value)
    if any(ch in text for ch in _SPECIAL_CHARS):
        return '"' + text.replace('"', '""') + '"'
    return text


def row_to_csv_line(row: Row) -> str:
    return ",".join(
        escape_csv_field(value)
        for value in (row.filename, row.title, row.description, row.keywords)
    )


def eligible_rows(rows: Iterable[Row]) -> List[Row]:
    """Rows that may appear in the export, in queue order."""
    return [row for row in rows if row.is_exportable]


def generate_csv(rows: Iterable[Row]) -> str:
    """
    Build the CSV text for the exportable rows.

    Raises:
        ValidationError: If no row is eligible for export.
    """
    exportable = eligible_rows(rows)
    if not exportable:
        raise ValidationError("No valid rows to export. Generate metadata for at least one image first.")

    lines = [",".join(config.CSV_COLUMNS)]
    lines.extend(row_to_csv_line(row) for row in exportable)
    return "\n".join(lines)


def write_csv(rows: Iterable[Row], path: Optional[Path] = None) -> Path:
    """Write the CSV to ``path`` (default file name in the working directory)."""
    rows = list(rows)
    target = Path(path) if path else Path.cwd() / config.DEFAULT_CSV_FILENAME
    if target.is_dir():
        target = target / config.DEFAULT_CSV_FILENAME

    content = generate_csv(rows)
    target.write_text(content, encoding="utf-8", newline="")
    logger.info(f"Exported {len(eligible_rows(rows))} rows to {target}")
    return target


def estimate_csv_size(rows: Iterable[Row]) -> int:
    """Size in bytes of the export, or 0 when nothing is exportable."""
    try:
        return len(generate_csv(rows).encode("utf-8"))
    except ValidationError:
        return 0


def format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"
