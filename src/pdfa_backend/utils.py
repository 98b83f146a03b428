"""
Utility functions for time handling, filenames and paging.

This module provides helper functions for:
- Producing timezone-aware UTC timestamps (the single clock of the system)
- Sanitizing uploaded filenames for safe storage and download headers
- Ensuring directory creation
- Clamping user-supplied pagination parameters
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Tuple

Clock = Callable[[], datetime]

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

MAX_PER_PAGE = 100


def utcnow() -> datetime:
    """
    Current time as a timezone-aware UTC datetime.

    Quota days are UTC calendar dates, so every component derives its notion
    of "today" from this clock (or an injected replacement in tests).
    """
    return datetime.now(timezone.utc)


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "default-doc")
        "my-document"
        >>> sanitize_label("@#$", "default-doc")
        "default-doc"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def converted_filename(original_name: str) -> str:
    """
    Name offered for download of a converted document.

    Example:
        >>> converted_filename("Annual Report.pdf")
        "annual-report_pdfa.pdf"
    """
    stem, _ = split_extension(original_name)
    return f"{sanitize_label(stem, fallback='document')}_pdfa.pdf"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> Tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Example:
        >>> split_extension("document.pdf")
        ("document", ".pdf")
    """
    path = Path(filename)
    return path.stem, path.suffix


def allowed_pdf_extensions() -> Iterable[str]:
    return [".pdf"]


def allowed_pdf_mime_types() -> Iterable[str]:
    return ["application/pdf", "application/x-pdf"]


def is_pdf_upload(filename: str, content_type: str | None) -> bool:
    _, suffix = split_extension(filename)
    return suffix.lower() in allowed_pdf_extensions() or (content_type or "") in allowed_pdf_mime_types()


def clamp_page(page: int, per_page: int) -> Tuple[int, int]:
    """Normalize pagination input to ``page >= 1`` and ``1 <= per_page <= MAX_PER_PAGE``."""
    return max(1, page), min(max(1, per_page), MAX_PER_PAGE)


def last_page(total: int, per_page: int) -> int:
    return max(1, math.ceil(total / per_page))
