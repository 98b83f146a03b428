"""
Pre-conversion helpers: processing time estimates, accepted formats and
checks of an uploaded file before it is submitted for conversion.

The file checks work on ``pdfinfo`` metadata as returned by
``Renderer.inspect``; an empty dict means the file could not be read as a
PDF.
"""

from __future__ import annotations

import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple

from omegaconf import DictConfig

from .interfaces import Renderer
from .models import PdfACompliance, PdfValidation, ProcessingEstimate, SupportedFormats
from .utils import allowed_pdf_extensions, allowed_pdf_mime_types

BASE_TIME_MS = 500
MS_PER_KB = 50
BYTES_PER_PAGE = 50 * 1024
SMALL_FILE_BYTES = 512 * 1024
LARGE_FILE_BYTES = 5 * 1024 * 1024
MANY_PAGES = 50

PDF_VERSION_KEY = "PDF version"
# Matches e.g. "PDF/A-1b" in pdfinfo's "PDF subtype" line
PDFA_LEVEL_PATTERN = re.compile(r"PDF/A-?(\d)([abu])?", re.IGNORECASE)
PDFA_SCORE = 95
PLAIN_PDF_SCORE = 30


def format_bytes(size: int) -> str:
    """
    Human readable size.

    Example:
        >>> format_bytes(1536)
        "1.5 KB"
    """
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def _humanize_ms(ms: float) -> str:
    if ms < 1000:
        return f"{round(ms)}ms"
    if ms < 60000:
        return f"{round(ms / 1000, 1):g}s"
    return f"{round(ms / 60000, 1):g}min"


def estimate_processing_time(size_bytes: int) -> ProcessingEstimate:
    """Rough conversion time estimate derived from file size alone."""
    estimate = BASE_TIME_MS + (size_bytes / 1024) * MS_PER_KB
    complexity = "medium"
    factors = []

    if size_bytes < SMALL_FILE_BYTES:
        complexity = "low"
        factors.append("Small file")
    elif size_bytes > LARGE_FILE_BYTES:
        complexity = "high"
        factors.append("Large file")
        estimate *= 1.5

    estimated_pages = max(1, size_bytes / BYTES_PER_PAGE)
    if estimated_pages > MANY_PAGES:
        factors.append(f"Many pages estimated (~{round(estimated_pages)})")
        estimate *= 1.2

    factors.append(f"File size: {format_bytes(size_bytes)}")
    return ProcessingEstimate(
        estimated_time_ms=round(estimate),
        estimated_time_human=_humanize_ms(estimate),
        complexity=complexity,
        factors=factors,
    )


def supported_formats(settings: DictConfig) -> SupportedFormats:
    return SupportedFormats(
        extensions=list(allowed_pdf_extensions()),
        mime_types=list(allowed_pdf_mime_types()),
        max_file_size_kb=settings.conversion.max_file_size_kb,
        max_files_per_batch=settings.conversion.max_files_per_batch,
        output_format=f"PDF/A-{settings.renderer.pdfa_version}b",
    )


def inspect_upload(renderer: Renderer, content: bytes) -> Dict[str, str]:
    """Write ``content`` to a scratch file and return its pdfinfo metadata."""
    with tempfile.TemporaryDirectory(prefix="pdfa-check-") as workdir:
        path = Path(workdir) / "input.pdf"
        path.write_bytes(content)
        return renderer.inspect(path)


def pdfa_level(metadata: Dict[str, str]) -> Optional[str]:
    """
    The PDF/A level a document declares, or None for a plain PDF.

    Example:
        >>> pdfa_level({"PDF subtype": "PDF/A-2u"})
        "PDF/A-2u"
    """
    for value in metadata.values():
        match = PDFA_LEVEL_PATTERN.search(value)
        if match:
            part, conformance = match.groups()
            return f"PDF/A-{part}{(conformance or 'b').lower()}"
    return None


def validate_pdf(metadata: Dict[str, str], size_bytes: int, max_file_bytes: int) -> PdfValidation:
    """Whether an uploaded file is a readable PDF that can be submitted for conversion."""
    issues = []
    recommendations = []

    is_valid = bool(metadata)
    if not is_valid:
        issues.append("File is not a readable PDF document")
    if size_bytes > max_file_bytes:
        issues.append(f"File too large. Maximum size: {max_file_bytes // 1024}KB")

    level = pdfa_level(metadata)
    if level:
        recommendations.append(f"File already declares {level}; conversion may not be necessary")

    return PdfValidation(
        is_valid=is_valid,
        can_convert=is_valid and size_bytes <= max_file_bytes,
        is_pdf_a=level is not None,
        pdf_version=metadata.get(PDF_VERSION_KEY),
        issues=issues,
        recommendations=recommendations,
        estimated_time_ms=estimate_processing_time(size_bytes).estimated_time_ms,
    )


def _plain_pdf_findings(metadata: Dict[str, str]) -> Tuple[int, str]:
    if not metadata:
        return 0, "File is not a readable PDF document"
    return PLAIN_PDF_SCORE, "No PDF/A identification metadata"


def check_pdfa_compliance(metadata: Dict[str, str]) -> PdfACompliance:
    """
    Heuristic PDF/A compliance report.

    Only the declared identification is checked, not the full ISO 19005
    rule set.
    """
    level = pdfa_level(metadata)
    if level:
        return PdfACompliance(
            is_pdf_a=True,
            pdf_a_level=level,
            compliance_score=PDFA_SCORE,
            compliance_details=[f"Document declares {level} conformance"],
            non_compliant_elements=[],
            recommendations=[],
        )

    score, finding = _plain_pdf_findings(metadata)
    return PdfACompliance(
        is_pdf_a=False,
        compliance_score=score,
        compliance_details=[],
        non_compliant_elements=[finding],
        recommendations=["Convert the document to PDF/A for long-term archiving"],
    )
