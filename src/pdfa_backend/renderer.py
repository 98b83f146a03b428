"""
Ghostscript-backed PDF/A renderer.

The renderer is an opaque, blocking collaborator: it either produces an
output file or raises ``RendererFailure``. A missing binary, a non-zero exit
status, a timeout and a missing output file are all failures.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, List

from omegaconf import DictConfig

from .errors import RendererFailure

logger = logging.getLogger(__name__)

# Longest tail of renderer output kept in a job error message
MAX_ERROR_OUTPUT = 2000


class GhostscriptRenderer:
    def __init__(
        self,
        binary_path: str = "gs",
        pdfa_version: int = 1,
        color_conversion: str = "RGB",
        timeout_seconds: float = 120,
        pdfinfo_path: str = "pdfinfo",
    ) -> None:
        self.binary_path = binary_path
        self.pdfa_version = pdfa_version
        self.color_conversion = color_conversion
        self.timeout_seconds = timeout_seconds
        self.pdfinfo_path = pdfinfo_path

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "GhostscriptRenderer":
        return cls(
            binary_path=settings.renderer.binary_path,
            pdfa_version=settings.renderer.pdfa_version,
            color_conversion=settings.renderer.color_conversion,
            timeout_seconds=settings.conversion.render_timeout_seconds,
            pdfinfo_path=settings.renderer.pdfinfo_path,
        )

    def build_command(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            self.binary_path,
            f"-dPDFA={self.pdfa_version}",
            "-dBATCH",
            "-dNOPAUSE",
            f"-sColorConversionStrategy={self.color_conversion}",
            "-sDEVICE=pdfwrite",
            "-dPDFACompatibilityPolicy=1",
            f"-sOutputFile={output_path}",
            str(input_path),
        ]

    def render(self, input_path: Path, output_path: Path) -> Path:
        command = self.build_command(input_path, output_path)
        logger.debug(f"Running renderer: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RendererFailure(f"PDF/A renderer not available: {self.binary_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RendererFailure(f"PDF/A conversion timed out after {self.timeout_seconds}s") from exc

        if result.returncode != 0 or not output_path.exists():
            output = (result.stdout or "") + (result.stderr or "")
            raise RendererFailure(f"PDF/A conversion failed: {output.strip()[-MAX_ERROR_OUTPUT:]}")
        return output_path

    def inspect(self, path: Path) -> Dict[str, str]:
        """Parse ``pdfinfo`` output into a dict; empty when pdfinfo is unusable."""
        try:
            result = subprocess.run(
                [self.pdfinfo_path, str(path)],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            logger.debug(f"pdfinfo unavailable for {path}: {exc}")
            return {}
        if result.returncode != 0:
            return {}
        return parse_pdfinfo(result.stdout)


def parse_pdfinfo(output: str) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        if key.strip():
            metadata[key.strip()] = value.strip()
    return metadata
