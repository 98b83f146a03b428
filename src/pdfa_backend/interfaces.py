from pathlib import Path
from typing import Dict, Protocol

from .records import ExpansionRequest


class Renderer(Protocol):
    def render(self, input_path: Path, output_path: Path) -> Path:
        """Convert ``input_path`` into a PDF/A document at ``output_path``.

        Blocking; raises ``RendererFailure`` on any conversion problem.
        """

    def inspect(self, path: Path) -> Dict[str, str]:
        """Best-effort document metadata; an empty dict when unavailable."""


class Storage(Protocol):
    def put(self, data: bytes, prefix: str) -> str:
        ...

    def read(self, key: str) -> bytes:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...


class Notifier(Protocol):
    def notify_expansion_request(self, request: ExpansionRequest) -> None:
        ...
