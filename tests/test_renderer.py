"""
Tests for the Ghostscript renderer wrapper.

``subprocess.run`` is replaced so no Ghostscript installation is needed.
"""

import subprocess

import pytest

from pdfa_backend.configuration import load_settings
from pdfa_backend.errors import RendererFailure
from pdfa_backend.renderer import GhostscriptRenderer, parse_pdfinfo

PDFINFO_OUTPUT = """Title:          Annual Report
Producer:       GPL Ghostscript 10.02
Pages:          12
Page size:      612 x 792 pts (letter)
"""


def _output_path(command):
    for arg in command:
        if arg.startswith("-sOutputFile="):
            return arg.split("=", 1)[1]
    raise AssertionError("no output file in command")


@pytest.fixture
def paths(tmp_path):
    source = tmp_path / "input.pdf"
    source.write_bytes(b"%PDF-1.4")
    return source, tmp_path / "output.pdf"


class TestRender:
    """Tests for GhostscriptRenderer.render."""

    def test_build_command(self, paths):
        source, target = paths
        command = GhostscriptRenderer(binary_path="/usr/bin/gs", pdfa_version=2).build_command(source, target)
        assert command[0] == "/usr/bin/gs"
        assert "-dPDFA=2" in command
        assert "-sDEVICE=pdfwrite" in command
        assert f"-sOutputFile={target}" in command
        assert command[-1] == str(source)

    def test_successful_render(self, monkeypatch, paths):
        source, target = paths

        def fake_run(command, **kwargs):
            with open(_output_path(command), "wb") as handle:
                handle.write(b"%PDF-1.4 pdfa")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert GhostscriptRenderer().render(source, target) == target
        assert target.read_bytes() == b"%PDF-1.4 pdfa"

    def test_non_zero_exit(self, monkeypatch, paths):
        source, target = paths
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda command, **kwargs: subprocess.CompletedProcess(command, 1, stdout="", stderr="Error: /undefined"),
        )
        with pytest.raises(RendererFailure, match="/undefined"):
            GhostscriptRenderer().render(source, target)

    def test_missing_output_is_a_failure(self, monkeypatch, paths):
        source, target = paths
        monkeypatch.setattr(
            subprocess, "run", lambda command, **kwargs: subprocess.CompletedProcess(command, 0, stdout="", stderr="")
        )
        with pytest.raises(RendererFailure):
            GhostscriptRenderer().render(source, target)

    def test_missing_binary(self, monkeypatch, paths):
        source, target = paths

        def fake_run(command, **kwargs):
            raise FileNotFoundError(command[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(RendererFailure, match="not available"):
            GhostscriptRenderer(binary_path="gs-missing").render(source, target)

    def test_timeout(self, monkeypatch, paths):
        source, target = paths

        def fake_run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs.get("timeout"))

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(RendererFailure, match="timed out"):
            GhostscriptRenderer(timeout_seconds=3).render(source, target)

    def test_from_settings(self):
        settings = load_settings(
            overrides={"renderer": {"pdfa_version": 3}, "conversion": {"render_timeout_seconds": 45}}, environ={}
        )
        renderer = GhostscriptRenderer.from_settings(settings)
        assert renderer.pdfa_version == 3
        assert renderer.timeout_seconds == 45


class TestInspect:
    def test_parse_pdfinfo(self):
        metadata = parse_pdfinfo(PDFINFO_OUTPUT)
        assert metadata["Pages"] == "12"
        assert metadata["Page size"] == "612 x 792 pts (letter)"

    def test_inspect_without_pdfinfo(self, monkeypatch, paths):
        source, _ = paths

        def fake_run(command, **kwargs):
            raise FileNotFoundError(command[0])

        monkeypatch.setattr(subprocess, "run", fake_run)
        assert GhostscriptRenderer().inspect(source) == {}

    def test_inspect_parses_output(self, monkeypatch, paths):
        source, _ = paths
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda command, **kwargs: subprocess.CompletedProcess(command, 0, stdout=PDFINFO_OUTPUT, stderr=""),
        )
        assert GhostscriptRenderer().inspect(source)["Title"] == "Annual Report"
