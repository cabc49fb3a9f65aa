"""Tests for the project metadata shipped with the distribution."""

from __future__ import annotations

import tomllib
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def test_no_internal_document_shipped_as_readme():
    project = tomllib.loads(PYPROJECT.read_text())["project"]
    assert project.get("readme") in (None, "README.md")


def test_console_script_points_at_cli():
    project = tomllib.loads(PYPROJECT.read_text())["project"]
    assert project["scripts"]["agentdock"] == "agentdock.__main__:main"
