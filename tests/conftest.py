"""Global test fixtures for attoloop."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

FAKE_AGENT = Path(__file__).parent / "helpers" / "fake_agent.py"


@pytest.fixture
def fake_agent_argv() -> tuple[str, list[str]]:
    """(command, args) that run the scripted fake agent under this interpreter."""
    return sys.executable, [str(FAKE_AGENT)]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A task workspace with instructions and no status yet."""
    ws = tmp_path / "task"
    ws.mkdir()
    (ws / "INSTRUCTIONS.md").write_text("# Build the thing\n\n- step one\n- step two\n", encoding="utf-8")
    return ws
