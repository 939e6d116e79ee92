"""Pytest configuration for pipewave tests."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from pipewave.model import Event, EventKind
from pipewave.settings import Settings
from pipewave.ui.console import Console, set_console

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def quiet_console():
    """Route console output into a buffer so tests can assert on it."""
    console = Console(stream=io.StringIO())
    set_console(console)
    yield console
    set_console(None)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every on-disk location under tmp_path."""
    state = tmp_path / ".state"
    return Settings(
        cache_dir=state / "cache",
        work_dir=state / "work",
        report_path=state / "report.json",
        step_timeout=30.0,
    )


@pytest.fixture
def source(tmp_path: Path) -> Path:
    """A tiny source tree to check out."""
    root = tmp_path / "src-tree"
    root.mkdir()
    (root / "README.md").write_text("hello\n")
    (root / "Cargo.lock").write_text("# lock v1\n")
    return root


@pytest.fixture
def push_dev() -> Event:
    return Event(EventKind.PUSH, "dev", "abc123")


@pytest.fixture
def rust_workflow() -> Path:
    return FIXTURES / "rust.yml"
