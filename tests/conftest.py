"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
from fake_server import FakeDavServer

from davsync.config import AppConfig, load_config


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Load a config isolated below *tmp_path* with direct connections."""
    merged: dict[str, object] = {
        "state_dir": str(tmp_path / "state"),
        "proxy": {"mode": "none"},
        "folders": {"local": str(tmp_path / "davsync")},
    }
    merged.update(overrides)
    return load_config(config_file=tmp_path / "config.yml", env={}, overrides=merged)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return an isolated configuration."""
    return make_config(tmp_path)


@pytest.fixture
def dav_server() -> FakeDavServer:
    """Return an empty fake server; tests register their own routes."""
    return FakeDavServer()
