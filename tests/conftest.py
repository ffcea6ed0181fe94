"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop QUERY_WORKER_* variables inherited from the outer environment."""

    for name in list(os.environ):
        if name.startswith("QUERY_WORKER_"):
            monkeypatch.delenv(name, raising=False)
