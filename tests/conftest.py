"""Shared test fixtures."""

import os
import tempfile
from pathlib import Path

import pytest

# app.py configures file logging at import time
os.environ.setdefault("AZDO_LOG_DIR", tempfile.mkdtemp(prefix="azdo-tree-logs-"))


@pytest.fixture
def azdo_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Complete Azure DevOps settings in the environment."""
    monkeypatch.setenv("AZDO_ORG", "contoso")
    monkeypatch.setenv("AZDO_PROJECT", "Fabrikam Fiber")
    monkeypatch.setenv("AZDO_PAT", "secret-pat")
    monkeypatch.setenv("AZDO_USER_EMAIL", "ada@contoso.com")


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """No Azure DevOps settings anywhere."""
    for name in ("AZDO_ORG", "AZDO_PROJECT", "AZDO_PAT", "AZDO_USER_EMAIL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AZDO_SETTINGS_FILE", str(tmp_path / "missing.json"))
