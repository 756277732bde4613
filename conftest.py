"""Pytest configuration — ensures the project root is importable."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def _no_ai_calls(monkeypatch):
    """Prevent real model API calls during tests — keeps the suite fast and free."""
    from capture_reconciler.config import settings

    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
