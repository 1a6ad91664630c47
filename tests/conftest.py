"""Shared fixtures for the prerequisite checker tests."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Keep a developer's .env / override file from leaking into assertions."""
    for name in ("ARC_REQUIRED_PROVIDERS", "ARC_SUPPORTED_OS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("settings.OVERRIDE_FILE", tmp_path / "no-such-overrides.json")


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()
