# tests/conftest.py
"""Global pytest configuration for dae_engine."""

from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def _engine_debug_logging(caplog: pytest.LogCaptureFixture) -> None:
    """Capture integrator debug records so failing tests show the step history."""
    caplog.set_level(logging.DEBUG, logger="dae_engine")
