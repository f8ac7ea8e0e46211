# tests/dae_engine/conftest.py
"""Shared fixtures for the dae_engine test suite."""

from __future__ import annotations

import numpy as np
import pytest
from _models import decay_residual, robertson_jacobian, robertson_residual

from dae_engine.ida import Ida
from dae_engine.problem import FunctionModel


@pytest.fixture
def decay_model() -> FunctionModel:
    """Scalar exponential decay model."""
    return FunctionModel(decay_residual)


@pytest.fixture
def robertson_model() -> FunctionModel:
    """Robertson DAE with an analytic iteration matrix."""
    return FunctionModel(robertson_residual, robertson_jacobian)


@pytest.fixture
def bare_ida() -> Ida:
    """Three-component integrator whose state the engine-level tests seed."""
    return Ida(FunctionModel(decay_residual), 0.0, np.zeros(3), np.zeros(3))
