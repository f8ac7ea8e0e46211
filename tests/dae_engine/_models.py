# tests/dae_engine/_models.py
"""Reference DAE models shared by the integrator tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


def decay_residual(_t: float, yy: FloatArray, yp: FloatArray, out: FloatArray) -> None:
    """F = y' + y (exact solution y0*exp(-t))."""
    out[:] = yp + yy


def robertson_residual(
    _t: float,
    yy: FloatArray,
    yp: FloatArray,
    out: FloatArray,
) -> None:
    """Robertson chemical kinetics written as an index-1 DAE."""
    out[0] = -0.04 * yy[0] + 1.0e4 * yy[1] * yy[2] - yp[0]
    out[1] = 0.04 * yy[0] - 1.0e4 * yy[1] * yy[2] - 3.0e7 * yy[1] * yy[1] - yp[1]
    out[2] = yy[0] + yy[1] + yy[2] - 1.0


def robertson_jacobian(
    _t: float,
    cj: float,
    yy: FloatArray,
    _yp: FloatArray,
    _res: FloatArray,
) -> FloatArray:
    """dF/dy + cj*dF/dy' for robertson_residual."""
    jac = np.empty((3, 3))
    jac[0, 0] = -0.04 - cj
    jac[0, 1] = 1.0e4 * yy[2]
    jac[0, 2] = 1.0e4 * yy[1]
    jac[1, 0] = 0.04
    jac[1, 1] = -1.0e4 * yy[2] - 6.0e7 * yy[1] - cj
    jac[1, 2] = -1.0e4 * yy[1]
    jac[2, :] = 1.0
    return jac
