# dae_engine/src/dae_engine/norms.py
"""Weighted norms and error weights used by the step engine.

All step-size, order and convergence decisions in the integrator are made in
the weighted root-mean-square (WRMS) norm

    ||x||_w = sqrt( (1/N) * sum_i (x_i * w_i)^2 )

where w is the error-weight vector ``1 / (rtol*|y| + atol)``. The masked
variant zeroes the components excluded by a boolean mask (algebraic variables
when they are suppressed from the local error test) but still divides by the
full length N.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from .errors import BadErrorWeightError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]
    BoolArray = NDArray[np.bool_]


_SHAPE_ERROR_MSG = "x shape {x_shape} does not match weight shape {w_shape}"


def _check_shapes(x: FloatArray, w: FloatArray) -> None:
    if x.shape != w.shape:
        raise ValueError(_SHAPE_ERROR_MSG.format(x_shape=x.shape, w_shape=w.shape))


def wrms_norm(x: FloatArray, w: FloatArray) -> float:
    """Return the weighted root-mean-square norm of x with weights w.

    Args:
        x: Vector to measure.
        w: Positive weight vector of the same shape.

    Returns:
        sqrt(mean((x*w)**2)) as a Python float.
    """
    x_arr = np.asarray(x)
    w_arr = np.asarray(w)
    _check_shapes(x_arr, w_arr)
    if x_arr.size == 0:
        return 0.0
    prod = x_arr * w_arr
    return float(np.sqrt(np.mean(prod * prod)))


def wrms_norm_masked(x: FloatArray, w: FloatArray, mask: BoolArray) -> float:
    """Return the WRMS norm of x restricted to components where mask is True.

    Excluded components contribute zero to the sum; the mean is still taken
    over the full vector length.

    Args:
        x: Vector to measure.
        w: Positive weight vector of the same shape.
        mask: Boolean mask selecting the components to include.

    Returns:
        Masked WRMS norm as a Python float.
    """
    x_arr = np.asarray(x)
    w_arr = np.asarray(w)
    m_arr = np.asarray(mask, dtype=bool)
    _check_shapes(x_arr, w_arr)
    _check_shapes(x_arr, m_arr)
    if x_arr.size == 0:
        return 0.0
    prod = np.where(m_arr, x_arr * w_arr, 0.0)
    return float(np.sqrt(np.sum(prod * prod) / x_arr.size))


def error_weights(
    y: FloatArray,
    rtol: float,
    atol: float | FloatArray,
    *,
    out: FloatArray | None = None,
) -> FloatArray:
    """Compute the error-weight vector ewt = 1 / (rtol*|y| + atol).

    Args:
        y: Current solution vector.
        rtol: Scalar relative tolerance.
        atol: Scalar or per-component absolute tolerance.
        out: Optional preallocated output array.

    Raises:
        BadErrorWeightError: If any tolerance-scaled component is not positive.

    Returns:
        The error-weight vector (``out`` when given).
    """
    y_arr = np.asarray(y)
    tol = np.abs(y_arr) * float(rtol)
    tol += np.asarray(atol, dtype=y_arr.dtype)
    if not np.all(tol > 0.0):
        bad = np.flatnonzero(~(tol > 0.0))
        raise BadErrorWeightError(index=int(bad[0]))
    if out is None:
        return np.reciprocal(tol)
    np.reciprocal(tol, out=out)
    return out
