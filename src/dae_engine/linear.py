# dae_engine/src/dae_engine/linear.py
"""Direct linear solvers and Jacobian approximation for the Newton corrector.

Each Newton iteration solves J x = b with the iteration matrix

    J = dF/dy + cj * dF/dy'

which stays fixed between linear-solver setups (modified Newton). The solvers
here factor J once per setup and reuse the factorization for every solve,
mirroring the cached LU strategy used for implicit operator solves:

- dense paths use LAPACK LU through scipy.linalg.lu_factor / lu_solve,
- sparse paths use SuperLU through scipy.sparse.linalg.factorized.

Singular or non-finite factorizations are reported as recoverable failures so
the step engine can retry with a smaller step (and hence a better conditioned
matrix).
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse import csr_matrix, issparse
from scipy.sparse.linalg import factorized as sparse_factorized

from .errors import (
    IllegalInputError,
    LinearSetupRecoverableError,
    LinearSolveRecoverableError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .problem import JacobianMatrix, LinearSolver

FloatArray = NDArray[np.floating]

_SQUARE_ERROR_MSG = "iteration matrix must be square, got shape {shape}"
_NOT_SETUP_ERROR_MSG = "solve called before setup"
_SINGULAR_MSG = "iteration matrix is singular"
_NONFINITE_MSG = "iteration matrix contains non-finite entries"
_SOLVE_NONFINITE_MSG = "linear solve produced non-finite values"


def _check_square(shape: tuple[int, ...]) -> None:
    if len(shape) != 2 or shape[0] != shape[1]:
        raise IllegalInputError(detail=_SQUARE_ERROR_MSG.format(shape=shape))


class DenseLinearSolver:
    """Dense LU solver with a reusable factorization."""

    def __init__(self) -> None:
        """Initialize an empty (not yet factored) solver."""
        self._lu: tuple[FloatArray, NDArray[np.intc]] | None = None

    def setup(self, matrix: JacobianMatrix) -> None:
        """Factor a dense matrix.

        Args:
            matrix: Square iteration matrix (sparse input is densified).

        Raises:
            LinearSetupRecoverableError: If the matrix is singular or non-finite.
        """
        dense = matrix.toarray() if issparse(matrix) else np.asarray(matrix)
        _check_square(dense.shape)
        if not np.all(np.isfinite(dense)):
            raise LinearSetupRecoverableError(_NONFINITE_MSG)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", LinAlgWarning)
            lu, piv = lu_factor(dense, check_finite=False)

        if np.any(np.diag(lu) == 0.0):
            self._lu = None
            raise LinearSetupRecoverableError(_SINGULAR_MSG)
        self._lu = (lu, piv)

    def solve(self, b: FloatArray) -> FloatArray:
        """Solve A x = b using the stored factorization.

        Args:
            b: Right-hand side vector.

        Raises:
            RuntimeError: If called before setup.
            LinearSolveRecoverableError: If the solution is not finite.

        Returns:
            Solution vector x.
        """
        if self._lu is None:
            raise RuntimeError(_NOT_SETUP_ERROR_MSG)
        x = lu_solve(self._lu, b, check_finite=False)
        if not np.all(np.isfinite(x)):
            raise LinearSolveRecoverableError(_SOLVE_NONFINITE_MSG)
        return np.asarray(x, dtype=np.asarray(b).dtype)


class SparseLinearSolver:
    """Sparse direct solver (SuperLU) with a reusable factorization."""

    def __init__(self) -> None:
        """Initialize an empty (not yet factored) solver."""
        self._solve: Callable[[FloatArray], FloatArray] | None = None

    def setup(self, matrix: JacobianMatrix) -> None:
        """Factor a sparse matrix.

        Args:
            matrix: Square iteration matrix (dense input is converted to CSC).

        Raises:
            LinearSetupRecoverableError: If the matrix is singular or non-finite.
        """
        mat = csr_matrix(matrix) if not issparse(matrix) else matrix
        _check_square(cast("tuple[int, ...]", mat.shape))
        if not np.all(np.isfinite(mat.data)):
            raise LinearSetupRecoverableError(_NONFINITE_MSG)
        try:
            self._solve = sparse_factorized(mat.tocsc())
        except RuntimeError as exc:
            self._solve = None
            raise LinearSetupRecoverableError(_SINGULAR_MSG) from exc

    def solve(self, b: FloatArray) -> FloatArray:
        """Solve A x = b using the stored factorization.

        Args:
            b: Right-hand side vector.

        Raises:
            RuntimeError: If called before setup.
            LinearSolveRecoverableError: If the solution is not finite.

        Returns:
            Solution vector x.
        """
        if self._solve is None:
            raise RuntimeError(_NOT_SETUP_ERROR_MSG)
        b_arr = np.asarray(b)
        x = np.asarray(self._solve(b_arr), dtype=b_arr.dtype)
        if not np.all(np.isfinite(x)):
            raise LinearSolveRecoverableError(_SOLVE_NONFINITE_MSG)
        return x


def make_linear_solver(matrix: JacobianMatrix) -> LinearSolver:
    """Return a solver suited to the storage format of matrix."""
    if issparse(matrix):
        return SparseLinearSolver()
    return DenseLinearSolver()


def dq_jacobian(
    residual: Callable[[float, FloatArray, FloatArray, FloatArray], None],
    t: float,
    yy: FloatArray,
    yp: FloatArray,
    res: FloatArray,
    *,
    cj: float,
    hh: float,
    ewt: FloatArray,
    uround: float,
) -> FloatArray:
    """Approximate J = dF/dy + cj*dF/dy' by forward difference quotients.

    Column j perturbs y_j by

        inc = max(sqrt(uround) * max(|y_j|, |hh*y'_j|), 1/ewt_j)

    (sign-matched to hh*y'_j) and y'_j by cj*inc, so one residual evaluation
    yields the whole column of the combined iteration matrix.

    Args:
        residual: Residual function writing F(t, yy, yp) into its last argument.
        t: Time of evaluation.
        yy: State at which to linearize (not modified).
        yp: Derivative at which to linearize (not modified).
        res: F(t, yy, yp) already evaluated.
        cj: Leading BDF coefficient.
        hh: Current step size.
        ewt: Error-weight vector.
        uround: Unit roundoff of the working dtype.

    Returns:
        Dense n x n iteration matrix.
    """
    n = yy.size
    jac = np.empty((n, n), dtype=yy.dtype)
    srur = float(np.sqrt(uround))

    y_work = yy.copy()
    yp_work = yp.copy()
    rtemp = np.empty_like(res)

    for j in range(n):
        yj = float(y_work[j])
        ypj = float(yp_work[j])

        inc = max(srur * max(abs(yj), abs(hh * ypj)), 1.0 / float(ewt[j]))
        if hh * ypj < 0.0:
            inc = -inc
        inc = (yj + inc) - yj

        y_work[j] += inc
        yp_work[j] += cj * inc

        residual(t, y_work, yp_work, rtemp)
        jac[:, j] = (rtemp - res) / inc

        y_work[j] = yj
        yp_work[j] = ypj

    return jac
