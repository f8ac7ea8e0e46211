# dae_engine/src/dae_engine/problem.py
"""Collaborator interfaces consumed by the integrator and the Newton solver.

The engine never owns user code. It borrows three capabilities through these
protocols for the duration of a call:

- DAEModel: the residual F(t, y, y') and, optionally, its iteration matrix.
- NLProblem: the nonlinear system view used by the Newton solver.
- LinearSolver: factorization and solve of the Newton iteration matrix.

Structural typing is used throughout; implementations do not need to inherit
from anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import csr_matrix

if TYPE_CHECKING:
    from collections.abc import Callable

FloatArray: TypeAlias = NDArray[np.floating]
BoolArray: TypeAlias = NDArray[np.bool_]
JacobianMatrix: TypeAlias = FloatArray | csr_matrix

# residual(t, yy, yp, out) writes F(t, yy, yp) into out
ResidualFunction: TypeAlias = "Callable[[float, FloatArray, FloatArray, FloatArray], None]"
# jacobian(t, cj, yy, yp, res) returns dF/dy + cj*dF/dy' (or None)
JacobianFunction: TypeAlias = (
    "Callable[[float, float, FloatArray, FloatArray, FloatArray], JacobianMatrix | None]"
)


@runtime_checkable
class DAEModel(Protocol):
    """Residual capability for F(t, y, y') = 0.

    ``residual`` must be callable repeatedly and must not modify ``yy`` or
    ``yp``. It may raise ResidualRecoverableError to ask for a smaller step;
    any other exception is treated as an unrecoverable residual failure.
    """

    def residual(
        self,
        t: float,
        yy: FloatArray,
        yp: FloatArray,
        out: FloatArray,
    ) -> None:
        """Write F(t, yy, yp) into out."""
        ...


@runtime_checkable
class JacobianModel(DAEModel, Protocol):
    """DAEModel that also provides the Newton iteration matrix.

    ``jacobian`` returns J = dF/dy + cj * dF/dy' evaluated at (t, yy, yp), as a
    dense ndarray or a CSR matrix. Returning None selects the built-in
    difference-quotient approximation.
    """

    def jacobian(
        self,
        t: float,
        cj: float,
        yy: FloatArray,
        yp: FloatArray,
        res: FloatArray,
    ) -> JacobianMatrix | None:
        """Return the iteration matrix, or None for a difference quotient."""
        ...


class NLProblem(Protocol):
    """Nonlinear system F(y) = 0 as seen by the Newton solver."""

    def sys(self, y: FloatArray, out: FloatArray) -> None:
        """Evaluate F(y) into out."""
        ...

    def lsetup(self, y: FloatArray, f: FloatArray, jbad: bool) -> bool:
        """Set up the linear system at y.

        Args:
            y: Current iterate.
            f: F(y) at the current iterate.
            jbad: True when the Newton solver believes the Jacobian is stale.

        Returns:
            True if the Jacobian was recomputed.
        """
        ...

    def lsolve(self, y: FloatArray, b: FloatArray) -> None:
        """Solve J x = b in place (b holds x on return)."""
        ...

    def ctest(
        self,
        y: FloatArray,
        delta: FloatArray,
        tol: float,
        ewt: FloatArray,
    ) -> bool:
        """Return True when the iteration has converged.

        May raise ConvergenceRecoverError when the iteration diverges.
        """
        ...


class LinearSolver(Protocol):
    """Direct linear solver for the Newton iteration matrix."""

    def setup(self, matrix: JacobianMatrix) -> None:
        """Factor the matrix for subsequent solves."""
        ...

    def solve(self, b: FloatArray) -> FloatArray:
        """Return x solving matrix @ x = b."""
        ...


@dataclass(slots=True)
class FunctionModel:
    """Adapt plain callables to the DAEModel / JacobianModel protocols.

    Attributes:
        res: Residual function writing F(t, yy, yp) into its last argument.
        jac: Optional function (t, cj, yy, yp, res) -> iteration matrix.
    """

    res: ResidualFunction
    jac: JacobianFunction | None = None

    def residual(
        self,
        t: float,
        yy: FloatArray,
        yp: FloatArray,
        out: FloatArray,
    ) -> None:
        """Write F(t, yy, yp) into out."""
        self.res(t, yy, yp, out)

    def jacobian(
        self,
        t: float,
        cj: float,
        yy: FloatArray,
        yp: FloatArray,
        res: FloatArray,
    ) -> JacobianMatrix | None:
        """Return the iteration matrix, or None when no jac was given."""
        if self.jac is None:
            return None
        return self.jac(t, cj, yy, yp, res)
