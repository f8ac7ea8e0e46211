# dae_engine/src/dae_engine/newton.py
"""Modified Newton solver for the implicit corrector equations.

The solver iterates

    J delta = -F(y),    y <- y + delta

with a Jacobian-related iteration matrix J that is only refreshed when the
caller asks for it (``call_lsetup``) or after a convergence failure with a
stale matrix. It is a two-level state machine:

- setup loop: evaluate F at the initial iterate, optionally set up the linear
  system, then run the Newton loop;
- Newton loop: solve for the update, apply it, test convergence; give up with
  ConvergenceRecoverError after ``maxiters`` non-converged iterations.

A recoverable convergence failure with a stale Jacobian restarts the setup
loop once with ``jbad=True``; with a current Jacobian it is surfaced to the
caller. The solver object is created once per integrator and reused; only
``curiter`` is reset per solve, ``niters`` and ``nconvfails`` are lifetime
counters.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import DTypeLike, NDArray

from .errors import ConvergenceRecoverError, DAEEngineError, IllegalInputError

if TYPE_CHECKING:
    from .problem import NLProblem

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]

NEWTON_DEFAULT_MAXITERS = 3

_MAXITERS_ERROR_MSG = "maxiters must be positive, got {maxiters}"
_SIZE_ERROR_MSG = "vector size {actual} does not match solver size {expected}"
_NOT_CONVERGED_MSG = "Newton iteration did not converge in {maxiters} iterations"


class NewtonSolver:
    """Modified Newton iteration for F(y) = 0.

    Attributes:
        delta: Newton update buffer (also holds residual values between steps).
        jcur: True when the Jacobian-related data is known to be current.
        curiter: Iterations taken in the current solve attempt.
        maxiters: Maximum iterations per solve attempt.
        niters: Total Newton iterations across all solves.
        nconvfails: Total convergence failures across all solves.
    """

    def __init__(
        self,
        size: int,
        maxiters: int = NEWTON_DEFAULT_MAXITERS,
        *,
        dtype: DTypeLike = np.float64,
    ) -> None:
        """Initialize the solver workspace.

        Args:
            size: Dimension of the nonlinear system.
            maxiters: Maximum Newton iterations per solve attempt.
            dtype: Floating dtype of the work vector.
        """
        if maxiters <= 0:
            raise IllegalInputError(detail=_MAXITERS_ERROR_MSG.format(maxiters=maxiters))
        self.delta: FloatArray = np.zeros(size, dtype=dtype)
        self.jcur = False
        self.curiter = 0
        self.maxiters = int(maxiters)
        self.niters = 0
        self.nconvfails = 0

    def set_max_iters(self, maxiters: int) -> None:
        """Set the maximum number of iterations per solve attempt."""
        if maxiters <= 0:
            raise IllegalInputError(detail=_MAXITERS_ERROR_MSG.format(maxiters=maxiters))
        self.maxiters = int(maxiters)

    def solve(
        self,
        problem: NLProblem,
        y0: FloatArray,
        y: FloatArray,
        w: FloatArray,
        tol: float,
        call_lsetup: bool,
    ) -> None:
        """Solve problem.sys(y) = 0 starting from y0.

        Args:
            problem: Nonlinear problem providing sys/lsetup/lsolve/ctest.
            y0: Initial iterate (not modified).
            y: Output array receiving the solution (written in-place).
            w: Error-weight vector for the convergence test.
            tol: Convergence tolerance in the weighted RMS norm.
            call_lsetup: Whether the caller recommends a linear-solver setup.

        Raises:
            ConvergenceRecoverError: If the iteration failed to converge with
                a current Jacobian.
            DAEEngineError: Any error raised by the problem callbacks.
        """
        if y0.shape != self.delta.shape or y.shape != self.delta.shape:
            raise IllegalInputError(
                detail=_SIZE_ERROR_MSG.format(
                    actual=(y0.shape, y.shape),
                    expected=self.delta.shape,
                )
            )

        # assume the Jacobian is good
        jbad = False

        while True:
            try:
                problem.sys(y0, self.delta)
                if call_lsetup:
                    self.jcur = problem.lsetup(y0, self.delta, jbad)

                self.curiter = 0
                np.copyto(y, y0)
                self._iterate(problem, y, w, tol)
            except ConvergenceRecoverError:
                # stale Jacobian: retry once more with a fresh setup
                if not self.jcur:
                    self.nconvfails += 1
                    call_lsetup = True
                    jbad = True
                    logger.debug(
                        "Newton convergence failure with stale Jacobian; "
                        "retrying with setup (nconvfails=%d)",
                        self.nconvfails,
                    )
                    continue
                self.nconvfails += 1
                raise
            except DAEEngineError:
                self.nconvfails += 1
                raise
            return

    def _iterate(
        self,
        problem: NLProblem,
        y: FloatArray,
        w: FloatArray,
        tol: float,
    ) -> None:
        """Run Newton iterations until convergence or failure."""
        while True:
            self.niters += 1

            # rhs of the linear system is -F(y)
            np.negative(self.delta, out=self.delta)
            problem.lsolve(y, self.delta)

            y += self.delta

            if problem.ctest(y, self.delta, tol, w):
                self.jcur = False
                return

            self.curiter += 1
            if self.curiter >= self.maxiters:
                raise ConvergenceRecoverError(
                    _NOT_CONVERGED_MSG.format(maxiters=self.maxiters)
                )

            problem.sys(y, self.delta)
