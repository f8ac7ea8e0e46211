# dae_engine/src/dae_engine/ida.py
"""Variable-order, variable-step BDF integrator for F(t, y, y') = 0.

The integrator advances a DAE system with fixed-leading-coefficient backward
differentiation formulas of order 1..5 in modified divided-difference form.
The solution history is kept as the array ``phi`` of scaled divided
differences; row 0 is the current y and row 1 the current h*y'.

One internal step (``Ida.step``) is an explicit state machine:

    COMPUTE_COEFFICIENTS -> PREDICT -> SOLVE_NONLINEAR -> TEST_ERROR -> ACCEPT
                                            |                  |
                                            +--> REJECT_RETRY <+
                                                    |      |
                              COMPUTE_COEFFICIENTS <+      +--> FAIL

- set_coeffs: BDF coefficients for the current h and order, phi -> phi-star.
- predict: predictor polynomial evaluated at tn + h.
- nonlinear_solve: modified Newton corrector through NewtonSolver.
- test_error: local error estimates at orders k, k-1, k-2 and the error test.
- restore / handle_n_flag: undo the attempt, shrink h (and maybe k), retry.
- complete_step: commit, choose order and step size, roll phi forward.

``Ida.solve`` drives internal steps up to an output time (or one step at a
time) and produces output by interpolation (``get_solution``, ``get_dky``).

Performance hygiene:
    - All history and work vectors are preallocated at construction.
    - Vector updates are in-place NumPy operations; the small per-order
      coefficient recurrences run as plain Python loops over at most six
      entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Final, Literal

import numpy as np
from numpy.typing import NDArray

from .config import (
    HMAX_INV_DEFAULT,
    MAXORD_DEFAULT,
    MXORDP1,
    XRATE,
    IntegratorOptions,
)
from .errors import (
    BadErrorWeightError,
    BadKError,
    BadTimeValueError,
    ConstraintFailError,
    ConstraintRecoverableError,
    ConvergenceFailError,
    ConvergenceRecoverError,
    DAEEngineError,
    ErrorTestFailError,
    ErrorTestRecoverableError,
    IllegalInputError,
    LinearSetupFailError,
    LinearSetupRecoverableError,
    LinearSolveFailError,
    LinearSolveRecoverableError,
    NonrecoverableError,
    RecoverableError,
    RepeatedResidualError,
    ResidualFailError,
    ResidualRecoverableError,
    TooMuchAccuracyError,
    TooMuchWorkError,
)
from .linear import dq_jacobian, make_linear_solver
from .newton import NewtonSolver
from .norms import error_weights, wrms_norm, wrms_norm_masked
from .problem import DAEModel

if TYPE_CHECKING:
    from collections.abc import Callable

    from .problem import BoolArray, JacobianMatrix, LinearSolver

logger = logging.getLogger(__name__)

FloatArray = NDArray[np.floating]
SolveTask = Literal["normal", "one_step"]
SolveStatus = Literal["success", "tstop"]

# Step-control constants
_RATEMAX: Final[float] = 0.9
_HALF: Final[float] = 0.5
_QUARTER: Final[float] = 0.25
_PT9: Final[float] = 0.9
_PT1: Final[float] = 0.1
_PT0001: Final[float] = 0.0001
_TWENTY: Final[float] = 20.0
_HUNDRED: Final[float] = 100.0

# Error / message constants
_MODEL_ERROR_MSG = "model must provide residual(t, yy, yp, out)"
_SHAPE_ERROR_MSG = "{name} shape {actual} does not match expected {expected}"
_NOT_1D_ERROR_MSG = "yy0 must be a non-empty 1D array, got shape {shape}"
_RTOL_ERROR_MSG = "rtol must be non-negative, got {rtol}"
_ATOL_ERROR_MSG = "atol must be non-negative"
_MAXORD_ERROR_MSG = "maxord must be in [1, {maxord}], got {value}"
_MAXORD_INCREASE_MSG = "maxord cannot be raised above {maxord} after stepping, got {value}"
_NOT_STARTED_MSG = "no step has been taken yet"
_POSITIVE_ERROR_MSG = "{name} must be positive, got {value}"
_NONNEG_ERROR_MSG = "{name} must be non-negative, got {value}"
_TASK_ERROR_MSG = "task must be 'normal' or 'one_step', got {task!r}"
_TOUT_TOO_CLOSE_MSG = "tout too close to t0 to start integration"
_HIN_DIRECTION_MSG = "initial step is not towards tout"
_TSTOP_BEHIND_MSG = "tstop = {tstop:.17g} is behind current t = {t:.17g}"
_NO_ID_MSG = "id is required when suppressalg is on"
_INTERP_TOUT_MSG = "trouble interpolating at tout = {tout:.17g}, too far back"
_CONSTRAINT_VALUES_MSG = "constraints must contain only 0, +-1 or +-2"


# =============================================================================
# Public result containers
# =============================================================================


@dataclass(slots=True, frozen=True)
class SolveResult:
    """Output of Ida.solve.

    Attributes:
        t: Time at which the solution is returned.
        y: Solution y(t).
        yp: Derivative y'(t).
        status: "success", or "tstop" when the stop time was reached.
    """

    t: float
    y: FloatArray
    yp: FloatArray
    status: SolveStatus = "success"


@dataclass(slots=True, frozen=True)
class IntegratorStats:
    """Integrator counters and current step data.

    Attributes:
        nst: Internal steps taken.
        nre: Residual evaluations (excluding difference-quotient Jacobians).
        nre_dq: Residual evaluations for difference-quotient Jacobians.
        nje: Jacobian evaluations.
        nni: Newton iterations.
        ncfn: Corrector convergence failures.
        netf: Local error test failures.
        nsetups: Linear solver setups.
        kused: Order of the last committed step.
        kcur: Order to be attempted on the next step.
        hused: Step size of the last committed step.
        hcur: Step size to be attempted on the next step.
        h0u: Actual initial step size.
        tcur: Current internal time.
    """

    nst: int
    nre: int
    nre_dq: int
    nje: int
    nni: int
    ncfn: int
    netf: int
    nsetups: int
    kused: int
    kcur: int
    hused: float
    hcur: float
    h0u: float
    tcur: float


# =============================================================================
# Step state machine
# =============================================================================


class StepState(Enum):
    """States of one internal step attempt."""

    COMPUTE_COEFFICIENTS = auto()
    PREDICT = auto()
    SOLVE_NONLINEAR = auto()
    TEST_ERROR = auto()
    ACCEPT = auto()
    REJECT_RETRY = auto()
    FAIL = auto()


class StepOutcome(Enum):
    """Outcome of running one state handler."""

    DONE = auto()
    CONVERGED = auto()
    SOLVE_FAILED = auto()
    PASSED = auto()
    ERROR_TEST_FAILED = auto()
    PREDICT_AGAIN = auto()
    NONRECOVERABLE = auto()


STEP_TRANSITIONS: Final[dict[tuple[StepState, StepOutcome], StepState]] = {
    (StepState.COMPUTE_COEFFICIENTS, StepOutcome.DONE): StepState.PREDICT,
    (StepState.PREDICT, StepOutcome.DONE): StepState.SOLVE_NONLINEAR,
    (StepState.SOLVE_NONLINEAR, StepOutcome.CONVERGED): StepState.TEST_ERROR,
    (StepState.SOLVE_NONLINEAR, StepOutcome.SOLVE_FAILED): StepState.REJECT_RETRY,
    (StepState.TEST_ERROR, StepOutcome.PASSED): StepState.ACCEPT,
    (StepState.TEST_ERROR, StepOutcome.ERROR_TEST_FAILED): StepState.REJECT_RETRY,
    (StepState.REJECT_RETRY, StepOutcome.PREDICT_AGAIN): StepState.COMPUTE_COEFFICIENTS,
    (StepState.REJECT_RETRY, StepOutcome.NONRECOVERABLE): StepState.FAIL,
}


@dataclass(slots=True)
class _StepAttempt:
    """Mutable bookkeeping for one call of Ida.step."""

    saved_t: float
    ck: float = 1.0
    err_k: float = 0.0
    err_km1: float = 0.0
    ncf: int = 0
    nef: int = 0
    failure: DAEEngineError | None = field(default=None)


class _CorrectorSystem:
    """Corrector equations G(y) = F(tn, y, yppredict + cj*(y - yypredict)).

    Implements the NLProblem protocol on top of an Ida instance so the Newton
    solver can stay integrator-agnostic.
    """

    def __init__(self, ida: Ida) -> None:
        self._ida = ida

    def _load_yp(self, y: FloatArray) -> FloatArray:
        ida = self._ida
        np.subtract(y, ida.yypredict, out=ida.yp)
        ida.yp *= ida.cj
        ida.yp += ida.yppredict
        return ida.yp

    def sys(self, y: FloatArray, out: FloatArray) -> None:
        yp = self._load_yp(y)
        self._ida._call_residual(self._ida.tn, y, yp, out)

    def lsetup(self, y: FloatArray, f: FloatArray, jbad: bool) -> bool:  # noqa: ARG002
        yp = self._load_yp(y)
        self._ida._setup_linear_system(y, yp, f)
        return True

    def lsolve(self, y: FloatArray, b: FloatArray) -> None:  # noqa: ARG002
        self._ida._solve_linear_system(b)

    def ctest(
        self,
        y: FloatArray,  # noqa: ARG002
        delta: FloatArray,
        tol: float,
        ewt: FloatArray,
    ) -> bool:
        return self._ida._convergence_test(delta, tol, ewt)


# =============================================================================
# Integrator
# =============================================================================


class Ida:
    """BDF integrator state and step engine for F(t, y, y') = 0.

    All attributes named after the algorithm quantities (phi, psi, kk, hh, ...)
    are public so that callers and tests can inspect or seed the multistep
    state; they are mutated only by the engine operations.
    """

    def __init__(
        self,
        model: DAEModel,
        t0: float,
        yy0: FloatArray,
        yp0: FloatArray,
        *,
        options: IntegratorOptions | None = None,
        linear_solver: LinearSolver | None = None,
    ) -> None:
        """Initialize the integrator at (t0, yy0, yp0).

        Args:
            model: Residual provider, optionally with a jacobian method.
            t0: Initial time.
            yy0: Initial state (should be consistent with yp0).
            yp0: Initial derivative.
            options: Integrator tunables; defaults when None.
            linear_solver: Optional linear solver; chosen from the first
                Jacobian's storage format when None.

        Raises:
            IllegalInputError: If the model or initial data are invalid.
        """
        if not isinstance(model, DAEModel):
            raise IllegalInputError(detail=_MODEL_ERROR_MSG)
        opts = options or IntegratorOptions()

        self.model = model
        self.dtype = np.dtype(opts.dtype)
        self.uround = float(np.finfo(self.dtype).eps)

        y0 = np.array(yy0, dtype=self.dtype)
        if y0.ndim != 1 or y0.size == 0:
            raise IllegalInputError(detail=_NOT_1D_ERROR_MSG.format(shape=y0.shape))
        p0 = np.array(yp0, dtype=self.dtype)
        if p0.shape != y0.shape:
            raise IllegalInputError(
                detail=_SHAPE_ERROR_MSG.format(
                    name="yp0", actual=p0.shape, expected=y0.shape
                )
            )
        self.n = int(y0.size)
        n = self.n

        # Divided differences array and associated minor arrays
        self.phi: FloatArray = np.zeros((MXORDP1, n), dtype=self.dtype)
        self.phi[0] = y0
        self.phi[1] = p0
        self.psi: FloatArray = np.zeros(MXORDP1)
        self.alpha: FloatArray = np.zeros(MXORDP1)
        self.beta: FloatArray = np.zeros(MXORDP1)
        self.sigma: FloatArray = np.zeros(MXORDP1)
        self.gamma: FloatArray = np.zeros(MXORDP1)

        # Vectors
        self.ewt: FloatArray = np.zeros(n, dtype=self.dtype)
        self.ee: FloatArray = np.zeros(n, dtype=self.dtype)
        self.delta: FloatArray = np.zeros(n, dtype=self.dtype)
        self.yy: FloatArray = np.zeros(n, dtype=self.dtype)
        self.yp: FloatArray = np.zeros(n, dtype=self.dtype)
        self.yypredict: FloatArray = np.zeros(n, dtype=self.dtype)
        self.yppredict: FloatArray = np.zeros(n, dtype=self.dtype)
        self.id: BoolArray | None = None
        self.constraints: FloatArray | None = None

        # Scratch coefficients for linear combinations
        self.cvals: FloatArray = np.zeros(MXORDP1)
        self.dvals: FloatArray = np.zeros(MXORDP1)

        # Step data
        self.kk = 0
        self.kused = 0
        self.knew = 0
        self.phase = 0
        self.ns = 0
        self.hh = 0.0
        self.hused = 0.0
        self.h0u = 0.0
        self.rr = 0.0
        self.tn = float(t0)
        self.tretlast = float(t0)
        self.cj = 0.0
        self.cjlast = 0.0
        self.cjold = 0.0
        self.cjratio = 0.0
        self.ss = 0.0
        self.oldnrm = 0.0
        self.epsnewt = opts.epcon
        self.toldel = _PT0001 * opts.epcon
        self.force_setup = True

        # Counters
        self.nst = 0
        self.nre = 0
        self.nre_dq = 0
        self.nje = 0
        self.ncfn = 0
        self.netf = 0
        self.nsetups = 0

        # Tolerances
        self.rtol = 0.0
        self.atol: float | FloatArray = 0.0
        self.set_tolerances(opts.rtol, opts.atol)
        self.suppressalg = bool(opts.suppressalg)

        # Limits
        self.maxord = MAXORD_DEFAULT
        self.maxord_alloc = MAXORD_DEFAULT
        self.set_max_ord(opts.maxord)
        self.mxstep = 0
        self.set_max_num_steps(opts.mxstep)
        self.hin = float(opts.hin)
        self.hmax_inv = HMAX_INV_DEFAULT
        self.set_max_step(opts.hmax)
        self.maxncf = 0
        self.set_max_conv_fails(opts.maxncf)
        self.maxnef = 0
        self.set_max_err_test_fails(opts.maxnef)
        self.tstop = 0.0
        self.tstopset = False
        if opts.tstop is not None:
            self.set_stop_time(opts.tstop)

        # Collaborators
        self.nls = NewtonSolver(n, opts.maxnit, dtype=self.dtype)
        self._corrector = _CorrectorSystem(self)
        self.linear_solver: LinearSolver | None = linear_solver
        self._jacobian_fn: Callable[..., JacobianMatrix | None] | None = getattr(
            model, "jacobian", None
        )

        self._state_handlers: dict[StepState, Callable[[_StepAttempt], StepOutcome]] = {
            StepState.COMPUTE_COEFFICIENTS: self._on_compute_coefficients,
            StepState.PREDICT: self._on_predict,
            StepState.SOLVE_NONLINEAR: self._on_solve_nonlinear,
            StepState.TEST_ERROR: self._on_test_error,
            StepState.REJECT_RETRY: self._on_reject_retry,
        }

    # ------------------------------------------------------------------
    # Optional inputs
    # ------------------------------------------------------------------

    @property
    def nni(self) -> int:
        """Total Newton iterations performed."""
        return self.nls.niters

    def set_tolerances(self, rtol: float, atol: float | FloatArray) -> None:
        """Set scalar rtol and scalar or vector atol.

        Raises:
            IllegalInputError: If a tolerance is negative or atol has a bad shape.
        """
        if rtol < 0.0:
            raise IllegalInputError(detail=_RTOL_ERROR_MSG.format(rtol=rtol))
        if np.ndim(atol) == 0:
            atol_val: float | FloatArray = float(atol)  # type: ignore[arg-type]
        else:
            atol_val = np.array(atol, dtype=self.dtype)
            if atol_val.shape != (self.n,):
                raise IllegalInputError(
                    detail=_SHAPE_ERROR_MSG.format(
                        name="atol", actual=atol_val.shape, expected=(self.n,)
                    )
                )
        if np.any(np.asarray(atol_val) < 0.0):
            raise IllegalInputError(detail=_ATOL_ERROR_MSG)
        self.rtol = float(rtol)
        self.atol = atol_val

    def set_max_ord(self, maxord: int) -> None:
        """Set the maximum BDF order; once stepping has begun it can only be lowered.

        The current and proposed orders are clamped to the new limit, so the
        next step recomputes its coefficients at a legal order.
        """
        if maxord <= 0 or maxord > self.maxord_alloc:
            raise IllegalInputError(
                detail=_MAXORD_ERROR_MSG.format(maxord=self.maxord_alloc, value=maxord)
            )
        if self.nst > 0 and maxord > self.maxord:
            raise IllegalInputError(
                t=self.tn,
                detail=_MAXORD_INCREASE_MSG.format(maxord=self.maxord, value=maxord),
            )
        self.maxord = int(maxord)
        self.kk = min(self.kk, self.maxord)
        self.knew = min(self.knew, self.maxord)

    def set_max_num_steps(self, mxstep: int) -> None:
        """Set the max internal steps per solve call; 0 disables the limit."""
        if mxstep < 0:
            raise IllegalInputError(
                detail=_NONNEG_ERROR_MSG.format(name="mxstep", value=mxstep)
            )
        self.mxstep = int(mxstep)

    def set_init_step(self, hin: float) -> None:
        """Set the initial step size (0 selects one automatically)."""
        self.hin = float(hin)

    def set_max_step(self, hmax: float) -> None:
        """Set the maximum absolute step size (inf means unbounded)."""
        if hmax <= 0.0:
            raise IllegalInputError(
                detail=_POSITIVE_ERROR_MSG.format(name="hmax", value=hmax)
            )
        self.hmax_inv = HMAX_INV_DEFAULT if not np.isfinite(hmax) else 1.0 / hmax

    def set_stop_time(self, tstop: float) -> None:
        """Set a time the integrator must not step past.

        Raises:
            IllegalInputError: If tstop is behind the current time.
        """
        if self.nst > 0 and (tstop - self.tn) * self.hh <= 0.0:
            raise IllegalInputError(
                detail=_TSTOP_BEHIND_MSG.format(tstop=tstop, t=self.tn)
            )
        self.tstop = float(tstop)
        self.tstopset = True

    def clear_stop_time(self) -> None:
        """Disable the stop time."""
        self.tstopset = False

    def set_max_err_test_fails(self, maxnef: int) -> None:
        """Set the max number of local error test failures per step."""
        if maxnef <= 0:
            raise IllegalInputError(
                detail=_POSITIVE_ERROR_MSG.format(name="maxnef", value=maxnef)
            )
        self.maxnef = int(maxnef)

    def set_max_conv_fails(self, maxncf: int) -> None:
        """Set the max number of corrector convergence failures per step."""
        if maxncf <= 0:
            raise IllegalInputError(
                detail=_POSITIVE_ERROR_MSG.format(name="maxncf", value=maxncf)
            )
        self.maxncf = int(maxncf)

    def set_max_nonlin_iters(self, maxnit: int) -> None:
        """Set the max Newton iterations per corrector solve."""
        self.nls.set_max_iters(maxnit)

    def set_nonlin_conv_coef(self, epcon: float) -> None:
        """Set the Newton convergence test coefficient."""
        if epcon <= 0.0:
            raise IllegalInputError(
                detail=_POSITIVE_ERROR_MSG.format(name="epcon", value=epcon)
            )
        self.epsnewt = float(epcon)
        self.toldel = _PT0001 * self.epsnewt

    def set_suppress_alg(self, suppressalg: bool) -> None:
        """Exclude (or include) algebraic components in the local error test."""
        self.suppressalg = bool(suppressalg)

    def set_id(self, id_mask: BoolArray) -> None:
        """Mark differential (True) and algebraic (False) components."""
        arr = np.asarray(id_mask, dtype=bool)
        if arr.shape != (self.n,):
            raise IllegalInputError(
                detail=_SHAPE_ERROR_MSG.format(
                    name="id", actual=arr.shape, expected=(self.n,)
                )
            )
        self.id = arr.copy()

    def set_constraints(self, constraints: FloatArray | None) -> None:
        """Set inequality constraints on the solution components.

        Per component: 0 no constraint, 1 y >= 0, -1 y <= 0, 2 y > 0, -2 y < 0.
        Passing None removes all constraints.
        """
        if constraints is None:
            self.constraints = None
            return
        arr = np.array(constraints, dtype=self.dtype)
        if arr.shape != (self.n,):
            raise IllegalInputError(
                detail=_SHAPE_ERROR_MSG.format(
                    name="constraints", actual=arr.shape, expected=(self.n,)
                )
            )
        if not np.all(np.isin(arr, (-2.0, -1.0, 0.0, 1.0, 2.0))):
            raise IllegalInputError(detail=_CONSTRAINT_VALUES_MSG)
        self.constraints = arr if np.any(arr != 0.0) else None

    # ------------------------------------------------------------------
    # Optional outputs
    # ------------------------------------------------------------------

    def get_stats(self) -> IntegratorStats:
        """Return a snapshot of the integrator counters and step data."""
        return IntegratorStats(
            nst=self.nst,
            nre=self.nre,
            nre_dq=self.nre_dq,
            nje=self.nje,
            nni=self.nni,
            ncfn=self.ncfn,
            netf=self.netf,
            nsetups=self.nsetups,
            kused=self.kused,
            kcur=self.kk,
            hused=self.hused,
            hcur=self.hh,
            h0u=self.h0u,
            tcur=self.tn,
        )

    # ------------------------------------------------------------------
    # Norms
    # ------------------------------------------------------------------

    def wrms_norm(self, x: FloatArray, w: FloatArray, mask: bool) -> float:
        """WRMS norm of x, masked by id when mask is True.

        mask is False for calls from the nonlinear solver and equals
        ``suppressalg`` for the local error test.
        """
        if mask and self.id is not None:
            return wrms_norm_masked(x, w, self.id)
        return wrms_norm(x, w)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def solve(self, tout: float, task: SolveTask = "normal") -> SolveResult:
        """Integrate towards tout.

        In "normal" mode, internal steps are taken until tout is passed and the
        solution is interpolated at tout. In "one_step" mode, exactly one
        internal step is taken (unless earlier output is pending) and the
        solution at the new internal time is returned. Either mode returns early
        with status "tstop" when a stop time is reached.

        Args:
            tout: Next output time.
            task: "normal" or "one_step".

        Raises:
            IllegalInputError: On invalid tout or task.
            NonrecoverableError: On any unrecoverable step failure.

        Returns:
            The solution at the returned time.
        """
        if task not in ("normal", "one_step"):
            raise IllegalInputError(detail=_TASK_ERROR_MSG.format(task=task))
        tout = float(tout)

        if self.nst == 0:
            self._initial_setup(tout)
        else:
            early = self._stop_test_before_steps(tout, task)
            if early is not None:
                return early

        nstloc = 0
        while True:
            if self.mxstep > 0 and nstloc >= self.mxstep:
                self.tretlast = self.tn
                raise TooMuchWorkError(mxstep=self.mxstep, t=self.tn)

            if self.nst > 0:
                self._update_error_weights()

            nrm = self.wrms_norm(self.phi[0], self.ewt, self.suppressalg)
            tolsf = self.uround * nrm
            if tolsf > 1.0:
                self.tretlast = self.tn
                raise TooMuchAccuracyError(tolsf=tolsf * 10.0, t=self.tn)

            try:
                self.step()
            except NonrecoverableError:
                self.tretlast = self.tn
                raise
            nstloc += 1

            if self.tstopset:
                troundoff = _HUNDRED * self.uround * (abs(self.tn) + abs(self.hh))
                if abs(self.tn - self.tstop) <= troundoff:
                    self.tn = self.tstop

            result = self._stop_test_after_step(tout, task)
            if result is not None:
                logger.info(
                    "solve returned t=%.6g (%s) after %d internal steps",
                    result.t,
                    result.status,
                    nstloc,
                )
                return result

    def _initial_setup(self, tout: float) -> None:
        """First-call checks, error weights, initial step and phi[1] scaling."""
        if self.suppressalg and self.id is None:
            raise IllegalInputError(detail=_NO_ID_MSG)

        self._update_error_weights()

        tdist = abs(tout - self.tn)
        troundoff = 2.0 * self.uround * (abs(self.tn) + abs(tout))
        if tdist == 0.0 or tdist < troundoff:
            raise IllegalInputError(t=self.tn, detail=_TOUT_TOO_CLOSE_MSG)

        self.hh = self.hin
        if self.hh != 0.0 and (tout - self.tn) * self.hh < 0.0:
            raise IllegalInputError(t=self.tn, h=self.hh, detail=_HIN_DIRECTION_MSG)

        if self.hh == 0.0:
            self.hh = 0.001 * tdist
            ypnorm = self.wrms_norm(self.phi[1], self.ewt, self.suppressalg)
            if ypnorm > _HALF / self.hh:
                self.hh = _HALF / ypnorm
            if tout < self.tn:
                self.hh = -self.hh

        rh = abs(self.hh) * self.hmax_inv
        if rh > 1.0:
            self.hh /= rh

        if self.tstopset:
            if (self.tstop - self.tn) * self.hh <= 0.0:
                raise IllegalInputError(
                    detail=_TSTOP_BEHIND_MSG.format(tstop=self.tstop, t=self.tn)
                )
            if (self.tn + self.hh - self.tstop) * self.hh > 0.0:
                self.hh = (self.tstop - self.tn) * (1.0 - 4.0 * self.uround)

        self.h0u = self.hh
        self.kk = 0
        self.kused = 0

        # phi[1] holds h*y' from here on
        self.phi[1] *= self.hh

        logger.debug("initial step h0=%.6g at t0=%.6g", self.hh, self.tn)

    def _update_error_weights(self) -> None:
        try:
            error_weights(self.phi[0], self.rtol, self.atol, out=self.ewt)
        except BadErrorWeightError as exc:
            raise BadErrorWeightError(index=exc.index, t=self.tn) from exc

    def _interpolate_for_return(self, t: float) -> tuple[FloatArray, FloatArray]:
        try:
            return self.get_solution(t)
        except BadTimeValueError as exc:
            raise IllegalInputError(
                t=self.tn, detail=_INTERP_TOUT_MSG.format(tout=t)
            ) from exc

    def _check_tstop(self) -> SolveResult | None:
        """Return at tstop if it was reached; otherwise keep hh from passing it."""
        troundoff = _HUNDRED * self.uround * (abs(self.tn) + abs(self.hh))
        if abs(self.tn - self.tstop) <= troundoff:
            t_eval = self.tn if (self.tstop - self.tn) * self.hh > 0.0 else self.tstop
            yret, ypret = self._interpolate_for_return(t_eval)
            self.tretlast = self.tstop
            self.tstopset = False
            return SolveResult(t=self.tstop, y=yret, yp=ypret, status="tstop")
        if (self.tn + self.hh - self.tstop) * self.hh > 0.0:
            self.hh = (self.tstop - self.tn) * (1.0 - 4.0 * self.uround)
        return None

    def _stop_test_before_steps(self, tout: float, task: SolveTask) -> SolveResult | None:
        """Handle output that is already available before taking new steps."""
        if self.tstopset and (self.tn - self.tstop) * self.hh > 0.0:
            raise IllegalInputError(
                detail=_TSTOP_BEHIND_MSG.format(tstop=self.tstop, t=self.tn)
            )

        if task == "normal":
            if tout == self.tretlast or (self.tn - tout) * self.hh >= 0.0:
                yret, ypret = self._interpolate_for_return(tout)
                self.tretlast = tout
                return SolveResult(t=tout, y=yret, yp=ypret)
        elif (self.tn - self.tretlast) * self.hh > 0.0:
            yret, ypret = self.get_solution(self.tn)
            self.tretlast = self.tn
            return SolveResult(t=self.tn, y=yret, yp=ypret)

        if self.tstopset:
            return self._check_tstop()
        return None

    def _stop_test_after_step(self, tout: float, task: SolveTask) -> SolveResult | None:
        """Decide whether to return after a successful internal step."""
        if task == "normal":
            if (self.tn - tout) * self.hh >= 0.0:
                yret, ypret = self.get_solution(tout)
                self.tretlast = tout
                return SolveResult(t=tout, y=yret, yp=ypret)
            if self.tstopset:
                return self._check_tstop()
            return None

        if self.tstopset:
            reached = self._check_tstop()
            if reached is not None:
                return reached
        yret, ypret = self.get_solution(self.tn)
        self.tretlast = self.tn
        return SolveResult(t=self.tn, y=yret, yp=ypret)

    # ------------------------------------------------------------------
    # One internal step
    # ------------------------------------------------------------------

    def step(self) -> None:
        """Take one internal step from tn to tn + hh.

        Recoverable failures (corrector non-convergence, recoverable callback
        errors, error test failures) restore the history and retry with a
        smaller step and possibly lower order, within the maxncf/maxnef
        budgets.

        Raises:
            NonrecoverableError: If the step cannot be completed.
        """
        attempt = _StepAttempt(saved_t=self.tn)

        if self.nst == 0:
            self.kk = 1
            self.kused = 0
            self.hused = 0.0
            self.psi[0] = self.hh
            self.cj = 1.0 / self.hh
            self.phase = 0
            self.ns = 0

        state = StepState.COMPUTE_COEFFICIENTS
        while state not in (StepState.ACCEPT, StepState.FAIL):
            outcome = self._state_handlers[state](attempt)
            state = STEP_TRANSITIONS[(state, outcome)]

        if state is StepState.FAIL:
            failure = attempt.failure
            if failure is None:  # pragma: no cover - transition table guarantees
                raise RuntimeError("step failed without a recorded failure")
            raise failure

        self.complete_step(attempt.err_k, attempt.err_km1)

        # ee becomes the estimated local error
        self.ee *= attempt.ck

    def _on_compute_coefficients(self, attempt: _StepAttempt) -> StepOutcome:
        attempt.ck = self.set_coeffs()

        self.tn += self.hh
        if self.tstopset and (self.tn - self.tstop) * self.hh > 0.0:
            self.tn = self.tstop
        return StepOutcome.DONE

    def _on_predict(self, attempt: _StepAttempt) -> StepOutcome:  # noqa: ARG002
        self.predict()
        return StepOutcome.DONE

    def _on_solve_nonlinear(self, attempt: _StepAttempt) -> StepOutcome:
        try:
            self.nonlinear_solve()
        except (RecoverableError, NonrecoverableError) as exc:
            attempt.failure = exc
            return StepOutcome.SOLVE_FAILED
        return StepOutcome.CONVERGED

    def _on_test_error(self, attempt: _StepAttempt) -> StepOutcome:
        attempt.err_k, attempt.err_km1, passed = self.test_error(attempt.ck)
        if passed:
            return StepOutcome.PASSED
        attempt.failure = ErrorTestRecoverableError()
        return StepOutcome.ERROR_TEST_FAILED

    def _on_reject_retry(self, attempt: _StepAttempt) -> StepOutcome:
        failed_t = self.tn
        failed_h = self.hh
        self.restore(attempt.saved_t)

        if attempt.failure is None:  # pragma: no cover - transition table guarantees
            raise RuntimeError("retry requested without a recorded failure")
        try:
            attempt.ncf, attempt.nef = self.handle_n_flag(
                attempt.failure,
                attempt.err_k,
                attempt.err_km1,
                attempt.ncf,
                attempt.nef,
            )
        except NonrecoverableError as exc:
            attempt.failure = exc
            logger.debug("step failed at t=%.6g: %s", attempt.saved_t, exc)
            return StepOutcome.NONRECOVERABLE

        logger.debug(
            "step rejected at t=%.6g h=%.6g (%s); retrying with h=%.6g k=%d",
            failed_t,
            failed_h,
            type(attempt.failure).__name__,
            self.hh,
            self.kk,
        )

        # cold start: only the very first step rescales its history
        if self.nst == 0:
            self.reset()
        return StepOutcome.PREDICT_AGAIN

    # ------------------------------------------------------------------
    # Coefficients, prediction, restore
    # ------------------------------------------------------------------

    def set_coeffs(self) -> float:
        """Compute the BDF coefficients for the current step.

        The counter ns counts consecutive steps taken at constant step size and
        order, up to kused + 2. While kk + 1 >= ns, the coefficients alpha,
        beta, sigma, gamma and psi are recomputed; phi rows ns..kk are then
        scaled by beta (phi-star), which ``restore`` undoes.

        Returns:
            The variable-stepsize error coefficient ck.
        """
        kk = self.kk
        hh = self.hh

        if hh != self.hused or kk != self.kused:
            self.ns = 0
        self.ns = min(self.ns + 1, self.kused + 2)

        if kk + 1 >= self.ns:
            self.beta[0] = 1.0
            self.alpha[0] = 1.0
            temp1 = hh
            self.gamma[0] = 0.0
            self.sigma[0] = 1.0
            for i in range(1, kk + 1):
                temp2 = self.psi[i - 1]
                self.psi[i - 1] = temp1
                self.beta[i] = self.beta[i - 1] * self.psi[i - 1] / temp2
                temp1 = temp2 + hh
                self.alpha[i] = hh / temp1
                self.sigma[i] = self.sigma[i - 1] * self.alpha[i] * i
                self.gamma[i] = self.gamma[i - 1] + self.alpha[i - 1] / hh
            self.psi[kk] = temp1

        alphas = 0.0
        alpha0 = 0.0
        for i in range(kk):
            alphas -= 1.0 / (i + 1)
            alpha0 -= self.alpha[i]

        # leading coefficient of the iteration matrix
        self.cjlast = self.cj
        self.cj = -alphas / hh

        ck = abs(self.alpha[kk] + alphas - alpha0)
        ck = max(ck, self.alpha[kk])

        # phi -> phi-star
        if self.ns <= kk:
            for i in range(self.ns, kk + 1):
                self.cvals[i - self.ns] = self.beta[i]
                self.phi[i] *= self.beta[i]

        return float(ck)

    def predict(self) -> None:
        """Predict yy and yp at tn from the phi-star history."""
        kk = self.kk
        self.cvals[: kk + 1] = 1.0
        np.copyto(self.yypredict, self.cvals[: kk + 1] @ self.phi[: kk + 1])
        np.copyto(self.yppredict, self.gamma[1 : kk + 1] @ self.phi[1 : kk + 1])

        np.add(self.phi[kk], self.ee, out=self.delta)

    def restore(self, saved_t: float) -> None:
        """Undo the time advance and the phi-star scaling of a failed attempt."""
        self.tn = saved_t

        for j in range(1, self.kk + 1):
            self.psi[j - 1] = self.psi[j] - self.hh

        if self.ns <= self.kk:
            for j in range(self.ns, self.kk + 1):
                self.cvals[j - self.ns] = 1.0 / self.beta[j]
                self.phi[j] *= self.cvals[j - self.ns]

    def reset(self) -> None:
        """Rescale phi[1] and psi[0] when the very first step is retried."""
        self.psi[0] = self.hh
        self.phi[1] *= self.rr

    # ------------------------------------------------------------------
    # Nonlinear solve and its callbacks
    # ------------------------------------------------------------------

    def nonlinear_solve(self) -> None:
        """Solve the corrector equations for yy, yp at tn.

        On return (successful or not), ee holds the accumulated correction
        yy - yypredict and yp = yppredict + cj*ee.

        Raises:
            RecoverableError: On a recoverable failure of the corrector.
            NonrecoverableError: On an unrecoverable callback failure.
        """
        call_lsetup = False

        if self.nst == 0:
            self.cjold = self.cj
            self.ss = _TWENTY
            call_lsetup = True

        self.cjratio = self.cj / self.cjold
        temp1 = (1.0 - XRATE) / (1.0 + XRATE)
        temp2 = 1.0 / temp1
        if self.cjratio < temp1 or self.cjratio > temp2:
            call_lsetup = True
        if self.force_setup:
            call_lsetup = True
        if self.cj != self.cjlast:
            self.ss = _HUNDRED

        try:
            self.nls.solve(
                self._corrector,
                self.yypredict,
                self.yy,
                self.ewt,
                self.epsnewt,
                call_lsetup,
            )
        finally:
            np.subtract(self.yy, self.yypredict, out=self.ee)
            np.multiply(self.ee, self.cj, out=self.yp)
            self.yp += self.yppredict

        if self.constraints is not None:
            self._enforce_constraints()

    def _enforce_constraints(self) -> None:
        """Check inequality constraints on yy; correct small violations.

        Raises:
            ConstraintRecoverableError: If the violation is too large to
                correct; rr is set to the suggested step reduction.
        """
        c = self.constraints
        if c is None:
            return
        y = self.yy
        failed = (
            ((c == 2.0) & (y <= 0.0))
            | ((c == 1.0) & (y < 0.0))
            | ((c == -1.0) & (y > 0.0))
            | ((c == -2.0) & (y >= 0.0))
        )
        if not np.any(failed):
            return

        strict = np.where(np.abs(c) > 1.5, c, 0.0)
        v = np.where(failed, y - _PT1 * strict / self.ewt, 0.0)
        vnorm = wrms_norm(v, self.ewt)
        if vnorm <= self.epsnewt:
            self.ee -= v
            self.yy -= v
            self.yp -= self.cj * v
            return

        diff = np.where(failed, self.phi[0] - y, 0.0)
        nz = diff != 0.0
        quot = np.min(self.phi[0][nz] / diff[nz]) if np.any(nz) else np.inf
        self.rr = max(_PT9 * float(quot), _PT1)
        raise ConstraintRecoverableError(f"constraints violated at t = {self.tn:.17g}")

    def _call_residual(
        self,
        t: float,
        yy: FloatArray,
        yp: FloatArray,
        out: FloatArray,
    ) -> None:
        """Evaluate the user residual with error classification."""
        self.nre += 1
        try:
            self.model.residual(t, yy, yp, out)
        except DAEEngineError:
            raise
        except Exception as exc:
            raise ResidualFailError(t=t, h=self.hh, detail=str(exc)) from exc

    def _dq_residual(
        self,
        t: float,
        yy: FloatArray,
        yp: FloatArray,
        out: FloatArray,
    ) -> None:
        self.nre_dq += 1
        self.model.residual(t, yy, yp, out)

    def _setup_linear_system(self, y: FloatArray, yp: FloatArray, f: FloatArray) -> None:
        """Evaluate the iteration matrix at (tn, y, yp) and factor it."""
        self.nsetups += 1
        try:
            matrix = None
            if self._jacobian_fn is not None:
                matrix = self._jacobian_fn(self.tn, self.cj, y, yp, f)
            if matrix is None:
                matrix = dq_jacobian(
                    self._dq_residual,
                    self.tn,
                    y,
                    yp,
                    f,
                    cj=self.cj,
                    hh=self.hh,
                    ewt=self.ewt,
                    uround=self.uround,
                )
            self.nje += 1
            if self.linear_solver is None:
                self.linear_solver = make_linear_solver(matrix)
            self.linear_solver.setup(matrix)
        except LinearSetupRecoverableError:
            self.force_setup = True
            raise
        except RecoverableError as exc:
            self.force_setup = True
            raise LinearSetupRecoverableError(str(exc)) from exc
        except NonrecoverableError:
            raise
        except Exception as exc:
            raise LinearSetupFailError(t=self.tn, h=self.hh, detail=str(exc)) from exc
        finally:
            self.cjold = self.cj
            self.cjratio = 1.0
            self.ss = _TWENTY
        self.force_setup = False

    def _solve_linear_system(self, b: FloatArray) -> None:
        """Solve the iteration-matrix system in place."""
        if self.linear_solver is None:  # pragma: no cover - setup always runs first
            raise LinearSolveFailError(t=self.tn, h=self.hh, detail="no linear solver")
        try:
            x = self.linear_solver.solve(b)
        except LinearSolveRecoverableError:
            self.force_setup = True
            raise
        except RecoverableError as exc:
            self.force_setup = True
            raise LinearSolveRecoverableError(str(exc)) from exc
        except Exception as exc:
            raise LinearSolveFailError(t=self.tn, h=self.hh, detail=str(exc)) from exc
        np.copyto(b, x)

        # scale the correction to account for a change in cj since setup
        if self.cjratio != 1.0:
            b *= 2.0 / (1.0 + self.cjratio)

    def _convergence_test(self, delta: FloatArray, tol: float, ewt: FloatArray) -> bool:
        """Rate-based Newton convergence test.

        Raises:
            ConvergenceRecoverError: If the estimated convergence rate exceeds
                RATEMAX.
        """
        delnrm = self.wrms_norm(delta, ewt, False)
        m = self.nls.curiter

        if m == 0:
            self.oldnrm = delnrm
            if delnrm <= _PT0001 * self.toldel:
                return True
        else:
            rate = (delnrm / self.oldnrm) ** (1.0 / m)
            if rate > _RATEMAX:
                raise ConvergenceRecoverError(
                    f"Newton iteration diverging (rate = {rate:.3g})"
                )
            self.ss = rate / (1.0 - rate)

        return self.ss * delnrm <= tol

    # ------------------------------------------------------------------
    # Error test and failure handling
    # ------------------------------------------------------------------

    def test_error(self, ck: float) -> tuple[float, float, bool]:
        """Estimate local errors at orders kk, kk-1, kk-2 and run the error test.

        Sets ``knew`` to kk - 1 when the lower-order error estimates are not
        worse than the current one, otherwise to kk.

        Args:
            ck: Variable-stepsize error coefficient from set_coeffs.

        Returns:
            (err_k, err_km1, passed) where passed is True iff ck*||ee|| <= 1.
        """
        kk = self.kk
        mask = self.suppressalg

        enorm_k = self.wrms_norm(self.ee, self.ewt, mask)
        err_k = self.sigma[kk] * enorm_k
        terr_k = (kk + 1) * err_k

        err_km1 = 0.0
        self.knew = kk

        if kk > 1:
            np.add(self.phi[kk], self.ee, out=self.delta)
            enorm_km1 = self.wrms_norm(self.delta, self.ewt, mask)
            err_km1 = self.sigma[kk - 1] * enorm_km1
            terr_km1 = kk * err_km1

            if kk > 2:
                self.delta += self.phi[kk - 1]
                enorm_km2 = self.wrms_norm(self.delta, self.ewt, mask)
                err_km2 = self.sigma[kk - 2] * enorm_km2
                terr_km2 = (kk - 1) * err_km2

                # decrease order if errors are reduced
                if max(terr_km1, terr_km2) <= terr_k:
                    self.knew = kk - 1
            # decrease order to 1 if errors are reduced by at least 1/2
            elif terr_km1 <= _HALF * terr_k:
                self.knew = kk - 1

        passed = ck * enorm_k <= 1.0
        return float(err_k), float(err_km1), bool(passed)

    def handle_n_flag(
        self,
        failure: DAEEngineError,
        err_k: float,
        err_km1: float,
        ncf: int,
        nef: int,
    ) -> tuple[int, int]:
        """Classify a failed attempt and prepare the retry.

        Recoverable corrector failures shrink hh by rr (0.25, or the ratio
        proposed by the constraint check). Error test failures keep or lower
        the order and shrink hh according to how many have occurred on this
        step.

        Args:
            failure: The exception raised by the attempt.
            err_k: Error estimate at the current order.
            err_km1: Error estimate at order kk - 1.
            ncf: Convergence failures so far on this step.
            nef: Error test failures so far on this step.

        Raises:
            NonrecoverableError: If the failure is unrecoverable or the retry
                budget (maxncf / maxnef) is exhausted.

        Returns:
            Updated (ncf, nef).
        """
        self.phase = 1

        if not isinstance(failure, ErrorTestRecoverableError):
            ncf += 1
            self.ncfn += 1

            if isinstance(failure, NonrecoverableError):
                raise failure
            if not isinstance(failure, RecoverableError):
                raise ConvergenceFailError(t=self.tn, h=self.hh, detail=str(failure))

            if not isinstance(failure, ConstraintRecoverableError):
                self.rr = _QUARTER
            self.hh *= self.rr

            if ncf < self.maxncf:
                return ncf, nef
            if isinstance(failure, ResidualRecoverableError):
                raise RepeatedResidualError(t=self.tn, h=self.hh) from failure
            if isinstance(failure, ConstraintRecoverableError):
                raise ConstraintFailError(t=self.tn, h=self.hh) from failure
            raise ConvergenceFailError(t=self.tn, h=self.hh) from failure

        nef += 1
        self.netf += 1

        if nef == 1:
            # keep the order or lower it by one; size h from the error estimate
            err_knew = err_k if self.kk == self.knew else err_km1
            self.kk = self.knew
            self.rr = _PT9 * (2.0 * err_knew + _PT0001) ** (-1.0 / (self.kk + 1))
            self.rr = max(_QUARTER, min(_PT9, self.rr))
        elif nef == 2:
            self.kk = self.knew
            self.rr = _QUARTER
        else:
            self.kk = 1
            self.rr = _QUARTER
        self.hh *= self.rr

        if nef >= self.maxnef:
            raise ErrorTestFailError(t=self.tn, h=self.hh)
        return ncf, nef

    # ------------------------------------------------------------------
    # Step completion
    # ------------------------------------------------------------------

    def complete_step(self, err_k: float, err_km1: float) -> None:
        """Commit a successful step, select the next order and step size.

        For the first few steps (phase 0), until a step fails, the order is
        reduced, or maxord is reached, the order is raised and the step size
        doubled on every step after the first. Afterwards (phase 1) the order
        is chosen among kk-1, kk, kk+1 from local truncation error estimates,
        and the step size from the error at the chosen order.
        """
        self.nst += 1
        kdiff = self.kk - self.kused
        self.kused = self.kk
        self.hused = self.hh

        if self.knew == self.kk - 1 or self.kk == self.maxord:
            self.phase = 1

        if self.phase == 0:
            if self.nst > 1:
                self.kk += 1
                hnew = 2.0 * self.hh
                tmp = abs(hnew) * self.hmax_inv
                if tmp > 1.0:
                    hnew /= tmp
                self.hh = hnew
        else:
            self._select_order_and_step(err_k, err_km1, kdiff)

        # save ee for a possible order increase on the next step
        if self.kused < self.maxord:
            np.copyto(self.phi[self.kused + 1], self.ee)

        # phi[j] += phi[j+1] for j = kused..0, with phi[kused+1] taken as ee
        self.phi[self.kused] += self.ee
        for j in range(self.kused - 1, -1, -1):
            self.phi[j] += self.phi[j + 1]

        logger.debug(
            "step %d accepted: t=%.6g hused=%.6g kused=%d -> h=%.6g k=%d",
            self.nst,
            self.tn,
            self.hused,
            self.kused,
            self.hh,
            self.kk,
        )

    def _select_order_and_step(self, err_k: float, err_km1: float, kdiff: int) -> None:
        """Phase-1 order and step-size selection."""
        kk = self.kk
        action: Literal["lower", "maintain", "raise"] | None = None

        if self.knew == kk - 1:
            action = "lower"
        elif kk == self.maxord or kk + 1 >= self.ns or kdiff == 1:
            action = "maintain"

        # estimate the error at order k+1 only when an increase is possible
        err_kp1 = 0.0
        if action is None:
            tempv = self.ee - self.phi[kk + 1]
            enorm = self.wrms_norm(tempv, self.ewt, self.suppressalg)
            err_kp1 = enorm / (kk + 2)

            terr_k = (kk + 1) * err_k
            terr_kp1 = (kk + 2) * err_kp1

            if kk == 1:
                action = "maintain" if terr_kp1 >= _HALF * terr_k else "raise"
            else:
                terr_km1 = kk * err_km1
                if terr_km1 <= min(terr_k, terr_kp1):
                    action = "lower"
                elif terr_kp1 >= terr_k:
                    action = "maintain"
                else:
                    action = "raise"

        if action == "raise":
            self.kk += 1
            err_knew = err_kp1
        elif action == "lower":
            self.kk -= 1
            err_knew = err_km1
        else:
            err_knew = err_k

        # rr = hnew/hh: double if rr >= 2, shrink into [0.5, 0.9] if rr <= 1
        hnew = self.hh
        self.rr = (2.0 * err_knew + _PT0001) ** (-1.0 / (self.kk + 1))

        if self.rr >= 2.0:
            hnew = 2.0 * self.hh
            tmp = abs(hnew) * self.hmax_inv
            if tmp > 1.0:
                hnew /= tmp
        elif self.rr <= 1.0:
            self.rr = max(_HALF, min(_PT9, self.rr))
            hnew = self.hh * self.rr

        self.hh = hnew

    # ------------------------------------------------------------------
    # Dense output
    # ------------------------------------------------------------------

    def _check_output_time(self, t: float) -> None:
        """Raise unless stepping has begun and t is within the last step."""
        if self.nst == 0:
            raise IllegalInputError(t=self.tn, detail=_NOT_STARTED_MSG)
        tfuzz = _HUNDRED * self.uround * (abs(self.tn) + abs(self.hh))
        if self.hh < 0.0:
            tfuzz = -tfuzz
        tp = self.tn - self.hused - tfuzz
        if (t - tp) * self.hh < 0.0 or (t - self.tn) * self.hh > 0.0:
            raise BadTimeValueError(t=t, tdiff=self.tn - self.hused, tcurr=self.tn)

    def get_solution(self, t: float) -> tuple[FloatArray, FloatArray]:
        """Interpolate y(t) and y'(t) from the history of the last step.

        Args:
            t: Time in [tn - hused - tfuzz, tn].

        Raises:
            IllegalInputError: If no step has been taken yet.
            BadTimeValueError: If t is outside the last step.

        Returns:
            (yret, ypret) as new arrays.
        """
        t = float(t)
        self._check_output_time(t)

        kord = max(self.kused, 1)

        delt = t - self.tn
        c = 1.0
        d = 0.0
        gam = delt / self.psi[0]

        self.cvals[0] = c
        for j in range(1, kord + 1):
            d = d * gam + c / self.psi[j - 1]
            c = c * gam
            gam = (delt + self.psi[j - 1]) / self.psi[j]

            self.cvals[j] = c
            self.dvals[j - 1] = d

        yret = self.cvals[: kord + 1] @ self.phi[: kord + 1]
        ypret = self.dvals[:kord] @ self.phi[1 : kord + 1]
        return np.asarray(yret, dtype=self.dtype), np.asarray(ypret, dtype=self.dtype)

    def get_dky(self, t: float, k: int) -> FloatArray:
        """Return the k-th derivative of the interpolating polynomial at t.

        Args:
            t: Time in [tn - hused - tfuzz, tn].
            k: Derivative order, 0 <= k <= kused.

        Raises:
            BadKError: If k is out of range.
            IllegalInputError: If no step has been taken yet.
            BadTimeValueError: If t is outside the last step.

        Returns:
            d^k y / dt^k at t as a new array.
        """
        if k < 0 or k > self.kused:
            raise BadKError(k=k, kused=self.kused)
        t = float(t)
        self._check_output_time(t)

        cjk = np.zeros(MXORDP1)
        cjk_1 = np.zeros(MXORDP1)
        delt = t - self.tn

        for i in range(k + 1):
            # c_j^(i) = ( i*c_{j-1}^(i-1) + c_{j-1}^(i)*(delt + psi_{j-2}) ) / psi_{j-1}
            if i == 0:
                cjk[i] = 1.0
                psij_1 = 0.0
            else:
                cjk[i] = cjk[i - 1] * i / self.psi[i - 1]
                psij_1 = self.psi[i - 1]

            for j in range(i + 1, self.kused - k + i + 1):
                cjk[j] = (i * cjk_1[j - 1] + cjk[j - 1] * (delt + psij_1)) / self.psi[
                    j - 1
                ]
                psij_1 = self.psi[j - 1]

            cjk_1[i + 1 : self.kused - k + i + 1] = cjk[i + 1 : self.kused - k + i + 1]

        dky = cjk[k : self.kused + 1] @ self.phi[k : self.kused + 1]
        return np.asarray(dky, dtype=self.dtype)
