# tests/dae_engine/test_ida_solve.py
"""End-to-end tests for Ida.solve.

This module contains tests that verify:
- Accuracy on the scalar decay ODE y' = -y, forwards and backwards in time.
- Accuracy and conservation on the Robertson kinetics DAE, with an analytic
  dense Jacobian, a sparse Jacobian, and the difference-quotient fallback.
- Stop-time handling, one-step mode, lowering maxord mid-run, a run with
  suppressed algebraic components, interpolation of already-passed outputs
  and dense output through get_dky.
- Failure paths: mxstep work limit, unreachable accuracy, bad error weights,
  failing Jacobians, illegal inputs and failing residual functions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from dae_engine.config import IntegratorOptions, IntegratorSettings
from dae_engine.errors import (
    BadErrorWeightError,
    ConstraintRecoverableError,
    IllegalInputError,
    LinearSetupFailError,
    RepeatedResidualError,
    ResidualFailError,
    ResidualRecoverableError,
    TooMuchAccuracyError,
    TooMuchWorkError,
)
from dae_engine.ida import Ida, SolveResult
from dae_engine.linear import SparseLinearSolver
from dae_engine.problem import FunctionModel

from _models import decay_residual, robertson_jacobian, robertson_residual

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


ROBERTSON_Y0 = np.array([1.0, 0.0, 0.0])
ROBERTSON_YP0 = np.array([-0.04, 0.04, 0.0])
ROBERTSON_OPTIONS = IntegratorOptions(
    rtol=1e-6,
    atol=np.array([1e-10, 1e-14, 1e-8]),
    mxstep=5000,
)

# reference values at t = 0.4 and t = 40
ROBERTSON_REFERENCE = {
    0.4: np.array([9.851721e-01, 3.386395e-05, 1.479409e-02]),
    40.0: np.array([7.158271e-01, 9.185535e-06, 2.841637e-01]),
}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _decay_ida(options: IntegratorOptions | None = None) -> Ida:
    opts = options or IntegratorOptions(rtol=1e-8, atol=1e-10)
    return Ida(FunctionModel(decay_residual), 0.0, np.array([1.0]), np.array([-1.0]), options=opts)


def _check_robertson(ida: Ida) -> None:
    for tout, expected in ROBERTSON_REFERENCE.items():
        result = ida.solve(tout)
        assert result.status == "success"
        assert result.t == tout
        np.testing.assert_allclose(result.y, expected, rtol=2e-3)
        assert float(np.sum(result.y)) == pytest.approx(1.0, abs=1e-6)


# -----------------------------------------------------------------------------
# Accuracy
# -----------------------------------------------------------------------------


def test_decay_matches_exponential() -> None:
    """y' = -y reproduces exp(-t) at several output times."""
    ida = _decay_ida()
    for tout in (0.5, 1.0, 2.0, 5.0):
        result = ida.solve(tout)
        assert isinstance(result, SolveResult)
        assert result.t == tout
        assert result.y[0] == pytest.approx(np.exp(-tout), rel=1e-5)
        assert result.yp[0] == pytest.approx(-np.exp(-tout), rel=1e-4)

    stats = ida.get_stats()
    assert stats.nst > 0
    assert 1 <= stats.kused <= 5
    assert stats.nre >= stats.nst
    assert stats.nsetups >= 1
    assert stats.nje == stats.nsetups
    assert stats.nre_dq == stats.nje
    assert stats.h0u > 0.0
    assert stats.tcur >= 5.0


def test_decay_backwards_in_time() -> None:
    """Integrating towards a smaller tout gives negative steps."""
    ida = _decay_ida()
    result = ida.solve(-1.0)
    assert result.y[0] == pytest.approx(np.e, rel=1e-5)
    assert ida.hh < 0.0


def test_decay_single_precision() -> None:
    """A float32 run keeps its dtype and reaches a loose tolerance."""

    def jac(_t: float, cj: float, _yy: FloatArray, _yp: FloatArray, _res: FloatArray) -> FloatArray:
        return np.array([[1.0 + cj]])

    ida = Ida(
        FunctionModel(decay_residual, jac),
        0.0,
        np.array([1.0]),
        np.array([-1.0]),
        options=IntegratorOptions(rtol=1e-4, atol=1e-6, dtype=np.float32),
    )
    result = ida.solve(1.0)
    assert result.y.dtype == np.float32
    assert ida.phi.dtype == np.float32
    assert float(result.y[0]) == pytest.approx(np.exp(-1.0), rel=5e-3)


def test_robertson_with_dense_jacobian(robertson_model: FunctionModel) -> None:
    """Robertson kinetics match reference values and conserve mass."""
    ida = Ida(robertson_model, 0.0, ROBERTSON_Y0, ROBERTSON_YP0, options=ROBERTSON_OPTIONS)
    _check_robertson(ida)
    assert ida.get_stats().nre_dq == 0


def test_robertson_with_difference_quotient_jacobian() -> None:
    """Without a jacobian the difference-quotient fallback is used."""
    ida = Ida(
        FunctionModel(robertson_residual),
        0.0,
        ROBERTSON_Y0,
        ROBERTSON_YP0,
        options=ROBERTSON_OPTIONS,
    )
    _check_robertson(ida)
    stats = ida.get_stats()
    assert stats.nre_dq == 3 * stats.nje


def test_robertson_with_sparse_jacobian() -> None:
    """A CSR iteration matrix selects the sparse direct solver."""

    def sparse_jac(
        t: float,
        cj: float,
        yy: FloatArray,
        yp: FloatArray,
        res: FloatArray,
    ) -> csr_matrix:
        return csr_matrix(robertson_jacobian(t, cj, yy, yp, res))

    ida = Ida(
        FunctionModel(robertson_residual, sparse_jac),
        0.0,
        ROBERTSON_Y0,
        ROBERTSON_YP0,
        options=ROBERTSON_OPTIONS,
    )
    _check_robertson(ida)
    assert isinstance(ida.linear_solver, SparseLinearSolver)


def test_settings_drive_a_run(robertson_model: FunctionModel) -> None:
    """IntegratorSettings converts to options usable by Ida."""
    settings = IntegratorSettings(
        rtol=1e-6,
        atol=[1e-10, 1e-14, 1e-8],
        mxstep=5000,
        maxord=3,
    )
    ida = Ida(
        robertson_model,
        0.0,
        ROBERTSON_Y0,
        ROBERTSON_YP0,
        options=settings.to_options(),
    )
    result = ida.solve(0.4)
    np.testing.assert_allclose(result.y, ROBERTSON_REFERENCE[0.4], rtol=2e-3)
    assert ida.kused <= 3


# -----------------------------------------------------------------------------
# Driver modes
# -----------------------------------------------------------------------------


def test_tstop_is_not_passed() -> None:
    """With a stop time the driver returns exactly there, then continues."""
    ida = _decay_ida(IntegratorOptions(rtol=1e-8, atol=1e-10, tstop=0.5))

    first = ida.solve(1.0)
    assert first.status == "tstop"
    assert first.t == 0.5
    assert ida.tn == 0.5
    assert first.y[0] == pytest.approx(np.exp(-0.5), rel=1e-5)

    second = ida.solve(1.0)
    assert second.status == "success"
    assert second.y[0] == pytest.approx(np.exp(-1.0), rel=1e-5)


def test_tstop_behind_current_time_is_rejected() -> None:
    """A stop time behind tn cannot be set."""
    ida = _decay_ida()
    ida.solve(1.0)
    with pytest.raises(IllegalInputError, match="tstop"):
        ida.set_stop_time(0.1)


def test_one_step_mode_takes_single_steps() -> None:
    """Each one_step call advances exactly one internal step."""
    ida = _decay_ida()
    times = []
    for _ in range(5):
        nst_before = ida.nst
        result = ida.solve(10.0, task="one_step")
        assert ida.nst == nst_before + 1
        assert result.t == ida.tn
        assert result.y[0] == pytest.approx(np.exp(-result.t), rel=1e-6)
        times.append(result.t)
    assert times == sorted(times)
    assert times[-1] < 10.0


def test_already_passed_output_is_interpolated_without_stepping() -> None:
    """An output time inside the last step needs no new steps."""
    ida = _decay_ida()
    ida.solve(1.0, task="one_step")
    while ida.tn < 1.0:
        ida.solve(1.0, task="one_step")

    nst = ida.nst
    tout = ida.tn - 0.5 * ida.hused
    result = ida.solve(tout)
    assert ida.nst == nst
    assert result.t == tout
    assert result.y[0] == pytest.approx(np.exp(-tout), rel=1e-5)


def test_get_dky_after_solve() -> None:
    """Dense-output derivatives are consistent with the solution."""
    ida = _decay_ida()
    ida.solve(2.0)
    t = ida.tn - 0.25 * ida.hused
    y0 = ida.get_dky(t, 0)
    y1 = ida.get_dky(t, 1)
    assert y0[0] == pytest.approx(np.exp(-t), rel=1e-5)
    assert y1[0] == pytest.approx(-np.exp(-t), rel=1e-3)


def test_max_step_is_respected() -> None:
    """No step exceeds hmax."""
    ida = _decay_ida(IntegratorOptions(rtol=1e-4, atol=1e-6, hmax=0.05))
    while ida.tn < 1.0:
        ida.solve(1.0, task="one_step")
        assert abs(ida.hused) <= 0.05 * (1.0 + 1e-12)


def test_constraints_keep_solution_positive() -> None:
    """A positivity constraint is compatible with a decaying solution."""
    ida = _decay_ida(IntegratorOptions(rtol=1e-6, atol=1e-8))
    ida.set_constraints(np.array([2.0]))
    result = ida.solve(5.0)
    assert result.y[0] > 0.0
    assert result.y[0] == pytest.approx(np.exp(-5.0), rel=1e-3)


def _seed_constraint_state(ida: Ida, y: float) -> None:
    ida.ewt[:] = 1.0
    ida.epsnewt = 0.33
    ida.cj = 1.0
    ida.phi[0][:] = 1.0
    ida.yy[:] = y
    ida.yp[:] = 0.0
    ida.ee[:] = 0.0


def test_small_constraint_violation_is_corrected() -> None:
    """A violation within the Newton tolerance is projected back in place."""
    ida = _decay_ida()
    ida.set_constraints(np.array([2.0]))
    _seed_constraint_state(ida, -0.01)

    ida._enforce_constraints()

    assert ida.yy[0] == pytest.approx(0.2)
    assert ida.ee[0] == pytest.approx(0.21)
    assert ida.yp[0] == pytest.approx(0.21)


def test_large_constraint_violation_requests_smaller_step() -> None:
    """A large violation fails the step and suggests a reduction ratio."""
    ida = _decay_ida()
    ida.set_constraints(np.array([2.0]))
    _seed_constraint_state(ida, -1.0)

    with pytest.raises(ConstraintRecoverableError):
        ida._enforce_constraints()
    assert ida.rr == pytest.approx(0.45)


def test_invalid_constraint_values_are_illegal() -> None:
    """Only -2, -1, 0, 1 and 2 are meaningful constraint codes."""
    ida = _decay_ida()
    with pytest.raises(IllegalInputError):
        ida.set_constraints(np.array([3.0]))
    ida.set_constraints(np.array([0.0]))
    assert ida.constraints is None


def _oscillator_residual(_t: float, yy: FloatArray, yp: FloatArray, out: FloatArray) -> None:
    out[0] = yp[0] - yy[1]
    out[1] = yp[1] + yy[0]


def test_lowering_max_order_mid_run() -> None:
    """A lower maxord takes effect at the next step and cannot be raised back."""
    ida = Ida(
        FunctionModel(_oscillator_residual),
        0.0,
        np.array([0.0, 1.0]),
        np.array([1.0, 0.0]),
        options=IntegratorOptions(rtol=1e-6, atol=1e-8, mxstep=50000),
    )
    result = ida.solve(20.0)
    assert result.y[0] == pytest.approx(np.sin(20.0), abs=1e-3)
    assert ida.kk > 2

    ida.set_max_ord(2)
    assert ida.kk <= 2
    assert ida.knew <= 2

    while ida.tn < 40.0:
        result = ida.solve(40.0, task="one_step")
        assert 1 <= ida.kused <= 2
        assert 1 <= ida.kk <= 2
    result = ida.solve(40.0)
    assert result.y[0] == pytest.approx(np.sin(40.0), abs=2e-3)
    assert result.y[1] == pytest.approx(np.cos(40.0), abs=2e-3)

    with pytest.raises(IllegalInputError, match="cannot be raised"):
        ida.set_max_ord(5)
    assert ida.maxord == 2


def test_suppressed_algebraic_component_run(robertson_model: FunctionModel) -> None:
    """Excluding the algebraic component from the error test keeps accuracy."""
    ida = Ida(
        robertson_model,
        0.0,
        ROBERTSON_Y0,
        ROBERTSON_YP0,
        options=IntegratorOptions(
            rtol=1e-6,
            atol=np.array([1e-10, 1e-14, 1e-8]),
            mxstep=5000,
            suppressalg=True,
        ),
    )
    ida.set_id(np.array([True, True, False]))
    result = ida.solve(0.4)
    assert result.status == "success"
    np.testing.assert_allclose(result.y, ROBERTSON_REFERENCE[0.4], rtol=2e-3)
    assert float(np.sum(result.y)) == pytest.approx(1.0, abs=1e-6)


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------


def test_mxstep_limit_raises_too_much_work() -> None:
    """Hitting mxstep internal steps aborts the call with the current time."""
    ida = _decay_ida(IntegratorOptions(rtol=1e-8, atol=1e-10, mxstep=3))
    with pytest.raises(TooMuchWorkError) as excinfo:
        ida.solve(100.0)
    assert excinfo.value.mxstep == 3
    assert ida.nst == 3
    assert ida.tretlast == ida.tn


def test_zero_error_weight_is_rejected() -> None:
    """atol = 0 with a zero state component gives an illegal weight."""
    ida = Ida(
        FunctionModel(decay_residual),
        0.0,
        np.array([1.0, 0.0]),
        np.array([-1.0, 0.0]),
        options=IntegratorOptions(rtol=1e-6, atol=0.0),
    )
    with pytest.raises(BadErrorWeightError) as excinfo:
        ida.solve(1.0)
    assert excinfo.value.index == 1


def test_tout_too_close_is_illegal() -> None:
    """tout equal to t0 cannot start an integration."""
    with pytest.raises(IllegalInputError, match="too close"):
        _decay_ida().solve(0.0)


def test_unknown_task_is_illegal() -> None:
    """Only 'normal' and 'one_step' are accepted."""
    with pytest.raises(IllegalInputError):
        _decay_ida().solve(1.0, task="interpolate")  # type: ignore[arg-type]


def test_suppressalg_requires_id() -> None:
    """Suppressing algebraic components needs the id vector."""
    ida = _decay_ida(IntegratorOptions(suppressalg=True))
    with pytest.raises(IllegalInputError, match="id"):
        ida.solve(1.0)


def test_bad_initial_shapes_are_illegal() -> None:
    """yy0 and yp0 must be matching 1D arrays."""
    with pytest.raises(IllegalInputError):
        Ida(FunctionModel(decay_residual), 0.0, np.ones(2), np.ones(3))
    with pytest.raises(IllegalInputError):
        Ida(FunctionModel(decay_residual), 0.0, np.ones((2, 2)), np.ones((2, 2)))


def test_residual_exception_is_unrecoverable() -> None:
    """An arbitrary exception in the residual aborts with ResidualFailError."""

    def broken(_t: float, _yy: FloatArray, _yp: FloatArray, _out: FloatArray) -> None:
        msg = "model blew up"
        raise ValueError(msg)

    ida = Ida(FunctionModel(broken), 0.0, np.array([1.0]), np.array([-1.0]))
    with pytest.raises(ResidualFailError, match="model blew up") as excinfo:
        ida.solve(1.0)
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_persistent_recoverable_residual_failure() -> None:
    """A residual that always asks for a retry exhausts maxncf."""
    calls: list[float] = []

    def reluctant(t: float, _yy: FloatArray, _yp: FloatArray, _out: FloatArray) -> None:
        calls.append(t)
        msg = "try a smaller step"
        raise ResidualRecoverableError(msg)

    ida = Ida(
        FunctionModel(reluctant),
        0.0,
        np.array([1.0]),
        np.array([-1.0]),
        options=IntegratorOptions(maxncf=3),
    )
    with pytest.raises(RepeatedResidualError):
        ida.solve(1.0)
    assert ida.ncfn == 3
    assert len(calls) == 3
    assert ida.nst == 0


def test_recoverable_residual_failure_is_retried() -> None:
    """A single recoverable failure only shrinks the step."""
    state = {"failed": False}

    def flaky(t: float, yy: FloatArray, yp: FloatArray, out: FloatArray) -> None:
        if t > 0.3 and not state["failed"]:
            state["failed"] = True
            msg = "transient"
            raise ResidualRecoverableError(msg)
        decay_residual(t, yy, yp, out)

    ida = Ida(
        FunctionModel(flaky),
        0.0,
        np.array([1.0]),
        np.array([-1.0]),
        options=IntegratorOptions(rtol=1e-8, atol=1e-10),
    )
    result = ida.solve(1.0)
    assert state["failed"]
    assert ida.ncfn >= 1
    assert result.y[0] == pytest.approx(np.exp(-1.0), rel=1e-5)


def test_jacobian_exception_is_unrecoverable() -> None:
    """An exception in the user Jacobian aborts with LinearSetupFailError."""

    def bad_jac(_t: float, _cj: float, _yy: FloatArray, _yp: FloatArray, _res: FloatArray) -> FloatArray:
        msg = "jacobian unavailable"
        raise RuntimeError(msg)

    ida = Ida(FunctionModel(decay_residual, bad_jac), 0.0, np.array([1.0]), np.array([-1.0]))
    with pytest.raises(LinearSetupFailError, match="jacobian unavailable") as excinfo:
        ida.solve(1.0)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert ida.nst == 0


def test_unreachable_accuracy_raises_too_much_accuracy() -> None:
    """Tolerances below unit roundoff are reported before stepping."""
    ida = _decay_ida(IntegratorOptions(rtol=0.0, atol=1e-20))
    with pytest.raises(TooMuchAccuracyError) as excinfo:
        ida.solve(1.0)
    assert excinfo.value.tolsf > 1.0
    assert ida.nst == 0
    assert ida.tretlast == 0.0


def test_dense_output_before_first_step_is_illegal() -> None:
    """Interpolation needs at least one completed step."""
    ida = _decay_ida()
    with pytest.raises(IllegalInputError, match="no step"):
        ida.get_solution(0.0)
    with pytest.raises(IllegalInputError, match="no step"):
        ida.get_dky(0.0, 0)
