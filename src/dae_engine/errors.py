# dae_engine/src/dae_engine/errors.py
"""Error taxonomy for the dae_engine integrator.

Two families are distinguished:

- RecoverableError: raised by user callbacks, the linear solver or the Newton
  iteration to ask the step engine for another attempt with a smaller step.
  These never escape ``Ida.step`` unless their retry budget is exhausted, at
  which point they are reclassified into the matching nonrecoverable kind.
- NonrecoverableError: aborts the current step and is surfaced to the caller.
  Every instance keeps its diagnostic context as attributes (time, step size,
  offending values); the message is rendered from those fields.
"""

from __future__ import annotations

from typing import ClassVar


class DAEEngineError(Exception):
    """Base exception for all dae_engine errors."""


# =============================================================================
# Recoverable failures
# =============================================================================


class RecoverableError(DAEEngineError):
    """Failure the step engine may recover from by reducing the step size."""


class ResidualRecoverableError(RecoverableError):
    """Raised by a residual function to request a retry with a smaller step."""


class LinearSetupRecoverableError(RecoverableError):
    """Raised when linear-system setup fails in a recoverable way."""


class LinearSolveRecoverableError(RecoverableError):
    """Raised when the linear solve fails in a recoverable way."""


class ConstraintRecoverableError(RecoverableError):
    """Raised when an inequality constraint is violated by a corrected solution."""


class ConvergenceRecoverError(RecoverableError):
    """Raised when the Newton iteration fails to converge or appears to diverge."""


class ErrorTestRecoverableError(RecoverableError):
    """Marks a step attempt whose local error estimate failed the error test."""


# =============================================================================
# Nonrecoverable failures
# =============================================================================


class NonrecoverableError(DAEEngineError):
    """Failure that aborts the current step.

    Attributes:
        t: Internal time at which the failure occurred, if known.
        h: Step size in use when the failure occurred, if known.
        detail: Optional extra context.
    """

    message: ClassVar[str] = "The integrator failed"

    def __init__(
        self,
        *,
        t: float | None = None,
        h: float | None = None,
        detail: str | None = None,
    ) -> None:
        self.t = t
        self.h = h
        self.detail = detail
        super().__init__(self._render())

    def _render(self) -> str:
        where: list[str] = []
        if self.t is not None:
            where.append(f"t = {self.t:.17g}")
        if self.h is not None:
            where.append(f"h = {self.h:.17g}")
        text = self.message
        if where:
            text = f"At {', '.join(where)}: {text}"
        if self.detail:
            text = f"{text} ({self.detail})"
        return text


class IllegalInputError(NonrecoverableError, ValueError):
    """One of the input arguments was illegal."""

    message = "One of the input arguments was illegal"


class BadErrorWeightError(NonrecoverableError):
    """A component of the error-weight vector is zero or negative.

    Attributes:
        index: First offending component, if known.
    """

    message = "Some component of the error weight vector is zero (illegal)"

    def __init__(
        self,
        *,
        index: int | None = None,
        t: float | None = None,
        h: float | None = None,
    ) -> None:
        self.index = index
        detail = None if index is None else f"component {index}"
        super().__init__(t=t, h=h, detail=detail)


class ResidualFailError(NonrecoverableError):
    """The residual routine failed unrecoverably."""

    message = "The residual routine failed in an unrecoverable manner"


class LinearSetupFailError(NonrecoverableError):
    """The linear solver's setup routine failed unrecoverably."""

    message = "The linear solver's setup routine failed in an unrecoverable manner"


class LinearSolveFailError(NonrecoverableError):
    """The linear solver's solve routine failed unrecoverably."""

    message = "The linear solver's solve routine failed in an unrecoverable manner"


class RepeatedResidualError(NonrecoverableError):
    """The residual kept returning recoverable errors and the step cannot recover."""

    message = (
        "The residual routine repeatedly returned a recoverable error flag, "
        "but the solver was unable to recover"
    )


class ConvergenceFailError(NonrecoverableError):
    """The corrector failed to converge repeatedly."""

    message = "The corrector convergence failed repeatedly or with |h| = hmin"


class ErrorTestFailError(NonrecoverableError):
    """The local error test failed repeatedly."""

    message = "The error test failed repeatedly or with |h| = hmin"


class ConstraintFailError(NonrecoverableError):
    """Inequality constraints were violated and the step cannot recover."""

    message = "Unable to satisfy inequality constraints"


class TooMuchWorkError(NonrecoverableError):
    """mxstep internal steps were taken before reaching tout.

    Attributes:
        mxstep: Step limit that was reached.
    """

    message = "Maximum number of internal steps taken before reaching tout"

    def __init__(self, *, mxstep: int, t: float | None = None) -> None:
        self.mxstep = mxstep
        super().__init__(t=t, detail=f"mxstep = {mxstep}")


class TooMuchAccuracyError(NonrecoverableError):
    """The requested accuracy is beyond machine precision.

    Attributes:
        tolsf: Suggested tolerance scale factor.
    """

    message = "Too much accuracy requested"

    def __init__(self, *, tolsf: float, t: float | None = None) -> None:
        self.tolsf = tolsf
        super().__init__(t=t, detail=f"tolerance scale factor = {tolsf:g}")


class BadTimeValueError(NonrecoverableError):
    """A dense-output query time lies outside the last step.

    Attributes:
        t: Requested time.
        tdiff: Start of the valid window, tn - hused.
        tcurr: End of the valid window, tn.
    """

    message = "Illegal value for t"

    def __init__(self, *, t: float, tdiff: float, tcurr: float) -> None:
        self.tdiff = tdiff
        self.tcurr = tcurr
        super().__init__(t=t)

    def _render(self) -> str:
        return (
            f"Illegal value for t: t = {self.t:.17g} is not between "
            f"tcur - hu = {self.tdiff:.17g} and tcur = {self.tcurr:.17g}."
        )


class BadKError(NonrecoverableError):
    """A derivative order outside 0..kused was requested.

    Attributes:
        k: Requested derivative order.
        kused: Order of the last committed step.
    """

    message = "Illegal value for k"

    def __init__(self, *, k: int, kused: int) -> None:
        self.k = k
        self.kused = kused
        super().__init__(detail=f"k = {k}, must be in [0, {kused}]")
