"""dae_engine variable-order BDF integrator for differential-algebraic systems."""

from __future__ import annotations

from .config import IntegratorOptions, IntegratorSettings
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
from .ida import Ida, IntegratorStats, SolveResult
from .linear import DenseLinearSolver, SparseLinearSolver, dq_jacobian
from .newton import NewtonSolver
from .norms import error_weights, wrms_norm, wrms_norm_masked
from .problem import DAEModel, FunctionModel, JacobianModel, LinearSolver, NLProblem

__version__ = "0.1.0"

__all__ = [
    "BadErrorWeightError",
    "BadKError",
    "BadTimeValueError",
    "ConstraintFailError",
    "ConstraintRecoverableError",
    "ConvergenceFailError",
    "ConvergenceRecoverError",
    "DAEEngineError",
    "DAEModel",
    "DenseLinearSolver",
    "ErrorTestFailError",
    "FunctionModel",
    "Ida",
    "IllegalInputError",
    "IntegratorOptions",
    "IntegratorSettings",
    "IntegratorStats",
    "JacobianModel",
    "LinearSetupFailError",
    "LinearSetupRecoverableError",
    "LinearSolveFailError",
    "LinearSolveRecoverableError",
    "LinearSolver",
    "NLProblem",
    "NewtonSolver",
    "NonrecoverableError",
    "RecoverableError",
    "RepeatedResidualError",
    "ResidualFailError",
    "ResidualRecoverableError",
    "SolveResult",
    "SparseLinearSolver",
    "TooMuchAccuracyError",
    "TooMuchWorkError",
    "__version__",
    "dq_jacobian",
    "error_weights",
    "wrms_norm",
    "wrms_norm_masked",
]
