# dae_engine/src/dae_engine/config.py
"""Configuration for the dae_engine integrator.

Two layers, matching how the engine is used:

- IntegratorOptions: a frozen dataclass consumed directly by ``Ida``.
- IntegratorSettings: a pydantic model for dict/YAML-style configuration that
  validates user input and converts to IntegratorOptions.

The module-level constants are the algorithm defaults. The initial-condition
constants (MAXNH, MAXNJ, MAXNI, MAXBACKS) are tunables of a
consistent-initial-condition solver, which this package does not include.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Final, Literal

import numpy as np
import yaml
from numpy.typing import DTypeLike, NDArray
from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Algorithm constants
# =============================================================================

#: number of divided-difference history rows (max order + 1)
MXORDP1: Final[int] = 6
#: default (and largest) BDF order
MAXORD_DEFAULT: Final[int] = 5
#: default max number of internal steps per solve call
MXSTEP_DEFAULT: Final[int] = 500
#: default inverse of the max step size (0 means unbounded)
HMAX_INV_DEFAULT: Final[float] = 0.0
#: max number of convergence failures per step
MXNCF: Final[int] = 10
#: max number of error test failures per step
MXNEF: Final[int] = 10
#: max Newton iterations per corrector solve
MAXIT: Final[int] = 4
#: Newton convergence test coefficient
EPCON: Final[float] = 0.33
#: cj change ratio that forces a Jacobian update
XRATE: Final[float] = 0.25
#: max number of h tries in IC calc
MAXNH: Final[int] = 5
#: max number of J tries in IC calc
MAXNJ: Final[int] = 4
#: max Newton iterations in IC calc
MAXNI: Final[int] = 10
#: max backtracks per Newton step in IC calc
MAXBACKS: Final[int] = 100

_YAML_MAPPING_ERROR_MSG = "YAML settings in {path} (key={key!r}) must be a mapping"


# =============================================================================
# Native options
# =============================================================================


@dataclass(slots=True, frozen=True)
class IntegratorOptions:
    """Tunables for Ida.

    Attributes:
        rtol: Scalar relative tolerance.
        atol: Scalar or per-component absolute tolerance.
        maxord: Maximum BDF order, 1..5.
        mxstep: Maximum internal steps per solve call (0 disables the limit).
        hin: Initial step size (0 selects one automatically).
        hmax: Maximum absolute step size (inf means unbounded).
        tstop: Optional stop time the integrator must not step past.
        maxncf: Max corrector convergence failures per step.
        maxnef: Max error test failures per step.
        maxnit: Max Newton iterations per corrector solve.
        epcon: Newton convergence test coefficient.
        suppressalg: Exclude algebraic components from the local error test.
        dtype: Floating dtype of all engine arrays.
    """

    rtol: float = 1e-6
    atol: float | NDArray[np.floating] = 1e-8
    maxord: int = MAXORD_DEFAULT
    mxstep: int = MXSTEP_DEFAULT
    hin: float = 0.0
    hmax: float = float("inf")
    tstop: float | None = None
    maxncf: int = MXNCF
    maxnef: int = MXNEF
    maxnit: int = MAXIT
    epcon: float = EPCON
    suppressalg: bool = False
    dtype: DTypeLike = np.float64


# =============================================================================
# Settings model (dict / YAML facing)
# =============================================================================


class IntegratorSettings(BaseModel):
    """Validated, serialization-friendly integrator settings.

    Unknown fields are allowed and ignored so settings can live inside larger
    configuration documents.
    """

    model_config = ConfigDict(extra="allow")

    rtol: float = Field(default=1e-6, ge=0.0, description="Relative tolerance")
    atol: float | list[float] = Field(default=1e-8, description="Absolute tolerance")

    maxord: int = Field(default=MAXORD_DEFAULT, ge=1, le=MAXORD_DEFAULT)
    mxstep: int = Field(default=MXSTEP_DEFAULT, ge=0)
    hin: float = Field(default=0.0)
    hmax: float = Field(default=float("inf"), gt=0.0)
    tstop: float | None = None

    maxncf: int = Field(default=MXNCF, ge=1)
    maxnef: int = Field(default=MXNEF, ge=1)
    maxnit: int = Field(default=MAXIT, ge=1)
    epcon: float = Field(default=EPCON, gt=0.0)

    suppressalg: bool = False
    dtype: Literal["float32", "float64"] = "float64"

    @field_validator("atol")
    @classmethod
    def _atol_non_negative(cls, value: float | list[float]) -> float | list[float]:
        values = value if isinstance(value, list) else [value]
        if any(v < 0.0 for v in values):
            msg = "atol must be non-negative"
            raise ValueError(msg)
        return value

    @classmethod
    def from_yaml(cls, path: str | Path, *, key: str | None = None) -> IntegratorSettings:
        """Load settings from a YAML document.

        Args:
            path: YAML file to read.
            key: Optional top-level mapping key holding the settings block.

        Returns:
            Validated IntegratorSettings.

        Raises:
            ValueError: If the document (or the selected block) is not a mapping.
        """
        with Path(path).open(encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
        if key is not None and isinstance(doc, dict):
            doc = doc.get(key)
        if not isinstance(doc, dict):
            raise ValueError(_YAML_MAPPING_ERROR_MSG.format(path=path, key=key))
        return cls.model_validate(doc)

    def to_options(self) -> IntegratorOptions:
        """Convert these settings to native IntegratorOptions.

        Returns:
            Fully constructed IntegratorOptions instance.
        """
        atol: float | NDArray[np.floating]
        if isinstance(self.atol, list):
            atol = np.asarray(self.atol, dtype=self.dtype)
        else:
            atol = float(self.atol)

        return IntegratorOptions(
            rtol=self.rtol,
            atol=atol,
            maxord=self.maxord,
            mxstep=self.mxstep,
            hin=self.hin,
            hmax=self.hmax,
            tstop=self.tstop,
            maxncf=self.maxncf,
            maxnef=self.maxnef,
            maxnit=self.maxnit,
            epcon=self.epcon,
            suppressalg=self.suppressalg,
            dtype=np.dtype(self.dtype),
        )
