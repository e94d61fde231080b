from __future__ import annotations

from dataclasses import dataclass, replace
import math
import os

import numpy as np

from .errors import IllegalInputError


UNIT_ROUNDOFF = float(np.finfo(np.float64).eps)

COLUMN_GROUPINGS = ("interleaved", "banded")


def env_flag(name: str, default: bool = False) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val in {"1", "true", "yes", "on"}


def env_float(name: str) -> float | None:
    val = os.environ.get(name, "").strip()
    if not val:
        return None
    try:
        return float(val)
    except ValueError:
        return None


def default_dq_rel_yy() -> float:
    """Relative increment used when the caller passes ``dq_rel_yy <= 0``.

    ``BBDPRE_JAX_DQ_REL_YY`` overrides the built-in ``sqrt(unit roundoff)``.
    """
    override = env_float("BBDPRE_JAX_DQ_REL_YY")
    if override is not None and math.isfinite(override) and override > 0.0:
        return float(override)
    return math.sqrt(UNIT_ROUNDOFF)


def default_column_grouping() -> str:
    val = os.environ.get("BBDPRE_JAX_COLUMN_GROUPING", "").strip().lower()
    if val in COLUMN_GROUPINGS:
        return val
    return "interleaved"


def _as_int(name: str, value) -> int:
    if isinstance(value, bool):
        raise IllegalInputError(f"{name} must be an integer, got {value!r}")
    try:
        out = int(value)
    except (TypeError, ValueError) as exc:
        raise IllegalInputError(f"{name} must be an integer, got {value!r}") from exc
    if out != value:
        raise IllegalInputError(f"{name} must be an integer, got {value!r}")
    return out


def _resolve_dq_rel_yy(dq_rel_yy) -> float:
    if dq_rel_yy is None:
        return default_dq_rel_yy()
    try:
        rel = float(dq_rel_yy)
    except (TypeError, ValueError) as exc:
        raise IllegalInputError(f"dq_rel_yy must be a real number, got {dq_rel_yy!r}") from exc
    if not math.isfinite(rel):
        raise IllegalInputError(f"dq_rel_yy must be finite, got {dq_rel_yy!r}")
    if rel <= 0.0:
        return default_dq_rel_yy()
    return rel


@dataclass(frozen=True)
class PartitionConfig:
    """Size and bandwidths of one local preconditioner block.

    Parameters
    ----------
    n_local:
      Length of the local part of the state vector on this partition.
    mudq, mldq:
      Upper/lower half-bandwidths used by the difference-quotient sweep.
    mukeep, mlkeep:
      Upper/lower half-bandwidths of the stored (and factored) band. They may be smaller than
      the evaluation bandwidths, never larger.
    dq_rel_yy:
      Relative increment for the difference quotients. Values ``<= 0`` (or ``None``) select
      ``sqrt(unit roundoff)``.
    """

    n_local: int
    mudq: int
    mldq: int
    mukeep: int
    mlkeep: int
    dq_rel_yy: float

    @classmethod
    def create(
        cls,
        *,
        n_local: int,
        mudq: int,
        mldq: int,
        mukeep: int,
        mlkeep: int,
        dq_rel_yy: float | None = 0.0,
    ) -> "PartitionConfig":
        """Validate the raw inputs and build a config (raises :class:`IllegalInputError`)."""
        n = _as_int("n_local", n_local)
        if n <= 0:
            raise IllegalInputError(f"n_local must be positive, got {n}")
        mu = _as_int("mudq", mudq)
        ml = _as_int("mldq", mldq)
        muk = _as_int("mukeep", mukeep)
        mlk = _as_int("mlkeep", mlkeep)
        _check_bandwidths(n, mu, ml, muk, mlk)
        return cls(
            n_local=n,
            mudq=mu,
            mldq=ml,
            mukeep=muk,
            mlkeep=mlk,
            dq_rel_yy=_resolve_dq_rel_yy(dq_rel_yy),
        )

    @property
    def width(self) -> int:
        """Number of columns of the evaluation band: ``mudq + mldq + 1``."""
        return self.mudq + self.mldq + 1

    @property
    def storage_mu(self) -> int:
        """Upper bandwidth of the stored LU factors (``U`` fills in up to ``mukeep + mlkeep``)."""
        return min(self.n_local - 1, self.mukeep + self.mlkeep)

    @property
    def band_rows(self) -> int:
        """Rows of the LAPACK band storage: ``2*mlkeep + mukeep + 1``."""
        return 2 * self.mlkeep + self.mukeep + 1

    def with_evaluation(self, *, mudq: int, mldq: int, dq_rel_yy: float | None = 0.0) -> "PartitionConfig":
        """Return a copy with new evaluation bandwidths/increment and the same kept band."""
        mu = _as_int("mudq", mudq)
        ml = _as_int("mldq", mldq)
        _check_bandwidths(self.n_local, mu, ml, self.mukeep, self.mlkeep)
        return replace(self, mudq=mu, mldq=ml, dq_rel_yy=_resolve_dq_rel_yy(dq_rel_yy))


def _check_bandwidths(n: int, mu: int, ml: int, muk: int, mlk: int) -> None:
    for name, val in (("mudq", mu), ("mldq", ml), ("mukeep", muk), ("mlkeep", mlk)):
        if val < 0:
            raise IllegalInputError(f"{name} must be non-negative, got {val}")
    if mu > n - 1 or ml > n - 1:
        raise IllegalInputError(
            f"evaluation half-bandwidths (mudq={mu}, mldq={ml}) must not exceed n_local-1={n - 1}"
        )
    if muk > mu:
        raise IllegalInputError(f"mukeep={muk} must not exceed mudq={mu}")
    if mlk > ml:
        raise IllegalInputError(f"mlkeep={mlk} must not exceed mldq={ml}")
