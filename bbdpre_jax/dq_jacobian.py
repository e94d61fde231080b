from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from .band import band_row_index, new_band_storage
from .config import COLUMN_GROUPINGS, PartitionConfig
from .errors import UnrecoverableEvaluationError


LocalEvalFn = Callable[[float, np.ndarray, np.ndarray], np.ndarray]


def num_column_groups(n: int, width: int, grouping: str = "interleaved") -> int:
    """Number of perturbed evaluations per sweep (the baseline evaluation not included)."""
    n = int(n)
    width = int(width)
    if grouping == "banded":
        return min(width, n)
    if grouping == "interleaved":
        return -(-n // width)
    raise ValueError(f"unknown column grouping {grouping!r}; expected one of {COLUMN_GROUPINGS}")


def grouping_is_exact(config: PartitionConfig, grouping: str = "interleaved") -> bool:
    """Whether one sweep determines every kept entry without overlap from its group neighbours.

    Entry ``(i, j)`` of the kept band picks up column ``j + k`` of the same group when ``k`` is a
    non-zero multiple of ``ngroups`` in ``[-(mukeep + mldq), mlkeep + mudq]``.
    """
    n = config.n_local
    ngroups = num_column_groups(n, config.width, grouping)
    if ngroups >= n:
        return True
    return ngroups > max(config.mukeep + config.mldq, config.mlkeep + config.mudq)


def column_groups(n: int, width: int, grouping: str = "interleaved") -> list[np.ndarray]:
    """Partition columns ``0..n-1`` into simultaneously perturbed groups.

    Group ``g`` holds the columns ``j`` with ``j % ngroups == g``. Two columns of one group are
    therefore ``ngroups`` apart, and their difference quotients do not overlap as long as
    ``ngroups >= width``:

    - ``"interleaved"``: ``ngroups = ceil(n / width)``, so no group holds more than ``width``
      columns. Exact for local blocks with ``n >= width**2``; smaller blocks get approximate
      difference quotients (see :func:`grouping_is_exact`).
    - ``"banded"``: ``ngroups = min(width, n)``, exact for every ``n``.
    """
    ngroups = num_column_groups(n, width, grouping)
    return [np.arange(g, int(n), ngroups, dtype=np.int64) for g in range(ngroups)]


def dq_increments(
    *,
    y: np.ndarray,
    yp: np.ndarray,
    dq_rel_yy: float,
    hh: float = 0.0,
    ewt: np.ndarray | None = None,
    constraints: np.ndarray | None = None,
    dq_floor: float = 1.0,
) -> np.ndarray:
    """Per-component increments for the difference quotients.

    ``inc_j = dq_rel_yy * max(|y_j|, |hh*yp_j|, floor_j)`` with ``floor_j = 1/ewt_j`` (or
    ``dq_floor`` without error weights), signed like ``hh*yp_j``, rounded so that
    ``(y_j + inc_j) - y_j == inc_j`` exactly, and flipped when ``y_j + inc_j`` would violate an
    inequality constraint (``+-1``: ``>= 0`` / ``<= 0``, ``+-2``: ``> 0`` / ``< 0``).
    """
    y = np.asarray(y, dtype=np.float64)
    yp = np.asarray(yp, dtype=np.float64)
    hyp = float(hh) * yp
    if ewt is not None:
        floor = 1.0 / np.asarray(ewt, dtype=np.float64)
    else:
        floor = np.full_like(y, float(dq_floor))

    inc = float(dq_rel_yy) * np.maximum(np.abs(y), np.maximum(np.abs(hyp), floor))
    inc = np.where(hyp < 0.0, -inc, inc)
    inc = (y + inc) - y

    if constraints is not None:
        c = np.asarray(constraints, dtype=np.float64)
        trial = (y + inc) * c
        flip = ((np.abs(c) == 1.0) & (trial < 0.0)) | ((np.abs(c) == 2.0) & (trial <= 0.0))
        inc = np.where(flip, -inc, inc)
    return inc


@dataclass(frozen=True)
class DQJacobianResult:
    ab: np.ndarray  # LAPACK band storage of the kept band, not yet factored
    n_groups: int
    n_evals: int


def _as_local_vector(g, n: int) -> np.ndarray:
    out = np.asarray(g, dtype=np.float64).reshape((-1,))
    if int(out.shape[0]) != n:
        raise UnrecoverableEvaluationError(f"local evaluator returned length {out.shape[0]}, expected {n}")
    return out


def dq_band_jacobian(
    *,
    evaluate: LocalEvalFn,
    config: PartitionConfig,
    t: float,
    y: np.ndarray,
    yp: np.ndarray,
    cj: float,
    ytemp: np.ndarray,
    yptemp: np.ndarray,
    hh: float = 0.0,
    ewt: np.ndarray | None = None,
    constraints: np.ndarray | None = None,
    dq_floor: float = 1.0,
    grouping: str = "interleaved",
) -> DQJacobianResult:
    """Difference-quotient approximation of ``dG/dy + cj dG/dy'`` restricted to the kept band.

    Columns are perturbed group-wise over the evaluation band (``mudq``, ``mldq``); each
    column keeps only rows ``j-mukeep .. j+mlkeep``. The result is a fresh band array, so the
    caller decides when to commit it. ``ytemp``/``yptemp`` are scratch vectors of length
    ``n_local``; they hold the perturbed arguments passed to ``evaluate``.
    """
    n = config.n_local
    muk = config.mukeep
    mlk = config.mlkeep

    y = np.asarray(y, dtype=np.float64).reshape((-1,))
    yp = np.asarray(yp, dtype=np.float64).reshape((-1,))
    if int(y.shape[0]) != n or int(yp.shape[0]) != n:
        raise ValueError(f"y and yp must have length n_local={n}, got {y.shape[0]} and {yp.shape[0]}")

    inc = dq_increments(
        y=y,
        yp=yp,
        dq_rel_yy=config.dq_rel_yy,
        hh=hh,
        ewt=ewt,
        constraints=constraints,
        dq_floor=dq_floor,
    )

    ytemp[:] = y
    yptemp[:] = yp
    gref = _as_local_vector(evaluate(t, ytemp, yptemp), n)
    n_evals = 1

    ab = new_band_storage(n, muk, mlk)
    offsets = np.arange(-muk, mlk + 1, dtype=np.int64)  # i - j within the kept band
    groups = column_groups(n, config.width, grouping)

    for cols in groups:
        ytemp[cols] = y[cols] + inc[cols]
        yptemp[cols] = yp[cols] + float(cj) * inc[cols]
        gtemp = _as_local_vector(evaluate(t, ytemp, yptemp), n)
        n_evals += 1
        ytemp[cols] = y[cols]
        yptemp[cols] = yp[cols]

        rows = cols[None, :] + offsets[:, None]
        valid = (rows >= 0) & (rows < n)
        band_c = np.broadcast_to(cols[None, :], rows.shape)
        band_r = band_row_index(rows, band_c, muk, mlk)
        ab[band_r[valid], band_c[valid]] = (gtemp[rows[valid]] - gref[rows[valid]]) / inc[band_c[valid]]

    return DQJacobianResult(ab=ab, n_groups=len(groups), n_evals=n_evals)
