from __future__ import annotations

import numpy as np
import scipy.linalg


def band_rows(mu: int, ml: int) -> int:
    """Rows of LAPACK ``?gbtrf`` storage: ``ml`` fill-in rows plus ``mu + ml + 1`` diagonals."""
    return 2 * int(ml) + int(mu) + 1


def band_row_index(i, j, mu: int, ml: int):
    """Row of ``A[i, j]`` in LAPACK band storage (the column is ``j``)."""
    return int(ml) + int(mu) + i - j


def new_band_storage(n: int, mu: int, ml: int, dtype=np.float64) -> np.ndarray:
    """Allocate zeroed band storage, shape ``(2*ml + mu + 1, n)``, Fortran ordered for LAPACK."""
    return np.zeros((band_rows(mu, ml), int(n)), dtype=dtype, order="F")


def band_factor(ab: np.ndarray, mu: int, ml: int) -> tuple[np.ndarray, np.ndarray, int]:
    """LU-factor band storage with LAPACK ``?gbtrf`` (partial pivoting).

    Returns ``(lu, ipiv, info)``. ``ab`` is not modified. ``info > 0`` reports an exactly zero
    pivot ``U[info-1, info-1]``.
    """
    ab = np.asarray(ab)
    n = int(ab.shape[1])
    (gbtrf,) = scipy.linalg.get_lapack_funcs(("gbtrf",), (ab,))
    lu, ipiv, info = gbtrf(ab, int(ml), int(mu), m=n, n=n, overwrite_ab=False)
    return lu, ipiv, int(info)


def band_solve(lu: np.ndarray, ipiv: np.ndarray, mu: int, ml: int, b: np.ndarray) -> tuple[np.ndarray, int]:
    """Solve with the factors from :func:`band_factor` using LAPACK ``?gbtrs``."""
    lu = np.asarray(lu)
    b = np.asarray(b, dtype=lu.dtype)
    (gbtrs,) = scipy.linalg.get_lapack_funcs(("gbtrs",), (lu,))
    x, info = gbtrs(lu, int(ml), int(mu), b, ipiv, overwrite_b=False)
    return x, int(info)
