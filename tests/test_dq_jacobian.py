from __future__ import annotations

import numpy as np
import pytest

from bbdpre_jax.config import PartitionConfig
from bbdpre_jax.dq_jacobian import (
    column_groups,
    dq_band_jacobian,
    dq_increments,
    grouping_is_exact,
    num_column_groups,
)

from _models import LinearModel, band_part, band_to_dense, random_banded, tridiagonal


def _sweep(model, cfg, y, yp, cj, **kwargs):
    n = cfg.n_local
    return dq_band_jacobian(
        evaluate=model.evaluate_local,
        config=cfg,
        t=0.0,
        y=y,
        yp=yp,
        cj=cj,
        ytemp=np.zeros(n),
        yptemp=np.zeros(n),
        **kwargs,
    )


def test_group_count_follows_evaluation_width() -> None:
    assert num_column_groups(10, 5) == 2
    assert num_column_groups(11, 5) == 3
    assert num_column_groups(10, 5, "banded") == 5
    assert num_column_groups(3, 5, "banded") == 3
    with pytest.raises(ValueError):
        num_column_groups(10, 5, "diagonal")


@pytest.mark.parametrize("grouping", ["interleaved", "banded"])
def test_column_groups_partition_the_columns(grouping: str) -> None:
    n, width = 23, 4
    groups = column_groups(n, width, grouping)
    cols = np.sort(np.concatenate(groups))
    np.testing.assert_array_equal(cols, np.arange(n))
    for g in groups:
        assert g.size <= max(width, -(-n // width))
        if g.size > 1:
            assert np.min(np.diff(g)) == len(groups)
    if grouping == "interleaved":
        assert all(g.size <= width for g in groups)


def test_dq_increments_sign_and_floor() -> None:
    y = np.array([0.0, 2.0, -3.0])
    yp = np.array([1.0, -1.0, 0.0])
    inc = dq_increments(y=y, yp=yp, dq_rel_yy=1e-3, hh=0.1)
    np.testing.assert_allclose(inc, [1e-3, -2e-3, 3e-3], rtol=1e-12)

    ewt = np.array([100.0, 100.0, 100.0])
    inc_w = dq_increments(y=np.zeros(3), yp=np.zeros(3), dq_rel_yy=1e-3, hh=0.1, ewt=ewt)
    np.testing.assert_allclose(inc_w, 1e-5, rtol=1e-12)

    # The increment is exactly representable as a difference of the perturbed and base values.
    y_big = np.array([1.0e8 + 0.3])
    inc_big = dq_increments(y=y_big, yp=np.zeros(1), dq_rel_yy=1.5e-8)
    assert (y_big + inc_big) - y_big == inc_big


def test_dq_increments_respect_inequality_constraints() -> None:
    y = np.array([1e-5, 1e-5, 1e-5])
    yp = np.array([-1.0, -1.0, -1.0])
    constraints = np.array([2.0, 1.0, 0.0])
    inc = dq_increments(y=y, yp=yp, dq_rel_yy=1e-3, hh=1.0, constraints=constraints)
    # Negative increments would push y below zero; constrained components flip.
    assert inc[0] > 0.0
    assert inc[1] > 0.0
    assert inc[2] < 0.0


def test_linear_model_jacobian_is_recovered_on_kept_band(rng) -> None:
    n, mu, ml = 30, 2, 2
    a = random_banded(rng, n, mu, ml, diag_shift=4.0)
    b = np.diag(rng.uniform(0.5, 1.5, size=n))
    model = LinearModel(a, b)
    cfg = PartitionConfig.create(n_local=n, mudq=mu, mldq=ml, mukeep=1, mlkeep=1)
    y = rng.normal(size=n)
    yp = rng.normal(size=n)
    cj = 7.5

    # ceil(30/5) = 6 >= width, so the interleaved sweep is exact.
    res = _sweep(model, cfg, y, yp, cj, hh=0.01)
    assert res.n_groups == 6
    assert res.n_evals == 7
    assert model.calls == 7

    dense = band_to_dense(res.ab, cfg.mukeep, cfg.mlkeep)
    np.testing.assert_allclose(dense, band_part(model.iteration_matrix(cj), 1, 1), rtol=1e-6, atol=1e-5)


def test_entries_outside_kept_band_are_never_stored(rng) -> None:
    n = 10
    a = random_banded(rng, n, 2, 2, diag_shift=3.0)
    model = LinearModel(a)
    cfg = PartitionConfig.create(n_local=n, mudq=2, mldq=2, mukeep=1, mlkeep=1)
    res = _sweep(model, cfg, rng.normal(size=n), rng.normal(size=n), 1.0)

    assert res.n_evals == 3  # ceil(10/5) + 1
    assert res.ab.shape == (2 * 1 + 1 + 1, n)
    np.testing.assert_array_equal(res.ab[: cfg.mlkeep], 0.0)
    dense = band_to_dense(res.ab, 1, 1)
    i, j = np.indices((n, n))
    assert np.all(dense[np.abs(i - j) > 1] == 0.0)
    assert np.count_nonzero(np.diag(dense)) == n


def test_banded_grouping_is_exact_for_small_blocks(rng) -> None:
    n, mu, ml = 8, 2, 1
    a = random_banded(rng, n, mu, ml, diag_shift=5.0)
    model = LinearModel(a)
    cfg = PartitionConfig.create(n_local=n, mudq=mu, mldq=ml, mukeep=mu, mlkeep=ml)
    res = _sweep(model, cfg, rng.normal(size=n), np.zeros(n), 2.0, grouping="banded")

    assert res.n_groups == 4
    dense = band_to_dense(res.ab, mu, ml)
    np.testing.assert_allclose(dense, model.iteration_matrix(2.0), rtol=1e-6, atol=1e-5)


def test_scratch_vectors_are_restored_and_inputs_untouched(rng) -> None:
    n = 12
    model = LinearModel(random_banded(rng, n, 1, 1, diag_shift=3.0))
    cfg = PartitionConfig.create(n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1)
    y = rng.normal(size=n)
    yp = rng.normal(size=n)
    y0, yp0 = y.copy(), yp.copy()
    ytemp = np.zeros(n)
    yptemp = np.zeros(n)
    dq_band_jacobian(
        evaluate=model.evaluate_local, config=cfg, t=0.0, y=y, yp=yp, cj=1.0, ytemp=ytemp, yptemp=yptemp
    )
    np.testing.assert_array_equal(y, y0)
    np.testing.assert_array_equal(yp, yp0)
    np.testing.assert_array_equal(ytemp, y0)
    np.testing.assert_array_equal(yptemp, yp0)


def test_small_block_values_depend_on_grouping() -> None:
    n = 10
    model = LinearModel(tridiagonal(n, -1.0, 4.0, -2.0))
    cfg = PartitionConfig.create(n_local=n, mudq=2, mldq=2, mukeep=1, mlkeep=1)
    y = np.linspace(-1.0, 1.0, n)
    kept = band_part(model.iteration_matrix(1.0), 1, 1)

    # Two interleaved groups put columns two apart: both feed the row between them.
    assert not grouping_is_exact(cfg, "interleaved")
    inexact = band_to_dense(_sweep(model, cfg, y, np.zeros(n), 1.0).ab, 1, 1)
    assert np.max(np.abs(inexact - kept)) > 0.5

    assert grouping_is_exact(cfg, "banded")
    res = _sweep(model, cfg, y, np.zeros(n), 1.0, grouping="banded")
    assert res.n_evals == 5 + 1
    np.testing.assert_allclose(band_to_dense(res.ab, 1, 1), kept, rtol=1e-6, atol=1e-6)


@pytest.mark.parametrize(
    ("n", "mudq", "mldq", "mukeep", "mlkeep", "exact"),
    [
        (10, 2, 2, 1, 1, False),
        (6, 1, 1, 1, 1, False),
        (9, 1, 1, 1, 1, True),
        (20, 2, 2, 1, 1, True),  # 4 groups > max(mukeep + mldq, mlkeep + mudq) = 3
        (25, 2, 2, 2, 2, True),
        (3, 2, 2, 2, 2, False),  # a single interleaved group holds every column
    ],
)
def test_interleaved_exactness(n, mudq, mldq, mukeep, mlkeep, exact) -> None:
    cfg = PartitionConfig.create(n_local=n, mudq=mudq, mldq=mldq, mukeep=mukeep, mlkeep=mlkeep)
    assert grouping_is_exact(cfg, "interleaved") is exact
    assert grouping_is_exact(cfg, "banded")
