from __future__ import annotations

import io

import numpy as np
import jax
import jax.numpy as jnp
import pytest

from bbdpre_jax.callbacks import FunctionModel
from bbdpre_jax.config import PartitionConfig
from bbdpre_jax.errors import (
    IllegalInputError,
    MissingPreconditionerStateError,
    RecoverableEvaluationError,
    RecoverableSetupError,
    UnrecoverableEvaluationError,
    UnrecoverableSetupError,
    UnrecoverableSolveError,
)
from bbdpre_jax.preconditioner import BBDPreconditioner
from bbdpre_jax.verbose import make_emit

from _models import LinearModel, band_part, random_banded, tridiagonal


def _tridiag_precond(n: int = 20, **kwargs):
    model = LinearModel(tridiagonal(n, -1.0, 4.0, -1.5))
    pre = BBDPreconditioner.create(n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, **kwargs)
    return pre, model


def test_setup_counts_group_evaluations_plus_baseline(rng) -> None:
    n = 10
    model = LinearModel(random_banded(rng, n, 2, 2, diag_shift=5.0))
    pre = BBDPreconditioner.create(n_local=n, mudq=2, mldq=2, mukeep=1, mlkeep=1, model=model)
    assert pre.n_groups == 2
    assert pre.get_num_gfn_evals() == 0

    pre.setup(t=0.0, y=rng.normal(size=n), yp=np.zeros(n), cj=1.0)
    assert pre.get_num_gfn_evals() == 3
    pre.setup(t=0.1, y=rng.normal(size=n), yp=np.zeros(n), cj=2.0)
    assert pre.get_num_gfn_evals() == 6
    assert pre.nfactor == 2
    assert pre.band_storage.shape == (4, n)


def test_solve_inverts_the_iteration_matrix(rng) -> None:
    n = 20
    pre, model = _tridiag_precond(n)
    cj = 3.0
    pre.setup(t=0.0, y=rng.normal(size=n), yp=rng.normal(size=n), cj=cj)

    jac = model.iteration_matrix(cj)
    x = rng.normal(size=n)
    z = pre.solve(jac @ x)
    assert isinstance(z, np.ndarray)
    np.testing.assert_allclose(z, x, rtol=1e-6, atol=1e-6)

    z_j = pre.solve(jnp.asarray(jac @ x))
    assert isinstance(z_j, jax.Array)
    np.testing.assert_allclose(np.asarray(z_j), x, rtol=1e-6, atol=1e-6)


def test_narrow_kept_band_preconditions_wider_jacobian(rng) -> None:
    n = 40
    a = random_banded(rng, n, 2, 2) * 0.1 + tridiagonal(n, -1.0, 5.0, -1.0)
    model = LinearModel(a)
    pre = BBDPreconditioner.create(n_local=n, mudq=2, mldq=2, mukeep=1, mlkeep=1, model=model)
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)

    kept = band_part(model.iteration_matrix(1.0), 1, 1)
    b = rng.normal(size=n)
    np.testing.assert_allclose(pre.solve(b), np.linalg.solve(kept, b), rtol=1e-6, atol=1e-6)


def test_recoverable_failure_keeps_previous_factorization(rng) -> None:
    n = 20
    pre, model = _tridiag_precond(n)
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=2.0)
    lu_before = np.array(pre.band_storage)
    piv_before = np.array(pre.pivots)
    b = rng.normal(size=n)
    z_before = pre.solve(b)
    nge_before = pre.nge

    model.fail_with = RecoverableEvaluationError("halo not ready")
    with pytest.raises(RecoverableSetupError):
        pre.setup(t=0.1, y=2.0 * np.ones(n), yp=np.ones(n), cj=5.0)

    assert pre.has_factorization
    assert pre.nfactor == 1
    assert pre.nge == nge_before + 1  # only the failed baseline call was made
    np.testing.assert_array_equal(np.asarray(pre.band_storage), lu_before)
    np.testing.assert_array_equal(np.asarray(pre.pivots), piv_before)
    np.testing.assert_array_equal(pre.solve(b), z_before)


def test_unrecoverable_evaluation_failure() -> None:
    n = 6
    pre, model = _tridiag_precond(n)
    model.fail_with = UnrecoverableEvaluationError("bad state")
    with pytest.raises(UnrecoverableSetupError):
        pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    assert not pre.has_factorization
    with pytest.raises(UnrecoverableSolveError):
        pre.solve(np.ones(n))


def test_singular_block_is_a_recoverable_setup_failure() -> None:
    n = 5
    model = LinearModel(np.zeros((n, n)), b=np.zeros((n, n)))
    pre = BBDPreconditioner.create(n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model)
    with pytest.raises(RecoverableSetupError):
        pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    assert not pre.has_factorization
    assert pre.nge == 1 + 2


def test_non_finite_evaluation_is_a_recoverable_setup_failure() -> None:
    n = 4
    pre = BBDPreconditioner.create(
        n_local=n, mudq=0, mldq=0, mukeep=0, mlkeep=0, model=lambda t, y, yp: np.full(np.shape(y), np.nan)
    )
    with pytest.raises(RecoverableSetupError):
        pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)


def test_exchange_halo_runs_once_before_local_evaluations() -> None:
    n = 9
    pre, model = _tridiag_precond(n)
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    assert model.exchanges == 1
    assert model.log[0] == "exchange"
    assert model.log[1:] == ["evaluate"] * (pre.n_groups + 1)

    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0, comm_done=True)
    assert model.exchanges == 1


def test_function_model_flags() -> None:
    n = 5
    calls: list[str] = []

    def g_comm(t, y, yp):
        calls.append("comm")
        return 0

    def g_local(t, y, yp, out):
        out[:] = 3.0 * y + yp
        return 0

    model = FunctionModel(g_local, g_comm, in_place=True)
    config = PartitionConfig.create(n_local=n, mudq=0, mldq=0, mukeep=0, mlkeep=0)
    pre = BBDPreconditioner(config, model)
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=2.0)
    np.testing.assert_allclose(pre.solve(np.full(n, 5.0)), 1.0, rtol=1e-6)
    assert calls == ["comm"]

    recoverable = FunctionModel(lambda t, y, yp: 1)
    pre_r = BBDPreconditioner(pre.config, recoverable)
    with pytest.raises(RecoverableSetupError):
        pre_r.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)

    fatal_comm = FunctionModel(lambda t, y, yp: y, lambda t, y, yp: -1)
    pre_f = BBDPreconditioner(pre.config, fatal_comm)
    with pytest.raises(UnrecoverableSetupError):
        pre_f.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    assert pre_f.nge == 0


def test_reinit_changes_evaluation_only_and_keeps_storage(rng) -> None:
    n = 30
    model = LinearModel(random_banded(rng, n, 2, 2, diag_shift=5.0))
    pre = BBDPreconditioner.create(n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, dq_rel_yy=1e-6)
    storage = pre.band_storage
    pivots = pre.pivots
    work = pre.get_work_space()
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    nge_after_first = pre.nge

    pre.reinit(mudq=2, mldq=2, dq_rel_yy=0.0)
    cfg = pre.config
    assert (cfg.mudq, cfg.mldq, cfg.mukeep, cfg.mlkeep, cfg.n_local) == (2, 2, 1, 1, n)
    assert cfg.dq_rel_yy == pytest.approx(np.sqrt(np.finfo(np.float64).eps))
    assert pre.get_work_space() == work
    assert pre.has_factorization
    assert pre.nge == nge_after_first
    assert np.shares_memory(pre.band_storage, storage)
    assert np.shares_memory(pre.pivots, pivots)

    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    assert pre.nge == nge_after_first + 6 + 1
    assert np.shares_memory(pre.band_storage, storage)

    with pytest.raises(IllegalInputError):
        pre.reinit(mudq=0, mldq=2)
    assert pre.config.mudq == 2


def test_work_space_and_destroy() -> None:
    pre, _ = _tridiag_precond(10)
    real, ints = pre.get_work_space()
    assert real == 10 * (2 * 1 + 1 + 1) + 2 * 10
    assert ints == 10

    pre.destroy()
    assert pre.is_destroyed
    with pytest.raises(MissingPreconditionerStateError):
        pre.get_work_space()
    with pytest.raises(MissingPreconditionerStateError):
        pre.reinit(mudq=1, mldq=1)
    with pytest.raises(UnrecoverableSolveError):
        pre.solve(np.ones(10))


def test_illegal_construction() -> None:
    model = LinearModel(np.eye(4))
    with pytest.raises(IllegalInputError):
        BBDPreconditioner.create(n_local=4, mudq=1, mldq=1, mukeep=2, mlkeep=1, model=model)
    with pytest.raises(IllegalInputError):
        BBDPreconditioner.create(n_local=4, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, grouping="random")
    with pytest.raises(IllegalInputError):
        BBDPreconditioner.create(n_local=4, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, dq_floor=0.0)
    with pytest.raises(IllegalInputError):
        BBDPreconditioner.create(n_local=4, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=object())


def test_setup_emits_statistics(rng) -> None:
    stream = io.StringIO()
    pre, _ = _tridiag_precond(12, emit=make_emit(verbose=2, stream=stream, prefix="[rank 0] "))
    pre.setup(t=0.5, y=np.ones(12), yp=np.zeros(12), cj=1.0)
    lines = stream.getvalue().splitlines()
    assert lines[0].startswith("[rank 0] bbdpre: init n_local=12")
    assert any("bbdpre: setup" in line and "evals=5" in line for line in lines)


def test_profiler_marks_setup_phases(monkeypatch) -> None:
    monkeypatch.setenv("BBDPRE_JAX_PROFILE", "1")
    logs: list[str] = []
    pre, _ = _tridiag_precond(8, emit=lambda level, msg: logs.append(msg))
    pre.setup(t=0.0, y=np.ones(8), yp=np.zeros(8), cj=1.0)
    labels = [line.split()[1] for line in logs if line.startswith("profiling:")]
    assert labels == ["bbdpre_exchange_halo", "bbdpre_dq_jacobian", "bbdpre_band_factor"]


def test_overlapping_grouping_warns_and_banded_is_exact() -> None:
    n = 6
    logs: list[tuple[int, str]] = []
    model = LinearModel(tridiagonal(n, -1.0, 4.0, -2.0))
    BBDPreconditioner.create(
        n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, emit=lambda lvl, msg: logs.append((lvl, msg))
    )
    warnings = [msg for lvl, msg in logs if lvl == 0 and "warning" in msg]
    assert len(warnings) == 1
    assert 'grouping="banded"' in warnings[0]

    logs.clear()
    pre = BBDPreconditioner.create(
        n_local=n,
        mudq=1,
        mldq=1,
        mukeep=1,
        mlkeep=1,
        model=model,
        grouping="banded",
        emit=lambda lvl, msg: logs.append((lvl, msg)),
    )
    assert not [msg for lvl, msg in logs if "warning" in msg]
    pre.setup(t=0.0, y=np.ones(n), yp=np.zeros(n), cj=1.0)
    x = np.arange(1.0, n + 1.0)
    np.testing.assert_allclose(pre.solve(model.iteration_matrix(1.0) @ x), x, rtol=1e-6, atol=1e-6)


def test_reinit_to_an_overlapping_grouping_warns() -> None:
    n = 20
    logs: list[str] = []
    model = LinearModel(tridiagonal(n, -1.0, 4.0, -1.0))
    pre = BBDPreconditioner.create(
        n_local=n, mudq=1, mldq=1, mukeep=1, mlkeep=1, model=model, emit=lambda lvl, msg: logs.append(msg)
    )
    assert not [msg for msg in logs if "warning" in msg]
    pre.reinit(mudq=4, mldq=4)
    assert len([msg for msg in logs if "warning" in msg]) == 1
