from __future__ import annotations

import math

import numpy as np
import jax
import jax.numpy as jnp

from .band import band_factor, band_solve, new_band_storage
from .callbacks import LocalModel, as_local_model, exchange_halo
from .config import COLUMN_GROUPINGS, PartitionConfig, default_column_grouping
from .dq_jacobian import dq_band_jacobian, grouping_is_exact, num_column_groups
from .errors import (
    AllocationFailureError,
    EvaluationError,
    IllegalInputError,
    MissingPreconditionerStateError,
    RecoverableSetupError,
    UnrecoverableSetupError,
    UnrecoverableSolveError,
)
from .profiling import maybe_profiler
from .verbose import EmitFn, Timer, null_emit


class BBDPreconditioner:
    """Band-block-diagonal preconditioner state for one partition.

    The object owns the LAPACK band storage of the committed LU factors, the pivot array and two
    scratch vectors. Their shapes are fixed by ``n_local``, ``mukeep`` and ``mlkeep`` for the
    whole lifetime; :meth:`reinit` only changes the evaluation bandwidths and the increment.

    Lifecycle::

        BBDPreconditioner(...)  ->  [reinit(...)]*  ->  setup(...)  <->  solve(...)  ->  destroy()

    A failed :meth:`setup` never touches the committed factorization, so :meth:`solve` keeps
    working against the previous one.
    """

    def __init__(
        self,
        config: PartitionConfig,
        model: LocalModel,
        *,
        grouping: str | None = None,
        dq_floor: float = 1.0,
        emit: EmitFn | None = None,
    ) -> None:
        if not isinstance(config, PartitionConfig):
            raise IllegalInputError(f"config must be a PartitionConfig, got {type(config).__name__}")
        if not hasattr(model, "evaluate_local"):
            raise IllegalInputError("model must provide evaluate_local(t, y, yp)")
        grouping = default_column_grouping() if grouping is None else str(grouping).strip().lower()
        if grouping not in COLUMN_GROUPINGS:
            raise IllegalInputError(f"grouping must be one of {COLUMN_GROUPINGS}, got {grouping!r}")
        if not (math.isfinite(float(dq_floor)) and float(dq_floor) > 0.0):
            raise IllegalInputError(f"dq_floor must be positive and finite, got {dq_floor!r}")

        n = config.n_local
        try:
            ab = new_band_storage(n, config.mukeep, config.mlkeep)
            ipiv = np.zeros((n,), dtype=np.int32)
            ytemp = np.zeros((n,), dtype=np.float64)
            yptemp = np.zeros((n,), dtype=np.float64)
        except MemoryError as exc:
            raise AllocationFailureError(f"cannot allocate band preconditioner storage for n_local={n}") from exc

        self._config = config
        self._model = model
        self._grouping = grouping
        self._dq_floor = float(dq_floor)
        self._emit = emit if emit is not None else null_emit

        self._ab = ab
        self._ipiv = ipiv
        self._ytemp = ytemp
        self._yptemp = yptemp

        self._nge = 0
        self._nfactor = 0
        self._has_factorization = False
        self._destroyed = False

        self._emit(
            1,
            f"bbdpre: init n_local={n} mudq={config.mudq} mldq={config.mldq} "
            f"mukeep={config.mukeep} mlkeep={config.mlkeep} dq_rel_yy={config.dq_rel_yy:.3e} "
            f"grouping={grouping} ngroups={self.n_groups}",
        )
        self._warn_if_inexact()

    @classmethod
    def create(
        cls,
        *,
        n_local: int,
        mudq: int,
        mldq: int,
        mukeep: int,
        mlkeep: int,
        model,
        dq_rel_yy: float | None = 0.0,
        gcomm=None,
        grouping: str | None = None,
        dq_floor: float = 1.0,
        emit: EmitFn | None = None,
    ) -> "BBDPreconditioner":
        """Validate raw sizes and build the preconditioner.

        ``model`` is a :class:`~bbdpre_jax.callbacks.LocalModel` or a bare ``g_local(t, y, yp)``
        callable; ``gcomm`` is only accepted with the latter.
        """
        config = PartitionConfig.create(
            n_local=n_local,
            mudq=mudq,
            mldq=mldq,
            mukeep=mukeep,
            mlkeep=mlkeep,
            dq_rel_yy=dq_rel_yy,
        )
        try:
            local_model = as_local_model(model, gcomm)
        except TypeError as exc:
            raise IllegalInputError(str(exc)) from exc
        return cls(config, local_model, grouping=grouping, dq_floor=dq_floor, emit=emit)

    # ---- read-only views ---------------------------------------------------
    def _require_alive(self) -> None:
        if self._destroyed:
            raise MissingPreconditionerStateError("preconditioner state has been destroyed")

    @property
    def config(self) -> PartitionConfig:
        return self._config

    @property
    def model(self) -> LocalModel:
        return self._model

    @property
    def grouping(self) -> str:
        return self._grouping

    @property
    def n_groups(self) -> int:
        return num_column_groups(self._config.n_local, self._config.width, self._grouping)

    @property
    def nge(self) -> int:
        return self._nge

    @property
    def nfactor(self) -> int:
        return self._nfactor

    @property
    def has_factorization(self) -> bool:
        return self._has_factorization and not self._destroyed

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def band_storage(self) -> np.ndarray:
        """The committed LU factors in LAPACK band layout (read-only view)."""
        self._require_alive()
        view = self._ab.view()
        view.flags.writeable = False
        return view

    @property
    def pivots(self) -> np.ndarray:
        self._require_alive()
        view = self._ipiv.view()
        view.flags.writeable = False
        return view

    def get_work_space(self) -> tuple[int, int]:
        """Return ``(real_words, int_words)``: band storage plus two scratch vectors, and pivots."""
        self._require_alive()
        real_words = int(self._ab.size + self._ytemp.size + self._yptemp.size)
        int_words = int(self._ipiv.size)
        return real_words, int_words

    def get_num_gfn_evals(self) -> int:
        """Cumulative number of local evaluator calls."""
        self._require_alive()
        return self._nge

    # ---- lifecycle ---------------------------------------------------------
    def reinit(self, *, mudq: int, mldq: int, dq_rel_yy: float | None = 0.0) -> None:
        """Change the evaluation half-bandwidths and the increment; storage is reused as is."""
        self._require_alive()
        self._config = self._config.with_evaluation(mudq=mudq, mldq=mldq, dq_rel_yy=dq_rel_yy)
        self._emit(
            1,
            f"bbdpre: reinit mudq={self._config.mudq} mldq={self._config.mldq} "
            f"dq_rel_yy={self._config.dq_rel_yy:.3e} ngroups={self.n_groups}",
        )
        self._warn_if_inexact()

    def _warn_if_inexact(self) -> None:
        cfg = self._config
        if grouping_is_exact(cfg, self._grouping):
            return
        self._emit(
            0,
            f"bbdpre: warning: {self._grouping} grouping with ngroups={self.n_groups} overlaps the kept band "
            f"for n_local={cfg.n_local} (width={cfg.width}); difference quotients are approximate, "
            f"use grouping=\"banded\" for an exact sweep",
        )

    def destroy(self) -> None:
        """Release the storage. Every later operation raises MissingPreconditionerStateError."""
        if self._destroyed:
            return
        self._destroyed = True
        self._has_factorization = False
        self._ab = np.zeros((0, 0), dtype=np.float64)
        self._ipiv = np.zeros((0,), dtype=np.int32)
        self._ytemp = np.zeros((0,), dtype=np.float64)
        self._yptemp = np.zeros((0,), dtype=np.float64)
        self._emit(1, f"bbdpre: destroyed after nge={self._nge} nfactor={self._nfactor}")

    # ---- setup -------------------------------------------------------------
    def _counted_evaluate(self, t: float, y: np.ndarray, yp: np.ndarray):
        self._nge += 1
        return self._model.evaluate_local(t, y, yp)

    def setup(
        self,
        *,
        t: float,
        y,
        yp,
        cj: float,
        hh: float = 0.0,
        ewt=None,
        constraints=None,
        comm_done: bool = False,
    ) -> None:
        """Rebuild and factor the local band block at ``(t, y, yp)``.

        Parameters
        ----------
        t, y, yp:
          Current time and local state/derivative vectors (length ``n_local``).
        cj:
          Scalar in ``dF/dy + cj dF/dy'`` (the BDF leading coefficient divided by the step).
        hh:
          Current step size; the sign of ``hh*yp_j`` orients the increments.
        ewt, constraints:
          Optional error weights (``1/ewt`` floors the increments) and inequality constraints.
        comm_done:
          Skip ``exchange_halo`` because the integrator's residual evaluation already
          communicated the data for these same vectors.

        Raises
        ------
        RecoverableSetupError
          Recoverable evaluator/communication failure, or a singular band block.
        UnrecoverableSetupError
          Unrecoverable callback failure.
        """
        self._require_alive()
        cfg = self._config
        timer = Timer()
        profiler = maybe_profiler(self._emit)
        y_np = np.asarray(y, dtype=np.float64).reshape((-1,))
        yp_np = np.asarray(yp, dtype=np.float64).reshape((-1,))
        nge0 = self._nge

        try:
            if not comm_done:
                exchange_halo(self._model, t, y_np, yp_np)
            if profiler is not None:
                profiler.mark("bbdpre_exchange_halo")
            dq = dq_band_jacobian(
                evaluate=self._counted_evaluate,
                config=cfg,
                t=float(t),
                y=y_np,
                yp=yp_np,
                cj=float(cj),
                ytemp=self._ytemp,
                yptemp=self._yptemp,
                hh=float(hh),
                ewt=None if ewt is None else np.asarray(ewt, dtype=np.float64),
                constraints=None if constraints is None else np.asarray(constraints, dtype=np.float64),
                dq_floor=self._dq_floor,
                grouping=self._grouping,
            )
        except EvaluationError as exc:
            self._emit(0, f"bbdpre: setup failed at t={float(t):.6e}: {exc}")
            if exc.recoverable:
                raise RecoverableSetupError(str(exc)) from exc
            raise UnrecoverableSetupError(str(exc)) from exc
        if profiler is not None:
            profiler.mark("bbdpre_dq_jacobian")

        if not np.all(np.isfinite(dq.ab)):
            self._emit(0, f"bbdpre: non-finite difference quotients at t={float(t):.6e}")
            raise RecoverableSetupError("difference-quotient Jacobian has non-finite entries")

        lu, ipiv, info = band_factor(dq.ab, cfg.mukeep, cfg.mlkeep)
        if info < 0:
            raise UnrecoverableSetupError(f"gbtrf rejected argument {-info}")
        if info > 0:
            self._emit(0, f"bbdpre: singular band block (zero pivot at row {info - 1}) at t={float(t):.6e}")
            raise RecoverableSetupError(f"band block is singular: zero pivot at row {info - 1}")
        if profiler is not None:
            profiler.mark("bbdpre_band_factor")

        # Commit in place so the storage keeps its identity across setups.
        np.copyto(self._ab, lu)
        self._ipiv[:] = ipiv
        self._has_factorization = True
        self._nfactor += 1
        self._emit(
            2,
            f"bbdpre: setup t={float(t):.6e} cj={float(cj):.3e} ngroups={dq.n_groups} "
            f"evals={self._nge - nge0} nge={self._nge} nfactor={self._nfactor} elapsed_s={timer.elapsed_s():.3f}",
        )

    # ---- apply -------------------------------------------------------------
    def solve(self, r):
        """Solve ``P z = r`` with the committed band LU factors.

        NumPy in, NumPy out; a ``jax.Array`` right-hand side gives a ``jax.Array`` result.
        """
        if self._destroyed:
            raise UnrecoverableSolveError("preconditioner state has been destroyed")
        if not self._has_factorization:
            raise UnrecoverableSolveError("no successful preconditioner setup to solve against")
        cfg = self._config
        is_jax = isinstance(r, jax.Array)
        r_np = np.asarray(r, dtype=np.float64).reshape((-1,))
        if int(r_np.shape[0]) != cfg.n_local:
            raise UnrecoverableSolveError(f"right-hand side has length {r_np.shape[0]}, expected {cfg.n_local}")
        z, info = band_solve(self._ab, self._ipiv, cfg.mukeep, cfg.mlkeep, r_np)
        if info != 0:
            raise UnrecoverableSolveError(f"gbtrs failed with info={info}")
        if is_jax:
            return jnp.asarray(z)
        return z

    def as_jax_preconditioner(self, solve=None):
        """Return ``M(r) = P^{-1} r`` usable inside traced JAX Krylov loops (via ``pure_callback``).

        ``solve`` replaces :meth:`solve` as the host function, e.g. to count applications.
        """
        shape = jax.ShapeDtypeStruct((self._config.n_local,), jnp.float64)
        host = self.solve if solve is None else solve

        def _host_solve(r):
            return np.asarray(host(np.asarray(r)), dtype=np.float64)

        def apply(r):
            return jax.pure_callback(_host_solve, shape, r)

        return apply
