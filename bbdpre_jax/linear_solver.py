from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import os
from typing import TYPE_CHECKING

import numpy as np

import jax.numpy as jnp
from jax import tree_util as jtu
from jax.scipy.sparse.linalg import bicgstab, gmres
from scipy.sparse.linalg import LinearOperator as _LinearOperator
from scipy.sparse.linalg import gmres as _scipy_gmres

from .errors import SetupError, UnrecoverableSolveError
from .verbose import EmitFn, null_emit

if TYPE_CHECKING:
    from .context import IntegratorContext
    from .preconditioner import BBDPreconditioner


@jtu.register_pytree_node_class
@dataclass(frozen=True)
class GMRESSolveResult:
    x: jnp.ndarray
    residual_norm: jnp.ndarray

    def tree_flatten(self):
        children = (self.x, self.residual_norm)
        aux = None
        return children, aux

    @classmethod
    def tree_unflatten(cls, aux, children):
        del aux
        x, residual_norm = children
        return cls(x=x, residual_norm=residual_norm)


def _maybe_limit_restart(n: int, restart: int, dtype: jnp.dtype) -> int:
    if n <= 0 or restart <= 1:
        return restart
    max_mb_env = os.environ.get("BBDPRE_JAX_GMRES_MAX_MB", "").strip()
    if max_mb_env:
        try:
            max_mb = float(max_mb_env)
        except ValueError:
            max_mb = 2048.0
    else:
        max_mb = 2048.0
    if max_mb <= 0:
        return restart
    bytes_per_elem = int(np.dtype(dtype).itemsize)
    max_bytes = max_mb * 1e6
    # Estimate Krylov basis storage ~ (restart+1) * n * bytes_per_elem.
    max_restart = int(max_bytes // (bytes_per_elem * n)) - 1
    if max_restart < 1:
        max_restart = 1
    return min(int(restart), int(max_restart))


def _normalize_side(precondition_side: str) -> str:
    side = str(precondition_side).strip().lower()
    if side not in {"left", "right", "none"}:
        side = "left"
    return side


def gmres_solve_with_history_scipy(
    *,
    matvec,
    b,
    preconditioner=None,
    x0=None,
    tol: float = 1e-10,
    atol: float = 0.0,
    restart: int = 50,
    maxiter: int | None = None,
    precondition_side: str = "left",
) -> tuple[np.ndarray, float, list[float]]:
    """Run SciPy GMRES on the host and collect the residual history.

    ``preconditioner`` is applied to NumPy vectors directly, so exceptions raised while applying
    it (e.g. :class:`~bbdpre_jax.errors.UnrecoverableSolveError`) reach the caller unchanged.
    """
    b_np = np.asarray(b, dtype=np.float64).reshape((-1,))
    n = int(b_np.size)
    x0_np = np.asarray(x0, dtype=np.float64).reshape((-1,)) if x0 is not None else None
    restart_use = _maybe_limit_restart(n, int(restart), np.dtype(np.float64))

    def _mv(x_np: np.ndarray) -> np.ndarray:
        return np.asarray(matvec(x_np), dtype=np.float64).reshape((-1,))

    def _prec(x_np: np.ndarray) -> np.ndarray:
        if preconditioner is None:
            return x_np
        return np.asarray(preconditioner(x_np), dtype=np.float64).reshape((-1,))

    side = _normalize_side(precondition_side)

    if side == "right" and preconditioner is not None:
        def _mv_right(y_np: np.ndarray) -> np.ndarray:
            return _mv(_prec(y_np))

        A = _LinearOperator((n, n), matvec=_mv_right, dtype=np.float64)
        M = None
    else:
        A = _LinearOperator((n, n), matvec=_mv, dtype=np.float64)
        M = _LinearOperator((n, n), matvec=_prec, dtype=np.float64) if (preconditioner is not None and side == "left") else None

    history: list[float] = []

    def _cb(arg):
        # SciPy passes residual norm when callback_type='pr_norm'.
        if np.isscalar(arg):
            history.append(float(arg))
        else:
            history.append(float(np.linalg.norm(arg)))

    x_np, _info = _scipy_gmres(
        A,
        b_np,
        x0=x0_np if side != "right" else None,
        rtol=float(tol),
        atol=float(atol),
        restart=int(restart_use),
        maxiter=int(maxiter) if maxiter is not None else None,
        M=M,
        callback=_cb,
        callback_type="pr_norm",
    )

    if side == "right" and preconditioner is not None:
        x_np = _prec(x_np)

    res = b_np - _mv(x_np)
    rn = float(np.linalg.norm(res))
    return x_np, rn, history


def bicgstab_solve(
    *,
    matvec,
    b: jnp.ndarray,
    preconditioner=None,
    x0: jnp.ndarray | None = None,
    tol: float = 1e-10,
    atol: float = 0.0,
    maxiter: int | None = None,
    precondition_side: str = "left",
) -> GMRESSolveResult:
    """Solve `A x = b` using JAX's BiCGStab (short-recurrence Krylov, O(n) memory)."""
    b = jnp.asarray(b)
    if x0 is not None:
        x0 = jnp.asarray(x0)

    side = _normalize_side(precondition_side)

    if side == "right" and preconditioner is not None:
        def matvec_right(y):
            return matvec(preconditioner(y))

        y, _info = bicgstab(matvec_right, b, x0=None, tol=float(tol), atol=float(atol), maxiter=maxiter, M=None)
        x = preconditioner(y)
    else:
        M = preconditioner if side == "left" else None
        x, _info = bicgstab(matvec, b, x0=x0, tol=float(tol), atol=float(atol), maxiter=maxiter, M=M)

    r = b - matvec(x)
    return GMRESSolveResult(x=x, residual_norm=jnp.linalg.norm(r))


def gmres_solve(
    *,
    matvec,
    b: jnp.ndarray,
    preconditioner=None,
    x0: jnp.ndarray | None = None,
    tol: float = 1e-10,
    atol: float = 0.0,
    restart: int = 50,
    maxiter: int | None = None,
    solve_method: str = "batched",
    precondition_side: str = "left",
) -> GMRESSolveResult:
    """Solve `A x = b` using JAX's GMRES.

    Notes
    -----
    - `matvec` must be callable like `matvec(x)` and return the same shape as `x`.
    - `preconditioner` applies `P^{-1}`. Host-side preconditioners must be wrapped for tracing,
      see :meth:`bbdpre_jax.preconditioner.BBDPreconditioner.as_jax_preconditioner`.
    """
    b = jnp.asarray(b)
    if x0 is not None:
        x0 = jnp.asarray(x0)

    restart_use = _maybe_limit_restart(int(b.size), int(restart), b.dtype)
    side = _normalize_side(precondition_side)

    if side == "right" and preconditioner is not None:
        # Solve A P^{-1} y = b, x = P^{-1} y.
        def matvec_right(y):
            return matvec(preconditioner(y))

        y, _info = gmres(
            matvec_right,
            b,
            x0=None,
            tol=float(tol),
            atol=float(atol),
            restart=int(restart_use),
            maxiter=maxiter,
            M=None,
            solve_method=solve_method,
        )
        x = preconditioner(y)
    else:
        # Left preconditioning (SciPy-style): solve P^{-1} A x = P^{-1} b.
        M = preconditioner if side == "left" else None
        x, _info = gmres(
            matvec,
            b,
            x0=x0,
            tol=float(tol),
            atol=float(atol),
            restart=int(restart_use),
            maxiter=maxiter,
            M=M,
            solve_method=solve_method,
        )

    r = b - matvec(x)
    return GMRESSolveResult(x=x, residual_norm=jnp.linalg.norm(r))


# ---------------------------------------------------------------------------
# Owner of the preconditioner: the setup/solve contract seen by the integrator.


class LinearSolverFlag(IntEnum):
    SUCCESS = 0
    RECOVERABLE = 1
    UNRECOVERABLE = -1


@dataclass(frozen=True)
class LinearSolveResult:
    x: np.ndarray
    residual_norm: float
    flag: LinearSolverFlag
    history: tuple[float, ...] = ()


class KrylovLinearSolver:
    """Preconditioned Krylov linear solver owned by an integrator context.

    The band-block-diagonal preconditioner is attached to :attr:`preconditioner` by
    :func:`bbdpre_jax.api.bbd_prec_init`; this object is the only caller of its ``setup`` and
    ``solve``.

    Parameters
    ----------
    method:
      ``"gmres"`` or ``"bicgstab"`` (JAX, preconditioner applied through ``pure_callback``) or
      ``"scipy_gmres"`` (host SciPy GMRES with residual history).
    """

    METHODS = ("gmres", "bicgstab", "scipy_gmres")

    def __init__(
        self,
        *,
        method: str = "gmres",
        tol: float = 1e-8,
        atol: float = 0.0,
        restart: int = 30,
        maxiter: int | None = None,
        precondition_side: str = "right",
        residual_slack: float = 10.0,
        emit: EmitFn | None = None,
    ) -> None:
        method = str(method).strip().lower()
        if method not in self.METHODS:
            raise ValueError(f"method must be one of {self.METHODS}, got {method!r}")
        self.method = method
        self.tol = float(tol)
        self.atol = float(atol)
        self.restart = int(restart)
        self.maxiter = maxiter
        self.precondition_side = _normalize_side(precondition_side)
        # Krylov stopping tests use recurrence residuals; the recomputed one may be slightly larger.
        self.residual_slack = float(residual_slack)
        self.emit = emit if emit is not None else null_emit
        self.preconditioner: BBDPreconditioner | None = None
        self.npe = 0  # preconditioner setups requested
        self.nps = 0  # preconditioner solves
        self.ncfl = 0  # linear convergence failures
        self._callback_error: UnrecoverableSolveError | None = None

    def setup(self, ctx: IntegratorContext, y, yp, *, comm_done: bool = False) -> LinearSolverFlag:
        """Preconditioner setup at the integrator's current ``t``, ``cj`` and step."""
        self.npe += 1
        if self.preconditioner is None:
            return LinearSolverFlag.SUCCESS
        try:
            self.preconditioner.setup(
                t=ctx.t,
                y=y,
                yp=yp,
                cj=ctx.cj,
                hh=ctx.hh,
                ewt=ctx.ewt,
                constraints=ctx.constraints,
                comm_done=comm_done,
            )
        except SetupError as exc:
            if exc.recoverable:
                self.emit(1, f"linear solver: recoverable preconditioner setup failure: {exc}")
                return LinearSolverFlag.RECOVERABLE
            self.emit(0, f"linear solver: unrecoverable preconditioner setup failure: {exc}")
            return LinearSolverFlag.UNRECOVERABLE
        return LinearSolverFlag.SUCCESS

    def psolve(self, r):
        """Apply ``P^{-1}``; identity when no preconditioner is attached."""
        self.nps += 1
        if self.preconditioner is None:
            return r
        return self.preconditioner.solve(r)

    def _jax_psolve(self):
        if self.preconditioner is None:
            return None
        # Count on the host side: the traced wrapper runs once per trace, not per application.
        return self.preconditioner.as_jax_preconditioner(solve=self._host_psolve)

    def _host_psolve(self, r):
        try:
            return self.psolve(r)
        except UnrecoverableSolveError as exc:
            # JAX re-raises callback errors as its own runtime error; keep the original.
            self._callback_error = exc
            raise

    def solve(self, *, matvec, b, x0=None) -> LinearSolveResult:
        """Solve ``J x = b`` where ``matvec`` applies the (matrix-free) system Jacobian.

        ``matvec`` must be traceable by JAX for ``"gmres"``/``"bicgstab"``; ``"scipy_gmres"`` calls
        it with NumPy vectors.
        """
        if self.preconditioner is not None and not self.preconditioner.has_factorization:
            self.emit(0, "linear solver: preconditioner has no factorization")
            return LinearSolveResult(
                x=np.zeros(np.shape(b), dtype=np.float64),
                residual_norm=float("inf"),
                flag=LinearSolverFlag.UNRECOVERABLE,
            )

        b_np = np.asarray(b, dtype=np.float64).reshape((-1,))
        history: tuple[float, ...] = ()
        self._callback_error = None
        try:
            if self.method == "scipy_gmres":
                prec = self.psolve if self.preconditioner is not None else None
                x, rn, hist = gmres_solve_with_history_scipy(
                    matvec=matvec,
                    b=b_np,
                    preconditioner=prec,
                    x0=x0,
                    tol=self.tol,
                    atol=self.atol,
                    restart=self.restart,
                    maxiter=self.maxiter,
                    precondition_side=self.precondition_side,
                )
                history = tuple(hist)
            else:
                mv = lambda v: jnp.asarray(matvec(v))  # noqa: E731
                kwargs = dict(
                    matvec=mv,
                    b=jnp.asarray(b_np),
                    preconditioner=self._jax_psolve(),
                    x0=None if x0 is None else jnp.asarray(x0, dtype=jnp.float64),
                    tol=self.tol,
                    atol=self.atol,
                    maxiter=self.maxiter,
                    precondition_side=self.precondition_side,
                )
                if self.method == "gmres":
                    res = gmres_solve(restart=self.restart, solve_method="incremental", **kwargs)
                else:
                    res = bicgstab_solve(**kwargs)
                x = np.asarray(res.x, dtype=np.float64)
                rn = float(res.residual_norm)
        except UnrecoverableSolveError as exc:
            self.emit(0, f"linear solver: preconditioner solve failed: {exc}")
            return LinearSolveResult(
                x=np.zeros_like(b_np),
                residual_norm=float("inf"),
                flag=LinearSolverFlag.UNRECOVERABLE,
            )
        except RuntimeError:
            if self._callback_error is None:
                raise
            self.emit(0, f"linear solver: preconditioner solve failed: {self._callback_error}")
            return LinearSolveResult(
                x=np.zeros_like(b_np),
                residual_norm=float("inf"),
                flag=LinearSolverFlag.UNRECOVERABLE,
            )

        target = max(self.atol, self.tol * float(np.linalg.norm(b_np)))
        if np.isfinite(rn) and rn <= self.residual_slack * target:
            flag = LinearSolverFlag.SUCCESS
        else:
            self.ncfl += 1
            flag = LinearSolverFlag.RECOVERABLE
        self.emit(2, f"linear solver: method={self.method} residual_norm={rn:.3e} target={target:.3e} flag={flag.name}")
        return LinearSolveResult(x=x, residual_norm=rn, flag=flag, history=history)
