"""Status-returning entry points mirroring the classic band-block-diagonal preconditioner API.

The class API (:class:`~bbdpre_jax.preconditioner.BBDPreconditioner`) raises; these wrappers
catch the configuration errors and report them as :class:`~bbdpre_jax.errors.Status` codes.
"""

from __future__ import annotations

from .context import IntegratorContext
from .errors import (
    BBDError,
    MissingContextError,
    MissingLinearSolverContextError,
    MissingPreconditionerStateError,
    Status,
)
from .preconditioner import BBDPreconditioner


def _linear_solver(context: IntegratorContext | None):
    if context is None:
        raise MissingContextError("integrator context is None")
    if context.linear_solver is None:
        raise MissingLinearSolverContextError("integrator context has no linear solver attached")
    return context.linear_solver


def get_preconditioner(context: IntegratorContext | None) -> BBDPreconditioner:
    """Return the live preconditioner owned by ``context`` (raises on any missing layer)."""
    ls = _linear_solver(context)
    pre = ls.preconditioner
    if pre is None or pre.is_destroyed:
        raise MissingPreconditionerStateError("no band-block-diagonal preconditioner is attached")
    return pre


def _status_of(exc: BBDError, context: IntegratorContext | None, what: str) -> Status:
    if context is not None:
        context.emit(0, f"{what}: {exc}")
    return exc.status if exc.status is not None else Status.ILLEGAL_INPUT


def bbd_prec_init(
    context: IntegratorContext | None,
    n_local: int,
    mudq: int,
    mldq: int,
    mukeep: int,
    mlkeep: int,
    dq_rel_yy: float,
    gres,
    gcomm=None,
    *,
    grouping: str | None = None,
    dq_floor: float = 1.0,
) -> Status:
    """Allocate a preconditioner and attach it to ``context.linear_solver``.

    ``gres`` is a :class:`~bbdpre_jax.callbacks.LocalModel` or a bare ``g_local(t, y, yp)``
    callable, ``gcomm`` an optional ``g_comm(t, y, yp)``. On failure nothing is allocated and
    an already attached preconditioner stays in place.
    """
    try:
        ls = _linear_solver(context)
        pre = BBDPreconditioner.create(
            n_local=n_local,
            mudq=mudq,
            mldq=mldq,
            mukeep=mukeep,
            mlkeep=mlkeep,
            dq_rel_yy=dq_rel_yy,
            model=gres,
            gcomm=gcomm,
            grouping=grouping,
            dq_floor=dq_floor,
            emit=context.emit,
        )
    except BBDError as exc:
        return _status_of(exc, context, "bbd_prec_init")

    old = ls.preconditioner
    if old is not None:
        old.destroy()
    ls.preconditioner = pre
    return Status.SUCCESS


def bbd_prec_reinit(
    context: IntegratorContext | None,
    mudq: int,
    mldq: int,
    dq_rel_yy: float,
) -> Status:
    """Change the evaluation half-bandwidths and increment of an attached preconditioner."""
    try:
        get_preconditioner(context).reinit(mudq=mudq, mldq=mldq, dq_rel_yy=dq_rel_yy)
    except BBDError as exc:
        return _status_of(exc, context, "bbd_prec_reinit")
    return Status.SUCCESS


def bbd_prec_get_work_space(context: IntegratorContext | None) -> tuple[int, int]:
    """Return ``(real_words, int_words)`` of the attached preconditioner."""
    return get_preconditioner(context).get_work_space()


def bbd_prec_get_num_gfn_evals(context: IntegratorContext | None) -> int:
    """Return the cumulative number of local evaluator calls."""
    return get_preconditioner(context).get_num_gfn_evals()
