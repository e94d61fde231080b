from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .errors import RecoverableEvaluationError, UnrecoverableEvaluationError


@runtime_checkable
class LocalModel(Protocol):
    """Capability interface for the user side of the preconditioner.

    ``evaluate_local`` returns the local part of ``G(t, y, y')``, an approximation to the DAE
    residual that needs only locally held (plus previously exchanged) data. Raise
    :class:`~bbdpre_jax.errors.RecoverableEvaluationError` to let the integrator retry with a
    smaller step; any other exception aborts the current solve.

    A model may also define ``exchange_halo(t, y, yp)``. It is called once per setup, before
    any local evaluation, and should store received ghost data on ``self``.
    """

    def evaluate_local(self, t: float, y: np.ndarray, yp: np.ndarray) -> Any:
        ...


def _check_flag(flag: int, *, what: str) -> None:
    flag = int(flag)
    if flag == 0:
        return
    if flag > 0:
        raise RecoverableEvaluationError(f"{what} returned recoverable failure flag {flag}")
    raise UnrecoverableEvaluationError(f"{what} returned unrecoverable failure flag {flag}")


class FunctionModel:
    """Adapt plain callables to :class:`LocalModel`.

    Parameters
    ----------
    g_local:
      ``g_local(t, y, yp)`` returning the local ``G`` vector, or ``g_local(t, y, yp, out)``
      filling ``out`` in place and returning an integer flag (``0`` success, ``> 0``
      recoverable, ``< 0`` unrecoverable). Set ``in_place=True`` for the second form.
    g_comm:
      Optional ``g_comm(t, y, yp)`` doing the cross-partition exchange. It may return
      ``None`` or an integer flag with the same meaning.
    """

    def __init__(
        self,
        g_local: Callable[..., Any],
        g_comm: Callable[..., Any] | None = None,
        *,
        in_place: bool = False,
    ) -> None:
        if not callable(g_local):
            raise TypeError("g_local must be callable")
        if g_comm is not None and not callable(g_comm):
            raise TypeError("g_comm must be callable or None")
        self.g_local = g_local
        self.g_comm = g_comm
        self.in_place = bool(in_place)

    def evaluate_local(self, t: float, y: np.ndarray, yp: np.ndarray):
        if self.in_place:
            out = np.zeros(np.shape(y), dtype=np.float64)
            flag = self.g_local(t, y, yp, out)
            _check_flag(0 if flag is None else flag, what="g_local")
            return out
        result = self.g_local(t, y, yp)
        if isinstance(result, (int, np.integer)) and not isinstance(result, bool):
            # Success must return the vector, so any integer is a failure flag.
            if result > 0:
                raise RecoverableEvaluationError(f"g_local returned recoverable failure flag {result}")
            raise UnrecoverableEvaluationError(f"g_local returned flag {result} instead of a vector")
        return result

    def exchange_halo(self, t: float, y: np.ndarray, yp: np.ndarray) -> None:
        if self.g_comm is None:
            return
        flag = self.g_comm(t, y, yp)
        if flag is not None:
            _check_flag(flag, what="g_comm")


def as_local_model(model_or_gres, gcomm=None) -> LocalModel:
    """Accept a :class:`LocalModel` or a bare ``g_local`` callable (plus optional ``gcomm``)."""
    if hasattr(model_or_gres, "evaluate_local"):
        if gcomm is not None:
            raise TypeError("gcomm is only accepted together with a bare g_local callable")
        return model_or_gres
    if callable(model_or_gres):
        return FunctionModel(model_or_gres, gcomm)
    raise TypeError(f"expected a LocalModel or a callable, got {type(model_or_gres).__name__}")


def exchange_halo(model: LocalModel, t: float, y: np.ndarray, yp: np.ndarray) -> bool:
    """Call ``model.exchange_halo`` when the model has one; return whether it was called."""
    fn = getattr(model, "exchange_halo", None)
    if fn is None:
        return False
    fn(t, y, yp)
    return True
