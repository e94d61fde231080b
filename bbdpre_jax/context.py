from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .linear_solver import KrylovLinearSolver
from .verbose import EmitFn, null_emit


@dataclass
class IntegratorContext:
    """The slice of DAE integrator state the preconditioner needs.

    The integrator owns this object for its lifetime and passes it to every preconditioner
    operation. The linear solver (and through it the preconditioner) is a field here, so there
    is no ambient global state.

    Attributes
    ----------
    t:
      Current time.
    hh:
      Current step size.
    cj:
      Scalar ``alpha/h`` in the iteration matrix ``dF/dy + cj dF/dy'``.
    ewt:
      Optional error weights of the local block; ``1/ewt`` floors the difference increments.
    constraints:
      Optional inequality constraints (``0``, ``+-1``, ``+-2``) of the local block.
    """

    t: float = 0.0
    hh: float = 0.0
    cj: float = 1.0
    ewt: np.ndarray | None = None
    constraints: np.ndarray | None = None
    linear_solver: KrylovLinearSolver | None = None
    emit: EmitFn = field(default=null_emit)

    def advance(self, *, t: float, hh: float, cj: float, ewt=None) -> None:
        """Record the integrator's state for the next setup request."""
        self.t = float(t)
        self.hh = float(hh)
        self.cj = float(cj)
        if ewt is not None:
            self.ewt = np.asarray(ewt, dtype=np.float64)

    def free(self) -> None:
        """Tear down the context, destroying the preconditioner it owns."""
        ls = self.linear_solver
        if ls is not None and ls.preconditioner is not None:
            ls.preconditioner.destroy()
            ls.preconditioner = None
        self.linear_solver = None
