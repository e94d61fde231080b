from __future__ import annotations

from enum import IntEnum


class Status(IntEnum):
    """Return codes of the status-returning facade in :mod:`bbdpre_jax.api`."""

    SUCCESS = 0
    MISSING_CONTEXT = -1
    MISSING_LINEAR_SOLVER_CONTEXT = -2
    ILLEGAL_INPUT = -3
    ALLOCATION_FAILURE = -4
    MISSING_PRECONDITIONER_STATE = -5


class BBDError(Exception):
    """Base class for errors raised by the band-block-diagonal preconditioner."""

    status: Status | None = None


class MissingContextError(BBDError):
    status = Status.MISSING_CONTEXT


class MissingLinearSolverContextError(BBDError):
    status = Status.MISSING_LINEAR_SOLVER_CONTEXT


class MissingPreconditionerStateError(BBDError):
    status = Status.MISSING_PRECONDITIONER_STATE


class IllegalInputError(BBDError, ValueError):
    status = Status.ILLEGAL_INPUT


class AllocationFailureError(BBDError, MemoryError):
    status = Status.ALLOCATION_FAILURE


# ---------------------------------------------------------------------------
# Runtime failures (setup / apply). These carry no facade status: the owning linear
# solver turns them into recoverable / unrecoverable flags for the integrator.


class SetupError(BBDError):
    """Preconditioner setup failed; the previously committed factorization is untouched."""

    recoverable: bool = False


class RecoverableSetupError(SetupError):
    recoverable = True


class UnrecoverableSetupError(SetupError):
    recoverable = False


class UnrecoverableSolveError(BBDError):
    """Applying the preconditioner failed (no factorization, bad shape, LAPACK error)."""


# Signals raised by user callbacks (the `+1` / `-1` return codes of a flag-returning callback).


class EvaluationError(Exception):
    recoverable: bool = False


class RecoverableEvaluationError(EvaluationError):
    recoverable = True


class UnrecoverableEvaluationError(EvaluationError):
    recoverable = False
