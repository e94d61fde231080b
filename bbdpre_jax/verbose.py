from __future__ import annotations

from collections.abc import Callable
import sys
import time
from typing import TextIO


EmitFn = Callable[[int, str], None]


def make_emit(*, verbose: int = 0, quiet: bool = False, stream: TextIO | None = None, prefix: str = "") -> EmitFn:
    """Create the lightweight structured printer used throughout `bbdpre_jax`.

    This is intentionally *not* the stdlib `logging` module: one deterministic line per event,
    which is what a per-partition log of an SPMD run needs.

    Levels used by the preconditioner: 0 for setup failures and grouping warnings, 1 for
    init/reinit/destroy summaries, 2 for per-setup statistics (``ngroups``, ``nge``, timing).

    Parameters
    ----------
    verbose:
      Print messages with `level <= verbose`.
    quiet:
      Suppress all messages.
    stream:
      Destination stream (default: stdout).
    prefix:
      Optional line prefix (e.g. ``"[rank 3] "``).
    """
    if stream is None:
        stream = sys.stdout

    v = int(verbose)
    q = bool(quiet)
    p = str(prefix)

    def emit(level: int, msg: str) -> None:
        if q:
            return
        if v >= int(level):
            print(f"{p}{msg}", file=stream, flush=True)

    return emit


def null_emit(level: int, msg: str) -> None:
    del level, msg


class Timer:
    """Small helper for elapsed-time prints."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def elapsed_s(self) -> float:
        return float(time.perf_counter() - self._t0)


def with_prefix(emit: EmitFn, prefix: str) -> EmitFn:
    """Wrap ``emit`` so every line carries ``prefix``, e.g. one ``"[part 2] "`` per partition."""
    p = str(prefix)

    def prefixed(level: int, msg: str) -> None:
        emit(level, f"{p}{msg}")

    return prefixed
