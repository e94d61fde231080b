from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import jax
import jax.numpy as jnp

from .errors import IllegalInputError
from .preconditioner import BBDPreconditioner
from .verbose import EmitFn, null_emit, with_prefix


def partition_ranges(n_global: int, n_parts: int) -> list[tuple[int, int]]:
    """Split ``0..n_global-1`` into ``n_parts`` contiguous ranges whose sizes differ by at most one."""
    n_global = int(n_global)
    n_parts = int(n_parts)
    if n_parts <= 0:
        raise ValueError(f"n_parts must be positive, got {n_parts}")
    if n_global < n_parts:
        raise ValueError(f"cannot split {n_global} unknowns into {n_parts} non-empty partitions")
    base, extra = divmod(n_global, n_parts)
    out = []
    start = 0
    for p in range(n_parts):
        stop = start + base + (1 if p < extra else 0)
        out.append((start, stop))
        start = stop
    return out


@dataclass(frozen=True)
class LocalPartition:
    """Index range ``[start, stop)`` of the global state vector owned by one process."""

    start: int
    stop: int
    n_global: int

    def __post_init__(self) -> None:
        if not (0 <= self.start < self.stop <= self.n_global):
            raise ValueError(f"invalid partition [{self.start}, {self.stop}) of {self.n_global}")

    @property
    def n_local(self) -> int:
        return int(self.stop - self.start)

    def extract(self, v) -> np.ndarray:
        return np.asarray(v, dtype=np.float64)[self.start : self.stop]

    def insert(self, out: np.ndarray, v_local) -> None:
        out[self.start : self.stop] = np.asarray(v_local, dtype=np.float64)

    def halo(self, v, lower: int, upper: int) -> np.ndarray:
        """Local slice padded with ``lower`` values before and ``upper`` after; zeros past the ends."""
        v = np.asarray(v, dtype=np.float64)
        out = np.zeros((int(lower) + self.n_local + int(upper),), dtype=np.float64)
        lo = self.start - int(lower)
        hi = self.stop + int(upper)
        src_lo = max(lo, 0)
        src_hi = min(hi, self.n_global)
        out[src_lo - lo : src_hi - lo] = v[src_lo:src_hi]
        return out


def partitions_for(n_global: int, n_parts: int) -> list[LocalPartition]:
    return [LocalPartition(start=a, stop=b, n_global=int(n_global)) for a, b in partition_ranges(n_global, n_parts)]


class HaloBoard:
    """Single-host stand-in for the neighbour exchange of an SPMD run.

    The driver publishes the global vectors once per setup; each partition's ``exchange_halo``
    then reads its ghost values with :meth:`gather`, which is what a blocking point-to-point
    exchange delivers on a real distributed run.
    """

    def __init__(self, n_global: int) -> None:
        self.n_global = int(n_global)
        self._y: np.ndarray | None = None
        self._yp: np.ndarray | None = None
        self.n_publish = 0

    def publish(self, y, yp) -> None:
        y = np.asarray(y, dtype=np.float64).reshape((-1,))
        yp = np.asarray(yp, dtype=np.float64).reshape((-1,))
        if int(y.shape[0]) != self.n_global or int(yp.shape[0]) != self.n_global:
            raise ValueError(f"published vectors must have length {self.n_global}")
        self._y = y.copy()
        self._yp = yp.copy()
        self.n_publish += 1

    def gather(self, part: LocalPartition, lower: int, upper: int) -> tuple[np.ndarray, np.ndarray]:
        if self._y is None or self._yp is None:
            raise RuntimeError("HaloBoard.gather called before publish")
        return part.halo(self._y, lower, upper), part.halo(self._yp, lower, upper)


class BlockDiagonalBBD:
    """Drive one :class:`BBDPreconditioner` per partition on a single host.

    The assembled preconditioner is block diagonal: ``setup`` refreshes every block from its
    slice of the global vectors and ``solve`` applies each block to its slice. On a distributed
    run every rank does the same for its own block only.
    """

    def __init__(
        self,
        preconditioners: Sequence[BBDPreconditioner],
        partitions: Sequence[LocalPartition],
        *,
        board: HaloBoard | None = None,
        emit: EmitFn | None = None,
    ) -> None:
        if len(preconditioners) != len(partitions) or not preconditioners:
            raise IllegalInputError("need one preconditioner per partition")
        n_global = int(partitions[0].n_global)
        expected_start = 0
        for pre, part in zip(preconditioners, partitions):
            if pre.config.n_local != part.n_local:
                raise IllegalInputError(
                    f"partition [{part.start}, {part.stop}) has {part.n_local} unknowns, "
                    f"preconditioner expects {pre.config.n_local}"
                )
            if part.start != expected_start or part.n_global != n_global:
                raise IllegalInputError("partitions must tile the global vector in order")
            expected_start = part.stop
        if expected_start != n_global:
            raise IllegalInputError("partitions do not cover the global vector")
        self.preconditioners = list(preconditioners)
        self.partitions = list(partitions)
        self.board = board
        self.n_global = n_global
        self.emit = emit if emit is not None else null_emit

    def setup(self, *, t: float, y, yp, cj: float, hh: float = 0.0, ewt=None, constraints=None) -> None:
        """Set up every block; the first failing block's error propagates.

        Blocks set up before the failure keep their new factorization, later blocks keep their
        old one, matching what independent ranks would hold after a failed collective setup.
        """
        y = np.asarray(y, dtype=np.float64)
        yp = np.asarray(yp, dtype=np.float64)
        if self.board is not None:
            self.board.publish(y, yp)
        for rank, (pre, part) in enumerate(zip(self.preconditioners, self.partitions)):
            part_emit = with_prefix(self.emit, f"[part {rank}] ")
            part_emit(2, f"block-diagonal: setup range=[{part.start},{part.stop})")
            pre.setup(
                t=t,
                y=part.extract(y),
                yp=part.extract(yp),
                cj=cj,
                hh=hh,
                ewt=None if ewt is None else part.extract(ewt),
                constraints=None if constraints is None else part.extract(constraints),
            )

    def solve(self, r):
        is_jax = isinstance(r, jax.Array)
        r = np.asarray(r, dtype=np.float64).reshape((-1,))
        z = np.empty_like(r)
        for pre, part in zip(self.preconditioners, self.partitions):
            part.insert(z, pre.solve(part.extract(r)))
        if is_jax:
            return jnp.asarray(z)
        return z

    def get_num_gfn_evals(self) -> int:
        return int(sum(pre.get_num_gfn_evals() for pre in self.preconditioners))

    def get_work_space(self) -> tuple[int, int]:
        real = 0
        ints = 0
        for pre in self.preconditioners:
            r, i = pre.get_work_space()
            real += r
            ints += i
        return real, ints

    def as_jax_preconditioner(self):
        shape = jax.ShapeDtypeStruct((self.n_global,), jnp.float64)

        def _host_solve(r):
            return np.asarray(self.solve(np.asarray(r)), dtype=np.float64)

        def apply(r):
            return jax.pure_callback(_host_solve, shape, r)

        return apply
