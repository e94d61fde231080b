from __future__ import annotations

import argparse
import time

import numpy as np


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Backward-Euler steps of the 1D heat equation, GMRES with a band-block-diagonal preconditioner."
    )
    parser.add_argument("--n", type=int, default=400, help="global grid points")
    parser.add_argument("--parts", type=int, default=4, help="partitions (one preconditioner block each)")
    parser.add_argument("--steps", type=int, default=5, help="time steps")
    parser.add_argument("--dt", type=float, default=1e-3, help="step size")
    parser.add_argument("--verbose", type=int, default=1, help="emit level")
    args = parser.parse_args()

    import jax.numpy as jnp

    from bbdpre_jax.linear_solver import gmres_solve
    from bbdpre_jax.partition import BlockDiagonalBBD, HaloBoard, partitions_for
    from bbdpre_jax.preconditioner import BBDPreconditioner
    from bbdpre_jax.verbose import make_emit, with_prefix

    n = int(args.n)
    dx = 1.0 / (n + 1)
    coef = 1.0 / dx**2
    emit = make_emit(verbose=int(args.verbose))

    board = HaloBoard(n)
    parts = partitions_for(n, int(args.parts))

    class HeatBlock:
        # G(t, y, yp) = yp - y_xx on one partition, ghost values from the board.
        def __init__(self, part) -> None:
            self.part = part
            self.y_ext = None

        def exchange_halo(self, t, y, yp) -> None:
            self.y_ext, _ = board.gather(self.part, 1, 1)

        def evaluate_local(self, t, y, yp):
            ext = self.y_ext.copy()
            ext[1:-1] = y
            return np.asarray(yp) - coef * (ext[:-2] - 2.0 * ext[1:-1] + ext[2:])

    pres = [
        BBDPreconditioner.create(
            n_local=p.n_local,
            mudq=1,
            mldq=1,
            mukeep=1,
            mlkeep=1,
            model=HeatBlock(p),
            emit=with_prefix(emit, f"[part {k}] "),
        )
        for k, p in enumerate(parts)
    ]
    bd = BlockDiagonalBBD(pres, parts, board=board, emit=emit)

    def residual(y: np.ndarray, yp: np.ndarray) -> np.ndarray:
        ext = np.concatenate([[0.0], y, [0.0]])
        return yp - coef * (ext[:-2] - 2.0 * ext[1:-1] + ext[2:])

    x = np.linspace(dx, 1.0 - dx, n)
    y = np.sin(np.pi * x)
    dt = float(args.dt)
    cj = 1.0 / dt
    for step in range(int(args.steps)):
        yp0 = np.zeros_like(y)
        t0 = time.perf_counter()
        bd.setup(t=step * dt, y=y, yp=yp0, cj=cj)

        # The residual is linear, so J v = G(y + v, cj v) - G(y, 0).
        g0 = residual(y, yp0)

        def matvec(v):
            ext = jnp.concatenate([jnp.zeros((1,)), v, jnp.zeros((1,))])
            return cj * v - coef * (ext[:-2] - 2.0 * ext[1:-1] + ext[2:])

        result = gmres_solve(
            matvec=matvec,
            b=jnp.asarray(-g0),
            preconditioner=bd.as_jax_preconditioner(),
            tol=1e-10,
            restart=40,
            solve_method="incremental",
            precondition_side="right",
        )
        delta = np.asarray(result.x)
        y = y + delta
        exact = np.exp(-(np.pi**2) * (step + 1) * dt) * np.sin(np.pi * x)
        emit(
            0,
            f"step={step + 1} residual_norm={float(result.residual_norm):.3e} "
            f"max_err={float(np.max(np.abs(y - exact))):.3e} nge={bd.get_num_gfn_evals()} "
            f"elapsed_s={time.perf_counter() - t0:.3f}",
        )


if __name__ == "__main__":
    main()
