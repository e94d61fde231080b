from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from typing import Callable

from .config import env_flag


def _rss_mb() -> float | None:
    try:
        import resource  # noqa: PLC0415
    except ImportError:
        return None
    rss = float(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    if sys.platform == "darwin":
        return rss / (1024.0 * 1024.0)
    return rss / 1024.0


@dataclass
class SimpleProfiler:
    """Wall-clock and peak-RSS marks for the phases of a preconditioner setup/solve."""

    emit: Callable[[int, str], None] | None = None
    t0: float = field(default_factory=time.perf_counter)
    last: float = field(default_factory=time.perf_counter)
    rss0_mb: float | None = field(default_factory=_rss_mb)
    entries: list[dict[str, float | str | None]] = field(default_factory=list)

    def mark(self, label: str) -> None:
        now = time.perf_counter()
        rss_mb = _rss_mb()
        entry = {
            "label": label,
            "dt_s": now - self.last,
            "total_s": now - self.t0,
            "rss_mb": rss_mb,
            "drss_mb": (rss_mb - self.rss0_mb) if (rss_mb is not None and self.rss0_mb is not None) else None,
        }
        self.entries.append(entry)
        if self.emit is not None:
            rss_txt = f"{rss_mb:.1f}" if rss_mb is not None else "na"
            drss_txt = f"{entry['drss_mb']:.1f}" if entry["drss_mb"] is not None else "na"
            self.emit(
                0,
                f"profiling: {label} dt_s={entry['dt_s']:.3f} total_s={entry['total_s']:.3f} "
                f"rss_mb={rss_txt} drss_mb={drss_txt}",
            )
        self.last = now


def maybe_profiler(emit: Callable[[int, str], None] | None = None) -> SimpleProfiler | None:
    if env_flag("BBDPRE_JAX_PROFILE"):
        return SimpleProfiler(emit=emit)
    return None
