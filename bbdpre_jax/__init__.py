"""Band-block-diagonal preconditioning for Krylov solves inside implicit DAE integrators.

Each process (partition) owns one banded block of the preconditioner. The block is built by
difference quotients of a local approximation ``G(t, y, y')`` to the DAE residual, factored with
LAPACK band LU, and applied from JAX or SciPy Krylov solvers.
"""

from __future__ import annotations

# This must run before any JAX device use.
import os

# Request several host CPU devices, e.g. to emulate one partition per device.
_cpu_devices_env = os.environ.get("BBDPRE_JAX_CPU_DEVICES", "").strip()
if _cpu_devices_env:
    try:
        _cpu_devices = int(_cpu_devices_env)
    except ValueError:
        _cpu_devices = 0
    if _cpu_devices > 0:
        _xla_flags = os.environ.get("XLA_FLAGS", "")
        if "--xla_force_host_platform_device_count" not in _xla_flags:
            flag = f"--xla_force_host_platform_device_count={_cpu_devices}"
            os.environ["XLA_FLAGS"] = f"{_xla_flags} {flag}".strip()

# Difference quotients with sqrt(eps) increments are meaningless in float32.
_disable_x64 = os.environ.get("BBDPRE_JAX_DISABLE_X64", "").strip().lower()
if _disable_x64 not in {"1", "true", "yes", "on"}:
    try:
        from jax import config as _jax_config  # noqa: PLC0415

        _jax_config.update("jax_enable_x64", True)
    except ImportError:
        # Keep import lightweight for tooling that inspects the package without JAX.
        pass

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
