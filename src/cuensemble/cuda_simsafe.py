"""Simulation-safe CUDA helpers.

This module centralises compatibility utilities for environments running with
``NUMBA_ENABLE_CUDASIM=1``.  It exposes a consistent surface so callers can
import CUDA-facing helpers without branching on simulator state.
"""
from __future__ import annotations

import os
from typing import Any, Callable

from numba import cuda


CUDA_SIMULATION: bool = os.environ.get("NUMBA_ENABLE_CUDASIM") == "1"


if CUDA_SIMULATION:  # pragma: no cover - simulated
    from numba.cuda.simulator.cudadrv.devicearray import FakeCUDAArray

    DeviceNDArrayBase = FakeCUDAArray

else:  # pragma: no cover - exercised in GPU environments
    from numba.cuda.cudadrv.devicearray import (  # type: ignore[attr-defined]
        DeviceNDArrayBase,
    )


def is_cuda_array(value: Any) -> bool:
    """Check whether ``value`` is resident on the CUDA device."""

    if CUDA_SIMULATION:
        return isinstance(value, DeviceNDArrayBase)
    return cuda.is_cuda_array(value)


def is_devfunc(func: Callable[..., Any]) -> bool:
    """Test whether ``func`` represents a Numba CUDA device function.

    Parameters
    ----------
    func
        Callable object to inspect for CUDA device metadata.

    Returns
    -------
    bool
        ``True`` when ``func`` is tagged as a CUDA device function.
    """

    if CUDA_SIMULATION:  # pragma: no cover - simulated
        return bool(getattr(func, "_device", False))
    target_options = getattr(func, "targetoptions", None)
    if isinstance(target_options, dict):
        return bool(target_options.get("device", False))
    return False


__all__ = [
    "CUDA_SIMULATION",
    "DeviceNDArrayBase",
    "is_devfunc",
    "is_cuda_array",
]
