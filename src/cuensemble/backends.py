"""Execution backends for ensemble lanes.

A lane body is ordinary Python compiled once per backend: CUDA device
functions via :func:`numba.cuda.jit` for :attr:`Backend.CUDA`, and
:func:`numba.njit` functions for :attr:`Backend.CPU`. This module hides
that choice behind a handful of helpers so integrator factories can write
one body for both targets.
"""

from enum import Enum
from typing import Any, Callable, Optional, Tuple

import numpy as np
import numba
from numba import cuda

from cuensemble.cuda_simsafe import (
    CUDA_SIMULATION,
    is_cuda_array,
    is_devfunc,
)


class Backend(str, Enum):
    """Where lanes execute and where their buffers live."""

    CUDA = "cuda"
    CPU = "cpu"


def get_backend(array: Any) -> Backend:
    """Return the backend an array is resident on."""
    if is_cuda_array(array):
        return Backend.CUDA
    return Backend.CPU


def python_function(func: Callable) -> Callable:
    """Return the pure-Python function behind a Numba dispatcher.

    User right-hand sides may arrive already decorated for either target;
    lanes recompile them for the backend they run on.
    """
    py_func = getattr(func, "py_func", None)
    if py_func is not None:
        return py_func
    if CUDA_SIMULATION and is_devfunc(func):
        return func.fn
    return func


def device_function(func: Callable, backend: Backend) -> Callable:
    """Compile ``func`` as a lane-callable function for ``backend``."""
    func = python_function(func)
    if backend is Backend.CUDA:
        return cuda.jit(device=True, inline=True)(func)
    return numba.njit(func)


def allocate(backend: Backend, shape: Tuple[int, ...], dtype,
             fill: Optional[float] = None):
    """Allocate an array on ``backend``, optionally pre-filled.

    Arrays are zero-filled when ``fill`` is None.
    """
    if fill is None:
        host = np.zeros(shape, dtype=dtype)
    else:
        host = np.full(shape, fill, dtype=dtype)
    return to_backend(host, backend)


def to_backend(array, backend: Backend):
    """Return ``array`` resident on ``backend``, copying only if needed."""
    if backend is Backend.CUDA:
        if is_cuda_array(array):
            return array
        return cuda.to_device(np.ascontiguousarray(array))
    return to_host(array)


def to_host(array) -> np.ndarray:
    """Return a host copy (or the array itself when already on the host)."""
    if is_cuda_array(array):
        return array.copy_to_host()
    return np.asarray(array)


def synchronize(backend: Backend) -> None:
    """Block until every launched lane on ``backend`` has finished.

    Host launches return only after their parallel loop completes.
    """
    if backend is Backend.CUDA:
        cuda.synchronize()
