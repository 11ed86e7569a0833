"""Ensemble dispatch, save-policy resolution and buffer allocation."""

from cuensemble.batchsolving.dispatch import (
    clear_kernel_cache,
    get_lane_kernel,
    vectorized_asolve,
    vectorized_solve,
)

__all__ = [
    "vectorized_solve",
    "vectorized_asolve",
    "clear_kernel_cache",
    "get_lane_kernel",
]
