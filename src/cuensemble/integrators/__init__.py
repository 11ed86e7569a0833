"""
Per-lane integration machinery.

Lane kernels advance one problem each by repeatedly calling the compiled
``init``/``step``/``savevalues``/``interpolate`` functions of an integrator
factory. Algorithms are chosen with the records in
:mod:`cuensemble.integrators.algorithms`; callbacks are declared with
:class:`DiscreteCallback`.
"""

from cuensemble.integrators.algorithms import *  # noqa
from cuensemble.integrators.callbacks import (
    CONTINUE,
    CallbackSet,
    DiscreteCallback,
    TERMINATE,
)
from cuensemble.integrators.lane_state import ReturnCode, SaveMode

__all__ = [
    "AlgorithmFamily",
    "GPUAlgorithm",
    "GPUERK",
    "GPURK4",
    "GPUBS3",
    "GPUDP5",
    "GPUCashKarp",
    "GPUEM",
    "GPUSIEA",
    "ButcherTableau",
    "DiscreteCallback",
    "CallbackSet",
    "CONTINUE",
    "TERMINATE",
    "ReturnCode",
    "SaveMode",
]
