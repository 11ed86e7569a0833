"""Algorithm records, Butcher tableaus and lane integrator factories."""

from cuensemble.integrators.algorithms.tableaus import (
    BOGACKI_SHAMPINE_32,
    ButcherTableau,
    CASH_KARP_54,
    CLASSICAL_RK4,
    DORMAND_PRINCE_54,
    HEUN_2,
)
from cuensemble.integrators.algorithms.variants import (
    AlgorithmFamily,
    GPUAlgorithm,
    GPUBS3,
    GPUCashKarp,
    GPUDP5,
    GPUEM,
    GPUERK,
    GPURK4,
    GPUSIEA,
)

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
    "HEUN_2",
    "CLASSICAL_RK4",
    "BOGACKI_SHAMPINE_32",
    "DORMAND_PRINCE_54",
    "CASH_KARP_54",
]
