"""The closed set of algorithms the dispatcher knows how to launch.

Algorithms are small frozen records. The dispatcher matches on
:class:`AlgorithmFamily` once to pick the integrator factory; everything
else about the method lives in the record's fields.
"""

from enum import Enum

import attrs

from cuensemble.integrators.algorithms.tableaus import (
    BOGACKI_SHAMPINE_32,
    ButcherTableau,
    CASH_KARP_54,
    CLASSICAL_RK4,
    DORMAND_PRINCE_54,
)


class AlgorithmFamily(Enum):
    """Kernel family an algorithm is dispatched to."""

    ERK = "erk"
    SDE_EM = "sde_em"
    SDE_SIEA = "sde_siea"

    @property
    def is_sde(self) -> bool:
        return self is not AlgorithmFamily.ERK


@attrs.define(frozen=True)
class GPUAlgorithm:
    """Base record for every algorithm variant."""

    family = AlgorithmFamily.ERK
    #: Whether the algorithm requires diagonal noise.
    requires_diagonal_noise = False

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def supports_adaptive(self) -> bool:
        return False


@attrs.define(frozen=True)
class GPUERK(GPUAlgorithm):
    """Explicit Runge--Kutta method described by ``tableau``."""

    tableau: ButcherTableau = attrs.field(
        default=CLASSICAL_RK4,
        validator=attrs.validators.instance_of(ButcherTableau),
    )

    @property
    def supports_adaptive(self) -> bool:
        return self.tableau.has_error_estimate

    @property
    def order(self) -> int:
        return self.tableau.order


@attrs.define(frozen=True)
class GPURK4(GPUERK):
    """Classical fourth-order Runge--Kutta (fixed step only)."""

    tableau: ButcherTableau = attrs.field(default=CLASSICAL_RK4, init=False)


@attrs.define(frozen=True)
class GPUBS3(GPUERK):
    """Bogacki--Shampine 3(2)."""

    tableau: ButcherTableau = attrs.field(
        default=BOGACKI_SHAMPINE_32, init=False
    )


@attrs.define(frozen=True)
class GPUDP5(GPUERK):
    """Dormand--Prince 5(4)."""

    tableau: ButcherTableau = attrs.field(
        default=DORMAND_PRINCE_54, init=False
    )


@attrs.define(frozen=True)
class GPUCashKarp(GPUERK):
    """Cash--Karp 5(4)."""

    tableau: ButcherTableau = attrs.field(default=CASH_KARP_54, init=False)


@attrs.define(frozen=True)
class GPUEM(GPUAlgorithm):
    """Euler--Maruyama; diagonal or non-diagonal noise."""

    family = AlgorithmFamily.SDE_EM


@attrs.define(frozen=True)
class GPUSIEA(GPUAlgorithm):
    """Stochastic improved Euler (Roberts, 2012); diagonal noise only."""

    family = AlgorithmFamily.SDE_SIEA
    requires_diagonal_noise = True
