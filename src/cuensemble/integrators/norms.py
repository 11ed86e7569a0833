"""Scaled RMS error norm used to accept or reject adaptive steps.

Published Classes
-----------------
:class:`ScaledNormConfig`
    Configuration container for the scaled norm factory.

:class:`ScaledNorm`
    Factory compiling a lane function that returns the tolerance-scaled
    root-mean-square of an error estimate.

    >>> from numpy import float64
    >>> norm = ScaledNorm(precision=float64, n=4)
    >>> norm.n
    4
"""

from typing import Callable

from attrs import define, field, validators

from cuensemble._utils import PrecisionDType, getype_validator
from cuensemble.backends import Backend, device_function
from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)


@define
class ScaledNormConfig(CUDAFactoryConfig):
    """Configuration for :class:`ScaledNorm`.

    Attributes
    ----------
    n : int
        Length of the vectors the norm runs over.
    backend : Backend
        Target the norm is compiled for.
    """

    n: int = field(default=1, validator=getype_validator(int, 1))
    backend: Backend = field(
        default=Backend.CUDA,
        converter=Backend,
        validator=validators.instance_of(Backend),
    )

    @property
    def tol_floor(self) -> float:
        """Minimum tolerance, guarding against division by zero."""
        return self.precision(1e-30)


@define
class ScaledNormCache(CUDADispatcherCache):
    """Cache container for :class:`ScaledNorm` outputs."""

    scaled_norm: Callable = field()


class ScaledNorm(CUDAFactory):
    """Factory for the scaled RMS error norm.

    The compiled function evaluates::

        sqrt(mean((err_i / (abstol + reltol * max(|u_i|, |u_new_i|)))**2))

    and a step is acceptable when the result is at most one.
    """

    def __init__(
        self,
        precision: PrecisionDType,
        n: int,
        backend: Backend = Backend.CUDA,
    ) -> None:
        super().__init__()
        self.setup_compile_settings(
            ScaledNormConfig(precision=precision, n=n, backend=backend)
        )

    def build(self) -> ScaledNormCache:
        config = self.compile_settings
        n = config.n
        precision = config.precision
        inv_n = precision(1.0 / n)
        floor = config.tol_floor
        zero = precision(0.0)

        def scaled_norm(err, u_old, u_new, abstol, reltol):
            """Tolerance-scaled RMS of ``err``."""
            acc = zero
            for i in range(n):
                scale = abstol + reltol * max(abs(u_old[i]), abs(u_new[i]))
                scale = max(scale, floor)
                ratio = err[i] / scale
                acc += ratio * ratio
            return (acc * inv_n) ** 0.5

        return ScaledNormCache(
            scaled_norm=device_function(scaled_norm, config.backend)
        )

    @property
    def n(self) -> int:
        return self.compile_settings.n

    @property
    def scaled_norm(self) -> Callable:
        return self.get_cached_output("scaled_norm")
