"""Proportional--integral step-size control for adaptive lanes."""

from typing import Callable

from attrs import define, field, validators

from cuensemble._utils import (
    PrecisionDType,
    getype_validator,
    gttype_validator,
    inrangetype_validator,
)
from cuensemble.backends import Backend, device_function
from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)

ALL_STEP_CONTROLLER_PARAMETERS = {
    "kp", "ki", "safety", "min_gain", "max_gain",
}


@define
class PIControllerConfig(CUDAFactoryConfig):
    """Gains and limits of the PI controller.

    Attributes
    ----------
    order : int
        Order of the propagated solution; exponents are scaled by
        ``1 / (order + 1)``.
    kp, ki : float
        Proportional and integral gains.
    safety : float
        Factor applied to every proposed step.
    min_gain, max_gain : float
        Bounds on the ratio between consecutive step sizes.
    """

    order: int = field(default=1, validator=getype_validator(int, 1))
    kp: float = field(default=0.7, validator=gttype_validator(float, 0.0))
    ki: float = field(default=0.4, validator=getype_validator(float, 0.0))
    safety: float = field(
        default=0.9, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    min_gain: float = field(
        default=0.2, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    max_gain: float = field(default=10.0, validator=getype_validator(float,
                                                                     1.0))
    backend: Backend = field(
        default=Backend.CUDA,
        converter=Backend,
        validator=validators.instance_of(Backend),
    )


@define
class PIControllerCache(CUDADispatcherCache):
    """Cache container for :class:`PIController` outputs."""

    step_gain: Callable = field()


class PIController(CUDAFactory):
    """Factory for the PI step-size gain.

    The compiled ``step_gain(err, err_prev)`` returns the factor to multiply
    the current step by::

        safety * err**(-kp/(order+1)) * err_prev**(ki/(order+1))

    clamped to ``[min_gain, max_gain]``. A zero error gives ``max_gain``.
    Rejected steps (``err > 1``) are shrunk with the proportional term only
    and never grow.
    """

    def __init__(
        self,
        precision: PrecisionDType,
        order: int,
        backend: Backend = Backend.CUDA,
        **kwargs,
    ) -> None:
        super().__init__()
        self.setup_compile_settings(
            PIControllerConfig(
                precision=precision, order=order, backend=backend, **kwargs
            )
        )

    def build(self) -> PIControllerCache:
        config = self.compile_settings
        precision = config.precision
        alpha = precision(config.kp / (config.order + 1))
        beta = precision(config.ki / (config.order + 1))
        safety = precision(config.safety)
        min_gain = precision(config.min_gain)
        max_gain = precision(config.max_gain)
        one = precision(1.0)
        tiny = precision(1e-10)

        def step_gain(err, err_prev):
            """Step-size multiplier for error ``err`` after ``err_prev``."""
            if err <= tiny:
                return max_gain
            if err > one:
                gain = safety * err ** (-alpha)
                return max(min(gain, one), min_gain)
            gain = safety * err ** (-alpha) * max(err_prev, tiny) ** beta
            return max(min(gain, max_gain), min_gain)

        return PIControllerCache(
            step_gain=device_function(step_gain, config.backend)
        )

    @property
    def step_gain(self) -> Callable:
        return self.get_cached_output("step_gain")
