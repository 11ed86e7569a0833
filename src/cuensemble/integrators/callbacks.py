"""Discrete callbacks evaluated by lanes after every step.

A :class:`DiscreteCallback` pairs ``condition(u, t, p) -> bool`` with
``affect(u, t, p) -> int``. When the condition holds, ``affect`` may modify
``u`` in place and returns :data:`CONTINUE` or :data:`TERMINATE`. Both
functions must be compilable by Numba.

Callbacks in a :class:`CallbackSet` run in order; a later callback sees the
state left by an earlier one.
"""

from typing import Callable, Tuple, Union

from attrs import define, field, validators

from cuensemble._utils import PrecisionDType
from cuensemble.backends import Backend, device_function
from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)

#: ``affect`` return value: keep stepping.
CONTINUE = 0
#: ``affect`` return value: stop this lane.
TERMINATE = 1

# Status bits returned by the compiled callback chain.
STATUS_FIRED = 1
STATUS_TERMINATE = 2
STATUS_SAVE = 4


@define(frozen=True)
class DiscreteCallback:
    """Condition/affect pair checked at the end of every step.

    Parameters
    ----------
    condition
        ``condition(u, t, p)``; truthy when the callback should fire.
    affect
        ``affect(u, t, p)``; may modify ``u`` and returns ``CONTINUE`` or
        ``TERMINATE``.
    save
        Save the state after ``affect`` runs. The save replaces the lane's
        regular save for that step.
    """

    condition: Callable = field()
    affect: Callable = field()
    save: bool = field(default=True, validator=validators.instance_of(bool))


def _as_callbacks(value) -> Tuple[DiscreteCallback, ...]:
    if value is None:
        return ()
    if isinstance(value, DiscreteCallback):
        return (value,)
    if isinstance(value, CallbackSet):
        return value.callbacks
    return tuple(value)


@define(frozen=True)
class CallbackSet:
    """Ordered collection of :class:`DiscreteCallback`."""

    callbacks: Tuple[DiscreteCallback, ...] = field(
        factory=tuple,
        converter=_as_callbacks,
        validator=validators.deep_iterable(
            validators.instance_of(DiscreteCallback)
        ),
    )

    def __len__(self) -> int:
        return len(self.callbacks)


CallbackLike = Union[None, DiscreteCallback, CallbackSet]


@define
class CallbackChainConfig(CUDAFactoryConfig):
    """Compile settings for :class:`CallbackChain`."""

    callbacks: CallbackSet = field(
        factory=CallbackSet, converter=CallbackSet
    )
    backend: Backend = field(
        default=Backend.CUDA,
        converter=Backend,
        validator=validators.instance_of(Backend),
    )


@define
class CallbackChainCache(CUDADispatcherCache):
    """Cache container for :class:`CallbackChain` outputs."""

    apply_callbacks: Callable = field()


def _chain(callbacks: Tuple[DiscreteCallback, ...], backend: Backend):
    """Compile ``callbacks`` into one function returning OR-ed status bits."""
    if not callbacks:
        def no_callbacks(u, t, p):
            return 0
        return device_function(no_callbacks, backend)

    head = callbacks[0]
    rest = _chain(callbacks[1:], backend)
    condition = device_function(head.condition, backend)
    affect = device_function(head.affect, backend)
    fired_status = STATUS_FIRED | (STATUS_SAVE if head.save else 0)

    def apply_callbacks(u, t, p):
        status = 0
        if condition(u, t, p):
            status = fired_status
            if affect(u, t, p) == TERMINATE:
                status = status | STATUS_TERMINATE
        return status | rest(u, t, p)

    return device_function(apply_callbacks, backend)


class CallbackChain(CUDAFactory):
    """Factory compiling a callback set into one lane function.

    ``apply_callbacks(u, t, p)`` returns a combination of
    :data:`STATUS_FIRED`, :data:`STATUS_TERMINATE` and :data:`STATUS_SAVE`,
    or 0 when nothing fired.
    """

    def __init__(
        self,
        precision: PrecisionDType,
        callback: CallbackLike = None,
        backend: Backend = Backend.CUDA,
    ) -> None:
        super().__init__()
        self.setup_compile_settings(
            CallbackChainConfig(
                precision=precision,
                callbacks=CallbackSet(callback),
                backend=backend,
            )
        )

    def build(self) -> CallbackChainCache:
        config = self.compile_settings
        return CallbackChainCache(
            apply_callbacks=_chain(config.callbacks.callbacks, config.backend)
        )

    @property
    def has_callbacks(self) -> bool:
        return len(self.compile_settings.callbacks) > 0

    @property
    def apply_callbacks(self) -> Callable:
        return self.get_cached_output("apply_callbacks")
