"""Problem records and the batch container lanes read from.

A :class:`ProblemBatch` stacks the numeric data of many problems into
``(n_lanes, ...)`` arrays so lane ``i`` reads row ``i``. All problems in a
batch share one right-hand side (and noise rate), which is compiled once and
run by every lane.
"""

from typing import Callable, Optional, Sequence, Tuple

import attrs
import numpy as np

from cuensemble.backends import Backend, get_backend, to_backend, to_host


def _as_state(value) -> np.ndarray:
    array = np.atleast_1d(np.asarray(value))
    if not np.issubdtype(array.dtype, np.floating):
        array = array.astype(np.float64)
    if array.ndim != 1:
        raise ValueError(
            f"u0 must be a one-dimensional vector, got shape {array.shape}."
        )
    return array


def _as_params(value) -> np.ndarray:
    if value is None:
        return np.empty(0, dtype=np.float64)
    return np.atleast_1d(np.asarray(value, dtype=np.float64)).ravel()


def _as_tspan(value) -> Tuple[float, float]:
    t0, tf = value
    t0, tf = float(t0), float(tf)
    if not tf > t0:
        raise ValueError(
            f"tspan must satisfy t0 < tf, got ({t0}, {tf})."
        )
    return t0, tf


@attrs.define(frozen=True, eq=False)
class ODEProblem:
    """An initial value problem ``du/dt = f(u, p, t)``.

    Parameters
    ----------
    f
        In-place right-hand side ``f(du, u, p, t)`` written in the subset of
        Python that Numba compiles.
    u0
        Initial state vector. Its floating dtype sets the precision of the
        solve.
    tspan
        ``(t0, tf)`` with ``t0 < tf``.
    p
        Parameter vector, may be empty.
    kwargs
        Per-problem overrides. ``saveat`` replaces the call-level save grid
        for this problem's lane.
    """

    f: Callable = attrs.field()
    u0: np.ndarray = attrs.field(converter=_as_state)
    tspan: Tuple[float, float] = attrs.field(converter=_as_tspan)
    p: np.ndarray = attrs.field(factory=lambda: np.empty(0),
                                converter=_as_params)
    kwargs: dict = attrs.field(factory=dict)

    @property
    def precision(self) -> type:
        """Numpy scalar type of the state."""
        return self.u0.dtype.type

    @property
    def time_precision(self) -> type:
        """Numpy scalar type used for times and step sizes."""
        return self.precision

    @property
    def n_states(self) -> int:
        return self.u0.shape[0]

    @property
    def is_sde(self) -> bool:
        return False

    def remake(self, **changes) -> "ODEProblem":
        """Return a copy with the given fields replaced."""
        return attrs.evolve(self, **changes)


@attrs.define(frozen=True, eq=False)
class SDEProblem(ODEProblem):
    """A stochastic problem ``du = f(u, p, t) dt + g(u, p, t) dW``.

    ``g(du, u, p, t)`` fills ``du`` with the noise rate. With
    ``noise_rate_prototype=None`` the noise is diagonal and ``du`` is a
    vector of length ``n``; otherwise ``du`` is an ``(n, m)`` matrix shaped
    like the prototype and ``m`` Wiener processes drive the system.
    """

    g: Callable = attrs.field(kw_only=True)
    noise_rate_prototype: Optional[np.ndarray] = attrs.field(
        default=None, kw_only=True
    )

    @noise_rate_prototype.validator
    def _check_prototype(self, attribute, value):
        if value is None:
            return
        shape = np.shape(value)
        if len(shape) != 2 or shape[0] != self.u0.shape[0]:
            raise ValueError(
                "noise_rate_prototype must have shape (n_states, n_noise), "
                f"got {shape} for {self.u0.shape[0]} states."
            )

    @property
    def is_sde(self) -> bool:
        return True

    @property
    def is_diagonal_noise(self) -> bool:
        return self.noise_rate_prototype is None

    @property
    def noise_dim(self) -> int:
        """Number of independent Wiener processes."""
        if self.noise_rate_prototype is None:
            return self.n_states
        return np.shape(self.noise_rate_prototype)[1]

    @property
    def noise_rate_shape(self) -> Optional[Tuple[int, int]]:
        """Shape of the noise-rate matrix, or None for diagonal noise."""
        if self.noise_rate_prototype is None:
            return None
        return tuple(np.shape(self.noise_rate_prototype))


@attrs.define(eq=False)
class ProblemBatch:
    """Lane-indexed stack of problems.

    Attributes
    ----------
    problems
        The source problems, in lane order.
    u0, p, tspan
        ``(n_lanes, n)``, ``(n_lanes, n_p)`` and ``(n_lanes, 2)`` arrays, on
        the host or the CUDA device.
    saveat_overrides
        Per-lane ``saveat`` from each problem's ``kwargs`` (None where the
        lane has no override).
    """

    problems: Tuple[ODEProblem, ...] = attrs.field(converter=tuple)
    u0 = attrs.field()
    p = attrs.field()
    tspan = attrs.field()
    saveat_overrides: Tuple[Optional[np.ndarray], ...] = attrs.field(
        converter=tuple
    )

    @classmethod
    def from_problems(cls, problems: Sequence[ODEProblem]) -> "ProblemBatch":
        """Stack ``problems`` into host arrays.

        Raises
        ------
        ValueError
            If the batch is empty or its problems disagree on kind, state
            size, parameter size, precision, right-hand side, or noise
            structure.
        """
        problems = tuple(problems)
        if not problems:
            raise ValueError("A batch needs at least one problem.")
        first = problems[0]
        for prob in problems[1:]:
            if type(prob) is not type(first):
                raise ValueError("All problems in a batch must be one kind.")
            if prob.n_states != first.n_states:
                raise ValueError(
                    "All problems in a batch must have the same number of "
                    "states."
                )
            if prob.p.shape != first.p.shape:
                raise ValueError(
                    "All problems in a batch must have the same number of "
                    "parameters."
                )
            if prob.precision is not first.precision:
                raise ValueError(
                    "All problems in a batch must share a precision."
                )
            if prob.f is not first.f:
                raise ValueError(
                    "All problems in a batch must share one right-hand side."
                )
            if first.is_sde and prob.g is not first.g:
                raise ValueError(
                    "All problems in a batch must share one noise rate."
                )
            if (first.is_sde
                    and prob.noise_rate_shape != first.noise_rate_shape):
                raise ValueError(
                    "All problems in a batch must share one noise "
                    f"structure, got {prob.noise_rate_shape} and "
                    f"{first.noise_rate_shape}."
                )

        precision = first.precision
        u0 = np.stack([prob.u0 for prob in problems]).astype(precision)
        n_params = max(first.p.shape[0], 1)
        p = np.zeros((len(problems), n_params), dtype=precision)
        for lane, prob in enumerate(problems):
            p[lane, :prob.p.shape[0]] = prob.p
        tspan = np.asarray([prob.tspan for prob in problems],
                           dtype=precision)
        overrides = []
        for prob in problems:
            saveat = prob.kwargs.get("saveat")
            if saveat is not None:
                saveat = np.atleast_1d(np.asarray(saveat, dtype=precision))
            overrides.append(saveat)
        return cls(problems, u0, p, tspan, overrides)

    def __len__(self) -> int:
        return len(self.problems)

    def __getitem__(self, lane: int) -> ODEProblem:
        return self.problems[lane]

    def __iter__(self):
        return iter(self.problems)

    @property
    def template(self) -> ODEProblem:
        return self.problems[0]

    @property
    def backend(self) -> Backend:
        """Backend the batch's arrays are resident on."""
        return get_backend(self.u0)

    @property
    def location(self) -> str:
        """``"device"`` or ``"host"``."""
        return "device" if self.backend is Backend.CUDA else "host"

    def adapt(self, backend: Backend) -> "ProblemBatch":
        """Return a batch whose arrays live on ``backend``."""
        return attrs.evolve(
            self,
            u0=to_backend(self.u0, backend),
            p=to_backend(self.p, backend),
            tspan=to_backend(self.tspan, backend),
        )

    def to_device(self) -> "ProblemBatch":
        return self.adapt(Backend.CUDA)

    def to_host(self) -> "ProblemBatch":
        return attrs.evolve(
            self,
            u0=to_host(self.u0),
            p=to_host(self.p),
            tspan=to_host(self.tspan),
        )
