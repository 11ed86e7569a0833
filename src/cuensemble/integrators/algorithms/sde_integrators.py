"""Fixed-step integrators for stochastic problems.

Wiener increments come from standard normals drawn on the host before
launch, one row of ``noise_draws`` values per step, and are scaled by
``sqrt(h)`` in the lane. Step ``k`` of a lane reads row ``k`` of its noise
block; the dispatcher draws enough rows for the longest lane span.

Both integrators use straight-line interpolation within a step.
"""

import math

from attrs import define, field

from cuensemble._utils import getype_validator
from cuensemble.backends import device_function
from cuensemble.integrators.algorithms.base_integrator import (
    BaseIntegrator,
    IntegratorCache,
    IntegratorConfig,
    build_init,
    linear_interpolation,
)
from cuensemble.integrators.lane_state import (
    GRID_IDX,
    STEP_COUNT,
    T_NOW,
    T_PREV,
    TSTOP_IDX,
)


@define
class SDEIntegratorConfig(IntegratorConfig):
    """Integrator settings plus the noise structure.

    Attributes
    ----------
    g : callable
        Noise rate ``g(du, u, p, t)``.
    n_noise : int
        Number of Wiener processes; equals ``n`` for diagonal noise.
    diagonal_noise : bool
        ``du`` is a vector when True and an ``(n, n_noise)`` matrix
        otherwise.
    """

    g: object = field(default=None, eq=False)
    n_noise: int = field(default=1, validator=getype_validator(int, 1))
    diagonal_noise: bool = field(default=True)


class SDEIntegrator(BaseIntegrator):
    """Shared construction for the SDE integrators."""

    def __init__(self, precision, n, f, g, n_noise=None,
                 diagonal_noise=True, **kwargs):
        if kwargs.get("adaptive", False):
            raise ValueError(
                f"{type(self).__name__} only supports fixed time steps."
            )
        config = SDEIntegratorConfig(
            precision=precision,
            n=n,
            f=f,
            g=g,
            n_noise=n if n_noise is None else n_noise,
            diagonal_noise=diagonal_noise,
            **kwargs,
        )
        super().__init__(config)

    @property
    def diagonal_noise(self) -> bool:
        return self.compile_settings.diagonal_noise

    @property
    def n_noise(self) -> int:
        return self.compile_settings.n_noise

    @property
    def matrix_scratch_shape(self):
        if self.diagonal_noise:
            return (1, 1)
        return (self.n, self.n_noise)

    def _no_prepare(self):
        def prepare(p, fs, tst):
            return None
        return device_function(prepare, self.backend)

    def _fixed_step(self, advance, next_fixed_time, after_step):
        """Wrap ``advance(p, t, h, z, fs, ms)`` in the fixed-grid schedule."""

        def step(p, tstops, noise, ts, us, grid, fs, ms, tst, ist):
            t = tst[T_NOW]
            t_next, on_grid, hits_stop = next_fixed_time(tstops, tst, ist)
            z = noise[ist[STEP_COUNT]]
            advance(p, t, t_next - t, z, fs, ms)
            tst[T_PREV] = t
            tst[T_NOW] = t_next
            if on_grid:
                ist[GRID_IDX] += 1
            if hits_stop:
                ist[TSTOP_IDX] += 1
            return after_step(p, ts, us, grid, fs, tst, ist)

        return device_function(step, self.backend)


class EMIntegrator(SDEIntegrator):
    """Euler--Maruyama, ``u += f h + g dW``.

    Float scratch blocks of ``n``: state, previous state, drift, diagonal
    noise rate.
    """

    @property
    def scratch_width(self) -> int:
        return 4 * self.n

    @property
    def noise_draws(self) -> int:
        return self.n_noise

    def build(self) -> IntegratorCache:
        config = self.compile_settings
        backend = config.backend
        n = config.n
        m = config.n_noise
        diagonal = config.diagonal_noise
        zero = config.precision(0.0)
        f = device_function(config.f, backend)
        g = device_function(config.g, backend)
        drift_ = 2 * n
        rate_ = 3 * n

        if diagonal:
            def advance(p, t, h, z, fs, ms):
                sqrt_h = math.sqrt(h)
                u = fs[0:n]
                f(fs[drift_:drift_ + n], u, p, t)
                g(fs[rate_:rate_ + n], u, p, t)
                for i in range(n):
                    fs[n + i] = fs[i]
                    fs[i] = (fs[i] + fs[drift_ + i] * h
                             + fs[rate_ + i] * z[i] * sqrt_h)
        else:
            def advance(p, t, h, z, fs, ms):
                sqrt_h = math.sqrt(h)
                u = fs[0:n]
                f(fs[drift_:drift_ + n], u, p, t)
                g(ms, u, p, t)
                for i in range(n):
                    noise_term = zero
                    for j in range(m):
                        noise_term += ms[i, j] * z[j]
                    fs[n + i] = fs[i]
                    fs[i] = fs[i] + fs[drift_ + i] * h + noise_term * sqrt_h

        interpolate = linear_interpolation(n, backend)
        savevalues, after_step, next_fixed_time = self.common_functions(
            interpolate
        )
        step = self._fixed_step(
            device_function(advance, backend), next_fixed_time, after_step
        )
        return IntegratorCache(
            init=build_init(n, self._no_prepare(), backend),
            step=step,
            savevalues=savevalues,
            interpolate=interpolate,
        )


class SIEAIntegrator(SDEIntegrator):
    """Stochastic improved Euler for diagonal noise.

    Roberts, A. J. "Modify the improved Euler scheme to integrate stochastic
    differential equations." arXiv:1210.0933 (2012). With ``S = +-1`` drawn
    once per step::

        K1 = h f(t, u) + (dW - S sqrt(h)) g(t, u)
        K2 = h f(t + h, u + K1) + (dW + S sqrt(h)) g(t + h, u + K1)
        u += (K1 + K2) / 2

    Each step draws ``n`` normals for ``dW`` and one more whose sign is
    ``S``. Float scratch blocks of ``n``: state, previous state, drift, noise
    rate, ``K1``, stage state.
    """

    def __init__(self, precision, n, f, g, n_noise=None,
                 diagonal_noise=True, **kwargs):
        if not diagonal_noise:
            raise ValueError("SIEAIntegrator requires diagonal noise.")
        super().__init__(precision, n, f, g, n_noise=n_noise,
                         diagonal_noise=True, **kwargs)

    @property
    def scratch_width(self) -> int:
        return 6 * self.n

    @property
    def noise_draws(self) -> int:
        return self.n + 1

    def build(self) -> IntegratorCache:
        config = self.compile_settings
        backend = config.backend
        n = config.n
        precision = config.precision
        half = precision(0.5)
        zero = precision(0.0)
        f = device_function(config.f, backend)
        g = device_function(config.g, backend)
        drift_ = 2 * n
        rate_ = 3 * n
        k1_ = 4 * n
        stage_ = 5 * n

        def advance(p, t, h, z, fs, ms):
            sqrt_h = math.sqrt(h)
            s_sqrt_h = sqrt_h if z[n] >= zero else -sqrt_h
            for i in range(n):
                fs[n + i] = fs[i]
            u = fs[0:n]
            f(fs[drift_:drift_ + n], u, p, t)
            g(fs[rate_:rate_ + n], u, p, t)
            for i in range(n):
                dw = z[i] * sqrt_h
                k1 = fs[drift_ + i] * h + (dw - s_sqrt_h) * fs[rate_ + i]
                fs[k1_ + i] = k1
                fs[stage_ + i] = fs[i] + k1
            stage = fs[stage_:stage_ + n]
            f(fs[drift_:drift_ + n], stage, p, t + h)
            g(fs[rate_:rate_ + n], stage, p, t + h)
            for i in range(n):
                dw = z[i] * sqrt_h
                k2 = fs[drift_ + i] * h + (dw + s_sqrt_h) * fs[rate_ + i]
                fs[i] = fs[n + i] + half * (fs[k1_ + i] + k2)

        interpolate = linear_interpolation(n, backend)
        savevalues, after_step, next_fixed_time = self.common_functions(
            interpolate
        )
        step = self._fixed_step(
            device_function(advance, backend), next_fixed_time, after_step
        )
        return IntegratorCache(
            init=build_init(n, self._no_prepare(), backend),
            step=step,
            savevalues=savevalues,
            interpolate=interpolate,
        )
