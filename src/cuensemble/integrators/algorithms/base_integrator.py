"""Base classes shared by every lane integrator.

Every integrator factory compiles the same four lane functions:

``init(u0, p, t0, tf, dt, abstol, reltol, tstops, fs, tst, ist)``
    Load the initial state and reset the lane's cursors.
``step(p, tstops, noise, ts, us, grid, fs, ms, tst, ist) -> bool``
    Advance one accepted step, run callbacks, and return True when a
    callback already saved the step.
``savevalues(ts, us, grid, fs, tst, ist)``
    Apply the lane's save policy after a step.
``interpolate(t, fs, tst, out)``
    Write the continuous extension at ``t`` within the last step to ``out``.

``fs`` and ``ms`` are the lane's float scratch row and noise-matrix scratch,
``tst`` and ``ist`` its time and integer state rows (see
:mod:`cuensemble.integrators.lane_state`). ``ts`` and ``us`` are the lane's
column of the output buffers, ``grid`` its save grid and ``noise`` its
pre-drawn standard normals.
"""

from abc import abstractmethod
from typing import Callable, Optional, Tuple

from attrs import define, field, validators

from cuensemble._utils import getype_validator
from cuensemble.backends import Backend, device_function
from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cuensemble.integrators.callbacks import (
    CallbackChain,
    CallbackSet,
    STATUS_FIRED,
    STATUS_SAVE,
    STATUS_TERMINATE,
)
from cuensemble.integrators.lane_state import (
    DT,
    ERR_PREV,
    ABSTOL,
    GRID_IDX,
    RC_TERMINATED,
    RELTOL,
    RETCODE,
    SAVE_IDX,
    STEP_COUNT,
    SaveMode,
    T_END,
    T_NOW,
    T_PREV,
    T_START,
    T_TOL,
    TSTOP_IDX,
)


@define
class IntegratorConfig(CUDAFactoryConfig):
    """Compile settings common to all integrators.

    Attributes
    ----------
    n : int
        Number of state variables.
    f : callable
        Right-hand side ``f(du, u, p, t)``.
    backend : Backend
        Compilation target.
    save_mode : SaveMode
        Save policy applied after each step.
    callbacks : CallbackSet
        Discrete callbacks run after each step.
    adaptive : bool
        Build the adaptive step instead of the fixed-grid step.
    """

    n: int = field(default=1, validator=getype_validator(int, 1))
    f: Callable = field(default=None, eq=False)
    backend: Backend = field(
        default=Backend.CUDA,
        converter=Backend,
        validator=validators.instance_of(Backend),
    )
    save_mode: SaveMode = field(
        default=SaveMode.DENSE,
        validator=validators.instance_of(SaveMode),
    )
    callbacks: CallbackSet = field(factory=CallbackSet, converter=CallbackSet)
    adaptive: bool = field(
        default=False, validator=validators.instance_of(bool)
    )


@define
class IntegratorCache(CUDADispatcherCache):
    """Compiled lane functions of an integrator."""

    init: Callable = field()
    step: Callable = field()
    savevalues: Callable = field()
    interpolate: Callable = field()


def build_init(n: int, prepare: Callable, backend: Backend) -> Callable:
    """Lane initialisation around an integrator-specific ``prepare`` hook.

    ``prepare(p, fs, tst)`` runs after the state and clock are loaded. The
    time tolerance in ``tst[T_TOL]`` is filled by the dispatcher and left
    untouched here.
    """

    def init(u0, p, t0, tf, dt, abstol, reltol, tstops, fs, tst, ist):
        for i in range(n):
            fs[i] = u0[i]
            fs[n + i] = u0[i]
        tst[T_START] = t0
        tst[T_END] = tf
        tst[T_NOW] = t0
        tst[T_PREV] = t0
        tst[DT] = dt
        tst[ERR_PREV] = 1.0
        tst[ABSTOL] = abstol
        tst[RELTOL] = reltol
        for k in range(ist.shape[0]):
            ist[k] = 0
        tol = tst[T_TOL]
        j = 0
        while j < tstops.shape[0] and tstops[j] <= t0 + tol:
            j += 1
        ist[TSTOP_IDX] = j
        prepare(p, fs, tst)

    return device_function(init, backend)


def build_fixed_schedule(backend: Backend) -> Callable:
    """End time of the next fixed step.

    Steps land on ``t0 + k*dt``. A pending stop time strictly inside the
    next step shortens it; the following step returns to the grid. A step
    ending within the tolerance of ``tf`` lands exactly on ``tf``.

    Returns ``(t_next, on_grid, hits_stop)``.
    """

    def next_fixed_time(tstops, tst, ist):
        tol = tst[T_TOL]
        tf = tst[T_END]
        k = ist[GRID_IDX] + 1
        t_next = tst[T_START] + k * tst[DT]
        on_grid = True
        hits_stop = False
        j = ist[TSTOP_IDX]
        if j < tstops.shape[0]:
            stop = tstops[j]
            if stop < t_next - tol:
                t_next = stop
                on_grid = False
                hits_stop = True
            elif stop <= t_next + tol:
                t_next = stop
                hits_stop = True
        if abs(t_next - tf) <= tol:
            t_next = tf
        return t_next, on_grid, hits_stop

    return device_function(next_fixed_time, backend)


def build_savevalues(
    n: int,
    save_mode: SaveMode,
    interpolate: Callable,
    backend: Backend,
) -> Callable:
    """Per-step save for ``save_mode``.

    Dense saves the step endpoint while it does not pass ``tf`` and rows
    remain. Fixed-grid saves every grid time the step has reached, copying
    the state for grid times on the step end and interpolating the rest.
    Endpoints-only saves nothing per step.
    """
    mode = save_mode.value
    dense = SaveMode.DENSE.value
    fixed_grid = SaveMode.FIXED_GRID.value

    def savevalues(ts, us, grid, fs, tst, ist):
        t = tst[T_NOW]
        tf = tst[T_END]
        tol = tst[T_TOL]
        if mode == dense:
            idx = ist[SAVE_IDX]
            if idx < us.shape[0] and t <= tf + tol:
                ts[idx] = t
                for i in range(n):
                    us[idx, i] = fs[i]
                ist[SAVE_IDX] = idx + 1
        elif mode == fixed_grid:
            cur = ist[SAVE_IDX]
            m = grid.shape[0]
            while cur < m and grid[cur] <= t + tol and grid[cur] <= tf + tol:
                tg = grid[cur]
                if abs(tg - t) <= tol:
                    for i in range(n):
                        us[cur, i] = fs[i]
                else:
                    interpolate(tg, fs, tst, us[cur])
                ts[cur] = tg
                cur += 1
            ist[SAVE_IDX] = cur

    return device_function(savevalues, backend)


def build_after_step(
    n: int,
    apply_callbacks: Callable,
    has_callbacks: bool,
    refresh: Callable,
    savevalues: Callable,
    backend: Backend,
) -> Callable:
    """Callback handling at the end of an accepted step.

    ``refresh(p, fs, tst)`` lets the integrator rebuild derived quantities
    after a callback changed the state. Returns True when a callback saved.
    """

    def after_step(p, ts, us, grid, fs, tst, ist):
        ist[STEP_COUNT] += 1
        if not has_callbacks:
            return False
        status = apply_callbacks(fs[0:n], tst[T_NOW], p)
        if status & STATUS_FIRED:
            refresh(p, fs, tst)
        if status & STATUS_TERMINATE:
            ist[RETCODE] = RC_TERMINATED
        if status & STATUS_SAVE:
            savevalues(ts, us, grid, fs, tst, ist)
            return True
        return False

    return device_function(after_step, backend)


class BaseIntegrator(CUDAFactory):
    """Factory base for lane integrators.

    Subclasses supply the scratch layout through :attr:`scratch_width`,
    :attr:`matrix_scratch_shape` and :attr:`noise_draws`, and compile their
    step in :meth:`build`.
    """

    def __init__(self, config: IntegratorConfig) -> None:
        super().__init__()
        self.setup_compile_settings(config)
        self.callback_chain = CallbackChain(
            precision=config.precision,
            callback=config.callbacks,
            backend=config.backend,
        )

    @property
    def n(self) -> int:
        return self.compile_settings.n

    @property
    def backend(self) -> Backend:
        return self.compile_settings.backend

    @property
    def save_mode(self) -> SaveMode:
        return self.compile_settings.save_mode

    @property
    def is_adaptive(self) -> bool:
        return self.compile_settings.adaptive

    @property
    @abstractmethod
    def scratch_width(self) -> int:
        """Float scratch entries each lane needs."""

    @property
    def matrix_scratch_shape(self) -> Tuple[int, int]:
        """Per-lane shape of the noise-rate matrix scratch."""
        return (1, 1)

    @property
    def noise_draws(self) -> int:
        """Standard normals consumed per step; zero for ODE integrators."""
        return 0

    def common_functions(self, interpolate: Callable,
                         refresh: Optional[Callable] = None):
        """Compile the policy-driven pieces shared by all integrators.

        Returns ``(savevalues, after_step, next_fixed_time)``.
        """
        config = self.compile_settings
        backend = config.backend
        if refresh is None:
            refresh = _no_refresh(backend)
        savevalues = build_savevalues(
            config.n, config.save_mode, interpolate, backend
        )
        after_step = build_after_step(
            config.n,
            self.callback_chain.apply_callbacks,
            self.callback_chain.has_callbacks,
            refresh,
            savevalues,
            backend,
        )
        return savevalues, after_step, build_fixed_schedule(backend)

    @property
    def init(self) -> Callable:
        return self.get_cached_output("init")

    @property
    def step(self) -> Callable:
        return self.get_cached_output("step")

    @property
    def savevalues(self) -> Callable:
        return self.get_cached_output("savevalues")

    @property
    def interpolate(self) -> Callable:
        return self.get_cached_output("interpolate")


def _no_refresh(backend: Backend) -> Callable:
    def refresh(p, fs, tst):
        return None
    return device_function(refresh, backend)


def linear_interpolation(n: int, backend: Backend) -> Callable:
    """Straight line between the start and end states of the last step."""

    def interpolate(t, fs, tst, out):
        t_prev = tst[T_PREV]
        h = tst[T_NOW] - t_prev
        if h == 0.0:
            for i in range(n):
                out[i] = fs[i]
            return
        theta = (t - t_prev) / h
        for i in range(n):
            out[i] = fs[n + i] + theta * (fs[i] - fs[n + i])

    return device_function(interpolate, backend)
