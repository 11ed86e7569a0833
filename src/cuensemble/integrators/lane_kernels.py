"""Per-lane stepping state machine and its launchers.

A lane owns one trajectory. It loads the initial state, writes the first
save, steps while ``t < tf`` and its return code is not terminal, and on the
way out corrects the final row when the last step passed ``tf``:

* with no save grid, the last row receives the state interpolated at ``tf``;
* with endpoints-only saving and no overshoot, row 1 receives the final
  ``(t, u)``.

On CUDA every lane is one thread; on the host lanes are spread over a
:func:`numba.prange` loop. The lane body is the same for both.
"""

import math
from typing import Callable

from attrs import define, field, validators
from numba import cuda, njit, prange

from cuensemble._utils import getype_validator
from cuensemble.backends import Backend, device_function
from cuensemble.CUDAFactory import (
    CUDADispatcherCache,
    CUDAFactory,
    CUDAFactoryConfig,
)
from cuensemble.errors import ConfigurationError
from cuensemble.integrators.algorithms.base_integrator import BaseIntegrator
from cuensemble.integrators.lane_state import (
    RC_DEFAULT,
    RC_SUCCESS,
    RC_TERMINATED,
    RETCODE,
    SAVE_IDX,
    SaveMode,
    T_END,
    T_NOW,
    T_START,
    T_TOL,
)


@define
class LaneKernelConfig(CUDAFactoryConfig):
    """Compile settings of a lane kernel.

    Attributes
    ----------
    backend : Backend
        Where lanes run.
    save_mode : SaveMode
        Save policy; must match the integrator's.
    blocksize : int
        CUDA threads per block.
    """

    backend: Backend = field(
        default=Backend.CUDA,
        converter=Backend,
        validator=validators.instance_of(Backend),
    )
    save_mode: SaveMode = field(
        default=SaveMode.DENSE,
        validator=validators.instance_of(SaveMode),
    )
    blocksize: int = field(default=64, validator=getype_validator(int, 1))


@define
class LaneKernelCache(CUDADispatcherCache):
    """Compiled lane body and the launcher running it over all lanes."""

    lane: Callable = field()
    launch: Callable = field()


def build_lane(integrator: BaseIntegrator, save_mode: SaveMode,
               backend: Backend) -> Callable:
    """Compile the per-lane state machine around ``integrator``."""
    n = integrator.n
    init = integrator.init
    step = integrator.step
    savevalues = integrator.savevalues
    interpolate = integrator.interpolate
    has_grid = save_mode is SaveMode.FIXED_GRID
    endpoints_only = save_mode is SaveMode.ENDPOINTS

    def lane(u0, p, tspan, grid, tstops, noise, ts, us, fs, ms, tst, ist,
             dt, abstol, reltol):
        init(u0, p, tspan[0], tspan[1], dt, abstol, reltol, tstops, fs, tst,
             ist)
        t0 = tst[T_START]
        tol = tst[T_TOL]

        if has_grid:
            cur = 0
            m = grid.shape[0]
            while cur < m and grid[cur] < t0 - tol:
                cur += 1
            if cur < m and abs(grid[cur] - t0) <= tol:
                ts[cur] = grid[cur]
                for i in range(n):
                    us[cur, i] = u0[i]
                cur += 1
            ist[SAVE_IDX] = cur
        else:
            ts[0] = t0
            for i in range(n):
                us[0, i] = u0[i]
            ist[SAVE_IDX] = 1

        while (tst[T_NOW] < tst[T_END] - tol
               and ist[RETCODE] < RC_TERMINATED):
            saved_in_cb = step(p, tstops, noise, ts, us, grid, fs, ms, tst,
                               ist)
            if not saved_in_cb:
                savevalues(ts, us, grid, fs, tst, ist)

        t = tst[T_NOW]
        tf = tst[T_END]
        last = us.shape[0] - 1
        if not has_grid and t > tf:
            interpolate(tf, fs, tst, us[last])
            ts[last] = tf
        elif endpoints_only:
            ts[1] = t
            for i in range(n):
                us[1, i] = fs[i]

        if ist[RETCODE] == RC_DEFAULT:
            ist[RETCODE] = RC_SUCCESS

    return device_function(lane, backend)


def build_launcher(lane: Callable, backend: Backend,
                   blocksize: int) -> Callable:
    """Wrap ``lane`` in a launcher running it once per row of ``u0s``.

    The launcher returns once the launch is queued on CUDA and once every
    lane has finished on the host.
    """
    if backend is Backend.CUDA:
        @cuda.jit
        def lanes_kernel(u0s, ps, tspans, grids, tstops, noise, ts, us,
                         fscratch, mscratch, tstate, istate, dt, abstol,
                         reltol):
            i = cuda.grid(1)
            if i >= u0s.shape[0]:
                return
            lane(u0s[i], ps[i], tspans[i], grids[i], tstops, noise[i],
                 ts[:, i], us[:, i], fscratch[i], mscratch[i], tstate[i],
                 istate[i], dt, abstol, reltol)

        def launch(u0s, ps, tspans, grids, tstops, noise, ts, us, fscratch,
                   mscratch, tstate, istate, dt, abstol, reltol):
            n_lanes = u0s.shape[0]
            blocks = int(math.ceil(n_lanes / blocksize))
            lanes_kernel[blocks, blocksize](
                u0s, ps, tspans, grids, tstops, noise, ts, us, fscratch,
                mscratch, tstate, istate, dt, abstol, reltol
            )

        return launch

    @njit(parallel=True)
    def launch(u0s, ps, tspans, grids, tstops, noise, ts, us, fscratch,
               mscratch, tstate, istate, dt, abstol, reltol):
        for i in prange(u0s.shape[0]):
            lane(u0s[i], ps[i], tspans[i], grids[i], tstops, noise[i],
                 ts[:, i], us[:, i], fscratch[i], mscratch[i], tstate[i],
                 istate[i], dt, abstol, reltol)

    return launch


class BaseLaneKernel(CUDAFactory):
    """Factory pairing an integrator with a lane body and launcher.

    Parameters
    ----------
    integrator
        Integrator whose lane functions the lane calls. Its save policy and
        backend are adopted.
    blocksize
        CUDA threads per block.
    """

    def __init__(self, integrator: BaseIntegrator, blocksize: int = 64):
        super().__init__()
        self.integrator = integrator
        self.setup_compile_settings(
            LaneKernelConfig(
                precision=integrator.precision,
                backend=integrator.backend,
                save_mode=integrator.save_mode,
                blocksize=blocksize,
            )
        )

    def build(self) -> LaneKernelCache:
        config = self.compile_settings
        lane = build_lane(self.integrator, config.save_mode, config.backend)
        return LaneKernelCache(
            lane=lane,
            launch=build_launcher(lane, config.backend, config.blocksize),
        )

    @property
    def lane(self) -> Callable:
        return self.get_cached_output("lane")

    @property
    def launch(self) -> Callable:
        return self.get_cached_output("launch")

    @property
    def backend(self) -> Backend:
        return self.compile_settings.backend

    @property
    def save_mode(self) -> SaveMode:
        return self.compile_settings.save_mode


class FixedStepLaneKernel(BaseLaneKernel):
    """Lanes stepping on ``t0 + k*dt``, shortened only at stop times."""

    def __init__(self, integrator: BaseIntegrator, blocksize: int = 64):
        if integrator.is_adaptive:
            raise ConfigurationError(
                "FixedStepLaneKernel needs a fixed-step integrator."
            )
        super().__init__(integrator, blocksize)


class AdaptiveStepLaneKernel(BaseLaneKernel):
    """Lanes stepping under error control.

    Only endpoints-only and fixed-grid saving are valid; dense saving would
    need an unbounded number of rows.
    """

    def __init__(self, integrator: BaseIntegrator, blocksize: int = 64):
        if not integrator.is_adaptive:
            raise ConfigurationError(
                "AdaptiveStepLaneKernel needs an adaptive integrator."
            )
        if integrator.save_mode is SaveMode.DENSE:
            raise ConfigurationError(
                "Adaptive lanes cannot save every step; use saveat or "
                "endpoints-only saving."
            )
        super().__init__(integrator, blocksize)
