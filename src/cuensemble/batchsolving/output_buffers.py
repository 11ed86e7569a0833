"""Allocation of output buffers and lane workspace.

Lanes never allocate. Everything a lane touches is created here, on the
backend the lanes run on, before launch.
"""

from typing import Optional

import attrs
import numpy as np

from cuensemble._utils import (
    PrecisionDType,
    fixed_grid_count,
    interior_tstops,
    time_tolerance,
)
from cuensemble.backends import Backend, allocate, to_backend, to_host
from cuensemble.batchsolving.buffer_sizing import OutputSizes, SavePolicy
from cuensemble.integrators.algorithms.base_integrator import BaseIntegrator
from cuensemble.integrators.lane_state import (
    INT_DTYPE,
    N_INT_SLOTS,
    N_TIME_SLOTS,
    RETCODE,
    T_TOL,
)
from cuensemble.problems import ProblemBatch


def allocate_output_buffers(sizes: OutputSizes, t0: float,
                            precision: PrecisionDType, backend: Backend):
    """Return ``(ts, us)`` shaped ``(len, B)`` and ``(len, B, n)``.

    Times are pre-filled with ``t0`` and states with zeros, so rows a lane
    never writes read as ``(t0, 0)``.
    """
    ts = allocate(backend, sizes.time_shape, precision, fill=t0)
    us = allocate(backend, sizes.state_shape, precision)
    return ts, us


@attrs.define(eq=False)
class LaneWorkspace:
    """Per-lane rows handed to the lane kernel next to the outputs.

    Attributes
    ----------
    grids
        ``(B, m)`` save grids (``(B, 1)`` placeholder without a grid).
    tstops
        Sorted stop times shared by all lanes (``[inf]`` when there are
        none).
    noise
        ``(B, steps, draws)`` standard normals for SDE lanes.
    fscratch, mscratch
        Integrator float scratch ``(B, width)`` and noise-rate matrix
        scratch ``(B, rows, cols)``.
    tstate, istate
        Lane clock and cursors; ``tstate[:, T_TOL]`` is set per lane here.
    """

    grids = attrs.field()
    tstops = attrs.field()
    noise = attrs.field()
    fscratch = attrs.field()
    mscratch = attrs.field()
    tstate = attrs.field()
    istate = attrs.field()

    def return_codes(self) -> np.ndarray:
        """Host copy of each lane's return code."""
        return to_host(self.istate)[:, RETCODE].copy()


def noise_steps(tspans: np.ndarray, dt: float, n_stops: int,
                precision: PrecisionDType) -> int:
    """Rows of normals each lane gets for a fixed-step SDE launch.

    Sized for the lane with the longest span: one row per step to the last
    grid point at or before its ``tf``, one for a final step that passes
    ``tf``, and one per stop time. Every lane therefore draws a fresh row
    on every step.
    """
    rows = 1
    for t0, tf in tspans:
        rows = max(rows, fixed_grid_count(t0, tf, dt, precision))
    return rows + n_stops


def allocate_workspace(
    batch: ProblemBatch,
    integrator: BaseIntegrator,
    policy: SavePolicy,
    backend: Backend,
    tstops: Optional[np.ndarray] = None,
    dt: Optional[float] = None,
    seed: Optional[int] = None,
) -> LaneWorkspace:
    """Allocate lane workspace on ``backend``.

    ``dt`` is the fixed step, or None for adaptive lanes; it caps each
    lane's time tolerance and sizes the SDE noise. SDE normals come from
    ``numpy.random.default_rng(seed)`` so a fixed seed reproduces every
    path on either backend.
    """
    template = batch.template
    precision = template.precision
    n_lanes = len(batch)
    host_tspan = to_host(batch.tspan)

    if policy.grids is None:
        grids = np.zeros((n_lanes, 1), dtype=precision)
    else:
        grids = policy.grids.astype(precision)

    t0, tf = template.tspan
    stops = interior_tstops(tstops, t0, tf, precision, dt)
    n_stops = stops.size
    if n_stops == 0:
        stops = np.full(1, np.inf, dtype=precision)

    draws = integrator.noise_draws
    if draws:
        if dt is None:
            raise ValueError("SDE lanes need a fixed step to size noise.")
        n_rows = noise_steps(host_tspan, dt, n_stops, precision)
        rng = np.random.default_rng(seed)
        noise = rng.standard_normal(
            (n_lanes, n_rows, draws)
        ).astype(precision)
    else:
        noise = np.zeros((n_lanes, 1, 1), dtype=precision)

    tstate = np.zeros((n_lanes, N_TIME_SLOTS), dtype=precision)
    for lane in range(n_lanes):
        tstate[lane, T_TOL] = time_tolerance(
            host_tspan[lane, 0], host_tspan[lane, 1], precision, dt
        )

    rows, cols = integrator.matrix_scratch_shape
    return LaneWorkspace(
        grids=to_backend(grids, backend),
        tstops=to_backend(stops, backend),
        noise=to_backend(noise, backend),
        fscratch=allocate(backend, (n_lanes, integrator.scratch_width),
                          precision),
        mscratch=allocate(backend, (n_lanes, rows, cols), precision),
        tstate=to_backend(tstate, backend),
        istate=allocate(backend, (n_lanes, N_INT_SLOTS), INT_DTYPE),
    )
