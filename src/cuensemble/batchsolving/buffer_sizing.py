"""Save-policy resolution and output row counts.

Every lane in a launch shares one output shape, so the policy is resolved
once for the whole batch. A problem's own ``saveat`` wins over the
call-level one; lanes that cannot share a shape are rejected here, before
anything is allocated.
"""

from typing import Optional, Tuple

import attrs
import numpy as np

from cuensemble._utils import (
    PrecisionDType,
    fixed_grid_count,
    interior_tstops,
    off_grid_tstops,
    time_tolerance,
)
from cuensemble.errors import ConfigurationError
from cuensemble.integrators.lane_state import SaveMode
from cuensemble.problems import ProblemBatch


@attrs.define(frozen=True, eq=False)
class SavePolicy:
    """Resolved save policy of a launch.

    Attributes
    ----------
    mode : SaveMode
        Dense, endpoints-only or fixed-grid saving.
    grids : ndarray or None
        ``(n_lanes, m)`` save times for fixed-grid saving, one row per lane.
    """

    mode: SaveMode = attrs.field(
        validator=attrs.validators.instance_of(SaveMode)
    )
    grids: Optional[np.ndarray] = attrs.field(default=None)

    @property
    def grid_length(self) -> int:
        if self.grids is None:
            return 0
        return self.grids.shape[1]


def _as_grid(saveat, precision) -> np.ndarray:
    grid = np.atleast_1d(np.asarray(saveat, dtype=precision)).ravel()
    if grid.size == 0:
        raise ConfigurationError("saveat must contain at least one time.")
    if np.any(np.diff(grid) < 0):
        raise ConfigurationError("saveat times must be non-decreasing.")
    return grid


def resolve_save_policy(
    batch: ProblemBatch,
    saveat=None,
    save_everystep: bool = True,
    adaptive: bool = False,
) -> SavePolicy:
    """Decide how every lane saves.

    Parameters
    ----------
    batch
        Problems to solve; per-problem ``saveat`` overrides are read from it.
    saveat
        Call-level save times, or None.
    save_everystep
        Without any ``saveat``, save every step (True) or only the
        endpoints (False).
    adaptive
        Whether lanes step adaptively.

    Raises
    ------
    ConfigurationError
        If adaptive lanes are asked to save every step without a grid, if
        some lanes have a grid and others none, or if lane grids differ in
        length.
    """
    precision = batch.template.precision
    overrides = batch.saveat_overrides
    if saveat is None and all(grid is None for grid in overrides):
        if not save_everystep:
            return SavePolicy(SaveMode.ENDPOINTS)
        if adaptive:
            raise ConfigurationError(
                "Adaptive solves cannot save every step without saveat; "
                "pass saveat or save_everystep=False."
            )
        return SavePolicy(SaveMode.DENSE)

    default = None if saveat is None else _as_grid(saveat, precision)
    grids = []
    for lane, override in enumerate(overrides):
        grid = default if override is None else _as_grid(override, precision)
        if grid is None:
            raise ConfigurationError(
                f"Lane {lane} has no saveat while other lanes do; every lane "
                "must share one output shape."
            )
        grids.append(grid)
    lengths = {grid.shape[0] for grid in grids}
    if len(lengths) > 1:
        raise ConfigurationError(
            "Per-problem saveat grids have different lengths "
            f"{sorted(lengths)}; every lane must share one output shape."
        )
    return SavePolicy(SaveMode.FIXED_GRID, np.stack(grids))


def save_slot_count(
    policy: SavePolicy,
    tspan: Tuple[float, float],
    dt: float,
    precision: PrecisionDType,
    tstops: Optional[np.ndarray] = None,
) -> int:
    """Rows each lane needs under ``policy``.

    Dense rows are the grid points ``t0 + k*dt`` up to ``tf`` plus every
    stop time strictly inside ``(t0, tf)`` that is off that grid.
    """
    if policy.mode is SaveMode.ENDPOINTS:
        return 2
    if policy.mode is SaveMode.FIXED_GRID:
        return policy.grid_length
    t0, tf = tspan
    count = fixed_grid_count(t0, tf, dt, precision)
    stops = interior_tstops(tstops, t0, tf, precision, dt)
    if stops.size:
        tol = time_tolerance(t0, tf, precision, dt)
        count += off_grid_tstops(stops, t0, dt, tol)
    return count


@attrs.define
class OutputSizes:
    """Shapes of the output buffers of a launch.

    Attributes
    ----------
    n_slots : int
        Rows per lane.
    n_lanes : int
        Number of lanes.
    n_states : int
        Length of each saved state.
    """

    n_slots: int = attrs.field(validator=attrs.validators.instance_of(int))
    n_lanes: int = attrs.field(validator=attrs.validators.instance_of(int))
    n_states: int = attrs.field(validator=attrs.validators.instance_of(int))

    @property
    def time_shape(self) -> Tuple[int, int]:
        return (self.n_slots, self.n_lanes)

    @property
    def state_shape(self) -> Tuple[int, int, int]:
        return (self.n_slots, self.n_lanes, self.n_states)

    @classmethod
    def from_policy(cls, policy: SavePolicy, batch: ProblemBatch, dt: float,
                    tstops=None) -> "OutputSizes":
        """Sizes for ``batch`` using the template problem's time span."""
        template = batch.template
        n_slots = save_slot_count(
            policy, template.tspan, dt, template.time_precision, tstops
        )
        return cls(n_slots, len(batch), template.n_states)
