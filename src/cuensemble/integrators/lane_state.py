"""Layout of the per-lane integrator workspace.

Each lane owns one row of three dispatcher-allocated arrays:

``fscratch`` (float, integrator-specific width)
    The current state ``u`` occupies entries ``[0, n)`` and the state at the
    start of the last step occupies ``[n, 2n)``. Integrators lay out their
    stage storage after that.
``tstate`` (float, :data:`N_TIME_SLOTS`)
    Scalars indexed by the ``T_*`` constants.
``istate`` (int32, :data:`N_INT_SLOTS`)
    Cursors and the return code, indexed by the remaining constants.
"""

from enum import Enum, IntEnum

import numpy as np


class SaveMode(Enum):
    """How a lane decides which points to write to its output rows."""

    #: Every step endpoint up to ``tf``.
    DENSE = 0
    #: Only ``(t0, u0)`` and the final state.
    ENDPOINTS = 1
    #: The points of a ``saveat`` grid, by interpolation.
    FIXED_GRID = 2


class ReturnCode(IntEnum):
    """Per-lane outcome stored in ``istate[RETCODE]``.

    Codes at or above :attr:`TERMINATED` stop the lane's stepping loop.
    """

    DEFAULT = 0
    SUCCESS = 1
    TERMINATED = 2
    DT_LESS_THAN_MIN = 3


# Plain ints for use inside compiled lane code.
RC_DEFAULT = int(ReturnCode.DEFAULT)
RC_SUCCESS = int(ReturnCode.SUCCESS)
RC_TERMINATED = int(ReturnCode.TERMINATED)
RC_DT_LESS_THAN_MIN = int(ReturnCode.DT_LESS_THAN_MIN)

# tstate slots
T_START = 0
T_END = 1
T_NOW = 2
T_PREV = 3
DT = 4
ERR_PREV = 5
ABSTOL = 6
RELTOL = 7
T_TOL = 8
N_TIME_SLOTS = 9

# istate slots
SAVE_IDX = 0
TSTOP_IDX = 1
RETCODE = 2
GRID_IDX = 3
STEP_COUNT = 4
N_INT_SLOTS = 5

INT_DTYPE = np.int32

