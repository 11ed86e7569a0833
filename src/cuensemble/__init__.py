"""
cuensemble: ensemble ODE/SDE integration, one problem per lane
"""

from importlib.metadata import version

# Numba warns when a kernel is launched with few blocks; small ensembles
# trigger it routinely and it is not actionable here.
import warnings
from numba.core.errors import NumbaPerformanceWarning
warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)

from cuensemble.backends import Backend  # noqa: E402
from cuensemble.errors import (  # noqa: E402
    ConfigurationError,
    HostBackendWarning,
    IncompatibleNoiseError,
    UnsupportedConfigurationError,
)
from cuensemble.problems import (  # noqa: E402
    ODEProblem,
    ProblemBatch,
    SDEProblem,
)
from cuensemble.integrators import *  # noqa
from cuensemble.batchsolving import *  # noqa
from cuensemble.time_logger import TimeLogger, default_timelogger  # noqa

__all__ = [
    "Backend",
    "ConfigurationError",
    "HostBackendWarning",
    "IncompatibleNoiseError",
    "UnsupportedConfigurationError",
    "ODEProblem",
    "SDEProblem",
    "ProblemBatch",
    "GPUAlgorithm",
    "GPUERK",
    "GPURK4",
    "GPUBS3",
    "GPUDP5",
    "GPUCashKarp",
    "GPUEM",
    "GPUSIEA",
    "DiscreteCallback",
    "CallbackSet",
    "CONTINUE",
    "TERMINATE",
    "ReturnCode",
    "SaveMode",
    "vectorized_solve",
    "vectorized_asolve",
    "clear_kernel_cache",
    "TimeLogger",
    "default_timelogger",
]

try:
    __version__ = version("cuensemble")
except ImportError:
    # Package is not installed
    __version__ = "unknown"
