import os

# Kernels run on the Numba CUDA simulator unless a device run is requested
# explicitly; this must happen before numba is first imported.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from cuensemble import (  # noqa: E402
    ODEProblem,
    ProblemBatch,
    SDEProblem,
    clear_kernel_cache,
    default_timelogger,
)
from cuensemble.cuda_simsafe import CUDA_SIMULATION  # noqa: E402

np.set_printoptions(linewidth=120, precision=12)


def pytest_collection_modifyitems(config, items):
    if not CUDA_SIMULATION:
        return
    skip_sim = pytest.mark.skip(reason="needs a real CUDA device")
    for item in items:
        if "nocudasim" in item.keywords:
            item.add_marker(skip_sim)


# --------------------------------------------------------------------------- #
#                        Right-hand sides used by tests                       #
# --------------------------------------------------------------------------- #
# Batches require every lane to share the same function object, so these
# live at module level and are handed out through fixtures.

def decay(du, u, p, t):
    du[0] = -p[0] * u[0]


def two_state_oscillator(du, u, p, t):
    du[0] = u[1]
    du[1] = -p[0] * p[0] * u[0]


def no_drift(du, u, p, t):
    du[0] = 0.0


def additive_noise(du, u, p, t):
    du[0] = p[0]


def no_noise(du, u, p, t):
    du[0] = 0.0


def no_matrix_noise(du, u, p, t):
    du[0, 0] = 0.0
    du[0, 1] = 0.0


def additive_matrix_noise(du, u, p, t):
    du[0, 0] = p[0]
    du[0, 1] = p[1]


@pytest.fixture(scope="session")
def decay_rhs():
    return decay


@pytest.fixture(scope="session")
def oscillator_rhs():
    return two_state_oscillator


@pytest.fixture(autouse=True)
def fresh_kernel_cache():
    """Each test compiles its own kernels and starts with no timing events."""
    clear_kernel_cache()
    default_timelogger.clear()
    yield
    clear_kernel_cache()


# --------------------------------------------------------------------------- #
#                              Problem fixtures                               #
# --------------------------------------------------------------------------- #

@pytest.fixture(scope="function")
def precision():
    return np.float64


@pytest.fixture(scope="function")
def decay_problem(precision):
    """``u' = -k u`` on ``[0, 1]`` with ``k = 1``; ``u(t) = exp(-t)``."""
    return ODEProblem(
        decay,
        np.array([1.0], dtype=precision),
        (0.0, 1.0),
        p=[1.0],
    )


@pytest.fixture(scope="function")
def decay_rates():
    return [0.5, 1.0, 2.0]


@pytest.fixture(scope="function")
def decay_problems(decay_problem, decay_rates):
    return [decay_problem.remake(p=[rate]) for rate in decay_rates]


@pytest.fixture(scope="function")
def decay_batch(decay_problems):
    """Decay problems resident on the (possibly simulated) device."""
    return ProblemBatch.from_problems(decay_problems).to_device()


@pytest.fixture(scope="function")
def host_decay_batch(decay_problems):
    return ProblemBatch.from_problems(decay_problems)


@pytest.fixture(scope="function")
def additive_sde_problem():
    """``du = sigma dW`` with diagonal noise and ``sigma = 0.5``."""
    return SDEProblem(
        no_drift,
        np.array([1.0]),
        (0.0, 1.0),
        p=[0.5],
        g=additive_noise,
    )


@pytest.fixture(scope="function")
def noiseless_sde_problem():
    """Decay with a zero diagonal noise rate."""
    return SDEProblem(
        decay,
        np.array([1.0]),
        (0.0, 1.0),
        p=[1.0],
        g=no_noise,
    )


@pytest.fixture(scope="function")
def noiseless_matrix_sde_problem():
    """Decay driven by two Wiener processes with zero rates."""
    return SDEProblem(
        decay,
        np.array([1.0]),
        (0.0, 1.0),
        p=[1.0],
        g=no_matrix_noise,
        noise_rate_prototype=np.zeros((1, 2)),
    )


@pytest.fixture(scope="function")
def additive_matrix_sde_problem():
    """``du = a dW1 + b dW2`` with ``(a, b) = (0.3, 0.4)``."""
    return SDEProblem(
        no_drift,
        np.array([2.0]),
        (0.0, 1.0),
        p=[0.3, 0.4],
        g=additive_matrix_noise,
        noise_rate_prototype=np.zeros((1, 2)),
    )
