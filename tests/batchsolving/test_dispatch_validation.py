"""Configuration errors must surface before anything is allocated."""

import numpy as np
import pytest

from cuensemble import (
    ConfigurationError,
    GPUDP5,
    GPUEM,
    GPURK4,
    GPUSIEA,
    IncompatibleNoiseError,
    ProblemBatch,
    UnsupportedConfigurationError,
    vectorized_asolve,
    vectorized_solve,
)
from cuensemble.batchsolving import dispatch


@pytest.fixture(scope="function")
def no_launch(monkeypatch):
    """Fail the test if the dispatcher gets as far as allocating outputs."""
    calls = []

    def refuse(*args, **kwargs):
        calls.append(args)
        raise AssertionError("buffers allocated for an invalid launch")

    monkeypatch.setattr(dispatch, "allocate_output_buffers", refuse)
    return calls


def test_adaptive_every_step_without_saveat(decay_batch, decay_problem,
                                            no_launch):
    with pytest.raises(ConfigurationError):
        vectorized_asolve(decay_batch, decay_problem, GPUDP5(),
                          save_everystep=True)
    assert no_launch == []


def test_diagonal_only_algorithm_on_matrix_noise(
    additive_matrix_sde_problem, no_launch
):
    batch = ProblemBatch.from_problems(
        [additive_matrix_sde_problem] * 2
    ).to_device()
    with pytest.raises(IncompatibleNoiseError):
        vectorized_solve(batch, additive_matrix_sde_problem, GPUSIEA(),
                         dt=0.1)
    assert no_launch == []


def test_adaptive_sde_unsupported(noiseless_sde_problem, no_launch):
    batch = ProblemBatch.from_problems([noiseless_sde_problem]).to_device()
    with pytest.raises(UnsupportedConfigurationError):
        vectorized_asolve(batch, noiseless_sde_problem, GPUEM())
    assert no_launch == []


def test_adaptive_without_error_estimate_unsupported(decay_batch,
                                                     decay_problem,
                                                     no_launch):
    with pytest.raises(UnsupportedConfigurationError, match="error"):
        vectorized_asolve(decay_batch, decay_problem, GPURK4())


def test_ode_algorithm_on_sde_rejected(noiseless_sde_problem, no_launch):
    batch = ProblemBatch.from_problems([noiseless_sde_problem]).to_device()
    with pytest.raises(ConfigurationError, match="SDE"):
        vectorized_solve(batch, noiseless_sde_problem, GPURK4(), dt=0.1)


def test_sde_algorithm_on_ode_rejected(decay_batch, decay_problem,
                                       no_launch):
    with pytest.raises(ConfigurationError, match="ODE"):
        vectorized_solve(decay_batch, decay_problem, GPUEM(), dt=0.1)


def test_unknown_algorithm_rejected(decay_batch, decay_problem, no_launch):
    with pytest.raises(ConfigurationError):
        vectorized_solve(decay_batch, decay_problem, "RK4", dt=0.1)


@pytest.mark.parametrize("dt", [0.0, -0.1])
def test_nonpositive_dt_rejected(decay_batch, decay_problem, no_launch, dt):
    with pytest.raises(ConfigurationError, match="dt"):
        vectorized_solve(decay_batch, decay_problem, GPURK4(), dt=dt)


def test_mismatched_lane_grids_rejected(decay_problem, no_launch):
    problems = [decay_problem.remake(kwargs={"saveat": [0.5]}),
                decay_problem.remake(kwargs={"saveat": [0.25, 0.5]})]
    batch = ProblemBatch.from_problems(problems).to_device()
    with pytest.raises(ConfigurationError):
        vectorized_solve(batch, decay_problem, GPURK4(), dt=0.1)


def test_controller_keywords_rejected_for_fixed_steps(decay_batch,
                                                      decay_problem,
                                                      monkeypatch):
    # warning raised before launch; stop there
    monkeypatch.setattr(dispatch, "_launch", lambda *a, **k: None)
    with pytest.warns(UserWarning, match="kp"):
        vectorized_solve(decay_batch, decay_problem, GPURK4(), dt=0.1,
                         kp=0.5)


def test_controller_keywords_forwarded(decay_batch, decay_problem,
                                       monkeypatch):
    seen = {}

    def capture(*args, **kwargs):
        seen.update(kwargs)

    monkeypatch.setattr(dispatch, "_launch", capture)
    vectorized_asolve(decay_batch, decay_problem, GPUDP5(), kp=1, ki=0.2)
    assert seen["controller_settings"] == {"kp": 1.0, "ki": 0.2}
    assert isinstance(seen["controller_settings"]["kp"], float)
    assert seen["adaptive"] is True
    assert seen["abstol"] == 1e-6 and seen["reltol"] == 1e-3


def test_time_logging_level_not_treated_as_unknown(decay_batch,
                                                   decay_problem,
                                                   monkeypatch, recwarn):
    monkeypatch.setattr(dispatch, "_launch", lambda *a, **k: None)
    vectorized_solve(decay_batch, decay_problem, GPURK4(), dt=0.1,
                     time_logging_level=None)
    assert not [w for w in recwarn if issubclass(w.category, UserWarning)]


def test_template_noise_structure_must_match_batch(
    additive_matrix_sde_problem, no_launch
):
    batch = ProblemBatch.from_problems(
        [additive_matrix_sde_problem] * 2
    ).to_device()
    diagonal = additive_matrix_sde_problem.remake(noise_rate_prototype=None)
    with pytest.raises(ConfigurationError, match="noise rate shape"):
        vectorized_solve(batch, diagonal, GPUSIEA(), dt=0.1)
    assert no_launch == []


def test_template_rhs_must_match_batch(decay_batch, decay_problem,
                                       oscillator_rhs, no_launch):
    template = decay_problem.remake(f=oscillator_rhs)
    with pytest.raises(ConfigurationError, match="f differs"):
        vectorized_solve(decay_batch, template, GPURK4(), dt=0.1)
    assert no_launch == []


def test_template_precision_must_match_batch(decay_batch, decay_problem,
                                             no_launch):
    template = decay_problem.remake(u0=np.array([1.0], dtype=np.float32))
    with pytest.raises(ConfigurationError, match="float32"):
        vectorized_asolve(decay_batch, template, GPUDP5())
    assert no_launch == []


def test_template_kind_must_match_batch(decay_batch, noiseless_sde_problem,
                                        no_launch):
    with pytest.raises(ConfigurationError, match="both be"):
        vectorized_solve(decay_batch, noiseless_sde_problem, GPUEM(),
                         dt=0.1)
    assert no_launch == []
