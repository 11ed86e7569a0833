import numpy as np
import pytest

from cuensemble import ODEProblem, ProblemBatch, SDEProblem
from cuensemble.backends import Backend, to_host


def _other_rhs(du, u, p, t):
    du[0] = 0.0


class TestODEProblem:
    def test_defaults(self, decay_rhs):
        problem = ODEProblem(decay_rhs, [1.0], (0, 2))
        assert problem.tspan == (0.0, 2.0)
        assert problem.n_states == 1
        assert problem.precision is np.float64
        assert problem.p.size == 0
        assert not problem.is_sde

    def test_precision_follows_state(self, decay_rhs):
        problem = ODEProblem(decay_rhs, np.ones(2, dtype=np.float32),
                             (0.0, 1.0))
        assert problem.precision is np.float32
        assert problem.time_precision is np.float32

    def test_integer_state_promoted(self, decay_rhs):
        problem = ODEProblem(decay_rhs, [1, 2], (0.0, 1.0))
        assert problem.precision is np.float64

    @pytest.mark.parametrize("tspan", [(1.0, 1.0), (1.0, 0.0)])
    def test_tspan_must_increase(self, decay_rhs, tspan):
        with pytest.raises(ValueError, match="t0 < tf"):
            ODEProblem(decay_rhs, [1.0], tspan)

    def test_state_must_be_vector(self, decay_rhs):
        with pytest.raises(ValueError, match="one-dimensional"):
            ODEProblem(decay_rhs, np.ones((2, 2)), (0.0, 1.0))

    def test_remake(self, decay_problem):
        changed = decay_problem.remake(p=[3.0])
        assert changed.f is decay_problem.f
        np.testing.assert_array_equal(changed.p, [3.0])
        np.testing.assert_array_equal(decay_problem.p, [1.0])


class TestSDEProblem:
    def test_diagonal_by_default(self, additive_sde_problem):
        assert additive_sde_problem.is_sde
        assert additive_sde_problem.is_diagonal_noise
        assert additive_sde_problem.noise_dim == 1

    def test_matrix_noise(self, additive_matrix_sde_problem):
        assert not additive_matrix_sde_problem.is_diagonal_noise
        assert additive_matrix_sde_problem.noise_dim == 2

    def test_prototype_rows_must_match_states(self, decay_rhs):
        with pytest.raises(ValueError, match="noise_rate_prototype"):
            SDEProblem(decay_rhs, [1.0], (0.0, 1.0), g=_other_rhs,
                       noise_rate_prototype=np.zeros((2, 2)))

    def test_noise_rate_required(self, decay_rhs):
        with pytest.raises(TypeError):
            SDEProblem(decay_rhs, [1.0], (0.0, 1.0))


class TestProblemBatch:
    def test_stacks_lane_data(self, decay_problems, decay_rates):
        batch = ProblemBatch.from_problems(decay_problems)
        assert len(batch) == 3
        assert batch.u0.shape == (3, 1)
        np.testing.assert_array_equal(batch.p[:, 0], decay_rates)
        np.testing.assert_array_equal(batch.tspan, [[0.0, 1.0]] * 3)
        assert batch.template is decay_problems[0]
        assert list(batch) == decay_problems
        assert batch[1] is decay_problems[1]

    def test_empty_parameters_padded(self, decay_rhs):
        problems = [ODEProblem(decay_rhs, [1.0], (0.0, 1.0))] * 2
        batch = ProblemBatch.from_problems(problems)
        assert batch.p.shape == (2, 1)

    def test_saveat_overrides_collected(self, decay_problem):
        problems = [decay_problem,
                    decay_problem.remake(kwargs={"saveat": [0.5, 1.0]})]
        batch = ProblemBatch.from_problems(problems)
        assert batch.saveat_overrides[0] is None
        np.testing.assert_array_equal(batch.saveat_overrides[1], [0.5, 1.0])

    def test_empty_batch_rejected(self):
        with pytest.raises(ValueError, match="at least one"):
            ProblemBatch.from_problems([])

    @pytest.mark.parametrize(
        "change, message",
        [
            ({"u0": [1.0, 2.0]}, "number of states"),
            ({"p": [1.0, 2.0]}, "number of parameters"),
            ({"u0": np.array([1.0], dtype=np.float32)}, "precision"),
            ({"f": _other_rhs}, "right-hand side"),
        ],
    )
    def test_inconsistent_lanes_rejected(self, decay_problem, change,
                                         message):
        with pytest.raises(ValueError, match=message):
            ProblemBatch.from_problems(
                [decay_problem, decay_problem.remake(**change)]
            )

    def test_mixed_kinds_rejected(self, noiseless_sde_problem,
                                  decay_problem):
        with pytest.raises(ValueError, match="one kind"):
            ProblemBatch.from_problems(
                [decay_problem, noiseless_sde_problem]
            )

    def test_mixed_noise_structure_rejected(self, noiseless_sde_problem):
        matrix = noiseless_sde_problem.remake(
            noise_rate_prototype=np.zeros((1, 2))
        )
        assert matrix.noise_rate_shape == (1, 2)
        assert noiseless_sde_problem.noise_rate_shape is None
        with pytest.raises(ValueError, match="noise structure"):
            ProblemBatch.from_problems([noiseless_sde_problem, matrix])

    def test_location_and_transfer(self, host_decay_batch):
        assert host_decay_batch.backend is Backend.CPU
        assert host_decay_batch.location == "host"
        device = host_decay_batch.to_device()
        assert device.backend is Backend.CUDA
        assert device.location == "device"
        np.testing.assert_array_equal(to_host(device.p), host_decay_batch.p)
        back = device.to_host()
        assert back.backend is Backend.CPU
        assert back.problems == host_decay_batch.problems
