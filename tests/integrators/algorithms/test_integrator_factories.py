import numpy as np
import pytest

from cuensemble.backends import Backend
from cuensemble.errors import ConfigurationError
from cuensemble.integrators.algorithms.erk_integrator import (
    ERKIntegrator,
    STAGES,
)
from cuensemble.integrators.algorithms.sde_integrators import (
    EMIntegrator,
    SIEAIntegrator,
)
from cuensemble.integrators.algorithms.tableaus import (
    CLASSICAL_RK4,
    DORMAND_PRINCE_54,
)
from cuensemble.integrators.lane_kernels import (
    AdaptiveStepLaneKernel,
    FixedStepLaneKernel,
)
from cuensemble.integrators.lane_state import SaveMode


def _rhs(du, u, p, t):
    du[0] = -u[0]


def _rate(du, u, p, t):
    du[0] = 0.1


class TestERKIntegrator:
    def test_scratch_width(self):
        rk4 = ERKIntegrator(np.float64, 3, _rhs, tableau=CLASSICAL_RK4)
        assert rk4.scratch_width == (STAGES + 4) * 3
        dp5 = ERKIntegrator(np.float64, 2, _rhs, tableau=DORMAND_PRINCE_54)
        assert dp5.scratch_width == (STAGES + 7) * 2
        assert rk4.noise_draws == 0
        assert rk4.matrix_scratch_shape == (1, 1)

    def test_adaptive_needs_error_estimate(self):
        with pytest.raises(ValueError, match="b_hat"):
            ERKIntegrator(np.float64, 1, _rhs, tableau=CLASSICAL_RK4,
                          adaptive=True)

    def test_controller_settings_forwarded(self):
        integrator = ERKIntegrator(
            np.float64, 1, _rhs, tableau=DORMAND_PRINCE_54, adaptive=True,
            controller_settings={"kp": 0.5, "max_gain": 4.0},
        )
        settings = integrator.controller.compile_settings
        assert settings.kp == 0.5
        assert settings.max_gain == 4.0
        assert settings.order == 5

    def test_config_hash_tracks_settings(self):
        dense = ERKIntegrator(np.float64, 1, _rhs, backend=Backend.CPU)
        endpoints = ERKIntegrator(np.float64, 1, _rhs, backend=Backend.CPU,
                                  save_mode=SaveMode.ENDPOINTS)
        other_rhs = ERKIntegrator(np.float64, 1, _rate, backend=Backend.CPU)
        assert endpoints.config_hash != dense.config_hash
        assert endpoints.save_mode is SaveMode.ENDPOINTS
        # right-hand sides are matched by identity, not hashed
        assert other_rhs.config_hash == dense.config_hash


class TestSDEIntegrators:
    def test_em_noise_layout(self):
        diagonal = EMIntegrator(np.float64, 2, _rhs, _rate)
        assert diagonal.noise_draws == 2
        assert diagonal.matrix_scratch_shape == (1, 1)
        assert diagonal.scratch_width == 8
        matrix = EMIntegrator(np.float64, 2, _rhs, _rate, n_noise=3,
                              diagonal_noise=False)
        assert matrix.noise_draws == 3
        assert matrix.matrix_scratch_shape == (2, 3)

    def test_siea_draws_extra_sign(self):
        siea = SIEAIntegrator(np.float64, 2, _rhs, _rate)
        assert siea.noise_draws == 3
        assert siea.scratch_width == 12

    def test_siea_rejects_matrix_noise(self):
        with pytest.raises(ValueError, match="diagonal"):
            SIEAIntegrator(np.float64, 1, _rhs, _rate, n_noise=2,
                           diagonal_noise=False)

    @pytest.mark.parametrize("cls", [EMIntegrator, SIEAIntegrator])
    def test_no_adaptive_sde(self, cls):
        with pytest.raises(ValueError, match="fixed time steps"):
            cls(np.float64, 1, _rhs, _rate, adaptive=True)


class TestLaneKernelConstruction:
    def test_fixed_kernel_rejects_adaptive_integrator(self):
        integrator = ERKIntegrator(
            np.float64, 1, _rhs, tableau=DORMAND_PRINCE_54, adaptive=True,
            save_mode=SaveMode.ENDPOINTS,
        )
        with pytest.raises(ConfigurationError):
            FixedStepLaneKernel(integrator)

    def test_adaptive_kernel_rejects_fixed_integrator(self):
        integrator = ERKIntegrator(np.float64, 1, _rhs)
        with pytest.raises(ConfigurationError):
            AdaptiveStepLaneKernel(integrator)

    def test_adaptive_kernel_rejects_dense_saving(self):
        integrator = ERKIntegrator(
            np.float64, 1, _rhs, tableau=DORMAND_PRINCE_54, adaptive=True,
            save_mode=SaveMode.DENSE,
        )
        with pytest.raises(ConfigurationError, match="every step"):
            AdaptiveStepLaneKernel(integrator)

    def test_kernel_adopts_integrator_settings(self):
        integrator = ERKIntegrator(np.float64, 1, _rhs, backend=Backend.CPU,
                                   save_mode=SaveMode.FIXED_GRID)
        kernel = FixedStepLaneKernel(integrator, blocksize=32)
        assert kernel.backend is Backend.CPU
        assert kernel.save_mode is SaveMode.FIXED_GRID
        assert kernel.compile_settings.blocksize == 32
        assert kernel.integrator is integrator
