"""Ensemble dispatcher: validate, allocate, launch, synchronise.

:func:`vectorized_solve` runs fixed-step lanes and :func:`vectorized_asolve`
adaptive ones. Both solve one problem per lane and return the time and state
buffers resident on the backend that ran the lanes. Every configuration
error is raised before anything is allocated or launched.
"""

from collections import OrderedDict
from contextlib import contextmanager
from typing import Optional, Sequence, Union
from warnings import warn

import numpy as np

from cuensemble._utils import warn_unrecognised
from cuensemble.backends import Backend, synchronize
from cuensemble.batchsolving.buffer_sizing import (
    OutputSizes,
    SavePolicy,
    resolve_save_policy,
)
from cuensemble.batchsolving.output_buffers import (
    allocate_output_buffers,
    allocate_workspace,
)
from cuensemble.errors import (
    ConfigurationError,
    HostBackendWarning,
    IncompatibleNoiseError,
    UnsupportedConfigurationError,
)
from cuensemble.integrators.algorithms.base_integrator import BaseIntegrator
from cuensemble.integrators.algorithms.erk_integrator import ERKIntegrator
from cuensemble.integrators.algorithms.sde_integrators import (
    EMIntegrator,
    SIEAIntegrator,
)
from cuensemble.integrators.algorithms.variants import (
    AlgorithmFamily,
    GPUAlgorithm,
)
from cuensemble.integrators.callbacks import CallbackLike, CallbackSet
from cuensemble.integrators.lane_kernels import (
    AdaptiveStepLaneKernel,
    BaseLaneKernel,
    FixedStepLaneKernel,
)
from cuensemble.integrators.step_control import (
    ALL_STEP_CONTROLLER_PARAMETERS,
)
from cuensemble.problems import ODEProblem, ProblemBatch
from cuensemble.time_logger import default_timelogger

#: Most lane kernels kept compiled at once.
_KERNEL_CACHE_SIZE = 32

#: Compiled lane kernels, least recently used first.
_KERNEL_CACHE = OrderedDict()


def clear_kernel_cache() -> None:
    """Drop every cached lane kernel.

    The cache holds at most ``_KERNEL_CACHE_SIZE`` kernels and evicts the
    least recently used one when full. Clear it to release the compiled
    code and the problem functions it references.
    """
    _KERNEL_CACHE.clear()


def _as_batch(batch: Union[ProblemBatch, Sequence[ODEProblem]]):
    if isinstance(batch, ProblemBatch):
        return batch
    return ProblemBatch.from_problems(batch)


def _resolve_backend(batch: ProblemBatch) -> Backend:
    backend = batch.backend
    if backend is Backend.CPU:
        warn(
            "Running the lanes on the host CPU backend. Move the batch to "
            "the accelerator with batch.to_device() for a parallel GPU "
            "solve.",
            HostBackendWarning,
            stacklevel=4,
        )
    return backend


def _check_algorithm(algorithm: GPUAlgorithm, template: ODEProblem,
                     adaptive: bool) -> None:
    """Reject algorithm and problem combinations lanes cannot run."""
    if not isinstance(algorithm, GPUAlgorithm):
        raise ConfigurationError(
            f"{algorithm!r} is not a recognised ensemble algorithm."
        )
    family = algorithm.family
    if family.is_sde and not template.is_sde:
        raise ConfigurationError(
            f"{algorithm.name} integrates SDEs but the problem is an ODE."
        )
    if template.is_sde and not family.is_sde:
        raise ConfigurationError(
            f"{algorithm.name} integrates ODEs but the problem is an SDE."
        )
    if adaptive:
        if family.is_sde:
            raise UnsupportedConfigurationError(
                f"Adaptive time-stepping is not supported with "
                f"{algorithm.name}."
            )
        if not algorithm.supports_adaptive:
            raise UnsupportedConfigurationError(
                f"{algorithm.name} has no embedded error estimate and "
                "cannot step adaptively."
            )


def _check_template(template: ODEProblem, batch: ProblemBatch) -> None:
    """Reject a template that would compile a kernel the lanes cannot run.

    The kernel is built from the template while the lanes read the batch
    arrays, so both must agree on everything that shapes the compiled code.
    """
    reference = batch.template
    if template.is_sde != reference.is_sde:
        raise ConfigurationError(
            "The template and the batch must both be ODEs or both be SDEs."
        )
    if template.f is not reference.f:
        raise ConfigurationError(
            "The template's f differs from the batch problems' f."
        )
    if template.is_sde and template.g is not reference.g:
        raise ConfigurationError(
            "The template's g differs from the batch problems' g."
        )
    if template.n_states != reference.n_states:
        raise ConfigurationError(
            f"The template has {template.n_states} states but the batch "
            f"has {reference.n_states}."
        )
    if template.precision != reference.precision:
        raise ConfigurationError(
            f"The template is {np.dtype(template.precision).name} but the "
            f"batch is {np.dtype(reference.precision).name}."
        )
    if (template.is_sde
            and template.noise_rate_shape != reference.noise_rate_shape):
        raise ConfigurationError(
            f"The template's noise rate shape {template.noise_rate_shape} "
            f"differs from the batch's {reference.noise_rate_shape}."
        )

def _check_noise(algorithm: GPUAlgorithm, template: ODEProblem) -> None:
    if (algorithm.requires_diagonal_noise
            and not template.is_diagonal_noise):
        raise IncompatibleNoiseError(
            f"{algorithm.name} only supports diagonal noise; the batch has "
            f"a {template.noise_rate_prototype.shape} noise rate."
        )


def _build_integrator(algorithm: GPUAlgorithm, template: ODEProblem,
                      backend: Backend, policy: SavePolicy,
                      callbacks: CallbackSet, adaptive: bool,
                      controller_settings: dict) -> BaseIntegrator:
    """Match the algorithm family to its integrator."""
    common = dict(
        precision=template.precision,
        n=template.n_states,
        f=template.f,
        backend=backend,
        save_mode=policy.mode,
        callbacks=callbacks,
    )
    family = algorithm.family
    if family is AlgorithmFamily.ERK:
        return ERKIntegrator(
            tableau=algorithm.tableau,
            adaptive=adaptive,
            controller_settings=controller_settings,
            **common,
        )
    if family is AlgorithmFamily.SDE_EM:
        return EMIntegrator(
            g=template.g,
            n_noise=template.noise_dim,
            diagonal_noise=template.is_diagonal_noise,
            **common,
        )
    if family is AlgorithmFamily.SDE_SIEA:
        return SIEAIntegrator(g=template.g, **common)
    raise ConfigurationError(f"No lane integrator for {family}.")


def get_lane_kernel(algorithm: GPUAlgorithm, template: ODEProblem,
                    backend: Backend, policy: SavePolicy,
                    callback: CallbackLike = None, adaptive: bool = False,
                    controller_settings: Optional[dict] = None,
                    blocksize: int = 64) -> BaseLaneKernel:
    """Return a cached lane kernel for this configuration, building on miss.

    Kernels are keyed on the kernel's ``config_hash``, which covers every
    compile setting of the kernel and its child factories, plus the
    identity of the problem's functions and the callbacks. A new
    right-hand side always compiles a new kernel. Compilation itself is
    deferred to the first launch, so building the kernel object for the
    lookup is cheap.
    """
    callbacks = CallbackSet(callback)
    integrator = _build_integrator(
        algorithm, template, backend, policy, callbacks, adaptive,
        controller_settings or {},
    )
    kernel_class = AdaptiveStepLaneKernel if adaptive else FixedStepLaneKernel
    kernel = kernel_class(integrator, blocksize=blocksize)
    key = (
        type(integrator),
        kernel.config_hash,
        template.f,
        getattr(template, "g", None),
        callbacks,
    )
    cached = _KERNEL_CACHE.get(key)
    if cached is not None:
        _KERNEL_CACHE.move_to_end(key)
        return cached
    _KERNEL_CACHE[key] = kernel
    while len(_KERNEL_CACHE) > _KERNEL_CACHE_SIZE:
        _KERNEL_CACHE.popitem(last=False)
    return kernel


def _launch(batch, template, algorithm, *, adaptive, dt, saveat,
            save_everystep, abstol, reltol, callback, tstops, seed,
            blocksize, controller_settings, return_codes):
    backend = _resolve_backend(batch)
    precision = template.time_precision
    dt = precision(dt)
    abstol = precision(abstol)
    reltol = precision(reltol)
    if not dt > 0:
        raise ConfigurationError(f"dt must be positive, got {dt}.")

    _check_template(template, batch)
    _check_algorithm(algorithm, template, adaptive)
    policy = resolve_save_policy(batch, saveat, save_everystep, adaptive)
    if template.is_sde:
        _check_noise(algorithm, batch.template)

    logger = default_timelogger
    with logger.timed("buffer_allocation", category="dispatch"):
        sizes = OutputSizes.from_policy(policy, batch, dt, tstops)
        ts, us = allocate_output_buffers(
            sizes, template.tspan[0], precision, backend
        )

    with logger.timed("kernel_build", category="dispatch"):
        kernel = get_lane_kernel(
            algorithm, template, backend, policy, callback, adaptive,
            controller_settings, blocksize,
        )
        workspace = allocate_workspace(
            batch, kernel.integrator, policy, backend, tstops,
            None if adaptive else dt, seed,
        )
        launch = kernel.launch

    with logger.timed("kernel_launch", category="dispatch",
                      n_lanes=len(batch), backend=backend.value):
        launch(
            batch.u0, batch.p, batch.tspan, workspace.grids,
            workspace.tstops, workspace.noise, ts, us, workspace.fscratch,
            workspace.mscratch, workspace.tstate, workspace.istate, dt,
            abstol, reltol,
        )
        synchronize(backend)

    if return_codes:
        return ts, us, workspace.return_codes()
    return ts, us


@contextmanager
def _time_logging(kwargs: dict):
    """Apply ``time_logging_level`` for one call, then restore the old one."""
    if "time_logging_level" not in kwargs:
        yield
        return
    previous = default_timelogger.verbosity
    default_timelogger.set_verbosity(kwargs.pop("time_logging_level"))
    try:
        yield
    finally:
        default_timelogger.set_verbosity(previous)


def _split_kwargs(kwargs: dict, adaptive: bool, context: str):
    recognised = ALL_STEP_CONTROLLER_PARAMETERS if adaptive else set()
    controller = warn_unrecognised(kwargs, recognised, context, stacklevel=4)
    return {key: float(value) for key, value in controller.items()}


def vectorized_solve(
    batch: Union[ProblemBatch, Sequence[ODEProblem]],
    template_problem: ODEProblem,
    algorithm: GPUAlgorithm,
    *,
    dt: float,
    saveat=None,
    save_everystep: bool = True,
    callback: CallbackLike = None,
    tstops=None,
    seed: Optional[int] = None,
    blocksize: int = 64,
    return_codes: bool = False,
    **kwargs,
):
    """Solve every problem in ``batch`` with fixed steps, one lane each.

    Parameters
    ----------
    batch
        Problems to solve. A batch resident on the host runs on the CPU
        backend with a :class:`HostBackendWarning`; use
        :meth:`ProblemBatch.to_device` for CUDA.
    template_problem
        Problem whose functions, precision and time span configure the
        launch. Output sizes follow its ``tspan``.
    algorithm
        Any :class:`GPUAlgorithm`; SDE algorithms need SDE problems.
    dt
        Fixed step. Steps land on ``t0 + k*dt`` and are shortened only to
        hit ``tstops``.
    saveat
        Save times shared by all lanes without their own ``saveat``.
    save_everystep
        Without ``saveat``, save every step (True) or only the endpoints.
    callback
        A :class:`DiscreteCallback` or :class:`CallbackSet`.
    tstops
        Times every lane must step onto.
    seed
        Seed of the SDE noise; a fixed seed reproduces every path.
    blocksize
        CUDA threads per block.
    return_codes
        Also return each lane's :class:`ReturnCode`.
    **kwargs
        ``time_logging_level`` sets the verbosity of
        :data:`default_timelogger` for this call only. Anything else is
        ignored with a warning.

    Returns
    -------
    tuple
        ``(ts, us)`` shaped ``(len, B)`` and ``(len, B, n)`` on the backend
        that ran the lanes, plus the return codes when requested.

    Raises
    ------
    ConfigurationError
        For mismatched algorithm and problem kinds or lane save grids that
        cannot share a shape.
    IncompatibleNoiseError
        When a diagonal-noise algorithm meets non-diagonal noise.
    """
    batch = _as_batch(batch)
    with _time_logging(kwargs):
        controller_settings = _split_kwargs(kwargs, False, "vectorized_solve")
        return _launch(
            batch, template_problem, algorithm,
            adaptive=False, dt=dt, saveat=saveat,
            save_everystep=save_everystep, abstol=1e-6, reltol=1e-3,
            callback=callback, tstops=tstops, seed=seed, blocksize=blocksize,
            controller_settings=controller_settings, return_codes=return_codes,
        )


def vectorized_asolve(
    batch: Union[ProblemBatch, Sequence[ODEProblem]],
    template_problem: ODEProblem,
    algorithm: GPUAlgorithm,
    *,
    dt: float = 0.1,
    saveat=None,
    save_everystep: bool = False,
    abstol: float = 1e-6,
    reltol: float = 1e-3,
    callback: CallbackLike = None,
    tstops=None,
    blocksize: int = 64,
    return_codes: bool = False,
    **kwargs,
):
    """Solve every problem in ``batch`` with error-controlled steps.

    Parameters match :func:`vectorized_solve`, with ``dt`` the initial step
    and ``abstol``/``reltol`` the error tolerances. ``kp``, ``ki``,
    ``safety``, ``min_gain`` and ``max_gain`` configure the PI step
    controller.

    Raises
    ------
    ConfigurationError
        If ``save_everystep`` is set without ``saveat``.
    UnsupportedConfigurationError
        For SDE algorithms and tableaus without an error estimate.
    """
    batch = _as_batch(batch)
    with _time_logging(kwargs):
        controller_settings = _split_kwargs(kwargs, True, "vectorized_asolve")
        return _launch(
            batch, template_problem, algorithm,
            adaptive=True, dt=dt, saveat=saveat,
            save_everystep=save_everystep, abstol=abstol, reltol=reltol,
            callback=callback, tstops=tstops, seed=None, blocksize=blocksize,
            controller_settings=controller_settings, return_codes=return_codes,
        )
