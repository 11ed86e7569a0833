"""Explicit Runge--Kutta lane integrator.

Float scratch layout, in blocks of ``n``:

====  =========================================================
0     current state ``u``
1     state at the start of the last step
2     ``f`` at the start of the last step
3     ``f`` at the current state
4     trial state of the step being attempted
5     local error estimate of the attempted step
6..   one block per stage derivative
====  =========================================================

Blocks 1 to 3 feed the cubic Hermite continuous extension.
"""

from typing import Callable

from attrs import define, field, validators

from cuensemble.backends import device_function
from cuensemble.integrators.algorithms.base_integrator import (
    BaseIntegrator,
    IntegratorCache,
    IntegratorConfig,
    build_init,
)
from cuensemble.integrators.algorithms.tableaus import (
    ButcherTableau,
    CLASSICAL_RK4,
)
from cuensemble.integrators.lane_state import (
    ABSTOL,
    DT,
    ERR_PREV,
    RC_DT_LESS_THAN_MIN,
    RELTOL,
    RETCODE,
    T_NOW,
    T_PREV,
    T_TOL,
    TSTOP_IDX,
    GRID_IDX,
)
from cuensemble.integrators.norms import ScaledNorm
from cuensemble.integrators.step_control import PIController

U, UPREV, FPREV, FNOW, UTRIAL, ERR, STAGES = range(7)

#: Error norm assigned to non-finite or enormous error estimates.
_ERR_CEILING = 1.0e10


@define
class ERKIntegratorConfig(IntegratorConfig):
    """Integrator settings plus the Butcher tableau."""

    tableau: ButcherTableau = field(
        default=CLASSICAL_RK4,
        validator=validators.instance_of(ButcherTableau),
    )


class ERKIntegrator(BaseIntegrator):
    """Explicit Runge--Kutta integrator for one lane per problem.

    Parameters
    ----------
    precision
        Floating type of states and times.
    n
        Number of states.
    f
        Right-hand side ``f(du, u, p, t)``.
    tableau
        Method coefficients. Adaptive stepping needs ``b_hat``.
    controller_settings
        Optional PI controller gains, used when ``adaptive`` is set.
    **kwargs
        Remaining :class:`IntegratorConfig` fields.
    """

    def __init__(self, precision, n, f, tableau=CLASSICAL_RK4,
                 controller_settings=None, **kwargs):
        config = ERKIntegratorConfig(
            precision=precision, n=n, f=f, tableau=tableau, **kwargs
        )
        if config.adaptive and not tableau.has_error_estimate:
            raise ValueError(
                "Adaptive stepping needs a tableau with an embedded error "
                "estimate (b_hat)."
            )
        super().__init__(config)
        self.norm = ScaledNorm(
            precision=precision, n=n, backend=config.backend
        )
        self.controller = PIController(
            precision=precision,
            order=tableau.order,
            backend=config.backend,
            **(controller_settings or {}),
        )

    @property
    def tableau(self) -> ButcherTableau:
        return self.compile_settings.tableau

    @property
    def scratch_width(self) -> int:
        return (STAGES + self.tableau.stage_count) * self.n

    def build(self) -> IntegratorCache:
        config = self.compile_settings
        backend = config.backend
        precision = config.precision
        n = config.n
        tableau = config.tableau
        f = device_function(config.f, backend)

        stage_count = tableau.stage_count
        a = tableau.typed_rows(precision)
        b = tableau.typed_vector(tableau.b, precision)
        c = tableau.typed_vector(tableau.c, precision)
        if tableau.has_error_estimate:
            e = tableau.typed_vector(tableau.error_weights, precision)
        else:
            e = tuple(precision(0.0) for _ in range(stage_count))
        fsal = tableau.first_same_as_last
        zero = precision(0.0)
        one = precision(1.0)
        two = precision(2.0)

        u0_ = U * n
        up_ = UPREV * n
        fp_ = FPREV * n
        fn_ = FNOW * n
        ut_ = UTRIAL * n
        er_ = ERR * n
        k_ = STAGES * n
        last_stage = k_ + (stage_count - 1) * n

        def prepare(p, fs, tst):
            f(fs[fn_:fn_ + n], fs[u0_:u0_ + n], p, tst[T_NOW])
            for i in range(n):
                fs[fp_ + i] = fs[fn_ + i]

        def refresh(p, fs, tst):
            f(fs[fn_:fn_ + n], fs[u0_:u0_ + n], p, tst[T_NOW])

        def attempt(p, t, h, fs):
            """Trial step of size ``h`` into the trial and error blocks."""
            for i in range(n):
                fs[k_ + i] = fs[fn_ + i]
            for s in range(1, stage_count):
                row = a[s]
                for i in range(n):
                    acc = zero
                    for j in range(s):
                        acc += row[j] * fs[k_ + j * n + i]
                    fs[ut_ + i] = fs[u0_ + i] + h * acc
                stage = k_ + s * n
                f(fs[stage:stage + n], fs[ut_:ut_ + n], p, t + c[s] * h)
            for i in range(n):
                acc = zero
                err = zero
                for j in range(stage_count):
                    kj = fs[k_ + j * n + i]
                    acc += b[j] * kj
                    err += e[j] * kj
                fs[ut_ + i] = fs[u0_ + i] + h * acc
                fs[er_ + i] = h * err

        def accept(p, t_new, fs):
            for i in range(n):
                fs[up_ + i] = fs[u0_ + i]
                fs[fp_ + i] = fs[fn_ + i]
                fs[u0_ + i] = fs[ut_ + i]
            if fsal:
                for i in range(n):
                    fs[fn_ + i] = fs[last_stage + i]
            else:
                f(fs[fn_:fn_ + n], fs[u0_:u0_ + n], p, t_new)

        def interpolate(t, fs, tst, out):
            t_prev = tst[T_PREV]
            h = tst[T_NOW] - t_prev
            if h == zero:
                for i in range(n):
                    out[i] = fs[u0_ + i]
                return
            theta = (t - t_prev) / h
            theta1 = theta - one
            for i in range(n):
                y0 = fs[up_ + i]
                y1 = fs[u0_ + i]
                out[i] = (
                    (one - theta) * y0
                    + theta * y1
                    + theta * theta1 * (
                        (one - two * theta) * (y1 - y0)
                        + theta1 * h * fs[fp_ + i]
                        + theta * h * fs[fn_ + i]
                    )
                )

        prepare = device_function(prepare, backend)
        refresh = device_function(refresh, backend)
        attempt = device_function(attempt, backend)
        accept = device_function(accept, backend)
        interpolate = device_function(interpolate, backend)
        savevalues, after_step, next_fixed_time = self.common_functions(
            interpolate, refresh
        )

        if config.adaptive:
            step = self._build_adaptive_step(
                attempt, accept, after_step, n, er_, ut_
            )
        else:
            def step(p, tstops, noise, ts, us, grid, fs, ms, tst, ist):
                t = tst[T_NOW]
                t_next, on_grid, hits_stop = next_fixed_time(tstops, tst, ist)
                attempt(p, t, t_next - t, fs)
                accept(p, t_next, fs)
                tst[T_PREV] = t
                tst[T_NOW] = t_next
                if on_grid:
                    ist[GRID_IDX] += 1
                if hits_stop:
                    ist[TSTOP_IDX] += 1
                return after_step(p, ts, us, grid, fs, tst, ist)

            step = device_function(step, backend)

        return IntegratorCache(
            init=build_init(n, prepare, backend),
            step=step,
            savevalues=savevalues,
            interpolate=interpolate,
        )

    def _build_adaptive_step(self, attempt, accept, after_step, n, er_, ut_):
        """Error-controlled step that retries until accepted.

        Steps are not clamped to ``tf``; they are clamped to land on pending
        stop times. A step size below the time tolerance ends the lane with
        ``DT_LESS_THAN_MIN``.
        """
        config = self.compile_settings
        precision = config.precision
        scaled_norm = self.norm.scaled_norm
        step_gain = self.controller.step_gain
        one = precision(1.0)
        ceiling = precision(_ERR_CEILING)
        err_floor = precision(1.0e-4)

        def step(p, tstops, noise, ts, us, grid, fs, ms, tst, ist):
            t = tst[T_NOW]
            tol = tst[T_TOL]
            n_stops = tstops.shape[0]
            j = ist[TSTOP_IDX]
            while j < n_stops and tstops[j] <= t + tol:
                j += 1
            ist[TSTOP_IDX] = j
            while True:
                h = tst[DT]
                hits_stop = False
                if j < n_stops and t + h >= tstops[j] - tol:
                    h = tstops[j] - t
                    hits_stop = True
                attempt(p, t, h, fs)
                err = scaled_norm(
                    fs[er_:er_ + n], fs[0:n], fs[ut_:ut_ + n],
                    tst[ABSTOL], tst[RELTOL],
                )
                if not (err < ceiling):
                    err = ceiling
                gain = step_gain(err, tst[ERR_PREV])
                if err <= one:
                    t_new = tstops[j] if hits_stop else t + h
                    accept(p, t_new, fs)
                    tst[T_PREV] = t
                    tst[T_NOW] = t_new
                    tst[ERR_PREV] = max(err, err_floor)
                    if hits_stop:
                        ist[TSTOP_IDX] = j + 1
                    else:
                        tst[DT] = h * gain
                    if tst[DT] < tol:
                        ist[RETCODE] = RC_DT_LESS_THAN_MIN
                    break
                tst[DT] = h * gain
                if tst[DT] < tol:
                    ist[RETCODE] = RC_DT_LESS_THAN_MIN
                    return False
            return after_step(p, ts, us, grid, fs, tst, ist)

        return device_function(step, config.backend)
