"""Butcher tableaus for the explicit Runge--Kutta lane integrators.

Each tableau lists the literature source for its coefficients. Tableaus with
``b_hat`` carry an embedded lower-order solution and may drive adaptive
stepping.
"""

from typing import Optional, Tuple

import attrs
import numpy as np


def _as_rows(value) -> Tuple[Tuple[float, ...], ...]:
    return tuple(tuple(float(x) for x in row) for row in value)


def _as_row(value) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    return tuple(float(x) for x in value)


@attrs.define(frozen=True)
class ButcherTableau:
    """Coefficients ``(a, b, c)`` and optional embedded weights ``b_hat``.

    Attributes
    ----------
    a
        Strictly lower-triangular stage coupling matrix, ``s`` rows of ``s``.
    b
        Weights of the propagated solution.
    c
        Stage abscissae.
    order
        Classical order of the propagated solution.
    b_hat
        Weights of the embedded solution, or None.
    """

    a: Tuple[Tuple[float, ...], ...] = attrs.field(converter=_as_rows)
    b: Tuple[float, ...] = attrs.field(converter=_as_row)
    c: Tuple[float, ...] = attrs.field(converter=_as_row)
    order: int = attrs.field(validator=attrs.validators.instance_of(int))
    b_hat: Optional[Tuple[float, ...]] = attrs.field(
        default=None, converter=_as_row
    )

    def __attrs_post_init__(self):
        stages = len(self.b)
        if len(self.c) != stages or len(self.a) != stages:
            raise ValueError("Tableau a, b and c must describe equal stages.")
        for i, row in enumerate(self.a):
            if len(row) != stages:
                raise ValueError("Tableau a must be square.")
            if any(row[j] != 0.0 for j in range(i, stages)):
                raise ValueError("Only explicit tableaus are supported.")
        if self.b_hat is not None and len(self.b_hat) != stages:
            raise ValueError("Tableau b_hat must match the stage count.")

    @property
    def stage_count(self) -> int:
        return len(self.b)

    @property
    def has_error_estimate(self) -> bool:
        return self.b_hat is not None

    @property
    def error_weights(self) -> Optional[Tuple[float, ...]]:
        """``b - b_hat``, the weights of the local error estimate."""
        if self.b_hat is None:
            return None
        return tuple(b - bh for b, bh in zip(self.b, self.b_hat))

    @property
    def first_same_as_last(self) -> bool:
        """True when the last stage evaluates ``f`` at the new solution."""
        last = self.a[-1]
        return (
            self.stage_count > 1
            and self.c[-1] == 1.0
            and self.b[-1] == 0.0
            and np.allclose(last, self.b)
        )

    def typed_rows(self, precision):
        """``a`` as nested tuples of ``precision`` scalars."""
        return tuple(tuple(precision(x) for x in row) for row in self.a)

    def typed_vector(self, vector, precision):
        """One coefficient vector as a tuple of ``precision`` scalars."""
        return tuple(precision(x) for x in vector)


#: Heun's second-order method, no error estimate.
#: Heun, K. "Neue Methoden zur approximativen Integration der
#: Differentialgleichungen einer unabhängigen Veränderlichen." *Z.
#: Math. Phys.* 45 (1900).
HEUN_2 = ButcherTableau(
    a=((0.0, 0.0), (1.0, 0.0)),
    b=(0.5, 0.5),
    c=(0.0, 1.0),
    order=2,
)

#: Classical four-stage method.
#: Kutta, W. "Beitrag zur näherungsweisen Integration totaler
#: Differentialgleichungen." *Zeitschrift für Mathematik und Physik* 46 (1901).
CLASSICAL_RK4 = ButcherTableau(
    a=(
        (0.0, 0.0, 0.0, 0.0),
        (0.5, 0.0, 0.0, 0.0),
        (0.0, 0.5, 0.0, 0.0),
        (0.0, 0.0, 1.0, 0.0),
    ),
    b=(1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0),
    c=(0.0, 0.5, 0.5, 1.0),
    order=4,
)

#: Bogacki--Shampine 3(2), first-same-as-last.
#: Bogacki, P. and Shampine, L. F. "A 3(2) pair of Runge-Kutta formulas."
#: *Appl. Math. Lett.* 2.4 (1989).
BOGACKI_SHAMPINE_32 = ButcherTableau(
    a=(
        (0.0, 0.0, 0.0, 0.0),
        (0.5, 0.0, 0.0, 0.0),
        (0.0, 0.75, 0.0, 0.0),
        (2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0, 0.0),
    ),
    b=(2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0, 0.0),
    b_hat=(7.0 / 24.0, 0.25, 1.0 / 3.0, 0.125),
    c=(0.0, 0.5, 0.75, 1.0),
    order=3,
)

#: Dormand--Prince 5(4), first-same-as-last.
#: Dormand, J. R. and Prince, P. J. "A family of embedded Runge-Kutta
#: formulae." *J. Comput. Appl. Math.* 6.1 (1980).
_DP5_B = (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0,
          -2187.0 / 6784.0, 11.0 / 84.0, 0.0)
DORMAND_PRINCE_54 = ButcherTableau(
    a=(
        (0.0,) * 7,
        (1.0 / 5.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
        (3.0 / 40.0, 9.0 / 40.0, 0.0, 0.0, 0.0, 0.0, 0.0),
        (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0, 0.0, 0.0, 0.0, 0.0),
        (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0,
         -212.0 / 729.0, 0.0, 0.0, 0.0),
        (9017.0 / 3168.0, -355.0 / 33.0, 46732.0 / 5247.0, 49.0 / 176.0,
         -5103.0 / 18656.0, 0.0, 0.0),
        _DP5_B,
    ),
    b=_DP5_B,
    b_hat=(5179.0 / 57600.0, 0.0, 7571.0 / 16695.0, 393.0 / 640.0,
           -92097.0 / 339200.0, 187.0 / 2100.0, 1.0 / 40.0),
    c=(0.0, 0.2, 0.3, 0.8, 8.0 / 9.0, 1.0, 1.0),
    order=5,
)

#: Cash--Karp 5(4).
#: Cash, J. R. and Karp, A. H. "A variable order Runge-Kutta method for
#: initial value problems with rapidly varying right-hand sides." *ACM Trans.
#: Math. Softw.* 16.3 (1990).
CASH_KARP_54 = ButcherTableau(
    a=(
        (0.0,) * 6,
        (0.2, 0.0, 0.0, 0.0, 0.0, 0.0),
        (3.0 / 40.0, 9.0 / 40.0, 0.0, 0.0, 0.0, 0.0),
        (0.3, -0.9, 1.2, 0.0, 0.0, 0.0),
        (-11.0 / 54.0, 2.5, -70.0 / 27.0, 35.0 / 27.0, 0.0, 0.0),
        (1631.0 / 55296.0, 175.0 / 512.0, 575.0 / 13824.0,
         44275.0 / 110592.0, 253.0 / 4096.0, 0.0),
    ),
    b=(37.0 / 378.0, 0.0, 250.0 / 621.0, 125.0 / 594.0, 0.0,
       512.0 / 1771.0),
    b_hat=(2825.0 / 27648.0, 0.0, 18575.0 / 48384.0, 13525.0 / 55296.0,
           277.0 / 14336.0, 0.25),
    c=(0.0, 0.2, 0.3, 0.6, 1.0, 7.0 / 8.0),
    order=5,
)
