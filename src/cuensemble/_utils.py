"""Shared helpers for validation, precision handling, and time arithmetic."""

from typing import Iterable, Optional, Union
from warnings import warn

import numpy as np
from attrs import fields, validators

PrecisionDType = Union[type[np.float16], type[np.float32], type[np.float64]]

ALLOWED_PRECISIONS = {np.dtype(np.float16), np.dtype(np.float32),
                      np.dtype(np.float64)}

#: Multiple of machine epsilon used for time coincidence checks.
TIME_TOLERANCE_ULPS = 100
#: Largest tolerance as a fraction of a fixed step.
STEP_TOLERANCE_FRACTION = 1e-3
#: Smallest step-capped tolerance, in ulps of the largest time.
MIN_TOLERANCE_ULPS = 4


def in_attr(name, attrs_class_instance):
    """Checks if a name is in the attributes of a class instance."""
    field_names = {field.name for field in
                   fields(attrs_class_instance.__class__)}
    return name in field_names or ("_" + name) in field_names


def precision_converter(value) -> type:
    """Return the numpy scalar type for a dtype-like ``value``."""
    return np.dtype(value).type


def precision_validator(instance, attribute, value):
    """attrs validator rejecting anything but float16/32/64 precision."""
    if np.dtype(value) not in ALLOWED_PRECISIONS:
        raise ValueError(
            f"{attribute.name} must be one of float16, float32 or float64, "
            f"got {value}."
        )


def getype_validator(dtype, min_):
    """Validator enforcing ``isinstance(value, dtype)`` and ``value >= min_``."""
    return validators.and_(
        validators.instance_of(dtype),
        validators.ge(min_),
    )


def gttype_validator(dtype, min_):
    """Validator enforcing ``isinstance(value, dtype)`` and ``value > min_``."""
    return validators.and_(
        validators.instance_of(dtype),
        validators.gt(min_),
    )


def inrangetype_validator(dtype, min_, max_):
    """Validator enforcing type and the closed range ``[min_, max_]``."""
    return validators.and_(
        validators.instance_of(dtype),
        validators.ge(min_),
        validators.le(max_),
    )


def warn_unrecognised(kwargs: dict, recognised: Iterable[str],
                      context: str, stacklevel: int = 3) -> dict:
    """Warn about keys in ``kwargs`` outside ``recognised``.

    Returns
    -------
    dict
        The subset of ``kwargs`` whose keys were recognised.
    """
    recognised = set(recognised)
    unknown = sorted(set(kwargs) - recognised)
    if unknown:
        warn(
            f"{context} ignored unrecognised keyword argument(s): "
            f"{', '.join(unknown)}",
            UserWarning,
            stacklevel=stacklevel,
        )
    return {key: value for key, value in kwargs.items() if key in recognised}


def time_tolerance(t0: float, tf: float, precision: PrecisionDType,
                   dt: Optional[float] = None) -> float:
    """Return the coincidence tolerance for times within ``[t0, tf]``.

    Two times closer than this value are treated as the same instant when
    matching grid points, stop times and the end of the span. With a fixed
    step ``dt`` the tolerance is also capped at a fraction of the step, so
    neighbouring grid points ``t0 + k*dt`` are never merged. The cap never
    goes below a few ulps of the span's largest time.
    """
    magnitude = max(abs(float(t0)), abs(float(tf)))
    eps = float(np.finfo(precision).eps)
    tol = TIME_TOLERANCE_ULPS * eps * max(1.0, magnitude)
    if dt is not None:
        step_cap = max(STEP_TOLERANCE_FRACTION * float(dt),
                       MIN_TOLERANCE_ULPS * eps * magnitude)
        tol = min(tol, step_cap)
    return tol


def fixed_grid_count(t0: float, tf: float, dt: float,
                     precision: PrecisionDType) -> int:
    """Number of points ``t0 + k*dt`` with ``k >= 0`` that do not exceed ``tf``.

    Points within :func:`time_tolerance` of ``tf`` count as landing on it, so
    a span that is an integer multiple of ``dt`` up to rounding yields the
    inclusive count ``(tf - t0)/dt + 1``.
    """
    if dt <= 0:
        raise ValueError(f"dt must be positive, got {dt}.")
    t0, tf, dt = float(t0), float(tf), float(dt)
    tol = time_tolerance(t0, tf, precision, dt)
    steps = int(np.floor((tf - t0) / dt))
    # correct for floor landing one below an exact multiple
    while t0 + (steps + 1) * dt <= tf + tol:
        steps += 1
    while steps > 0 and t0 + steps * dt > tf + tol:
        steps -= 1
    return max(steps, 0) + 1


def interior_tstops(tstops: Optional[np.ndarray], t0: float, tf: float,
                    precision: PrecisionDType,
                    dt: Optional[float] = None) -> np.ndarray:
    """Sorted stop times strictly inside ``(t0, tf)``."""
    if tstops is None:
        return np.empty(0, dtype=precision)
    tstops = np.sort(np.asarray(tstops, dtype=precision).ravel())
    tol = time_tolerance(t0, tf, precision, dt)
    keep = (tstops > t0 + tol) & (tstops < tf - tol)
    return tstops[keep]


def off_grid_tstops(tstops: np.ndarray, t0: float, dt: float,
                    tol: float) -> int:
    """Count stop times that do not coincide with a point ``t0 + k*dt``."""
    count = 0
    for stop in tstops:
        k = np.rint((stop - t0) / dt)
        if abs(t0 + k * dt - stop) > tol:
            count += 1
    return count
