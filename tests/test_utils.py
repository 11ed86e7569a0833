import attrs
import numpy as np
import pytest

from cuensemble._utils import (
    fixed_grid_count,
    getype_validator,
    gttype_validator,
    in_attr,
    inrangetype_validator,
    interior_tstops,
    off_grid_tstops,
    precision_converter,
    precision_validator,
    time_tolerance,
    warn_unrecognised,
)


@attrs.define
class _Validated:
    count: int = attrs.field(default=1, validator=getype_validator(int, 1))
    rate: float = attrs.field(default=1.0,
                              validator=gttype_validator(float, 0.0))
    fraction: float = attrs.field(
        default=0.5, validator=inrangetype_validator(float, 0.0, 1.0)
    )
    _hidden: int = attrs.field(default=0)


def test_in_attr_finds_public_and_underscored_names():
    instance = _Validated()
    assert in_attr("count", instance)
    assert in_attr("hidden", instance)
    assert not in_attr("missing", instance)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"count": 0},
        {"count": 1.5},
        {"rate": 0.0},
        {"fraction": 1.5},
        {"fraction": -0.1},
    ],
)
def test_type_validators_reject(kwargs):
    with pytest.raises((TypeError, ValueError)):
        _Validated(**kwargs)


def test_type_validators_accept_boundaries():
    instance = _Validated(count=1, rate=1e-12, fraction=1.0)
    assert instance.fraction == 1.0


@pytest.mark.parametrize("value", [np.float16, np.float32, np.float64,
                                   "float32"])
def test_precision_converter_and_validator(value):
    converted = precision_converter(value)
    assert converted in (np.float16, np.float32, np.float64)
    field = attrs.fields(_Validated).count
    precision_validator(None, field, converted)


def test_precision_validator_rejects_integers():
    field = attrs.fields(_Validated).count
    with pytest.raises(ValueError, match="must be one of"):
        precision_validator(None, field, np.int32)


def test_warn_unrecognised_returns_known_subset():
    with pytest.warns(UserWarning, match="bogus"):
        known = warn_unrecognised({"kp": 0.5, "bogus": 1}, {"kp"}, "test")
    assert known == {"kp": 0.5}


def test_time_tolerance_scales_with_span():
    eps = np.finfo(np.float64).eps
    assert time_tolerance(0.0, 1.0, np.float64) == pytest.approx(100 * eps)
    assert time_tolerance(0.0, 1e4, np.float64) == pytest.approx(
        100 * eps * 1e4
    )
    assert (time_tolerance(0.0, 1.0, np.float32)
            > time_tolerance(0.0, 1.0, np.float64))


def test_time_tolerance_capped_by_step():
    eps32 = np.finfo(np.float32).eps
    uncapped = time_tolerance(0.0, 1e-3, np.float32)
    assert uncapped == pytest.approx(100 * eps32)
    assert time_tolerance(0.0, 1e-3, np.float32, dt=2e-6) == pytest.approx(
        2e-9
    )
    # the cap never drops below a few ulps of the largest time
    assert time_tolerance(0.0, 1.0, np.float32, dt=1e-9) == pytest.approx(
        4 * eps32
    )
    assert time_tolerance(0.0, 1.0, np.float64, dt=0.1) == pytest.approx(
        100 * np.finfo(np.float64).eps
    )


@pytest.mark.parametrize(
    "t0, tf, dt, expected",
    [
        (0.0, 1.0, 0.1, 11),
        (0.0, 1.0, 0.3, 4),
        (0.0, 1.0, 0.25, 5),
        (0.0, 1.0, 2.0, 1),
        (1.0, 2.0, 0.1, 11),
    ],
)
def test_fixed_grid_count(t0, tf, dt, expected):
    assert fixed_grid_count(t0, tf, dt, np.float64) == expected


def test_fixed_grid_count_single_precision_inclusive():
    dt = np.float32(0.1)
    assert fixed_grid_count(0.0, 1.0, dt, np.float32) == 11


def test_fixed_grid_count_single_precision_small_step():
    assert fixed_grid_count(0.0, 1e-3, 2e-6, np.float32) == 501


def test_fixed_grid_count_rejects_nonpositive_step():
    with pytest.raises(ValueError):
        fixed_grid_count(0.0, 1.0, 0.0, np.float64)


def test_interior_tstops_sorted_and_strict():
    stops = interior_tstops([0.9, 0.0, 0.25, 1.0, 1.5], 0.0, 1.0,
                            np.float64)
    np.testing.assert_array_equal(stops, [0.25, 0.9])
    assert interior_tstops(None, 0.0, 1.0, np.float64).size == 0


def test_off_grid_tstops_counts_only_off_grid_points():
    tol = time_tolerance(0.0, 1.0, np.float64)
    stops = np.array([0.25, 0.3, 0.55])
    assert off_grid_tstops(stops, 0.0, 0.1, tol) == 2
