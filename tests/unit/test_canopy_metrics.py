# tests/unit/test_canopy_metrics.py

import math

import numpy as np
import pytest

from phytocanopy.exceptions import InvalidSampleError
from phytocanopy.lidar.canopy_metrics import (
    PERCENTILE_LEVELS,
    PERCENTILE_FIELDS,
    PointSample,
    CellMetrics,
    compute_cell_metrics,
    cell_metrics_from_arrays
)
from helpers import assert_metrics_close

def _samples(pairs):
    return [PointSample(height=h, return_number=r) for h, r in pairs]

def test_reference_cell():
    m = compute_cell_metrics(_samples([(1, 1), (3, 1), (6, 2)]))

    assert m.COV == pytest.approx(0.5)
    assert m.Hmean == pytest.approx(10 / 3)
    assert m.HMAX == 6
    assert m.S == pytest.approx(1 / 3)
    assert m.HSD == pytest.approx(np.std([1, 3, 6], ddof=1))

def test_schema_is_fixed_and_ordered():
    names = CellMetrics.field_names()

    assert names[:5] == ("COV", "Hmean", "HSD", "HMAX", "S")
    assert names[5:] == PERCENTILE_FIELDS
    assert len(PERCENTILE_LEVELS) == 24
    assert PERCENTILE_FIELDS[0] == "H5TH"
    assert PERCENTILE_FIELDS[-1] == "H100TH"
    assert "H97TH" in names

def test_percentiles_use_linear_interpolation():
    heights = [0.0, 10.0]
    m = cell_metrics_from_arrays(heights, [1, 1])

    assert m.H50TH == pytest.approx(5.0)
    assert m.H5TH == pytest.approx(0.5)
    assert m.percentile(97) == pytest.approx(9.7)

def test_hmax_equals_max_and_p100():
    rng = np.random.default_rng(0)
    z = rng.uniform(-2, 35, 200)
    rn = rng.integers(1, 4, 200)
    m = cell_metrics_from_arrays(z, rn)

    assert m.HMAX == z.max()
    assert m.H100TH == m.HMAX

def test_percentiles_monotonic():
    rng = np.random.default_rng(1)
    for _ in range(20):
        n = int(rng.integers(1, 60))
        z = rng.gamma(2.0, 4.0, n) * rng.choice([1e-3, 1.0, 1e3])
        m = cell_metrics_from_arrays(z, np.ones(n, dtype=int))
        values = list(m.percentiles().values())
        assert all(a <= b for a, b in zip(values, values[1:]))

def test_no_first_returns_gives_nan_cover():
    m = compute_cell_metrics(_samples([(4.0, 2), (8.0, 3)]))

    assert math.isnan(m.COV)
    assert m.HMAX == 8.0

def test_single_sample():
    m = compute_cell_metrics(_samples([(7.25, 1)]))

    assert m.Hmean == 7.25
    assert m.HMAX == 7.25
    assert math.isnan(m.HSD)
    assert all(v == 7.25 for v in m.percentiles().values())
    assert m.COV == 1.0
    assert m.S == 0.0

def test_strata_bounds_are_strict():
    m = cell_metrics_from_arrays([2.0, 5.0, 2.5, 4.99], [1, 1, 1, 1])
    assert m.S == pytest.approx(0.5)

def test_cover_threshold_is_inclusive():
    m = cell_metrics_from_arrays([2.0, 1.99], [1, 1])
    assert m.COV == pytest.approx(0.5)

def test_cover_ignores_later_returns_in_denominator():
    # 1 of the 2 first returns is canopy; later returns do not dilute the ratio
    m = cell_metrics_from_arrays([10.0, 0.5, 10.0, 10.0, 10.0], [1, 1, 2, 3, 2])
    assert m.COV == pytest.approx(0.5)

def test_negative_heights_accepted():
    m = cell_metrics_from_arrays([-1.5, -0.5, 0.0], [1, 1, 1])
    assert m.HMAX == 0.0
    assert m.Hmean == pytest.approx(-2.0 / 3)
    assert m.COV == 0.0

def test_idempotent():
    samples = _samples([(3.3, 1), (12.1, 1), (0.2, 2), (7.7, 1), (25.0, 1)])
    first = compute_cell_metrics(samples)
    second = compute_cell_metrics(samples)

    assert first.as_array().tobytes() == second.as_array().tobytes()

def test_permutation_invariance():
    rng = np.random.default_rng(7)
    z = rng.uniform(0, 30, 137)
    rn = rng.integers(1, 5, 137)
    reference = cell_metrics_from_arrays(z, rn)

    for _ in range(5):
        perm = rng.permutation(z.size)
        shuffled = cell_metrics_from_arrays(z[perm], rn[perm])
        assert shuffled.as_array().tobytes() == reference.as_array().tobytes()

def test_input_not_mutated():
    z = np.array([5.0, 1.0, 3.0])
    rn = np.array([1, 2, 1])
    cell_metrics_from_arrays(z, rn)

    np.testing.assert_array_equal(z, [5.0, 1.0, 3.0])
    np.testing.assert_array_equal(rn, [1, 2, 1])

def test_empty_cell_is_all_nan():
    m = compute_cell_metrics([])

    assert all(math.isnan(v) for v in m.as_dict().values())
    assert_metrics_close(m, CellMetrics.empty())

@pytest.mark.parametrize("z, rn", [
    ([1.0, 2.0], [1, 0]),
    ([1.0, 2.0], [1, -3]),
    ([1.0, np.nan], [1, 1]),
    ([1.0, np.inf], [1, 1]),
    ([1.0, 2.0], [1]),
    ([1.0, 2.0], [1.0, 1.5]),
])
def test_invalid_samples_raise(z, rn):
    with pytest.raises(InvalidSampleError):
        cell_metrics_from_arrays(z, rn)

def test_invalid_sample_is_value_error():
    with pytest.raises(ValueError):
        compute_cell_metrics(_samples([(1.0, 0)]))

def test_record_accessors():
    m = compute_cell_metrics(_samples([(1, 1), (3, 1), (6, 2)]))

    d = m.as_dict()
    assert list(d.keys()) == list(CellMetrics.field_names())
    assert m.as_array().shape == (29,)
    assert m.percentile(100) == m.H100TH

    with pytest.raises(KeyError):
        m.percentile(42)

def test_record_is_immutable():
    m = compute_cell_metrics(_samples([(1, 1)]))
    with pytest.raises(AttributeError):
        m.HMAX = 3.0
