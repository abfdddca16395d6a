# tests/unit/test_filters.py

import numpy as np
import pytest

from phytocanopy.lidar.layer import PointCloud
from phytocanopy.lidar.filters import (
    CLASS_NOISE,
    filter_duplicates,
    classify_noise,
    filter_noise
)

def test_filter_duplicates_keeps_first_and_order():
    pc = PointCloud.from_arrays(
        x=[1.0, 2.0, 1.0, 3.0, 2.0],
        y=[1.0, 2.0, 1.0, 3.0, 2.0],
        z=[5.0, 6.0, 5.0, 7.0, 6.5],
        return_number=[1, 1, 2, 1, 1]
    )
    out = filter_duplicates(pc)

    assert len(out) == 4
    np.testing.assert_array_equal(out.z, [5.0, 6.0, 7.0, 6.5])
    # The first occurrence (return 1) survives
    assert out.return_number[0] == 1

def test_filter_duplicates_empty():
    pc = PointCloud.from_arrays([], [], [])
    assert len(filter_duplicates(pc)) == 0

@pytest.fixture
def cloud_with_outlier():
    rng = np.random.default_rng(3)
    xyz = rng.uniform(0, 5, (300, 3))
    xyz = np.vstack((xyz, [[2.5, 2.5, 80.0]]))
    return PointCloud.from_arrays(xyz[:, 0], xyz[:, 1], xyz[:, 2])

def test_classify_noise_flags_isolated_point(cloud_with_outlier):
    out = classify_noise(cloud_with_outlier, k=10, m=3.0)

    assert out.classification[-1] == CLASS_NOISE
    # The input cloud is left untouched
    assert cloud_with_outlier.classification[-1] != CLASS_NOISE
    assert (out.classification == CLASS_NOISE).sum() < 10

def test_classify_noise_quantile(cloud_with_outlier):
    out = classify_noise(cloud_with_outlier, k=5, m=0.99, quantile=True)

    assert out.classification[-1] == CLASS_NOISE
    assert (out.classification == CLASS_NOISE).sum() <= 4

def test_filter_noise_drops_class_18(cloud_with_outlier):
    out = filter_noise(classify_noise(cloud_with_outlier))

    assert len(out) < len(cloud_with_outlier)
    assert out.z.max() < 80.0
    assert not np.any(out.classification == CLASS_NOISE)
    # Bounds stay those of the full cloud so derived grids keep aligning
    assert out.min_x == cloud_with_outlier.min_x

def test_classify_noise_too_few_points():
    pc = PointCloud.from_arrays([0, 1, 2], [0, 1, 2], [0, 1, 50])
    out = classify_noise(pc, k=10)
    assert out is pc

@pytest.mark.parametrize("kwargs", [
    {"k": 0},
    {"m": 1.5, "quantile": True},
])
def test_classify_noise_rejects_bad_parameters(cloud_with_outlier, kwargs):
    with pytest.raises(ValueError):
        classify_noise(cloud_with_outlier, **kwargs)
