# tests/helpers.py

import math

import numpy as np
from phytocanopy.raster.layer import Raster
from phytocanopy.lidar.canopy_metrics import CellMetrics

def assert_grid_match(r1: Raster, r2: Raster):
    """Strictly verify two rasters share the exact same grid."""
    assert r1.crs == r2.crs, \
        f"CRS mismatch: {r1.crs} != {r2.crs}"

    assert r1.shape[1:] == r2.shape[1:], \
        f"Shape mismatch: {r1.shape} != {r2.shape}"

    assert np.allclose(np.array(r1.transform), np.array(r2.transform), atol=1e-9), \
        "Transform mismatch (Pixel alignment error)"

def assert_metrics_close(m1: CellMetrics, m2: CellMetrics, rel: float = 1e-9, abs_tol: float = 1e-9):
    """Field-by-field comparison where two NaNs count as equal."""
    for name, a in m1.as_dict().items():
        b = getattr(m2, name)
        if math.isnan(a) or math.isnan(b):
            assert math.isnan(a) and math.isnan(b), f"{name}: {a} != {b}"
        else:
            assert math.isclose(a, b, rel_tol=rel, abs_tol=abs_tol), f"{name}: {a} != {b}"
