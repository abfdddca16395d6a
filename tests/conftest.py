# tests/conftest.py

import pytest
import numpy as np
import laspy
import pyproj
from rasterio.transform import Affine
from rasterio.crs import CRS

from phytocanopy.raster.layer import Raster
from phytocanopy.lidar.layer import PointCloud

GROUND_Z = 100.0

# (x, y, height, radius) of the synthetic cone-shaped trees
TREES = [
    (6.0, 6.0, 12.0, 4.0),
    (16.0, 15.0, 9.0, 3.5),
]

def _forest_arrays(seed: int = 42):
    """
    Flat ground (0-22 m square, 0.5 m spacing) under two cone-shaped crowns sampled every 0.25 m.
    Ground below a crown is recorded as a second return.
    """
    rng = np.random.default_rng(seed)

    g = np.arange(0.0, 22.0 + 1e-9, 0.5)
    gx, gy = np.meshgrid(g, g)
    gx, gy = gx.ravel(), gy.ravel()
    gz = GROUND_Z + rng.normal(0.0, 0.02, gx.size)
    g_rn = np.ones(gx.size, dtype=np.uint8)

    cx_all, cy_all, cz_all = [], [], []
    for tx, ty, h, r in TREES:
        c = np.arange(-r, r + 1e-9, 0.25)
        cx, cy = np.meshgrid(tx + c, ty + c)
        cx, cy = cx.ravel(), cy.ravel()
        d = np.hypot(cx - tx, cy - ty)
        inside = d <= r
        cx_all.append(cx[inside])
        cy_all.append(cy[inside])
        cz_all.append(GROUND_Z + h * (1.0 - d[inside] / r) + 1.0)

        under = np.hypot(gx - tx, gy - ty) <= r
        g_rn[under] = 2

    cx = np.concatenate(cx_all)
    cy = np.concatenate(cy_all)
    cz = np.concatenate(cz_all)

    x = np.concatenate((gx, cx))
    y = np.concatenate((gy, cy))
    z = np.concatenate((gz, cz))
    rn = np.concatenate((g_rn, np.ones(cx.size, dtype=np.uint8)))
    classification = np.ones(x.size, dtype=np.uint8)
    return x, y, z, classification, rn

@pytest.fixture
def forest_pc():
    """Synthetic forest plot as an in-memory PointCloud (absolute elevations)."""
    x, y, z, classification, rn = _forest_arrays()
    return PointCloud.from_arrays(x, y, z, classification=classification, return_number=rn, crs="EPSG:32619")

@pytest.fixture
def forest_las_path(tmp_path):
    """
    Fixture: Writes the synthetic forest to a LAS 1.4 file with laspy, CRS in the header.
    """
    x, y, z, classification, rn = _forest_arrays()

    header = laspy.LasHeader(point_format=6, version="1.4")
    header.scales = np.array([0.001, 0.001, 0.001])
    header.offsets = np.array([0.0, 0.0, 0.0])
    header.add_crs(pyproj.CRS.from_epsg(32619))

    las = laspy.LasData(header)
    las.x = x
    las.y = y
    las.z = z
    las.classification = classification
    las.return_number = rn

    path = tmp_path / "forest.las"
    las.write(path)
    return path

@pytest.fixture
def normalized_pc():
    """Small height-normalized cloud spread over a 4 x 2 m area (two 1 m cells per row)."""
    x = np.array([0.2, 0.8, 0.5, 1.5, 1.2, 1.7, 3.5, 3.9])
    y = np.array([0.5, 0.5, 1.5, 0.5, 1.1, 1.9, 0.5, 1.5])
    z = np.array([1.0, 3.0, 6.0, 0.5, 4.0, 10.0, 2.5, 12.0])
    rn = np.array([1, 1, 1, 2, 1, 1, 1, 1])
    return PointCloud.from_arrays(x, y, z, return_number=rn, crs="EPSG:32619")

def _cone_chm(shape, res, peaks):
    rows, cols = np.indices(shape)
    xs = (cols + 0.5) * res
    ys = (shape[0] - rows - 0.5) * res
    arr = np.zeros(shape, dtype=np.float32)
    for px, py, h, r in peaks:
        d = np.hypot(xs - px, ys - py)
        arr = np.maximum(arr, np.clip(h * (1.0 - d / r), 0.0, None))
    return arr

@pytest.fixture
def chm_raster():
    """
    Fixture: 40 x 40 CHM at 0.5 m with two conical crowns, nodata in the top-left corner.
    """
    shape, res = (40, 40), 0.5
    arr = _cone_chm(shape, res, [(5.0, 5.0, 15.0, 4.0), (14.0, 14.0, 10.0, 3.0)])
    arr[0:2, 0:2] = -9999.0
    transform = Affine.translation(0.0, shape[0] * res) * Affine.scale(res, -res)
    return Raster(
        data=arr,
        transform=transform,
        crs=CRS.from_epsg(32619),
        nodata=-9999.0,
        band_names={"CHM": 1}
    )

@pytest.fixture
def mock_raster_factory(tmp_path):
    """
    Fixture: Builds small in-memory rasters on a 1 m grid anchored at (0, height).
    """
    def _make(data, nodata=-9999.0, crs="EPSG:32619", res=1.0):
        data = np.asarray(data)
        height = data.shape[-2]
        transform = Affine.translation(0.0, height * res) * Affine.scale(res, -res)
        return Raster(data=data, transform=transform, crs=crs, nodata=nodata)
    return _make
