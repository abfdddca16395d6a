# tests/unit/test_segment.py

import numpy as np
import pytest
from shapely.geometry import Point

from phytocanopy.vector.layer import Vector
from phytocanopy.lidar.layer import PointCloud
from phytocanopy.lidar.detect_treetop import detect_treetops
from phytocanopy.lidar.segment import SegmentationParams, segment_crowns, segment_trees
from helpers import assert_grid_match

def _top_pixel(raster, x, y):
    col, row = ~raster.transform * (x, y)
    return int(row), int(col)

@pytest.fixture
def treetops(chm_raster):
    return detect_treetops(chm_raster)

@pytest.mark.parametrize("method", ["silva2016", "watershed"])
def test_segment_crowns_labels_match_treetops(chm_raster, treetops, method):
    crowns = segment_crowns(chm_raster, treetops, SegmentationParams(method=method))
    labels = crowns.get_band(1)

    assert labels.dtype == np.int32
    assert crowns.nodata == 0
    assert_grid_match(crowns, chm_raster)
    assert set(np.unique(labels)) == {0, 1, 2}

    for _, top in treetops.data.iterrows():
        row, col = _top_pixel(crowns, top.geometry.x, top.geometry.y)
        assert labels[row, col] == top["tree_id"]

def test_silva2016_respects_height_exclusion(chm_raster, treetops):
    params = SegmentationParams(method="silva2016", exclusion=0.3)
    labels = segment_crowns(chm_raster, treetops, params).get_band(1)
    chm = chm_raster.get_band(1)

    heights = dict(zip(treetops.data["tree_id"], treetops.data["height"]))
    for tree_id, hmax in heights.items():
        assert np.all(chm[labels == tree_id] >= 0.3 * hmax - 1e-6)

def test_silva2016_crown_radius_limit(chm_raster, treetops):
    params = SegmentationParams(method="silva2016", exclusion=0.0, min_height=0.0, max_cr_factor=0.1)
    labels = segment_crowns(chm_raster, treetops, params).get_band(1)

    res = chm_raster.resolution
    for _, top in treetops.data.iterrows():
        rows, cols = np.nonzero(labels == top["tree_id"])
        xs = (cols + 0.5) * res
        ys = chm_raster.transform.f - (rows + 0.5) * res
        d = np.hypot(xs - top.geometry.x, ys - top.geometry.y)
        assert d.max() <= 0.1 * top["height"] + 1e-6

def test_segment_crowns_without_treetops(chm_raster):
    empty = Vector.from_records([], crs=chm_raster.crs, columns=["tree_id", "height"])
    crowns = segment_crowns(chm_raster, empty)

    assert not crowns.get_band(1).any()

def test_segment_crowns_ignores_tops_outside(chm_raster):
    outside = Vector.from_records(
        [{"tree_id": 7, "height": 10.0, "geometry": Point(500.0, 500.0)}],
        crs=chm_raster.crs
    )
    crowns = segment_crowns(chm_raster, outside)
    assert not crowns.get_band(1).any()

def test_segment_crowns_unknown_method(chm_raster, treetops):
    with pytest.raises(ValueError):
        segment_crowns(chm_raster, treetops, SegmentationParams(method="dalponte"))

def test_segment_trees_assigns_cell_labels(chm_raster, treetops):
    crowns = segment_crowns(chm_raster, treetops)
    top_a = treetops.data.iloc[0].geometry
    top_b = treetops.data.iloc[1].geometry

    pc = PointCloud.from_arrays(
        x=[top_a.x, top_b.x, 0.3, 100.0],
        y=[top_a.y, top_b.y, 19.8, 100.0],
        z=[10.0, 12.0, 0.5, 3.0]
    )
    labelled = segment_trees(pc, crowns)

    assert labelled.tree_id.tolist() == [1, 2, 0, 0]
    assert pc.tree_id is None
