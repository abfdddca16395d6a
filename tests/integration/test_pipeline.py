# tests/integration/test_pipeline.py

import numpy as np
import pytest

from phytocanopy.config import PipelineConfig
from phytocanopy.lidar.canopy_metrics import CellMetrics
from phytocanopy.pipeline import (
    CHM_FILENAME,
    CROWNS_FILENAME,
    METRICS_FILENAME,
    NORMALIZED_FILENAME,
    process_lidar_data
)
from phytocanopy.raster.io import load
from phytocanopy.vector.io import load_vector
from phytocanopy import cli
from helpers import assert_grid_match
from conftest import TREES

def test_full_canopy_pipeline(tmp_path, forest_las_path):
    """
    Simulates a standard user workflow:
    1. Prepare Data: a LAS tile over flat ground with two conical crowns.
    2. Process: clean, build DSM/DTM/CHM, compute canopy metrics, find and delineate trees.
    3. Verify: every grid aligns, heights match the synthetic trees and products are on disk.
    """
    out_dir = tmp_path / "lidar_output"
    config = PipelineConfig(output_dir=out_dir, resolution=1.0)

    result = process_lidar_data(forest_las_path, config=config)

    # --- Grids ---
    for raster in (result.dtm, result.chm, result.chm_smoothed, result.canopy_metrics):
        assert_grid_match(result.dsm, raster)
    assert result.canopy_metrics.count == len(CellMetrics.field_names())
    assert result.chm.crs.to_epsg() == 32619

    # --- Heights ---
    tallest = TREES[0][2] + 1.0
    assert np.nanmax(result.canopy_metrics.get_band("HMAX")) == pytest.approx(tallest, abs=1.0)
    chm = result.chm.get_band(1)
    assert chm[result.chm.valid_mask()].max() == pytest.approx(tallest, abs=1.0)

    # --- Trees ---
    assert len(result.treetops) >= len(TREES)
    assert len(result.crowns) >= 1
    assert result.normalized.tree_id is not None
    assert np.count_nonzero(result.normalized.tree_id) > 0
    assert (result.crowns.data["maxz"] <= tallest + 0.5).all()

    # --- Outputs ---
    for name in ("dsm", "dtm", "chm", "chm_smoothed", "canopy_metrics", "normalized", "treetops", "crowns"):
        assert result.written[name].exists()
    assert (out_dir / CHM_FILENAME).exists()
    assert (out_dir / NORMALIZED_FILENAME).exists()

    metrics_disk = load(out_dir / METRICS_FILENAME)
    assert metrics_disk.band_names["H98TH"] == CellMetrics.field_names().index("H98TH") + 1
    assert len(load_vector(out_dir / CROWNS_FILENAME)) == len(result.crowns)

def test_pipeline_without_writing(tmp_path, forest_las_path):
    out_dir = tmp_path / "never_created"
    config = PipelineConfig(output_dir=out_dir, write_outputs=False, workers=2)

    result = process_lidar_data(forest_las_path, resolution=2.0, config=config)

    assert result.written == {}
    assert not out_dir.exists()
    assert result.chm.resolution == 2.0

def test_pipeline_rejects_bad_resolution(forest_las_path):
    with pytest.raises(ValueError):
        process_lidar_data(forest_las_path, resolution=0.0, config=PipelineConfig(write_outputs=False))

def test_cli_process(tmp_path, forest_las_path, monkeypatch):
    for key in ("PHYTOCANOPY_OUTPUT_DIR", "PHYTOCANOPY_WRITE_OUTPUTS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    out_dir = tmp_path / "cli_out"

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["process", str(forest_las_path), "--output-dir", str(out_dir), "--res", "1.0"])

    assert excinfo.value.code == 0
    assert (out_dir / CHM_FILENAME).exists()
