# src/phytocanopy/pipeline.py

"""
This module chains the lidar processing steps, from a raw LAS/LAZ tile to
canopy height models, per-cell canopy metrics and individual tree crowns.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union, Dict

from rasterio.crs import CRS

from phytocanopy.config import PipelineConfig
from phytocanopy.raster.layer import Raster
from phytocanopy.raster.io import save
from phytocanopy.vector.layer import Vector
from phytocanopy.vector.io import save_vector
from phytocanopy.lidar.layer import PointCloud
from phytocanopy.lidar.filters import filter_duplicates, classify_noise, filter_noise
from phytocanopy.lidar.generate_model import (
    classify_ground,
    generate_dsm,
    generate_dtm,
    normalize_height,
    rasterize_canopy,
    smooth_chm
)
from phytocanopy.lidar.grid_metrics import grid_metrics
from phytocanopy.lidar.detect_treetop import detect_treetops
from phytocanopy.lidar.segment import segment_crowns, segment_trees
from phytocanopy.lidar.delineate_crown import delineate_crowns

log = logging.getLogger(__name__)

__all__ = [
    "DSM_FILENAME",
    "DTM_FILENAME",
    "CHM_FILENAME",
    "CHM_SMOOTHED_FILENAME",
    "METRICS_FILENAME",
    "NORMALIZED_FILENAME",
    "TREETOPS_FILENAME",
    "CROWNS_FILENAME",
    "PipelineResult",
    "process_lidar_data"
]

DSM_FILENAME = "DSM.tif"
DTM_FILENAME = "DTM.tif"
CHM_FILENAME = "CHM.tif"
CHM_SMOOTHED_FILENAME = "CHM_smoothed.tif"
METRICS_FILENAME = "canopy_metrics.tif"
NORMALIZED_FILENAME = "laz_norm.laz"
TREETOPS_FILENAME = "treetops.gpkg"
CROWNS_FILENAME = "crowns.gpkg"

@dataclass
class PipelineResult:
    """
    Every product of a pipeline run.

    Attributes:
        dsm: Digital surface model.
        dtm: Digital terrain model.
        chm: Canopy height model rasterized from the normalized cloud.
        chm_smoothed: CHM after the focal median.
        canopy_metrics: One band per canopy metric, same grid as the CHM.
        treetops: Detected treetop points.
        crowns: Crown polygons with crown height statistics.
        normalized: Height-normalized point cloud labelled with tree ids.
        written: Mapping of product name to written file (empty when writing is disabled).
    """
    dsm: Raster
    dtm: Raster
    chm: Raster
    chm_smoothed: Raster
    canopy_metrics: Raster
    treetops: Vector
    crowns: Vector
    normalized: PointCloud
    written: Dict[str, Path]

def _write_vector(vector: Vector, path: Path) -> Optional[Path]:
    if vector.empty:
        log.warning(f"No features to write to {path.name}. Skipping.")
        return None
    return save_vector(vector, path, driver="GPKG")

def process_lidar_data(
    las_path: Union[str, Path],
    resolution: Optional[float] = None,
    config: Optional[PipelineConfig] = None
    ) -> PipelineResult:
    """
    Runs the full canopy processing chain on a single LAS/LAZ file.

    Steps:
        1. Reads the point cloud and removes duplicated points.
        2. Classifies and drops statistical outliers (SOR).
        3. Rasterizes the DSM from the cleaned cloud.
        4. Classifies ground points with the cloth simulation filter and interpolates the DTM.
        5. Normalizes heights against the DTM and rasterizes the CHM.
        6. Computes canopy metrics for every grid cell of the normalized cloud.
        7. Smooths the CHM, detects treetops on it and segments crowns.
        8. Labels points with their tree and delineates convex hull crowns.

    Every raster product shares one grid (same origin, resolution and extent), and
    products are written to `config.output_dir` unless `config.write_outputs` is False.

    Args:
        las_path (Union[str, Path]): Input .las or .laz file.
        resolution (Optional[float]): Grid cell size. Overrides `config.resolution`.
        config (Optional[PipelineConfig]): Pipeline parameters. Defaults to PipelineConfig().

    Returns:
        PipelineResult: All intermediate and final products.
    """
    config = config or PipelineConfig()
    res = resolution if resolution is not None else config.resolution
    if res <= 0:
        raise ValueError(f"Resolution must be positive, got {res}")

    las_path = Path(las_path)
    log.info(f"Processing {las_path.name} at {res} m resolution")

    pc = PointCloud.from_file(las_path)
    crs = CRS.from_user_input(config.crs) if config.crs else pc.crs
    if crs is None:
        log.warning("No CRS found in the LAS header and none supplied. Outputs will be unreferenced.")

    pc = filter_duplicates(pc)
    pc = filter_noise(classify_noise(pc, k=config.sor_k, m=config.sor_m))

    dsm = generate_dsm(pc, res, crs)

    pc = classify_ground(pc, cloth_resolution=config.cloth_resolution, rigidness=config.rigidness)
    dtm = generate_dtm(pc, res, crs, algorithm=config.dtm_algorithm)

    normalized = normalize_height(pc, dtm)
    chm = rasterize_canopy(normalized, res, crs)

    metrics = grid_metrics(normalized, res, crs=crs, workers=config.workers)

    chm_smoothed = smooth_chm(chm, size=config.smooth_size)
    treetops = detect_treetops(chm_smoothed, config.detection)
    crown_labels = segment_crowns(chm_smoothed, treetops, config.segmentation)
    normalized = segment_trees(normalized, crown_labels)
    crowns = delineate_crowns(normalized, crs=crs, min_points=config.min_crown_points)

    written: Dict[str, Path] = {}
    if config.write_outputs:
        out = config.output_dir
        out.mkdir(parents=True, exist_ok=True)

        written["dsm"] = save(dsm, out / DSM_FILENAME)
        written["dtm"] = save(dtm, out / DTM_FILENAME)
        written["chm"] = save(chm, out / CHM_FILENAME)
        written["chm_smoothed"] = save(chm_smoothed, out / CHM_SMOOTHED_FILENAME)
        written["canopy_metrics"] = save(metrics, out / METRICS_FILENAME)
        written["normalized"] = normalized.to_file(out / NORMALIZED_FILENAME)

        for name, vector, filename in (
            ("treetops", treetops, TREETOPS_FILENAME),
            ("crowns", crowns, CROWNS_FILENAME)
        ):
            path = _write_vector(vector, out / filename)
            if path is not None:
                written[name] = path

        log.info(f"Wrote {len(written)} products to {out}")

    return PipelineResult(
        dsm=dsm,
        dtm=dtm,
        chm=chm,
        chm_smoothed=chm_smoothed,
        canopy_metrics=metrics,
        treetops=treetops,
        crowns=crowns,
        normalized=normalized,
        written=written
    )
