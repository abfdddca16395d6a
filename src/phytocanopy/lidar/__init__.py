# src/phytocanopy/lidar/__init__.py
#
# Copyright (c) The phytocanopy project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The lidar subpackage provides core functionality for handling lidar data,
including I/O operations, point cloud cleaning, lidar-derived raster generation,
per-cell canopy metrics, treetop detection, crown segmentation and delineation.
"""

# Data structure
from .layer import (
    PointCloud
)

# Point cloud cleaning
from .filters import (
    CLASS_UNCLASSIFIED,
    CLASS_GROUND,
    CLASS_NOISE,
    filter_duplicates,
    classify_noise,
    filter_noise
)

# Rasterization and surface models
from .rasterize import (
    grid_geometry,
    cell_indices,
    points_to_grid,
    NODATA_VAL
)
from .generate_model import (
    TerrainType,
    classify_ground,
    generate_dsm,
    generate_dtm,
    normalize_height,
    rasterize_canopy,
    calculate_chm,
    smooth_chm
)

# Canopy metrics
from .canopy_metrics import (
    COVER_THRESHOLD,
    STRATA_BOUNDS,
    PERCENTILE_LEVELS,
    PERCENTILE_FIELDS,
    PointSample,
    CellMetrics,
    compute_cell_metrics,
    cell_metrics_from_arrays
)
from .grid_metrics import (
    partition_cells,
    grid_metrics,
    metrics_to_dataframe
)

# Treetop detection
from .detect_treetop import (
    DetectionParams,
    detect_treetops
)

# Crown segmentation and delineation
from .segment import (
    SegmentationParams,
    segment_crowns,
    segment_trees
)
from .delineate_crown import (
    CROWN_METRIC_FIELDS,
    crown_metrics,
    delineate_crowns
)

__all__ = [
    # Data structure
    "PointCloud",

    # Point cloud cleaning
    "CLASS_UNCLASSIFIED",
    "CLASS_GROUND",
    "CLASS_NOISE",
    "filter_duplicates",
    "classify_noise",
    "filter_noise",

    # Rasterization and surface models
    "grid_geometry",
    "cell_indices",
    "points_to_grid",
    "NODATA_VAL",

    "TerrainType",
    "classify_ground",
    "generate_dsm",
    "generate_dtm",
    "normalize_height",
    "rasterize_canopy",
    "calculate_chm",
    "smooth_chm",

    # Canopy metrics
    "COVER_THRESHOLD",
    "STRATA_BOUNDS",
    "PERCENTILE_LEVELS",
    "PERCENTILE_FIELDS",
    "PointSample",
    "CellMetrics",
    "compute_cell_metrics",
    "cell_metrics_from_arrays",

    "partition_cells",
    "grid_metrics",
    "metrics_to_dataframe",

    # Treetop detection
    "DetectionParams",
    "detect_treetops",

    # Crown segmentation and delineation
    "SegmentationParams",
    "segment_crowns",
    "segment_trees",

    "CROWN_METRIC_FIELDS",
    "crown_metrics",
    "delineate_crowns",
]
