# src/phytocanopy/lidar/generate_model.py

"""
This module implements functions to generate surface and terrain models from lidar point clouds:
ground classification, DSM, DTM, height normalization and canopy height models.
"""

from enum import Enum
from typing import Union, Optional
from pathlib import Path
import logging
import warnings

import numpy as np
import CSF
import scipy.ndimage as ndimage
from scipy.interpolate import LinearNDInterpolator, NearestNDInterpolator
from scipy.spatial import QhullError
from rasterio.crs import CRS
from rasterio.fill import fillnodata
from numba import jit

from phytocanopy.raster.layer import Raster

from .layer import PointCloud
from .filters import CLASS_GROUND, CLASS_UNCLASSIFIED
from .rasterize import points_to_grid, grid_geometry, NODATA_VAL

log = logging.getLogger(__name__)

__all__ = [
    "TerrainType",
    "classify_ground",
    "generate_dsm",
    "generate_dtm",
    "normalize_height",
    "rasterize_canopy",
    "calculate_chm",
    "smooth_chm"
]

class TerrainType(Enum):
    """
    Defines terrain types used in topographical filtering parameterization.

    Options:
    FLAT: Represents areas with minimal elevation variation, such as plains or agricultural fields.
    RELIEF: Represents areas with moderate elevation variation, such as rolling hills or mixed terrain.
    HIGH_RELIEF: Represents areas with significant elevation variation, such as mountainous regions or deep valleys
    """
    FLAT = 1
    RELIEF = 2
    HIGH_RELIEF = 3

_CSF_PRESETS = {
    TerrainType.FLAT: {"rigidness": 3, "slope_smoothing": False},
    TerrainType.RELIEF: {"rigidness": 2, "slope_smoothing": True},
    TerrainType.HIGH_RELIEF: {"rigidness": 1, "slope_smoothing": True},
}

def classify_ground(
    pc: PointCloud,
    cloth_resolution: float = 2.0,
    terrain: TerrainType = TerrainType.FLAT,
    rigidness: Optional[int] = None,
    class_threshold: float = 0.5,
    time_step: float = 0.65,
    iterations: int = 500
    ) -> PointCloud:
    """
    Classifies ground points with the Cloth Simulation Filter.

    Args:
        pc (PointCloud): Input point cloud (noise already removed).
        cloth_resolution (float): Grid size of the simulated cloth.
        terrain (TerrainType): Topographic preset for rigidness and slope smoothing.
        rigidness (int): Explicit cloth rigidness (1-3), overriding the preset.
        class_threshold (float): Distance to the cloth under which a point is ground.
        time_step (float): Simulation time step.
        iterations (int): Maximum simulation iterations.

    Returns:
        PointCloud: Copy with ground points set to class 2. Former ground points
        rejected by the filter become unclassified (class 1).
    """
    preset = _CSF_PRESETS[terrain]

    csf = CSF.CSF()
    csf.params.cloth_resolution = cloth_resolution
    csf.params.bSloopSmooth = preset["slope_smoothing"]
    csf.params.rigidness = rigidness if rigidness is not None else preset["rigidness"]
    csf.params.class_threshold = class_threshold
    csf.params.time_step = time_step
    csf.params.interations = iterations

    # Shift to a local origin to avoid precision issues with large projected coordinates
    points = np.vstack((pc.x - np.min(pc.x), pc.y - np.min(pc.y), pc.z)).transpose()
    csf.setPointCloud(points)

    ground_idx = CSF.VecInt()
    off_ground_idx = CSF.VecInt()
    csf.do_filtering(ground_idx, off_ground_idx, False)

    g_idx = np.array(ground_idx, dtype=np.int64)
    classification = pc.classification.copy()
    classification[classification == CLASS_GROUND] = CLASS_UNCLASSIFIED
    classification[g_idx] = CLASS_GROUND

    log.info(f"CSF classified {g_idx.size} of {len(pc)} points as ground")
    return pc.with_classification(classification)

def _data_footprint(occupied: np.ndarray, size: int = 5) -> np.ndarray:
    """
    Closes small gaps and fills holes in a mask of occupied cells.
    The mask is padded so that the closing does not erode the grid borders.
    """
    pad = size
    padded = np.pad(occupied, pad, mode="edge")
    closed = ndimage.binary_closing(padded, structure=np.ones((size, size)))
    return ndimage.binary_fill_holes(closed)[pad:-pad, pad:-pad]

def _cell_centers(shape, transform):
    res = transform.a
    xs = transform.c + (np.arange(shape[1]) + 0.5) * res
    ys = transform.f - (np.arange(shape[0]) + 0.5) * res
    return np.meshgrid(xs, ys)

def generate_dsm(
    source: Union[str, Path, PointCloud],
    resolution: float,
    crs: Union[str, CRS, None],
    fill_gaps: bool = False
) -> Raster:
    """
    Builds a Digital Surface Model from the highest return in each cell (point-to-raster).

    Args:
        source (Union[str, Path, PointCloud]): Data object or streaming path reference.
        resolution (float): Output pixel dimension sizing.
        crs (Union[str, CRS, None]): Coordinate reference system.
        fill_gaps (bool): Interpolate empty cells inside the data footprint.

    Returns:
        Raster: DSM with empty cells set to NODATA_VAL.
    """
    dsm_raster = points_to_grid(source, resolution, crs, method='max', nodata=np.nan)
    dsm_grid = dsm_raster.data[0]
    valid_mask = ~np.isnan(dsm_grid)

    if fill_gaps and np.any(valid_mask) and not np.all(valid_mask):
        # Limit the search so that large gaps are not bridged
        max_search_px = max(10, int(20.0 / resolution))
        footprint = _data_footprint(valid_mask)
        dsm_grid = fillnodata(dsm_grid, mask=valid_mask.astype(np.uint8), max_search_distance=max_search_px)
        dsm_grid[~footprint] = np.nan

    dsm_grid[np.isnan(dsm_grid)] = NODATA_VAL

    return Raster(
        data=dsm_grid.astype(np.float32),
        transform=dsm_raster.transform,
        crs=crs,
        nodata=NODATA_VAL,
        band_names={"DSM": 1}
    )

def _tin_surface(ground: PointCloud, shape, transform) -> np.ndarray:
    """
    Interpolates ground elevations at cell centres through a Delaunay triangulation.
    Cells outside the convex hull of the ground points take their nearest ground elevation.
    """
    gx, gy = _cell_centers(shape, transform)
    xy = np.column_stack((ground.x, ground.y))

    try:
        tin = LinearNDInterpolator(xy, ground.z)
        grid = tin(gx, gy)
    except QhullError as e:
        log.warning(f"Ground points cannot be triangulated ({e}). Falling back to nearest neighbour.")
        grid = np.full(shape, np.nan)

    outside = np.isnan(grid)
    if np.any(outside):
        nearest = NearestNDInterpolator(xy, ground.z)
        grid[outside] = nearest(gx[outside], gy[outside])
    return grid

def _min_surface(ground: PointCloud, resolution: float, crs) -> np.ndarray:
    """
    Rasterizes the lowest ground return per cell, fills gaps and smooths the result.
    """
    dtm_raster = points_to_grid(ground, resolution, crs, method='min', nodata=np.nan)
    grid = dtm_raster.data[0].astype(np.float32)
    valid_mask = ~np.isnan(grid)

    if not np.all(valid_mask):
        max_search_px = max(15, int(35.0 / resolution))
        grid = fillnodata(grid, mask=valid_mask.astype(np.uint8), max_search_distance=max_search_px)

    sigma = (max(1.0, resolution) / resolution) * 0.5
    return ndimage.gaussian_filter(grid, sigma=sigma)

def generate_dtm(
    pc: PointCloud,
    resolution: float,
    crs: Union[str, CRS, None],
    algorithm: str = "tin"
    ) -> Raster:
    """
    Interpolates ground-classified points (class 2) into a Digital Terrain Model.

    Args:
        pc (PointCloud): Ground-classified point cloud (see classify_ground).
        resolution (float): Output pixel dimension sizing.
        crs (Union[str, CRS, None]): Coordinate reference system.
        algorithm (str): 'tin' for Delaunay triangulation, 'min' for gap-filled ground minima.

    Returns:
        Raster: DTM on the same grid as the DSM, clipped to the point cloud footprint.

    Raises:
        ValueError: If the cloud holds no ground points or the algorithm is unknown.
    """
    ground = pc.subset(pc.classification == CLASS_GROUND)
    if len(ground) == 0:
        raise ValueError("Point cloud has no ground points (class 2). Run classify_ground first.")

    shape, transform = grid_geometry(pc.min_x, pc.max_x, pc.min_y, pc.max_y, resolution)

    if algorithm == "tin":
        dtm_grid = _tin_surface(ground, shape, transform)
    elif algorithm == "min":
        dtm_grid = _min_surface(ground, resolution, crs)
    else:
        raise ValueError(f"Unknown DTM algorithm: {algorithm}")

    # Restrict the surface to where we actually have points, so no extrapolation beyond the flight footprint
    footprint = _data_footprint(points_to_grid(pc, resolution, crs, method='count').data[0] > 0)
    dtm_grid[~footprint] = NODATA_VAL
    dtm_grid[np.isnan(dtm_grid)] = NODATA_VAL

    return Raster(
        data=dtm_grid.astype(np.float32),
        transform=transform,
        crs=crs,
        nodata=NODATA_VAL,
        band_names={"DTM": 1}
    )

def normalize_height(pc: PointCloud, dtm: Raster) -> PointCloud:
    """
    Converts elevations into heights above ground by subtracting the DTM.

    The DTM is sampled with bilinear interpolation between cell centres.
    Points falling over DTM nodata cannot be normalized and are dropped.

    Args:
        pc (PointCloud): Point cloud in absolute elevations.
        dtm (Raster): Digital Terrain Model.

    Returns:
        PointCloud: Point cloud whose Z holds heights above ground.
    """
    surface = dtm.get_band(1).astype(np.float64)
    surface[~dtm.valid_mask()] = np.nan

    inv = ~dtm.transform
    cols, rows = inv * (pc.x, pc.y)
    coords = np.vstack((np.asarray(rows) - 0.5, np.asarray(cols) - 0.5))
    ground_z = ndimage.map_coordinates(surface, coords, order=1, mode='nearest')

    # Next to nodata cells the bilinear kernel is undefined; use the point's own cell instead
    edge = np.isnan(ground_z)
    if np.any(edge):
        ground_z[edge] = ndimage.map_coordinates(surface, coords[:, edge], order=0, mode='nearest')

    valid = ~np.isnan(ground_z)
    dropped = int((~valid).sum())
    if dropped:
        log.warning(f"{dropped} points lie outside valid DTM cells and were dropped during normalization")

    normalized = pc.with_z(pc.z - np.nan_to_num(ground_z, nan=0.0))
    return normalized.subset(valid) if dropped else normalized

def rasterize_canopy(
    pc: PointCloud,
    resolution: float,
    crs: Union[str, CRS, None]
    ) -> Raster:
    """
    Builds a Canopy Height Model from a height-normalized point cloud (point-to-raster maxima).
    """
    chm = points_to_grid(pc, resolution, crs, method='max', nodata=NODATA_VAL)
    chm.band_names = {"CHM": 1}
    return chm

@jit(nopython=True, cache=True)
def _compute_raw_chm(
    dsm_arr: np.ndarray,
    dtm_arr: np.ndarray,
    has_d_nodata: bool,
    d_nodata: float,
    has_t_nodata: bool,
    t_nodata: float,
    out_nodata: float
    ):
    """
    Pixel-wise DSM - DTM difference, clamped at zero, with nodata propagation.

    Returns:
        Tuple of (chm_arr, valid_mask).
    """
    rows, cols = dsm_arr.shape
    chm_arr = np.empty((rows, cols), dtype=np.float32)
    valid_mask = np.empty((rows, cols), dtype=np.bool_)

    for i in range(rows):
        for j in range(cols):
            d_val = dsm_arr[i, j]
            t_val = dtm_arr[i, j]

            is_valid = not (np.isnan(d_val) or np.isnan(t_val))
            if has_d_nodata and d_val == d_nodata:
                is_valid = False
            if has_t_nodata and t_val == t_nodata:
                is_valid = False

            if not is_valid:
                chm_arr[i, j] = out_nodata
                valid_mask[i, j] = False
            else:
                diff = d_val - t_val
                if diff < 0.0:
                    diff = 0.0
                chm_arr[i, j] = diff
                valid_mask[i, j] = True

    return chm_arr, valid_mask

def calculate_chm(
    dsm: Raster,
    dtm: Raster,
    filter_size: int = 0
    ) -> Raster:
    """
    Calculates the Canopy Height Model as the difference between DSM and DTM rasters.

    Args:
        dsm: Digital Surface Model.
        dtm: Digital Terrain Model on the same grid.
        filter_size: Size of an optional median filter applied to valid pixels.

    Returns:
        Raster: CHM with negative differences clamped to zero.
    """
    if dsm.shape != dtm.shape or dsm.transform != dtm.transform:
        raise ValueError(
            f"DSM and DTM grids differ: {dsm.shape} {dsm.transform} vs {dtm.shape} {dtm.transform}"
        )

    d_nodata = dsm.nodata
    t_nodata = dtm.nodata
    has_d_nodata = d_nodata is not None and not np.isnan(d_nodata)
    has_t_nodata = t_nodata is not None and not np.isnan(t_nodata)

    chm_arr, valid_mask = _compute_raw_chm(
        dsm.get_band(1).astype(np.float32),
        dtm.get_band(1).astype(np.float32),
        has_d_nodata,
        float(d_nodata) if has_d_nodata else 0.0,
        has_t_nodata,
        float(t_nodata) if has_t_nodata else 0.0,
        NODATA_VAL
    )

    if filter_size > 0:
        temp_chm = np.where(valid_mask, chm_arr, 0.0)
        smoothed_chm = ndimage.median_filter(temp_chm, size=filter_size)
        chm_arr = np.where(valid_mask, smoothed_chm, NODATA_VAL).astype(np.float32)

    return Raster(
        data=chm_arr,
        transform=dsm.transform,
        crs=dsm.crs,
        nodata=NODATA_VAL,
        band_names={"CHM": 1}
    )

def smooth_chm(chm: Raster, size: int = 3) -> Raster:
    """
    Applies a focal median over a size x size window, ignoring nodata.

    Nodata pixels with at least one valid neighbour receive the median of their
    valid neighbours, which closes single-pixel pits in the canopy.

    Args:
        chm (Raster): Canopy Height Model.
        size (int): Odd window size in pixels.

    Returns:
        Raster: Smoothed CHM.
    """
    if size < 1 or size % 2 == 0:
        raise ValueError(f"Window size must be a positive odd integer, got {size}")

    arr = chm.get_band(1).astype(np.float64)
    arr[~chm.valid_mask()] = np.nan

    half = size // 2
    padded = np.pad(arr, half, mode='constant', constant_values=np.nan)
    windows = np.lib.stride_tricks.sliding_window_view(padded, (size, size))

    # All-NaN windows legitimately produce NaN
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        smoothed = np.nanmedian(windows.reshape(arr.shape + (size * size,)), axis=-1)

    smoothed[np.isnan(smoothed)] = NODATA_VAL

    return Raster(
        data=smoothed.astype(np.float32),
        transform=chm.transform,
        crs=chm.crs,
        nodata=NODATA_VAL,
        band_names={"CHM": 1}
    )
