# src/phytocanopy/lidar/rasterize.py

"""
This module implements functions to rasterize lidar point clouds onto resolution-aligned grids.
"""

from typing import Union, Tuple
from pathlib import Path
import logging
import math

import laspy
import numpy as np
from rasterio.transform import Affine
from rasterio.crs import CRS
from numba import jit

from phytocanopy.raster.layer import Raster

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "grid_geometry",
    "cell_indices",
    "points_to_grid",
    "NODATA_VAL"
]

NODATA_VAL = -9999.0

def grid_geometry(
    min_x: float,
    max_x: float,
    min_y: float,
    max_y: float,
    resolution: float
    ) -> Tuple[Tuple[int, int], Affine]:
    """
    Derives the grid covering a bounding box, with its origin snapped to multiples of the resolution.

    Snapping keeps every product derived from the same cloud (DSM, DTM, CHM, metrics) on
    an identical pixel grid, and the grid always includes points lying on the max edges.

    Args:
        min_x (float): Minimum X coordinate to cover.
        max_x (float): Maximum X coordinate to cover.
        min_y (float): Minimum Y coordinate to cover.
        max_y (float): Maximum Y coordinate to cover.
        resolution (float): Geographic units per pixel.

    Returns:
        Tuple[Tuple[int, int], Affine]: (height, width) of the grid and its affine transform.
    """
    if resolution <= 0:
        raise ValueError(f"Resolution must be positive, got {resolution}")

    left = math.floor(min_x / resolution) * resolution
    top = math.ceil(max_y / resolution) * resolution
    width = max(1, math.ceil((max_x - left) / resolution))
    height = max(1, math.ceil((top - min_y) / resolution))

    transform = Affine.translation(left, top) * Affine.scale(resolution, -resolution)
    return (height, width), transform

def cell_indices(
    x: np.ndarray,
    y: np.ndarray,
    transform: Affine,
    shape: Tuple[int, int]
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Converts point coordinates to grid row/column indices.

    Points on the right or bottom edge of the grid are assigned to the last column/row.

    Returns:
        Tuple[np.ndarray, np.ndarray, np.ndarray]: rows, cols and a mask of points inside the grid.
    """
    res_x = transform.a
    res_y = -transform.e
    cols = np.floor((x - transform.c) / res_x).astype(np.int64)
    rows = np.floor((transform.f - y) / res_y).astype(np.int64)

    right = transform.c + shape[1] * res_x
    bottom = transform.f - shape[0] * res_y
    cols[(cols == shape[1]) & np.isclose(x, right)] = shape[1] - 1
    rows[(rows == shape[0]) & np.isclose(y, bottom)] = shape[0] - 1

    valid_mask = (rows >= 0) & (rows < shape[0]) & (cols >= 0) & (cols < shape[1])
    return rows, cols, valid_mask

@jit(nopython=True, cache=True)
def _rasterize_chunk(
    grid: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    z: np.ndarray,
    method_flag: int
    ):
    """
    Rasterizes a chunk of points into the grid in place.

    Args:
        grid: 2D array representing the raster grid to update.
        rows: Row indices for each point.
        cols: Column indices for each point.
        z: Z values for each point.
        method_flag: Aggregation method (0=count, 1=max, 2=min).
    """
    for i in range(len(rows)):
        r = rows[i]
        c = cols[i]
        if method_flag == 0:
            grid[r, c] += 1
        elif method_flag == 1:
            if z[i] > grid[r, c]:
                grid[r, c] = z[i]
        elif method_flag == 2:
            if z[i] < grid[r, c]:
                grid[r, c] = z[i]

def points_to_grid(
    source: Union[str, Path, PointCloud],
    resolution: float,
    crs: Union[str, CRS, None],
    method: str = 'max',
    nodata: float = NODATA_VAL,
    chunk_size: int = 2_000_000
) -> Raster:
    """
    Rasterizes point cloud distributions into dense grids (point-to-raster).

    This function creates DSMs, CHMs, ground minima or point density maps depending on the method.
    Paths are streamed in chunks so that large files never need to fit in memory.

    Args:
        source (Union[str, Path, PointCloud]): Filepath to stream from or existing PointCloud object.
        resolution (float): Geographic units per pixel.
        crs (Union[str, CRS, None]): Coordinate reference system of the points.
        method (str): Statistical aggregator ('max', 'min', 'count').
        nodata (float): Filler value for empty cells ('max' and 'min' only).
        chunk_size (int): Points processed simultaneously when streaming.

    Returns:
        Raster: Compiled and geo-aligned pixel array.
    """
    if isinstance(source, (str, Path)):
        # The header gives us global bounds for grid sizing before streaming
        with laspy.open(source) as fh:
            min_x = fh.header.x_min
            max_x = fh.header.x_max
            min_y = fh.header.y_min
            max_y = fh.header.y_max
        iterator = PointCloud.iter_chunks(source, chunk_size=chunk_size)
    else:
        min_x = source.min_x
        max_x = source.max_x
        min_y = source.min_y
        max_y = source.max_y
        iterator = [source]

    shape, transform = grid_geometry(min_x, max_x, min_y, max_y, resolution)

    if method == 'count':
        # Zero counts are valid, so no nodata
        grid = np.zeros(shape, dtype=np.uint32)
        actual_nodata = None
        method_flag = 0
    elif method == 'max':
        grid = np.full(shape, -np.inf, dtype=np.float32)
        actual_nodata = nodata
        method_flag = 1
    elif method == 'min':
        grid = np.full(shape, np.inf, dtype=np.float32)
        actual_nodata = nodata
        method_flag = 2
    else:
        raise ValueError(f"Unknown rasterization method: {method}")

    for pc in iterator:
        rows, cols, valid_mask = cell_indices(pc.x, pc.y, transform, shape)
        if not np.any(valid_mask):
            continue

        _rasterize_chunk(
            grid,
            rows[valid_mask],
            cols[valid_mask],
            pc.z[valid_mask].astype(np.float32),
            method_flag
        )

    # Replace the untouched initial extremes with nodata
    if method == 'max':
        grid[grid == -np.inf] = nodata
    elif method == 'min':
        grid[grid == np.inf] = nodata

    log.debug(f"Rasterized points into {shape} grid with method '{method}'")

    return Raster(
        data=grid,
        transform=transform,
        crs=crs,
        nodata=actual_nodata
    )
