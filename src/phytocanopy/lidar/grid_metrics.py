# src/phytocanopy/lidar/grid_metrics.py

"""
This module aggregates per-cell canopy metrics over a regular grid.

The point cloud is partitioned into grid cells, the cell metrics function is evaluated
once per non-empty cell and the resulting records are laid out as a multi-band raster,
one band per metric.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Union, List, Tuple
import logging

import numpy as np
import polars as pl
from rasterio.crs import CRS

from phytocanopy.raster.layer import Raster

from .layer import PointCloud
from .rasterize import grid_geometry, cell_indices
from .canopy_metrics import CellMetrics, cell_metrics_from_arrays

log = logging.getLogger(__name__)

__all__ = [
    "partition_cells",
    "grid_metrics",
    "metrics_to_dataframe"
]

MetricsFunc = Callable[[np.ndarray, np.ndarray], CellMetrics]

def partition_cells(
    pc: PointCloud,
    resolution: float
    ) -> Tuple[Tuple[int, int], object, np.ndarray, np.ndarray, np.ndarray]:
    """
    Groups point indices by grid cell.

    Args:
        pc (PointCloud): Points to partition.
        resolution (float): Cell size in CRS units.

    Returns:
        Tuple containing:
            - the (height, width) grid shape,
            - the grid affine transform,
            - the flat index (row * width + col) of every non-empty cell,
            - the point order grouping points cell by cell,
            - the boundaries of each cell's slice in that order (len = n_cells + 1).
    """
    shape, transform = grid_geometry(pc.min_x, pc.max_x, pc.min_y, pc.max_y, resolution)
    rows, cols, valid_mask = cell_indices(pc.x, pc.y, transform, shape)

    point_idx = np.flatnonzero(valid_mask)
    flat = rows[valid_mask] * shape[1] + cols[valid_mask]

    # A stable sort keeps the original point order inside each cell
    order = np.argsort(flat, kind="stable")
    flat_sorted = flat[order]
    cell_ids, starts = np.unique(flat_sorted, return_index=True)
    bounds = np.append(starts, flat_sorted.size)

    return shape, transform, cell_ids, point_idx[order], bounds

def grid_metrics(
    pc: PointCloud,
    resolution: float,
    crs: Optional[Union[str, CRS]] = None,
    func: MetricsFunc = cell_metrics_from_arrays,
    workers: Optional[int] = None
    ) -> Raster:
    """
    Computes canopy metrics for every cell of a grid covering the point cloud.

    Steps:
        1. Partitions the points into resolution-aligned cells (same grid as the DSM/CHM).
        2. Evaluates `func` on the heights and return numbers of each non-empty cell,
           across a thread pool when `workers` > 1. Cells share no state, so the
           evaluation order does not matter.
        3. Writes each record into its own pixel of a (n_metrics, height, width) array.
           Empty cells stay NaN.

    Args:
        pc (PointCloud): Height-normalized point cloud.
        resolution (float): Cell size in CRS units.
        crs (Optional[Union[str, CRS]]): Output CRS. Defaults to the point cloud CRS.
        func (MetricsFunc): Cell metrics function taking (z, return_number) arrays.
        workers (Optional[int]): Number of threads. None or 1 computes sequentially.

    Returns:
        Raster: Float32 raster with one band per metric, bands named after the metric fields.
    """
    shape, transform, cell_ids, order, bounds = partition_cells(pc, resolution)
    names = CellMetrics.field_names()

    data = np.full((len(names), shape[0], shape[1]), np.nan, dtype=np.float32)

    def _cell(i: int) -> CellMetrics:
        idx = order[bounds[i]:bounds[i + 1]]
        return func(pc.z[idx], pc.return_number[idx])

    n_cells = cell_ids.size
    log.info(f"Computing canopy metrics for {n_cells} cells on a {shape[0]}x{shape[1]} grid")

    if workers is not None and workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            records: List[CellMetrics] = list(executor.map(_cell, range(n_cells)))
    else:
        records = [_cell(i) for i in range(n_cells)]

    if records:
        values = np.vstack([r.as_array() for r in records]).astype(np.float32)
        rows, cols = np.divmod(cell_ids, shape[1])
        data[:, rows, cols] = values.T

    return Raster(
        data=data,
        transform=transform,
        crs=crs if crs is not None else pc.crs,
        nodata=np.nan,
        band_names={name: i + 1 for i, name in enumerate(names)}
    )

def metrics_to_dataframe(metrics: Raster) -> pl.DataFrame:
    """
    Flattens a canopy metrics raster into a table of its non-empty cells.

    A cell is considered empty when every band is NaN.

    Args:
        metrics (Raster): Raster produced by grid_metrics.

    Returns:
        pl.DataFrame: One row per cell with 'row', 'col', cell centre 'x'/'y' and one column per band.
    """
    idx_to_name = {v: k for k, v in metrics.band_names.items()}
    occupied = ~np.all(np.isnan(metrics.data), axis=0)
    rows, cols = np.nonzero(occupied)
    xs, ys = metrics.transform * (cols + 0.5, rows + 0.5)

    columns = {
        "row": rows.astype(np.int64),
        "col": cols.astype(np.int64),
        "x": np.asarray(xs, dtype=np.float64),
        "y": np.asarray(ys, dtype=np.float64)
    }
    for b in range(metrics.count):
        name = idx_to_name.get(b + 1, f"b{b + 1}")
        columns[name] = metrics.data[b, rows, cols].astype(np.float64)

    return pl.DataFrame(columns)
