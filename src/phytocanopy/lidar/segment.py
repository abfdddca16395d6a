# src/phytocanopy/lidar/segment.py

"""
This module segments individual tree crowns on a canopy height model and propagates
the crown labels to the points of a height-normalized point cloud.
"""

import logging
from dataclasses import dataclass

import numpy as np
import scipy.ndimage as ndimage
from scipy.spatial import cKDTree
from skimage.segmentation import watershed

from phytocanopy.raster.layer import Raster
from phytocanopy.vector.layer import Vector

from .layer import PointCloud
from .rasterize import cell_indices

log = logging.getLogger(__name__)

__all__ = [
    "SegmentationParams",
    "segment_crowns",
    "segment_trees"
]

@dataclass
class SegmentationParams:
    """
    Parameters for crown segmentation methods.

    Args:
        method: "silva2016" (Voronoi tessellation constrained by height) or "watershed".
        max_cr_factor: Maximum crown radius as a proportion of tree height (silva2016).
        exclusion: Pixels lower than this proportion of the tree height are excluded (silva2016).
        min_height: Pixels below this height never belong to a crown.
        watershed_sigma: Sigma of the Gaussian smoothing applied before watershed. 0 disables it.
    """
    method: str = "silva2016"
    max_cr_factor: float = 0.6
    exclusion: float = 0.3
    min_height: float = 2.0
    watershed_sigma: float = 0.0

def _run_silva2016(
    chm: np.ndarray,
    valid: np.ndarray,
    centers_xy: np.ndarray,
    tops_xy: np.ndarray,
    tree_ids: np.ndarray,
    params: SegmentationParams
    ) -> np.ndarray:
    """
    Voronoi tessellation around the treetops, constrained by relative height and distance.

    Each valid pixel is assigned to its nearest treetop. Within each Voronoi cell, pixels are kept
    when their height reaches `exclusion` times the highest pixel of the cell and their distance to
    the treetop does not exceed `max_cr_factor` times that height.

    Returns:
        np.ndarray: 2D int32 label array (0 = no crown).
    """
    labels = np.zeros(chm.shape, dtype=np.int32)
    candidates = valid & (chm >= params.min_height)
    if not np.any(candidates):
        return labels

    flat_idx = np.flatnonzero(candidates)
    heights = chm.ravel()[flat_idx]

    dist, nearest = cKDTree(tops_xy).query(centers_xy[flat_idx])

    # Highest pixel of each Voronoi cell
    hmax = np.full(len(tops_xy), -np.inf)
    np.maximum.at(hmax, nearest, heights)
    cell_hmax = hmax[nearest]

    keep = (heights >= params.exclusion * cell_hmax) & (dist <= params.max_cr_factor * cell_hmax)
    labels.ravel()[flat_idx[keep]] = tree_ids[nearest[keep]]
    return labels

def _run_watershed(
    chm: np.ndarray,
    valid: np.ndarray,
    tops_rc: np.ndarray,
    tree_ids: np.ndarray,
    params: SegmentationParams
    ) -> np.ndarray:
    """
    Marker-controlled watershed on the inverted CHM, masked by the minimum height.

    Returns:
        np.ndarray: 2D int32 label array (0 = no crown).
    """
    surface = np.where(valid, chm, 0.0)
    if params.watershed_sigma > 0:
        surface = ndimage.gaussian_filter(surface, sigma=params.watershed_sigma)

    markers = np.zeros(chm.shape, dtype=np.int32)
    markers[tops_rc[:, 0], tops_rc[:, 1]] = tree_ids

    mask = valid & (surface >= params.min_height)
    # Markers must lie inside the mask or their basin is lost
    mask[tops_rc[:, 0], tops_rc[:, 1]] = True
    return watershed(-surface, markers, mask=mask).astype(np.int32)

def segment_crowns(
    chm: Raster,
    treetops: Vector,
    params: SegmentationParams = SegmentationParams()
    ) -> Raster:
    """
    Delineates tree crown regions on a canopy height model from treetop locations.

    Args:
        chm (Raster): Canopy height model (typically smoothed).
        treetops (Vector): Treetop points with a 'tree_id' column (see detect_treetops).
        params (SegmentationParams): Segmentation configuration.

    Returns:
        Raster: int32 label raster on the CHM grid. Labels are treetop 'tree_id's, 0 is background.
    """
    arr = chm.get_band(1).astype(np.float64)
    valid = chm.valid_mask()
    arr[~valid] = 0.0

    empty = Raster(
        data=np.zeros(arr.shape, dtype=np.int32),
        transform=chm.transform,
        crs=chm.crs,
        nodata=0,
        band_names={"tree_id": 1}
    )
    if treetops.empty:
        log.warning("No treetops supplied. Returning an empty crown raster.")
        return empty

    tt_gdf = treetops.data
    if chm.crs is not None and tt_gdf.crs is not None and tt_gdf.crs != chm.crs:
        tt_gdf = tt_gdf.to_crs(chm.crs)

    tops_x = tt_gdf.geometry.x.values
    tops_y = tt_gdf.geometry.y.values
    tree_ids = tt_gdf["tree_id"].values.astype(np.int32) if "tree_id" in tt_gdf.columns else np.arange(1, len(tt_gdf) + 1, dtype=np.int32)

    rows, cols, inside = cell_indices(tops_x, tops_y, chm.transform, arr.shape)
    if not np.all(inside):
        log.warning(f"{int((~inside).sum())} treetops fall outside the CHM and are ignored")
    if not np.any(inside):
        return empty

    if params.method == "silva2016":
        cols_grid, rows_grid = np.meshgrid(np.arange(arr.shape[1]) + 0.5, np.arange(arr.shape[0]) + 0.5)
        cx, cy = chm.transform * (cols_grid.ravel(), rows_grid.ravel())
        labels = _run_silva2016(
            arr,
            valid,
            np.column_stack((cx, cy)),
            np.column_stack((tops_x[inside], tops_y[inside])),
            tree_ids[inside],
            params
        )
    elif params.method == "watershed":
        labels = _run_watershed(
            arr,
            valid,
            np.column_stack((rows[inside], cols[inside])),
            tree_ids[inside],
            params
        )
    else:
        raise ValueError(f"Unknown segmentation method: {params.method}")

    log.info(f"Segmented {len(np.unique(labels[labels > 0]))} crowns with method '{params.method}'")

    return Raster(
        data=labels,
        transform=chm.transform,
        crs=chm.crs,
        nodata=0,
        band_names={"tree_id": 1}
    )

def segment_trees(pc: PointCloud, crowns: Raster) -> PointCloud:
    """
    Labels each point with the crown covering its cell.

    Args:
        pc (PointCloud): Height-normalized point cloud.
        crowns (Raster): Label raster from segment_crowns.

    Returns:
        PointCloud: Copy with 'tree_id' set (0 for points outside every crown).
    """
    labels = crowns.get_band(1)
    rows, cols, inside = cell_indices(pc.x, pc.y, crowns.transform, labels.shape)

    tree_id = np.zeros(len(pc), dtype=np.int32)
    tree_id[inside] = labels[rows[inside], cols[inside]]

    log.info(f"Assigned {int(np.count_nonzero(tree_id))} of {len(pc)} points to trees")
    return pc.with_tree_id(tree_id)
