# src/phytocanopy/lidar/delineate_crown.py

"""
This module builds crown polygons from segmented point clouds and attaches
height statistics to each crown.
"""

import logging
from typing import Dict, Optional, Union

import numpy as np
from rasterio.crs import CRS
from shapely.geometry import MultiPoint, Polygon

from phytocanopy.vector.layer import Vector

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "CROWN_METRIC_FIELDS",
    "crown_metrics",
    "delineate_crowns"
]

CROWN_METRIC_FIELDS = ("maxz", "meanz", "sdz", "varz", "p98")

def crown_metrics(z: np.ndarray) -> Dict[str, float]:
    """
    Height statistics of the points belonging to one tree.

    Args:
        z (np.ndarray): Heights of the tree's points.

    Returns:
        Dict[str, float]: 'maxz', 'meanz', 'sdz', 'varz' and 'p98'.
        Spread statistics are NaN for fewer than two points.
    """
    z = np.asarray(z, dtype=np.float64)
    if z.size == 0:
        return {name: float("nan") for name in CROWN_METRIC_FIELDS}

    var = float(np.var(z, ddof=1)) if z.size > 1 else float("nan")
    return {
        "maxz": float(z.max()),
        "meanz": float(z.mean()),
        "sdz": float(np.sqrt(var)),
        "varz": var,
        "p98": float(np.percentile(z, 98))
    }

def delineate_crowns(
    pc: PointCloud,
    crs: Optional[Union[str, CRS]] = None,
    min_points: int = 3
    ) -> Vector:
    """
    Computes a convex hull crown polygon for every labelled tree.

    Steps:
        1. Groups points by 'tree_id', ignoring unassigned points (0).
        2. Builds the 2D convex hull of each group. Groups with fewer than `min_points`
           points, or whose hull collapses to a line or a point, are skipped.
        3. Attaches the point count and crown height statistics to each polygon.

    Args:
        pc (PointCloud): Point cloud labelled by segment_trees.
        crs (Optional[Union[str, CRS]]): Output CRS. Defaults to the point cloud CRS.
        min_points (int): Minimum number of points required to delineate a crown.

    Returns:
        Vector: Polygon layer with 'tree_id', 'n_points' and the crown metric columns.
    """
    columns = ["tree_id", "n_points", *CROWN_METRIC_FIELDS]
    out_crs = crs if crs is not None else pc.crs

    if pc.tree_id is None:
        raise ValueError("Point cloud carries no tree labels. Run segment_trees first.")

    labelled = pc.tree_id > 0
    ids = pc.tree_id[labelled]
    xs, ys, zs = pc.x[labelled], pc.y[labelled], pc.z[labelled]

    order = np.argsort(ids, kind="stable")
    ids, xs, ys, zs = ids[order], xs[order], ys[order], zs[order]
    tree_ids, starts = np.unique(ids, return_index=True)
    ends = np.append(starts[1:], ids.size)

    records = []
    skipped = 0
    for tree_id, start, end in zip(tree_ids, starts, ends):
        if end - start < min_points:
            skipped += 1
            continue

        hull = MultiPoint(np.column_stack((xs[start:end], ys[start:end]))).convex_hull
        if not isinstance(hull, Polygon) or hull.is_empty:
            skipped += 1
            continue

        record = {"tree_id": int(tree_id), "n_points": int(end - start)}
        record.update(crown_metrics(zs[start:end]))
        record["geometry"] = hull
        records.append(record)

    if skipped:
        log.debug(f"Skipped {skipped} trees with degenerate crowns")
    log.info(f"Delineated {len(records)} crowns")

    return Vector.from_records(records, crs=out_crs, columns=columns)
