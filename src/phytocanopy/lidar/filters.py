# src/phytocanopy/lidar/filters.py

"""
This module implements point cloud cleaning: duplicate removal and statistical outlier (noise) classification.
"""

import logging

import numpy as np
from scipy.spatial import cKDTree

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "CLASS_UNCLASSIFIED",
    "CLASS_GROUND",
    "CLASS_NOISE",
    "filter_duplicates",
    "classify_noise",
    "filter_noise"
]

# ASPRS standard point classes
CLASS_UNCLASSIFIED = 1
CLASS_GROUND = 2
CLASS_NOISE = 18

def filter_duplicates(pc: PointCloud) -> PointCloud:
    """
    Removes points sharing identical X, Y and Z coordinates, keeping the first occurrence.

    Args:
        pc (PointCloud): Input point cloud.

    Returns:
        PointCloud: Point cloud without duplicates, original point order preserved.
    """
    if len(pc) == 0:
        return pc

    xyz = np.column_stack((pc.x, pc.y, pc.z))
    _, first_idx = np.unique(xyz, axis=0, return_index=True)
    keep = np.sort(first_idx)

    removed = len(pc) - keep.size
    if removed:
        log.info(f"Removed {removed} duplicated points")
    return pc.subset(keep)

def classify_noise(
    pc: PointCloud,
    k: int = 10,
    m: float = 3.0,
    quantile: bool = False
    ) -> PointCloud:
    """
    Flags outliers with the Statistical Outlier Removal (SOR) algorithm.

    Steps:
        1. Builds a KD-tree over the 3D coordinates.
        2. Computes, for every point, the mean distance to its k nearest neighbours.
        3. Derives a threshold from the distribution of those mean distances:
           mean + m * standard deviation, or the m-th quantile when `quantile` is True.
        4. Assigns class 18 (high noise) to points whose mean distance exceeds the threshold.

    Args:
        pc (PointCloud): Input point cloud.
        k (int): Number of neighbours (the point itself excluded).
        m (float): Standard deviation multiplier, or quantile in [0, 1] when `quantile` is True.
        quantile (bool): Interpret `m` as a quantile of the mean distances.

    Returns:
        PointCloud: Copy of the point cloud with noise points reclassified.
    """
    if k < 1:
        raise ValueError(f"k must be at least 1, got {k}")
    if quantile and not 0.0 <= m <= 1.0:
        raise ValueError(f"Quantile must be within [0, 1], got {m}")

    n = len(pc)
    if n <= k:
        log.warning(f"Only {n} points for k={k} neighbours. Skipping noise classification.")
        return pc

    xyz = np.column_stack((pc.x, pc.y, pc.z))
    tree = cKDTree(xyz)

    # The first neighbour returned is the point itself (distance 0)
    dist, _ = tree.query(xyz, k=k + 1)
    mean_dist = dist[:, 1:].mean(axis=1)

    if quantile:
        threshold = np.quantile(mean_dist, m)
    else:
        threshold = mean_dist.mean() + m * mean_dist.std(ddof=1)

    noise = mean_dist > threshold
    classification = pc.classification.copy()
    classification[noise] = CLASS_NOISE

    log.info(f"Classified {int(noise.sum())} noise points (SOR k={k}, m={m})")
    return pc.with_classification(classification)

def filter_noise(pc: PointCloud) -> PointCloud:
    """Drops every point classified as noise (class 18)."""
    return pc.subset(pc.classification != CLASS_NOISE)
