# src/phytocanopy/lidar/detect_treetop.py

"""
This module implements treetop detection on canopy height models (CHMs) with a local maximum filter.
"""

import logging
from typing import Tuple, Union, Callable
from dataclasses import dataclass

import numpy as np
import scipy.ndimage as ndimage
from shapely.geometry import Point

from phytocanopy.raster.layer import Raster
from phytocanopy.vector.layer import Vector

log = logging.getLogger(__name__)

__all__ = [
    "DetectionParams",
    "detect_treetops"
]

WindowSize = Union[float, Callable[[float], float]]

@dataclass
class DetectionParams:
    """
    Parameters for local maximum filter (LMF) treetop detection.

    Args:
        window_size: Diameter of the search window in CRS units, or a callable mapping
            a pixel height to a diameter (taller trees, wider windows).
        min_height: Minimum height threshold for valid treetops (in same units as CHM).
        shape: Window shape, "circular" or "square".
    """
    window_size: WindowSize = 5.0
    min_height: float = 2.0
    shape: str = "circular"

def _window_footprint(
    radius_px: float,
    shape: str
    ) -> np.ndarray:
    """
    Boolean neighbourhood of the given radius in pixels, always including the centre pixel.
    """
    half = int(np.floor(radius_px))
    grid_range = np.arange(-half, half + 1)
    grid_y, grid_x = np.meshgrid(grid_range, grid_range, indexing="ij")
    if shape == "square":
        return np.ones(grid_y.shape, dtype=bool)
    if shape == "circular":
        return (grid_y**2 + grid_x**2) <= radius_px**2
    raise ValueError(f"Unknown window shape: {shape}")

def _detect_peaks_fixed(
    chm: np.ndarray,
    radius_px: float,
    params: DetectionParams
    ) -> np.ndarray:
    """
    Marks pixels equal to the maximum of their fixed-size window.

    Args:
        chm (np.ndarray): CHM with nodata replaced by -inf.
        radius_px (float): Window radius in pixels.
        params (DetectionParams): Detection configuration.

    Returns:
        np.ndarray: Boolean mask of local maxima above the minimum height.
    """
    footprint = _window_footprint(radius_px, params.shape)
    local_max = ndimage.maximum_filter(chm, footprint=footprint, mode='constant', cval=-np.inf) == chm
    return local_max & (chm >= params.min_height)

def _detect_peaks_variable(
    chm: np.ndarray,
    resolution: float,
    params: DetectionParams
    ) -> np.ndarray:
    """
    Marks pixels equal to the maximum of a window whose diameter depends on the pixel's own height.

    Args:
        chm (np.ndarray): CHM with nodata replaced by -inf.
        resolution (float): Pixel size in CRS units.
        params (DetectionParams): Detection configuration with a callable window_size.

    Returns:
        np.ndarray: Boolean mask of local maxima above the minimum height.
    """
    rows, cols = chm.shape
    peaks = np.zeros(chm.shape, dtype=bool)

    for r, c in zip(*np.nonzero(chm >= params.min_height)):
        h = chm[r, c]
        radius_px = max(0.0, float(params.window_size(float(h)))) / 2.0 / resolution
        footprint = _window_footprint(radius_px, params.shape)
        half = footprint.shape[0] // 2

        r0, r1 = max(0, r - half), min(rows, r + half + 1)
        c0, c1 = max(0, c - half), min(cols, c + half + 1)
        fp = footprint[r0 - r + half:r1 - r + half, c0 - c + half:c1 - c + half]

        if h >= chm[r0:r1, c0:c1][fp].max():
            peaks[r, c] = True

    return peaks

def _collapse_plateaus(
    chm: np.ndarray,
    peaks: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Reduces every connected group of equal-height maxima to a single pixel.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Row and column indices of the retained peaks.
    """
    labels, n = ndimage.label(peaks, structure=np.ones((3, 3)))
    if n == 0:
        return np.array([], dtype=int), np.array([], dtype=int)
    positions = np.array(ndimage.maximum_position(chm, labels, np.arange(1, n + 1)), dtype=int)
    return positions[:, 0], positions[:, 1]

def detect_treetops(
    chm: Raster,
    params: DetectionParams = DetectionParams()
    ) -> Vector:
    """
    Detects treetop locations from a canopy height model using a local maximum filter.

    Steps:
        1. Replaces nodata pixels with -inf so they never qualify as, nor block, a maximum.
        2. Marks every pixel that equals the maximum of its search window and exceeds
           `params.min_height`. The window is fixed, or sized per pixel when
           `params.window_size` is callable.
        3. Collapses flat-topped crowns (connected equal maxima) into a single top.
        4. Converts pixel indices to cell-centre coordinates through the CHM transform.

    Args:
        chm (Raster): Input CHM.
        params (DetectionParams): Detection configuration.

    Returns:
        Vector: Point layer with 'tree_id' (1..N), 'height' and 'geometry', in the CHM CRS.
    """
    arr = chm.get_band(1).astype(np.float64)
    arr[~chm.valid_mask()] = -np.inf
    resolution = chm.resolution

    if callable(params.window_size):
        peaks = _detect_peaks_variable(arr, resolution, params)
    else:
        if params.window_size <= 0:
            raise ValueError(f"Window size must be positive, got {params.window_size}")
        peaks = _detect_peaks_fixed(arr, params.window_size / 2.0 / resolution, params)

    peaks_r, peaks_c = _collapse_plateaus(arr, peaks)
    order = np.lexsort((peaks_c, peaks_r))
    peaks_r, peaks_c = peaks_r[order], peaks_c[order]

    records = []
    for tree_id, (r, c) in enumerate(zip(peaks_r, peaks_c), start=1):
        top_x, top_y = chm.transform * (c + 0.5, r + 0.5)
        records.append({
            "tree_id": tree_id,
            "height": float(arr[r, c]),
            "geometry": Point(top_x, top_y)
        })

    log.info(f"Detected {len(records)} treetops")
    return Vector.from_records(records, crs=chm.crs, columns=["tree_id", "height"])
