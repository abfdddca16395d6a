# src/phytocanopy/lidar/layer.py

"""
This module defines the core data structure for lidar point clouds, along with methods for loading,
writing and basic manipulation.
"""

from pathlib import Path
from dataclasses import dataclass, replace
from typing import Union, Generator, Optional, Any
import logging

import laspy
import numpy as np
import psutil
import pyproj
from rasterio.crs import CRS

from phytocanopy.exceptions import LidarIOError

log = logging.getLogger(__name__)

__all__ = [
    "PointCloud"
]

# Approximate in-memory footprint of one point once expanded into float64/uint8 arrays
_BYTES_PER_POINT = 3 * 8 + 2 + 8

def _header_crs(header: laspy.LasHeader) -> Optional[CRS]:
    """Extracts the CRS stored in the LAS VLRs, if any."""
    try:
        crs = header.parse_crs()
    except Exception as e:
        log.warning(f"Could not parse CRS from LAS header: {e}")
        return None
    if crs is None:
        return None
    return CRS.from_wkt(crs.to_wkt())

@dataclass
class PointCloud:
    """
    Core data structure for holding LiDAR point cloud data and bounding properties.

    Primary point cloud attributes:
        x (np.ndarray): X coordinates of points.
        y (np.ndarray): Y coordinates of points.
        z (np.ndarray): Z coordinates (elevation or normalized height) of points.
        classification (np.ndarray): ASPRS point classes (2 ground, 18 high noise, ...).
        return_number (np.ndarray): Return number for each point (1 for first return, etc.).

    Secondary attributes for global bounding properties, useful for spatial referencing and rasterization:
        min_x (float): Minimum X coordinate in the point cloud.
        max_x (float): Maximum X coordinate in the point cloud.
        min_y (float): Minimum Y coordinate in the point cloud.
        max_y (float): Maximum Y coordinate in the point cloud.
        max_z (float): Maximum Z coordinate in the point cloud.

    Optional attributes:
        tree_id (np.ndarray): Tree label of each point after segmentation (0 for unassigned).
        crs (CRS): Coordinate reference system read from the LAS header.
    """
    x: np.ndarray
    y: np.ndarray
    z: np.ndarray
    classification: np.ndarray
    return_number: np.ndarray

    min_x: float
    max_x: float
    min_y: float
    max_y: float
    max_z: float

    tree_id: Optional[np.ndarray] = None
    crs: Optional[CRS] = None

    @classmethod
    def from_arrays(
        cls,
        x: Any,
        y: Any,
        z: Any,
        classification: Any = None,
        return_number: Any = None,
        crs: Optional[Union[str, CRS]] = None
        ) -> 'PointCloud':
        """
        Builds a point cloud from coordinate arrays, deriving the bounding attributes.

        Args:
            x, y, z: Coordinate sequences of equal length.
            classification: Optional ASPRS classes (defaults to 1, unclassified).
            return_number: Optional return numbers (defaults to 1, first return).
            crs: Optional coordinate reference system.

        Returns:
            PointCloud: New point cloud owning copies of the arrays.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        z = np.asarray(z, dtype=np.float64)
        if not (x.shape == y.shape == z.shape) or x.ndim != 1:
            raise ValueError(f"Coordinate arrays must be 1D and of equal length, got {x.shape}, {y.shape}, {z.shape}")

        n = x.size
        classification = np.ones(n, dtype=np.uint8) if classification is None else np.asarray(classification, dtype=np.uint8)
        return_number = np.ones(n, dtype=np.uint8) if return_number is None else np.asarray(return_number, dtype=np.uint8)
        if isinstance(crs, str):
            crs = CRS.from_user_input(crs)

        return cls(
            x=x, y=y, z=z,
            classification=classification,
            return_number=return_number,
            min_x=float(x.min()) if n else 0.0,
            max_x=float(x.max()) if n else 0.0,
            min_y=float(y.min()) if n else 0.0,
            max_y=float(y.max()) if n else 0.0,
            max_z=float(z.max()) if n else 0.0,
            crs=crs
        )

    @staticmethod
    def _check_memory(point_count: int, safety_factor: float = 2.0):
        """
        Raises MemoryError if loading `point_count` points would exceed the available RAM.
        """
        required = point_count * _BYTES_PER_POINT * safety_factor
        available = psutil.virtual_memory().available
        req_gb = required / (1024**3)
        avail_gb = available / (1024**3)
        if required > available:
            raise MemoryError(
                f"Insufficient Memory: {point_count} points require ~{req_gb:.2f} GB RAM "
                f"but only {avail_gb:.2f} GB is available.\n"
                "Tip: Use PointCloud.iter_chunks() to stream the file."
            )
        log.debug(f"Memory Check Passed: Requires ~{req_gb:.2f} GB (Available: {avail_gb:.2f} GB).")

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        check_memory: bool = True
        ) -> 'PointCloud':
        """
        Loads the entirety of a LiDAR point cloud into memory.

        Args:
            path (Union[str, Path]): Target .las or .laz file.
            check_memory (bool): Estimate the required RAM from the header before reading.

        Returns:
            PointCloud: Fully populated object.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Lidar file not found: {path}")

        log.debug(f"Loading point cloud: {path.name}")

        try:
            with laspy.open(path) as fh:
                if check_memory:
                    cls._check_memory(fh.header.point_count)
                las = fh.read()
        except laspy.LaspyException as e:
            raise LidarIOError(f"Failed to read point cloud from {path}: {e}") from e

        log.info(f"Loaded {len(las.points)} points from {path.name}")

        # map laspy point attributes to our PointCloud structure
        return cls(
            x=np.array(las.x),
            y=np.array(las.y),
            z=np.array(las.z),
            classification=np.array(las.classification, dtype=np.uint8),
            return_number=np.array(las.return_number, dtype=np.uint8),
            min_x=las.header.x_min,
            max_x=las.header.x_max,
            min_y=las.header.y_min,
            max_y=las.header.y_max,
            max_z=las.header.z_max,
            crs=_header_crs(las.header)
        )

    @classmethod
    def iter_chunks(
        cls,
        path: Union[str, Path],
        chunk_size: int = 1_000_000
        ) -> Generator['PointCloud', None, None]:
        """
        Iterates over a LiDAR file in chunks to maintain strict memory safety.

        Args:
            path (Union[str, Path]): Target .las or .laz file.
            chunk_size (int): Number of points to stream per chunk.

        Yields:
            Generator[PointCloud, None, None]: Sequential point cloud fragments inheriting global bounding attributes.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Lidar file not found: {path}")

        with laspy.open(path) as fh:
            header = fh.header
            crs = _header_crs(header)
            for chunk in fh.chunk_iterator(chunk_size):
                yield cls(
                    x=np.array(chunk.x),
                    y=np.array(chunk.y),
                    z=np.array(chunk.z),
                    classification=np.array(chunk.classification, dtype=np.uint8),
                    return_number=np.array(chunk.return_number, dtype=np.uint8),
                    min_x=header.x_min,
                    max_x=header.x_max,
                    min_y=header.y_min,
                    max_y=header.y_max,
                    max_z=header.z_max,
                    crs=crs
                )

    def __len__(self) -> int:
        return int(self.x.size)

    def subset(self, mask: np.ndarray) -> 'PointCloud':
        """
        Returns the points selected by a boolean mask or index array.
        Global bounds are kept so that grids derived from the subset align with the full cloud.
        """
        z = self.z[mask]
        return replace(
            self,
            x=self.x[mask],
            y=self.y[mask],
            z=z,
            classification=self.classification[mask],
            return_number=self.return_number[mask],
            tree_id=None if self.tree_id is None else self.tree_id[mask],
            max_z=float(z.max()) if z.size else self.max_z
        )

    def with_z(self, z: np.ndarray) -> 'PointCloud':
        """Returns a copy carrying new Z values (e.g. heights above ground)."""
        z = np.asarray(z, dtype=np.float64)
        if z.shape != self.z.shape:
            raise ValueError(f"Expected {self.z.shape[0]} Z values, got {z.shape}")
        return replace(self, z=z, max_z=float(z.max()) if z.size else self.max_z)

    def with_classification(self, classification: np.ndarray) -> 'PointCloud':
        classification = np.asarray(classification, dtype=np.uint8)
        if classification.shape != self.x.shape:
            raise ValueError(f"Expected {self.x.shape[0]} classes, got {classification.shape}")
        return replace(self, classification=classification)

    def with_tree_id(self, tree_id: np.ndarray) -> 'PointCloud':
        tree_id = np.asarray(tree_id, dtype=np.int32)
        if tree_id.shape != self.x.shape:
            raise ValueError(f"Expected {self.x.shape[0]} tree ids, got {tree_id.shape}")
        return replace(self, tree_id=tree_id)

    def to_file(
        self,
        path: Union[str, Path],
        scale: float = 0.001
        ) -> Path:
        """
        Writes the point cloud to a .las or .laz file (point format 6, LAS 1.4).
        Tree labels, when present, are stored in the point_source_id field.

        Args:
            path (Union[str, Path]): Output file; the .laz suffix enables compression.
            scale (float): Coordinate quantization step.

        Returns:
            Path: The written file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        header = laspy.LasHeader(point_format=6, version="1.4")
        header.scales = np.array([scale, scale, scale])
        if len(self):
            header.offsets = np.array([np.floor(self.x.min()), np.floor(self.y.min()), np.floor(self.z.min())])
        if self.crs is not None:
            header.add_crs(pyproj.CRS.from_wkt(self.crs.to_wkt()))

        las = laspy.LasData(header)
        las.x = self.x
        las.y = self.y
        las.z = self.z
        las.classification = self.classification
        las.return_number = self.return_number
        if self.tree_id is not None:
            las.point_source_id = self.tree_id.astype(np.uint16)

        log.info(f"Saving {len(self)} points → {path}")
        try:
            las.write(path)
        except laspy.LaspyException as e:
            raise LidarIOError(f"Failed to write point cloud to {path}: {e}") from e
        return path
