# src/phytocanopy/raster/layer.py

"""
This module defines the in-memory raster structure shared by every lidar-derived product.
"""

import copy
import logging
from typing import Union, Optional, Dict, Any, Tuple

import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from phytocanopy.exceptions import RasterValidationError

log = logging.getLogger(__name__)

__all__ = [
    "Raster"
]

class Raster:
    """
    In-memory envelope synchronizing a pixel array with its geospatial context.

    Attributes:
        data (np.ndarray): The pixel array in (Bands, Height, Width) format.
        transform (Affine): The affine transform matrix.
        crs (CRS): The Coordinate Reference System.
        nodata (float | int | None): The value representing missing data.
        band_names (Dict[str, int]): Mapping of semantic names to 1-based band indices.
    """

    def __init__(
        self,
        data: np.ndarray,
        transform: Affine,
        crs: Optional[Union[str, CRS]],
        nodata: Optional[Union[float, int]] = None,
        band_names: Optional[Dict[str, int]] = None
    ):
        """
        Initialize a Raster object.

        Args:
            data: Input array. Must be 2D (Height, Width) or 3D (Bands, Height, Width).
                  2D arrays are automatically promoted to 3D (1, Height, Width).
            transform: Geospatial transform (maps pixels to coordinates).
            crs: Coordinate Reference System, as a CRS object or any string rasterio understands.
            nodata: Value indicating no data.
            band_names: Optional mapping of names to band indices ('CHM': 1).

        Raises:
            TypeError: If data or transform have the wrong type.
            RasterValidationError: If dimensions are incorrect.
        """
        self._validate_inputs(data, transform)

        # Enforce 3D structure (Bands, Height, Width)
        if data.ndim == 2:
            data = data[np.newaxis, :, :]

        self._data = data
        self.transform = transform
        self.crs = CRS.from_user_input(crs) if isinstance(crs, str) else crs
        self.nodata = nodata
        self.band_names = band_names or {}

    @staticmethod
    def _validate_inputs(data: np.ndarray, transform: Affine):
        if not isinstance(data, np.ndarray):
            raise TypeError(f"Data must be numpy.ndarray, got {type(data)}")

        if data.ndim not in (2, 3):
            raise RasterValidationError(f"Data must be 2D or 3D, got shape {data.shape}")

        if not isinstance(transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(transform)}")

    @property
    def data(self) -> np.ndarray:
        """Access the raw pixel data."""
        return self._data

    @data.setter
    def data(self, new_data: np.ndarray):
        if new_data.ndim == 2:
            new_data = new_data[np.newaxis, :, :]

        if new_data.ndim != 3:
            raise RasterValidationError(f"New data must be 2D or 3D, got {new_data.ndim}D")

        self._data = new_data

    @property
    def width(self) -> int:
        return self._data.shape[2]

    @property
    def height(self) -> int:
        return self._data.shape[1]

    @property
    def count(self) -> int:
        return self._data.shape[0]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (Bands, Height, Width)."""
        return self._data.shape

    @property
    def resolution(self) -> float:
        """Pixel width in CRS units."""
        return abs(self.transform.a)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in CRS units."""
        return rasterio.transform.array_bounds(self.height, self.width, self.transform)

    @property
    def profile(self) -> Dict[str, Any]:
        """
        Generates a Rasterio-compliant profile based on current state.
        Compression and tiling can be overridden when saving.
        """
        return {
            'driver': 'GTiff',
            'dtype': self._data.dtype,
            'nodata': self.nodata,
            'width': self.width,
            'height': self.height,
            'count': self.count,
            'crs': self.crs,
            'transform': self.transform,
            'compress': 'lzw'
        }

    def get_band(self, identifier: Union[int, str]) -> np.ndarray:
        """
        Retrieve a specific band by 1-based index or semantic name.

        Returns:
            np.ndarray: 2D array of the band.
        """
        if isinstance(identifier, str):
            if identifier not in self.band_names:
                raise KeyError(f"Band name '{identifier}' not found in {list(self.band_names.keys())}")
            idx = self.band_names[identifier]
        else:
            idx = identifier

        if not (1 <= idx <= self.count):
            raise IndexError(f"Band index {idx} out of range (1-{self.count})")

        return self._data[idx - 1]

    def valid_mask(self, band: Union[int, str] = 1) -> np.ndarray:
        """
        Boolean mask of pixels holding data in the requested band.
        NaN pixels are always treated as missing, whatever the declared nodata.
        """
        arr = self.get_band(band)
        mask = ~np.isnan(arr) if np.issubdtype(arr.dtype, np.floating) else np.ones(arr.shape, dtype=bool)
        if self.nodata is not None and not np.isnan(self.nodata):
            mask &= arr != self.nodata
        return mask

    def copy(self) -> 'Raster':
        """Returns a deep copy of the Raster."""
        return Raster(
            data=self._data.copy(),
            transform=copy.deepcopy(self.transform),
            crs=copy.deepcopy(self.crs),
            nodata=self.nodata,
            band_names=self.band_names.copy()
        )

    def __repr__(self) -> str:
        return (f"<Raster shape={self.shape} dtype={self._data.dtype} "
                f"crs={self.crs} bounds={self.bounds}>")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Raster):
            return NotImplemented

        # Check metadata first (cheap)
        nodata_eq = (
            self.nodata == other.nodata or
            (self.nodata is not None and other.nodata is not None
             and np.isnan(self.nodata) and np.isnan(other.nodata))
        )
        meta_eq = (
            self.transform == other.transform and
            self.crs == other.crs and
            nodata_eq and
            self.shape == other.shape
        )
        if not meta_eq:
            return False

        return np.array_equal(self._data, other.data, equal_nan=True)

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        """Allows np.array(raster_obj) to work directly."""
        return self._data if dtype is None else self._data.astype(dtype)
