# src/phytocanopy/vector/layer.py

"""
This module defines the vector structure used for tree tops and crown polygons.
"""

import logging
from typing import Iterable, Dict, Any, Optional, List

import geopandas as gpd

log = logging.getLogger(__name__)

__all__ = [
    "Vector"
]

class Vector:
    """
    Thin wrapper around a GeoDataFrame guaranteeing the geometry column and CRS travel together.
    """
    def __init__(self, data: gpd.GeoDataFrame):
        if not isinstance(data, gpd.GeoDataFrame):
            raise TypeError(f"Expected GeoDataFrame, got {type(data)}")
        self._data = data

    @classmethod
    def from_records(
        cls,
        records: Iterable[Dict[str, Any]],
        crs=None,
        columns: Optional[List[str]] = None
        ) -> 'Vector':
        """
        Builds a Vector from dictionaries carrying a 'geometry' key.

        Args:
            records: Iterable of feature dictionaries, each with a shapely 'geometry'.
            crs: Coordinate reference system of the geometries.
            columns: Attribute columns to create when no record is produced.

        Returns:
            Vector: Layer holding one feature per record.
        """
        records = list(records)
        if not records:
            empty_cols = (columns or []) + ["geometry"]
            return cls(gpd.GeoDataFrame(columns=empty_cols, geometry="geometry", crs=crs))
        return cls(gpd.GeoDataFrame(records, geometry="geometry", crs=crs))

    @property
    def data(self) -> gpd.GeoDataFrame:
        return self._data

    @data.setter
    def data(self, value: gpd.GeoDataFrame):
        if not isinstance(value, gpd.GeoDataFrame):
            raise TypeError(f"Expected GeoDataFrame, got {type(value)}")
        self._data = value

    @property
    def crs(self):
        return self._data.crs

    @property
    def bounds(self):
        return self._data.total_bounds

    @property
    def columns(self):
        return self._data.columns.tolist()

    @property
    def empty(self) -> bool:
        return self._data.empty

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"<Vector features={len(self._data)} crs={self.crs}>"
