# src/phytocanopy/vector/io.py

"""
This module provides functions for reading and writing vector layers using GeoPandas.
"""

from pathlib import Path
from typing import Union, Optional
import logging

import geopandas as gpd

from phytocanopy.vector.layer import Vector

log = logging.getLogger(__name__)

__all__ = [
    "load_vector",
    "save_vector"
]

def load_vector(path: Union[str, Path], engine: str = "pyogrio", **kwargs) -> Vector:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Vector file not found: {path}")

    gdf = gpd.read_file(path, engine=engine, **kwargs)
    return Vector(gdf)

def save_vector(
    vector: Vector,
    path: Union[str, Path],
    driver: Optional[str] = None,
    engine: str = "pyogrio",
    **kwargs
    ) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    log.info(f"Saving {len(vector)} features → {path}")
    vector.data.to_file(path, driver=driver, engine=engine, **kwargs)
    return path
