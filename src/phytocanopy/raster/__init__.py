# src/phytocanopy/raster/__init__.py
#
# Copyright (c) The phytocanopy project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides the in-memory raster structure used for every
lidar-derived surface (DSM, DTM, CHM, canopy metrics) and its disk I/O.
"""

# Core data structure
from .layer import (
    Raster
)

# I/O operations
from .io import (
    load,
    save
)

__all__ = [
    # Layer
    "Raster",

    # I/O
    "load",
    "save"
]
