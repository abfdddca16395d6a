# src/phytocanopy/__init__.py
#
# Copyright (c) The phytocanopy project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
phytocanopy turns airborne lidar point clouds into canopy products: surface,
terrain and canopy height models, per-cell canopy metrics, treetops and crowns.
"""

__version__ = "0.1.0"

__all__ = [
    "__version__"
]
