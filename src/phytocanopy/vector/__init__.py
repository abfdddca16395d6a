# src/phytocanopy/vector/__init__.py
#
# Copyright (c) The phytocanopy project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The vector subpackage holds the point and polygon layers produced by
tree-top detection and crown delineation, and their disk I/O.
"""

from .layer import (
    Vector
)

from .io import (
    load_vector,
    save_vector
)

__all__ = [
    "Vector",
    "load_vector",
    "save_vector"
]
