# src/phytocanopy/exceptions.py

"""
Exception hierarchy shared by every phytocanopy subpackage.
"""

__all__ = [
    "PhytocanopyError",
    "InvalidSampleError",
    "LidarIOError",
    "RasterError",
    "RasterIOError",
    "RasterValidationError"
]

class PhytocanopyError(Exception):
    """Base class for all errors raised by phytocanopy."""

class InvalidSampleError(PhytocanopyError, ValueError):
    """
    Raised when point samples handed to the canopy metrics break their contract
    (non-positive return number, non-finite height, mismatched array lengths).
    """

class LidarIOError(PhytocanopyError, IOError):
    """Raised when a point cloud cannot be read from or written to disk."""

class RasterError(PhytocanopyError):
    """Base class for raster related failures."""

class RasterIOError(RasterError, IOError):
    """Raised when a raster cannot be read from or written to disk."""

class RasterValidationError(RasterError, ValueError):
    """Raised when raster data or metadata is structurally invalid."""
