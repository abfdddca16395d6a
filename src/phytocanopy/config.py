# src/phytocanopy/config.py

"""
This module groups every tunable of the canopy processing pipeline into a single
configuration object, and builds it from environment variables.

Recognized variables (all optional):
    PHYTOCANOPY_OUTPUT_DIR, PHYTOCANOPY_RESOLUTION, PHYTOCANOPY_CRS,
    PHYTOCANOPY_WORKERS, PHYTOCANOPY_WRITE_OUTPUTS, PHYTOCANOPY_SOR_K,
    PHYTOCANOPY_SOR_M, PHYTOCANOPY_CLOTH_RESOLUTION, PHYTOCANOPY_RIGIDNESS,
    PHYTOCANOPY_DTM_ALGORITHM, PHYTOCANOPY_SMOOTH_SIZE, PHYTOCANOPY_WINDOW_SIZE,
    PHYTOCANOPY_MIN_HEIGHT, PHYTOCANOPY_SEGMENTATION
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv, find_dotenv

from phytocanopy.lidar.detect_treetop import DetectionParams
from phytocanopy.lidar.segment import SegmentationParams

log = logging.getLogger(__name__)

__all__ = [
    "ENV_PREFIX",
    "DEFAULT_OUTPUT_DIR",
    "PipelineConfig",
    "load_config"
]

ENV_PREFIX = "PHYTOCANOPY_"
DEFAULT_OUTPUT_DIR = Path.home() / "lidar_output"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

@dataclass
class PipelineConfig:
    """
    Parameters of every pipeline stage.

    Args:
        resolution: Grid cell size in CRS units, shared by DSM, DTM, CHM and metrics.
        output_dir: Directory receiving the written products.
        crs: CRS override. None keeps the CRS stored in the LAS header.
        write_outputs: Write the products to `output_dir`.
        workers: Threads used for the per-cell metrics. None computes sequentially.
        sor_k: Neighbour count of the statistical outlier removal.
        sor_m: Standard deviation multiplier of the statistical outlier removal.
        cloth_resolution: CSF cloth grid size.
        rigidness: CSF cloth rigidness.
        dtm_algorithm: "tin" or "min".
        smooth_size: Window of the CHM focal median.
        detection: Treetop detection parameters.
        segmentation: Crown segmentation parameters.
        min_crown_points: Minimum points per delineated crown.
    """
    resolution: float = 1.0
    output_dir: Path = DEFAULT_OUTPUT_DIR
    crs: Optional[str] = None
    write_outputs: bool = True
    workers: Optional[int] = None

    sor_k: int = 10
    sor_m: float = 3.0
    cloth_resolution: float = 2.0
    rigidness: int = 3
    dtm_algorithm: str = "tin"
    smooth_size: int = 3

    detection: DetectionParams = field(default_factory=DetectionParams)
    segmentation: SegmentationParams = field(default_factory=SegmentationParams)
    min_crown_points: int = 3

    def __post_init__(self):
        self.output_dir = Path(self.output_dir).expanduser()
        if self.resolution <= 0:
            raise ValueError(f"Resolution must be positive, got {self.resolution}")
        if self.dtm_algorithm not in ("tin", "min"):
            raise ValueError(f"Unknown DTM algorithm: {self.dtm_algorithm}")

def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value if value not in (None, "") else None

def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    if value.lower() in _TRUE_VALUES:
        return True
    if value.lower() in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {ENV_PREFIX + name}: {value!r}")

def load_config(env_file: Optional[Union[str, Path]] = None, **overrides) -> PipelineConfig:
    """
    Builds a PipelineConfig from PHYTOCANOPY_* environment variables.

    A .env file is loaded first (the given one, or the nearest one found from the
    working directory). Variables already set in the environment take precedence.
    Keyword overrides take precedence over both.

    Args:
        env_file (Optional[Union[str, Path]]): Explicit .env file to load.
        **overrides: PipelineConfig fields to force.

    Returns:
        PipelineConfig: The resolved configuration.
    """
    env_path = str(env_file) if env_file is not None else find_dotenv(usecwd=True)
    if env_path:
        log.debug(f"Loading environment from {env_path}")
        load_dotenv(env_path, override=False)

    kwargs = {}
    casts = {
        "resolution": ("RESOLUTION", float),
        "output_dir": ("OUTPUT_DIR", Path),
        "crs": ("CRS", str),
        "workers": ("WORKERS", int),
        "sor_k": ("SOR_K", int),
        "sor_m": ("SOR_M", float),
        "cloth_resolution": ("CLOTH_RESOLUTION", float),
        "rigidness": ("RIGIDNESS", int),
        "dtm_algorithm": ("DTM_ALGORITHM", str),
        "smooth_size": ("SMOOTH_SIZE", int),
    }
    for field_name, (var, cast) in casts.items():
        value = _env(var)
        if value is not None:
            try:
                kwargs[field_name] = cast(value)
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX + var}: {value!r}") from e

    kwargs["write_outputs"] = _env_bool("WRITE_OUTPUTS", True)

    detection = DetectionParams()
    if _env("WINDOW_SIZE") is not None:
        detection.window_size = float(_env("WINDOW_SIZE"))
    if _env("MIN_HEIGHT") is not None:
        detection.min_height = float(_env("MIN_HEIGHT"))
    kwargs["detection"] = detection

    segmentation = SegmentationParams(min_height=detection.min_height)
    if _env("SEGMENTATION") is not None:
        segmentation.method = _env("SEGMENTATION")
    kwargs["segmentation"] = segmentation

    kwargs.update({k: v for k, v in overrides.items() if v is not None})
    return PipelineConfig(**kwargs)
