# src/phytocanopy/lidar/canopy_metrics.py

"""
This module computes the vertical canopy structure metrics of a single grid cell.

The metrics describe the height distribution of the lidar returns that fall in
one cell of a canopy metrics grid: canopy cover, mean, spread and maximum height,
the fraction of returns in the 2-5 m stratum and 24 height percentiles.
The computation is a pure function of the cell's samples, so cells can be
evaluated independently and in any order (see grid_metrics).
"""

from dataclasses import dataclass, fields, astuple
from typing import Sequence, Tuple, Dict, Union

import numpy as np

from phytocanopy.exceptions import InvalidSampleError

__all__ = [
    "COVER_THRESHOLD",
    "STRATA_BOUNDS",
    "PERCENTILE_LEVELS",
    "PERCENTILE_FIELDS",
    "PointSample",
    "CellMetrics",
    "compute_cell_metrics",
    "cell_metrics_from_arrays"
]

# Height (m) above which a first return counts as canopy
COVER_THRESHOLD = 2.0

# Exclusive height bounds (m) of the understory stratum
STRATA_BOUNDS = (2.0, 5.0)

PERCENTILE_LEVELS: Tuple[int, ...] = (
    5, 10, 15, 20, 25, 30, 35, 40, 45, 50,
    55, 60, 65, 70, 75, 80, 85, 90, 95,
    96, 97, 98, 99, 100
)

PERCENTILE_FIELDS: Tuple[str, ...] = (
    "H5TH", "H10TH", "H15TH", "H20TH", "H25TH", "H30TH", "H35TH", "H40TH", "H45TH", "H50TH",
    "H55TH", "H60TH", "H65TH", "H70TH", "H75TH", "H80TH", "H85TH", "H90TH", "H95TH",
    "H96TH", "H97TH", "H98TH", "H99TH", "H100TH"
)

_FIELD_BY_LEVEL: Dict[int, str] = dict(zip(PERCENTILE_LEVELS, PERCENTILE_FIELDS))

@dataclass(frozen=True)
class PointSample:
    """
    A single lidar return as seen by the canopy metrics.

    Args:
        height (float): Elevation above a consistent vertical datum (normalized height in practice).
        return_number (int): 1 for the first return of a pulse, >1 for subsequent returns.
    """
    height: float
    return_number: int

@dataclass(frozen=True)
class CellMetrics:
    """
    Fixed-schema record of canopy structure statistics for one grid cell.

    Every field is always present; statistics that are undefined for the cell
    (no first returns, a single sample, an empty cell) hold NaN.

    Fields:
        COV: Canopy cover, first returns at or above 2 m over all first returns.
        Hmean: Mean height.
        HSD: Sample standard deviation of heights (n - 1 divisor).
        HMAX: Maximum height.
        S: Fraction of returns strictly between 2 m and 5 m.
        H5TH ... H100TH: Linearly interpolated height percentiles, in PERCENTILE_LEVELS order.
    """
    COV: float
    Hmean: float
    HSD: float
    HMAX: float
    S: float
    H5TH: float
    H10TH: float
    H15TH: float
    H20TH: float
    H25TH: float
    H30TH: float
    H35TH: float
    H40TH: float
    H45TH: float
    H50TH: float
    H55TH: float
    H60TH: float
    H65TH: float
    H70TH: float
    H75TH: float
    H80TH: float
    H85TH: float
    H90TH: float
    H95TH: float
    H96TH: float
    H97TH: float
    H98TH: float
    H99TH: float
    H100TH: float

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        """Names of all fields in declaration order (also the metrics grid band order)."""
        return tuple(f.name for f in fields(cls))

    @classmethod
    def empty(cls) -> 'CellMetrics':
        """Record with every statistic undefined."""
        return cls(*([np.nan] * len(fields(cls))))

    def percentile(self, level: int) -> float:
        """Returns the height percentile stored for one of PERCENTILE_LEVELS."""
        if level not in _FIELD_BY_LEVEL:
            raise KeyError(f"Percentile level {level} is not computed. Available: {PERCENTILE_LEVELS}")
        return getattr(self, _FIELD_BY_LEVEL[level])

    def percentiles(self) -> Dict[int, float]:
        return {level: getattr(self, name) for level, name in _FIELD_BY_LEVEL.items()}

    def as_dict(self) -> Dict[str, float]:
        return {name: value for name, value in zip(self.field_names(), astuple(self))}

    def as_array(self, dtype=np.float64) -> np.ndarray:
        return np.array(astuple(self), dtype=dtype)

def _validate_samples(z: np.ndarray, return_number: np.ndarray):
    if z.ndim != 1 or z.shape != return_number.shape:
        raise InvalidSampleError(
            f"Heights and return numbers must be 1D arrays of equal length, "
            f"got shapes {z.shape} and {return_number.shape}"
        )
    if not np.all(np.isfinite(z)):
        raise InvalidSampleError("Heights must be finite numbers")
    if return_number.size == 0:
        return
    if not np.issubdtype(return_number.dtype, np.integer):
        if not np.all(np.isfinite(return_number)) or np.any(np.mod(return_number, 1) != 0):
            raise InvalidSampleError("Return numbers must be integers")
    if np.any(return_number < 1):
        raise InvalidSampleError(
            f"Return numbers must be positive, got minimum {return_number.min()}"
        )

def cell_metrics_from_arrays(
    z: Union[Sequence[float], np.ndarray],
    return_number: Union[Sequence[int], np.ndarray]
    ) -> CellMetrics:
    """
    Computes the canopy metrics of one cell from parallel height and return number arrays.

    Steps:
        1. Validates the inputs (equal lengths, finite heights, positive integer return numbers).
        2. Computes canopy cover from the first returns only.
        3. Sorts the heights once; mean, standard deviation, maximum, strata fraction
           and percentiles are all derived from the sorted array, which makes the record
           independent of the order the samples were supplied in.

    Args:
        z: Heights of the samples in the cell.
        return_number: Return number of each sample.

    Returns:
        CellMetrics: The complete record. Undefined statistics are NaN.

    Raises:
        InvalidSampleError: If a sample violates the input contract.
    """
    z = np.asarray(z, dtype=np.float64)
    rn = np.asarray(return_number)
    _validate_samples(z, rn)

    n = z.size
    if n == 0:
        return CellMetrics.empty()

    first = rn == 1
    n_first = np.count_nonzero(first)
    if n_first > 0:
        cov = np.count_nonzero(first & (z >= COVER_THRESHOLD)) / n_first
    else:
        cov = np.nan

    z_sorted = np.sort(z)
    h_mean = np.mean(z_sorted)
    h_sd = np.std(z_sorted, ddof=1) if n > 1 else np.nan
    h_max = z_sorted[-1]

    low, high = STRATA_BOUNDS
    strata = np.count_nonzero((z_sorted > low) & (z_sorted < high)) / n

    # numpy's default 'linear' method is the continuous (type 7) estimator
    pct = np.percentile(z_sorted, PERCENTILE_LEVELS)
    # Interpolation rounding may leave adjacent levels one ulp out of order
    pct = np.maximum.accumulate(pct)

    return CellMetrics(
        float(cov),
        float(h_mean),
        float(h_sd),
        float(h_max),
        float(strata),
        *(float(v) for v in pct)
    )

def compute_cell_metrics(samples: Sequence[PointSample]) -> CellMetrics:
    """
    Computes the canopy metrics of one cell from its point samples.

    Args:
        samples (Sequence[PointSample]): All samples falling in the cell. Not modified.

    Returns:
        CellMetrics: The complete record. Undefined statistics are NaN.

    Raises:
        InvalidSampleError: If a sample violates the input contract.
    """
    z = np.fromiter((s.height for s in samples), dtype=np.float64, count=len(samples))
    rn = np.array([s.return_number for s in samples])
    if rn.size == 0:
        rn = rn.astype(np.int64)
    return cell_metrics_from_arrays(z, rn)
