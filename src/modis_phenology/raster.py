#!/usr/bin/env python3
"""
Conversion of MODIS subset responses into tidy records and raster stacks.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .config import get_valid_range
from .phenology import TimeSeries
from .spatial_utils import pixel_centres, sinusoidal_to_wgs84

HEADER_FIELDS = (
    "xllcorner",
    "yllcorner",
    "cellsize",
    "nrows",
    "ncols",
    "band",
    "units",
    "scale",
    "latitude",
    "longitude",
    "product",
)


def parse_scale(scale) -> float:
    """Scale factor from a subset header, 1.0 when unscaled"""
    try:
        factor = float(scale)
    except (TypeError, ValueError):
        return 1.0
    return factor if factor != 0 else 1.0


@dataclass
class RasterStack:
    """Time stack of a single band on the subset grid

    ``values`` has shape (time, nrows, ncols), row 0 is the northern edge.
    """

    values: np.ndarray
    dates: np.ndarray
    xllcorner: float
    yllcorner: float
    cellsize: float
    band: str = ""
    units: str = ""
    product: str = ""

    @property
    def nrows(self) -> int:
        return int(self.values.shape[1])

    @property
    def ncols(self) -> int:
        return int(self.values.shape[2])

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.values.shape)

    def pixel_series(self, row: int, col: int) -> TimeSeries:
        """Time series of one pixel"""
        return TimeSeries(self.dates, self.values[:, row, col])

    def centre_pixel(self) -> Tuple[int, int]:
        """Row and column of the pixel containing the requested location"""
        return self.nrows // 2, self.ncols // 2

    def pixel_centres(self) -> Tuple[np.ndarray, np.ndarray]:
        """Sinusoidal x/y of each pixel centre"""
        return pixel_centres(
            self.xllcorner, self.yllcorner, self.cellsize, self.nrows, self.ncols
        )

    def pixel_lonlat(self) -> Tuple[np.ndarray, np.ndarray]:
        """Longitude/latitude of each pixel centre"""
        x, y = self.pixel_centres()
        return sinusoidal_to_wgs84(x, y)

    def layer(self, index: int = -1) -> np.ndarray:
        """Single time slice as (nrows, ncols)"""
        return self.values[index]


def tidy_records(response: Dict) -> List[Dict]:
    """Flatten a subset response to one record per date and pixel

    Pixels are numbered from 1, row by row from the north-west corner.
    """
    header = {key: response.get(key) for key in HEADER_FIELDS}
    records = []
    for entry in response.get("subset", []):
        for pixel, value in enumerate(entry["data"], start=1):
            records.append(
                {
                    **header,
                    "band": entry.get("band", header["band"]),
                    "modis_date": entry["modis_date"],
                    "calendar_date": entry["calendar_date"],
                    "tile": entry.get("tile"),
                    "proc_date": entry.get("proc_date"),
                    "pixel": pixel,
                    "value": value,
                }
            )
    return records


def to_raster(
    response: Dict,
    valid_range: Optional[Sequence[float]] = None,
    apply_scale: bool = True,
) -> RasterStack:
    """Build a raster stack from a subset response

    Raw values outside ``valid_range`` (fill values) become NaN before the
    header scale factor is applied. The range defaults to the known range of
    the band.
    """
    subset = response.get("subset", [])
    if not subset:
        raise ValueError("Subset response holds no data")

    nrows, ncols = int(response["nrows"]), int(response["ncols"])
    band = str(response.get("band") or subset[0].get("band", ""))

    raw = np.array(
        [[np.nan if v is None else v for v in entry["data"]] for entry in subset],
        dtype=float,
    )
    if raw.shape[1] != nrows * ncols:
        raise ValueError(
            f"Subset rows hold {raw.shape[1]} pixels, header says {nrows}x{ncols}"
        )

    if valid_range is None:
        valid_range = get_valid_range(band)
    if valid_range is not None:
        low, high = valid_range
        invalid = (raw < low) | (raw > high)
        if invalid.any():
            logger.debug(f"Masked {int(invalid.sum())} {band} values outside {low}-{high}")
        raw[invalid] = np.nan

    values = raw * parse_scale(response.get("scale")) if apply_scale else raw

    return RasterStack(
        values=values.reshape(len(subset), nrows, ncols),
        dates=np.array([entry["calendar_date"] for entry in subset], dtype="datetime64[D]"),
        xllcorner=float(response["xllcorner"]),
        yllcorner=float(response["yllcorner"]),
        cellsize=float(response["cellsize"]),
        band=band,
        units=str(response.get("units") or ""),
        product=str(response.get("product") or ""),
    )


def apply_qc_mask(stack: RasterStack, qc_stack: RasterStack, bitmask: int) -> RasterStack:
    """Mask values whose quality flag has any of the bitmask bits set

    Flags are matched by date; dates without a flag stay unmasked.
    """
    if qc_stack.values.shape[1:] != stack.values.shape[1:]:
        raise ValueError("QC grid does not match value grid")

    qc_index = {d: i for i, d in enumerate(qc_stack.dates.tolist())}
    values = stack.values.copy()
    masked = 0

    for i, day in enumerate(stack.dates.tolist()):
        j = qc_index.get(day)
        if j is None:
            continue
        flags = qc_stack.values[j]
        bad = ~np.isnan(flags) & ((np.nan_to_num(flags).astype(int) & bitmask) != 0)
        masked += int(bad.sum())
        values[i][bad] = np.nan

    logger.debug(f"QC mask removed {masked} {stack.band} values")
    return replace(stack, values=values)
