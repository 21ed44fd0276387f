#!/usr/bin/env python3
"""
Spatial utilities for MODIS subsets.
"""

from functools import lru_cache
from typing import Tuple

import numpy as np
from pyproj import Transformer

MODIS_SINUSOIDAL = "+proj=sinu +lon_0=0 +x_0=0 +y_0=0 +R=6371007.181 +units=m +no_defs"

# Largest extent the subset service accepts on either axis
MAX_EXTENT_KM = 100


def validate_coordinates(lat: float, lon: float) -> bool:
    """Validate coordinate ranges"""
    return -90 <= lat <= 90 and -180 <= lon <= 180


def validate_extent(km_above_below: int, km_left_right: int) -> bool:
    """Check subset extents are whole kilometres within service limits"""
    return all(
        isinstance(km, int) and not isinstance(km, bool) and 0 <= km <= MAX_EXTENT_KM
        for km in (km_above_below, km_left_right)
    )


@lru_cache(maxsize=2)
def _transformer(inverse: bool) -> Transformer:
    if inverse:
        return Transformer.from_crs("EPSG:4326", MODIS_SINUSOIDAL, always_xy=True)
    return Transformer.from_crs(MODIS_SINUSOIDAL, "EPSG:4326", always_xy=True)


def sinusoidal_to_wgs84(x, y) -> Tuple:
    """Convert MODIS sinusoidal x/y (metres) to lon/lat (degrees)"""
    return _transformer(False).transform(x, y)


def wgs84_to_sinusoidal(lon, lat) -> Tuple:
    """Convert lon/lat (degrees) to MODIS sinusoidal x/y (metres)"""
    return _transformer(True).transform(lon, lat)


def pixel_centres(
    xllcorner: float, yllcorner: float, cellsize: float, nrows: int, ncols: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Sinusoidal coordinates of every pixel centre

    Returns (x, y) arrays of shape (nrows, ncols), row 0 being the
    northernmost row as delivered by the subset service.
    """
    cols = np.arange(ncols)
    rows = np.arange(nrows)
    x = xllcorner + (cols + 0.5) * cellsize
    y = yllcorner + (nrows - rows - 0.5) * cellsize
    xx, yy = np.meshgrid(x, y)
    return xx, yy
