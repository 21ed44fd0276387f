#!/usr/bin/env python3
"""
MODIS Phenology Toolkit

Download MODIS land product subsets and derive start and end of season
dates by thresholding smoothed, annually rescaled vegetation index series.
"""

from .config import MODIS, PHENOLOGY, SMOOTHING, load_config
from .core import PhenologyAnalyzer
from .exceptions import ConfigError, InsufficientDataError, PhenologyError
from .modis_query import ModisQuery
from .phenology import (
    TimeSeries,
    complete_years,
    detect_phenology,
    phenophases,
    pixel_phenology,
)
from .raster import RasterStack, to_raster

__version__ = "1.0.0"

__all__ = [
    "ConfigError",
    "InsufficientDataError",
    "MODIS",
    "ModisQuery",
    "PHENOLOGY",
    "PhenologyAnalyzer",
    "PhenologyError",
    "RasterStack",
    "SMOOTHING",
    "TimeSeries",
    "complete_years",
    "detect_phenology",
    "load_config",
    "phenophases",
    "pixel_phenology",
    "to_raster",
]
