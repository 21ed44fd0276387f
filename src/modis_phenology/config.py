#!/usr/bin/env python3
"""
Configuration for the MODIS phenology toolkit
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml  # type: ignore

from .exceptions import ConfigError

APIS: Dict[str, str] = {
    "modis": "https://modis.ornl.gov/rst/api/v1/",
}

MODIS: Dict[str, Union[str, int, None]] = {
    "product": "MOD15A2H",
    "band": "Lai_500m",
    "qc_band": "FparLai_QC",
    "landcover_product": "MCD12Q1",
    "landcover_band": "LC_Type1",
    "km_above_below": 0,
    "km_left_right": 0,
    "chunk_size": 10,  # Service limit on dates per subset request
    "max_workers": 1,
}

SMOOTHING: Dict[str, int] = {
    "window_length": 7,  # Observations, must be odd
    "polyorder": 2,
}

PHENOLOGY: Dict[str, Any] = {
    "threshold": 0.5,
    # MCD12Q2 style phenophase thresholds (fraction of annual amplitude)
    "greenup": 0.15,
    "midgreenup": 0.5,
    "maturity": 0.9,
    "senescence": 0.9,
    "midgreendown": 0.5,
    "dormancy": 0.15,
}

# Raw valid ranges, applied before scaling
BANDS: Dict[str, Dict[str, List[float]]] = {
    "Lai_500m": {"valid_range": [0, 100]},
    "Fpar_500m": {"valid_range": [0, 100]},
    "250m_16_days_NDVI": {"valid_range": [-2000, 10000]},
    "250m_16_days_EVI": {"valid_range": [-2000, 10000]},
    "LST_Day_1km": {"valid_range": [7500, 65535]},
    "LC_Type1": {"valid_range": [1, 255]},  # 255 is the unclassified code
}

QC: Dict[str, int] = {
    "FparLai_QC": 0b1,  # MODLAND bit set means backup algorithm or fill
}

REQUIRED_SITE_KEYS = ("sitename", "lat", "lon", "start_date", "end_date")


def get_valid_range(band: str) -> Optional[List[float]]:
    """Valid raw value range for a band, None when unknown"""
    entry = BANDS.get(band)
    return entry["valid_range"] if entry else None


def load_config(path: Union[str, Path] = "config.yaml") -> Dict:
    """Load run configuration from YAML and merge section overrides.

    The file holds a ``sites`` list and optional ``modis``, ``smoothing``
    and ``phenology`` sections overriding the module defaults.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(raw)}")

    sites = raw.get("sites", [])
    if not isinstance(sites, list):
        raise ConfigError("Config key 'sites' expected a list")

    for i, site in enumerate(sites):
        missing = [key for key in REQUIRED_SITE_KEYS if key not in site]
        if missing:
            raise ConfigError(f"Site #{i} is missing keys: {', '.join(missing)}")

    return {
        "sites": sites,
        "modis": {**MODIS, **(raw.get("modis") or {})},
        "smoothing": {**SMOOTHING, **(raw.get("smoothing") or {})},
        "phenology": {**PHENOLOGY, **(raw.get("phenology") or {})},
    }
