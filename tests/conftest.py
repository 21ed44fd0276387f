#!/usr/bin/env python3
"""
Pytest configuration and fixtures for modis_phenology tests.
"""

import math
import tempfile
from datetime import date, timedelta
from typing import Dict, List, Optional
from unittest.mock import Mock

import numpy as np
import pytest

from modis_phenology.phenology import TimeSeries
from modis_phenology.spatial_utils import wgs84_to_sinusoidal

CELLSIZE = 463.312716528
SITE_LAT, SITE_LON = 42.5378, -72.1715


def seasonal_lai(doy: int, peak: int = 200, width: float = 40.0) -> float:
    """Bell shaped LAI curve with a winter baseline of 0.5"""
    return 0.5 + 4.0 * math.exp(-(((doy - peak) / width) ** 2))


def make_dates(years: List[int]) -> List[Dict]:
    """8-day composite date listing as served by the dates endpoint"""
    dates = []
    for year in years:
        for doy in range(1, 366, 8):
            day = date(year, 1, 1) + timedelta(days=doy - 1)
            dates.append(
                {"modis_date": f"A{year}{doy:03d}", "calendar_date": day.isoformat()}
            )
    return dates


def make_subset_response(
    dates: List[Dict],
    nrows: int = 3,
    ncols: int = 3,
    band: str = "Lai_500m",
    fill_pixels: Optional[List[int]] = None,
    constant: Optional[int] = None,
    scale: str = "0.1",
) -> Dict:
    """Subset response for a grid centred on the test site

    Every pixel follows the seasonal curve (raw values scaled by 10) unless
    listed in fill_pixels, which hold the 255 fill value on every date.
    """
    fill_pixels = fill_pixels or []
    x, y = wgs84_to_sinusoidal(SITE_LON, SITE_LAT)
    subset = []
    for entry in dates:
        doy = int(entry["modis_date"][5:])
        value = constant if constant is not None else round(seasonal_lai(doy) * 10)
        data = [255 if i in fill_pixels else value for i in range(nrows * ncols)]
        subset.append(
            {
                "modis_date": entry["modis_date"],
                "calendar_date": entry["calendar_date"],
                "band": band,
                "tile": "h12v04",
                "proc_date": "2021100000000",
                "data": data,
            }
        )
    return {
        "xllcorner": str(x - ncols / 2 * CELLSIZE),
        "yllcorner": str(y - nrows / 2 * CELLSIZE),
        "cellsize": CELLSIZE,
        "nrows": nrows,
        "ncols": ncols,
        "band": band,
        "units": "m^2/m^2",
        "scale": scale,
        "latitude": SITE_LAT,
        "longitude": SITE_LON,
        "header": "https://modis.ornl.gov/rst/api/v1/",
        "subset": subset,
    }


@pytest.fixture
def temp_cache_dir():
    """Create temporary cache directory"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def modis_dates():
    """Two years of MOD15A2H composite dates"""
    return make_dates([2019, 2020])


@pytest.fixture
def subset_response(modis_dates):
    """3x3 LAI subset with the north-west pixel permanently filled"""
    return make_subset_response(modis_dates, fill_pixels=[0])


@pytest.fixture
def seasonal_series():
    """Two years of 8-day LAI observations peaking around DOY 200"""
    dates, values = [], []
    for entry in make_dates([2019, 2020]):
        doy = int(entry["modis_date"][5:])
        dates.append(entry["calendar_date"])
        values.append(seasonal_lai(doy))
    return TimeSeries(dates, values)


@pytest.fixture
def sample_site():
    """Site entry as found in config.yaml"""
    return {
        "sitename": "harvard-forest",
        "lat": SITE_LAT,
        "lon": SITE_LON,
        "start_date": "2019-01-01",
        "end_date": "2020-12-31",
        "year": 2020,
        "km_above_below": 1,
        "km_left_right": 1,
    }


@pytest.fixture
def mock_modis_session(modis_dates):
    """Mock requests session answering dates and subset requests

    Subset requests only return the composites between startDate and
    endDate, like the live service.
    """

    def respond(url, params=None):
        params = params or {}
        response = Mock()
        response.raise_for_status.return_value = None
        if url.endswith("/dates"):
            response.json.return_value = {"dates": modis_dates}
        elif url.endswith("/subset"):
            wanted = [
                d
                for d in modis_dates
                if params["startDate"] <= d["modis_date"] <= params["endDate"]
            ]
            response.json.return_value = make_subset_response(
                wanted, band=params["band"]
            )
        elif url.endswith("/bands"):
            response.json.return_value = {
                "bands": [{"band": "Lai_500m", "scale_factor": "0.1"}]
            }
        else:
            response.json.return_value = {
                "products": [{"product": "MOD15A2H", "frequency": "8-Day"}]
            }
        return response

    session = Mock()
    session.headers = {}
    session.get.side_effect = respond
    return session


@pytest.fixture
def rng():
    return np.random.default_rng(42)
