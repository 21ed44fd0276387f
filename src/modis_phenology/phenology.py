#!/usr/bin/env python3
"""
Threshold based phenology detection.

A vegetation index series is smoothed with a Savitzky-Golay filter,
linearly interpolated to daily resolution, min-max rescaled per calendar
year and compared against a fraction of that annual amplitude. The first
date at or above the threshold is the start of season (SOS), the last one
the end of season (EOS).
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from loguru import logger
from scipy.signal import savgol_filter

from .config import PHENOLOGY, SMOOTHING
from .exceptions import InsufficientDataError

RISING_PHASES = ("greenup", "midgreenup", "maturity")
FALLING_PHASES = ("senescence", "midgreendown", "dormancy")


@dataclass
class TimeSeries:
    """Date indexed scalar series with optional quality flags

    Dates are stored as ``datetime64[D]`` and sorted on construction,
    missing values are NaN.
    """

    dates: np.ndarray
    values: np.ndarray
    qc: Optional[np.ndarray] = None

    def __post_init__(self):
        self.dates = np.asarray(self.dates, dtype="datetime64[D]")
        self.values = np.asarray(self.values, dtype=float)
        if self.dates.shape != self.values.shape:
            raise ValueError(
                f"Got {self.dates.size} dates but {self.values.size} values"
            )
        order = np.argsort(self.dates, kind="stable")
        self.dates = self.dates[order]
        self.values = self.values[order]
        if self.qc is not None:
            self.qc = np.asarray(self.qc)
            if self.qc.shape != self.values.shape:
                raise ValueError(
                    f"Got {self.qc.size} quality flags for {self.values.size} values"
                )
            self.qc = self.qc[order]

    @classmethod
    def from_records(
        cls,
        records: Iterable[Dict],
        date_key: str = "calendar_date",
        value_key: str = "value",
        qc_key: Optional[str] = None,
    ) -> "TimeSeries":
        """Build a series from tidy records, None values become NaN"""
        records = list(records)
        values = [
            np.nan if r.get(value_key) is None else r[value_key] for r in records
        ]
        qc = [r.get(qc_key) for r in records] if qc_key else None
        return cls([r[date_key] for r in records], values, qc)

    def __len__(self) -> int:
        return int(self.values.size)

    @property
    def years(self) -> np.ndarray:
        return self.dates.astype("datetime64[Y]").astype(int) + 1970

    def valid(self) -> "TimeSeries":
        """Series restricted to non-missing values"""
        keep = ~np.isnan(self.values)
        qc = self.qc[keep] if self.qc is not None else None
        return TimeSeries(self.dates[keep], self.values[keep], qc)


def _to_date(value: np.datetime64) -> date:
    return value.astype(object)


def _day_of_year(value: np.datetime64) -> int:
    return int((value - value.astype("datetime64[Y]")).astype(int)) + 1


def smooth_series(
    series: TimeSeries,
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
) -> TimeSeries:
    """Savitzky-Golay smoothing of the valid observations of a series"""
    if window_length is None:
        window_length = SMOOTHING["window_length"]
    if polyorder is None:
        polyorder = SMOOTHING["polyorder"]

    if window_length % 2 == 0 or window_length <= polyorder:
        raise ValueError(
            f"Window length must be odd and exceed polyorder, "
            f"got window_length={window_length}, polyorder={polyorder}"
        )

    valid = series.valid()
    if len(valid) < window_length:
        raise InsufficientDataError(len(valid), window_length)

    smoothed = savgol_filter(valid.values, window_length, polyorder)
    return TimeSeries(valid.dates, smoothed)


def interpolate_daily(series: TimeSeries) -> TimeSeries:
    """Linear interpolation onto a daily grid between first and last valid dates"""
    valid = series.valid()
    if len(valid) < 2:
        raise InsufficientDataError(len(valid), 2)

    days = np.arange(
        valid.dates[0], valid.dates[-1] + np.timedelta64(1, "D"), dtype="datetime64[D]"
    )
    values = np.interp(
        days.astype("int64"), valid.dates.astype("int64"), valid.values
    )
    return TimeSeries(days, values)


def rescale_by_year(series: TimeSeries) -> TimeSeries:
    """Min-max rescale values to [0, 1] within each calendar year

    Years without amplitude (flat or all missing) rescale to NaN.
    """
    years = series.years
    scaled = np.full(series.values.shape, np.nan)

    for year in np.unique(years):
        idx = years == year
        values = series.values[idx]
        if np.all(np.isnan(values)):
            continue
        low, high = np.nanmin(values), np.nanmax(values)
        if high > low:
            scaled[idx] = (values - low) / (high - low)
        else:
            logger.debug(f"No seasonal amplitude in {year}, skipping rescale")

    return TimeSeries(series.dates, scaled)


def complete_years(series: TimeSeries, period: Optional[int] = None) -> Dict[int, bool]:
    """Whether the valid observations cover each calendar year end to end

    A year is complete when its first and last valid observation lie within
    one composite period of Jan 1 and Dec 31. The period defaults to the
    median spacing of the valid observations, in days.
    """
    valid = series.valid()
    if len(valid) < 2:
        return {int(year): False for year in np.unique(valid.years)}

    if period is None:
        period = max(int(np.median(np.diff(valid.dates).astype(int))), 1)
    slack = np.timedelta64(period, "D")

    years = valid.years
    result = {}
    for year in range(int(years.min()), int(years.max()) + 1):
        days = valid.dates[years == year]
        if days.size == 0:
            result[year] = False
            continue
        start = np.datetime64(f"{year}-01-01", "D")
        end = np.datetime64(f"{year}-12-31", "D")
        result[year] = bool(days[0] - start <= slack and end - days[-1] <= slack)
    return result


def _mark_complete(
    series: TimeSeries, results: List[Dict], keys: Iterable[str], allow_partial: bool
) -> List[Dict]:
    """Flag per-year results and blank dates of partially observed years"""
    complete = complete_years(series)
    for result in results:
        result["complete"] = complete.get(result["year"], False)
        if not result["complete"] and not allow_partial:
            for key in keys:
                result[key] = None
    return results


def _check_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Threshold must lie within [0, 1], got {threshold}")


def threshold_dates(series: TimeSeries, threshold: float) -> List[Dict]:
    """First and last date per year at which a rescaled series reaches threshold"""
    _check_threshold(threshold)
    years = series.years
    results = []

    for year in np.unique(years):
        idx = np.flatnonzero(years == year)
        above = idx[series.values[idx] >= threshold]

        result: Dict[str, Any] = {
            "year": int(year),
            "threshold": threshold,
            "sos": None,
            "eos": None,
            "sos_doy": None,
            "eos_doy": None,
        }
        if above.size:
            first, last = series.dates[above[0]], series.dates[above[-1]]
            result.update(
                {
                    "sos": _to_date(first),
                    "eos": _to_date(last),
                    "sos_doy": _day_of_year(first),
                    "eos_doy": _day_of_year(last),
                }
            )
        results.append(result)

    return results


def prepare_series(
    series: TimeSeries,
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
) -> TimeSeries:
    """Smooth, interpolate to daily values and rescale per year"""
    smoothed = smooth_series(series, window_length, polyorder)
    return rescale_by_year(interpolate_daily(smoothed))


def detect_phenology(
    series: TimeSeries,
    threshold: Optional[float] = None,
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
    allow_partial: bool = False,
) -> List[Dict]:
    """Start and end of season per year for a single threshold

    The annual amplitude of a partially observed year is not the seasonal
    amplitude, so such years report no dates unless ``allow_partial``.
    Each result carries a ``complete`` flag either way.
    """
    if threshold is None:
        threshold = PHENOLOGY["threshold"]
    _check_threshold(threshold)
    results = threshold_dates(prepare_series(series, window_length, polyorder), threshold)
    return _mark_complete(
        series, results, ("sos", "eos", "sos_doy", "eos_doy"), allow_partial
    )


def phenophases(
    series: TimeSeries,
    thresholds: Optional[Dict[str, float]] = None,
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
    allow_partial: bool = False,
) -> List[Dict]:
    """Per year greenup to dormancy dates

    Rising phases (greenup, midgreenup, maturity) take the first crossing of
    their threshold, falling phases (senescence, midgreendown, dormancy) the
    last. Peak is the date of the annual maximum. Partially observed years
    are blanked as in :func:`detect_phenology`.
    """
    settings = {name: PHENOLOGY[name] for name in RISING_PHASES + FALLING_PHASES}
    if thresholds:
        settings.update(thresholds)
    for value in settings.values():
        _check_threshold(value)

    prepared = prepare_series(series, window_length, polyorder)
    crossings = {
        name: {r["year"]: r for r in threshold_dates(prepared, value)}
        for name, value in settings.items()
    }

    years = prepared.years
    results = []
    for year in np.unique(years):
        year = int(year)
        result: Dict[str, Any] = {"year": year}
        for name in RISING_PHASES:
            result[name] = crossings[name][year]["sos"]
        idx = np.flatnonzero(years == year)
        values = prepared.values[idx]
        result["peak"] = (
            None
            if np.all(np.isnan(values))
            else _to_date(prepared.dates[idx[np.nanargmax(values)]])
        )
        for name in FALLING_PHASES:
            result[name] = crossings[name][year]["eos"]
        results.append(result)

    return _mark_complete(
        series, results, RISING_PHASES + ("peak",) + FALLING_PHASES, allow_partial
    )


def pixel_phenology(
    stack,
    year: int,
    threshold: Optional[float] = None,
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
    mask: Optional[np.ndarray] = None,
    max_workers: int = 1,
) -> Dict:
    """Start and end of season day-of-year for every pixel of a raster stack

    Pixels outside ``mask`` or without enough valid observations are left
    NaN. Rows are independent and may be processed in a thread pool.
    """
    if threshold is None:
        threshold = PHENOLOGY["threshold"]
    _check_threshold(threshold)

    _, nrows, ncols = stack.values.shape
    if mask is not None and mask.shape != (nrows, ncols):
        raise ValueError(f"Mask shape {mask.shape} does not match grid {(nrows, ncols)}")

    sos = np.full((nrows, ncols), np.nan)
    eos = np.full((nrows, ncols), np.nan)

    def process_row(row: int) -> int:
        skipped = 0
        for col in range(ncols):
            if mask is not None and not mask[row, col]:
                continue
            try:
                results = detect_phenology(
                    stack.pixel_series(row, col), threshold, window_length, polyorder
                )
            except InsufficientDataError as e:
                logger.debug(f"Pixel ({row}, {col}) skipped: {e}")
                skipped += 1
                continue
            for result in results:
                if result["year"] == year and result["sos_doy"] is not None:
                    sos[row, col] = result["sos_doy"]
                    eos[row, col] = result["eos_doy"]
        return skipped

    if max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            skipped = sum(executor.map(process_row, range(nrows)))
    else:
        skipped = sum(process_row(row) for row in range(nrows))

    if skipped:
        logger.warning(f"{skipped} of {nrows * ncols} pixels lacked valid data")

    return {
        "year": year,
        "threshold": threshold,
        "sos": sos,
        "eos": eos,
        "skipped_pixels": skipped,
    }
