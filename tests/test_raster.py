#!/usr/bin/env python3
"""
Tests for subset to tidy record and raster stack conversion.
"""

import numpy as np
import pytest
from conftest import SITE_LAT, SITE_LON, make_dates, make_subset_response

from modis_phenology.raster import (
    RasterStack,
    apply_qc_mask,
    parse_scale,
    tidy_records,
    to_raster,
)


class TestParseScale:
    """Test scale factor parsing"""

    def test_numeric_strings(self):
        assert parse_scale("0.1") == 0.1
        assert parse_scale(0.0001) == 0.0001

    def test_unscaled(self):
        """Test non numeric or zero scales fall back to 1"""
        assert parse_scale("Not scaled") == 1.0
        assert parse_scale(None) == 1.0
        assert parse_scale("0") == 1.0


class TestTidyRecords:
    """Test flattening to one record per date and pixel"""

    def test_record_count_and_pixels(self, subset_response):
        """Test pixels are numbered from one for every date"""
        records = tidy_records(subset_response)

        assert len(records) == 92 * 9
        assert [r["pixel"] for r in records[:9]] == list(range(1, 10))
        assert records[0]["modis_date"] == "A2019001"
        assert records[0]["band"] == "Lai_500m"
        assert records[0]["value"] == 255
        assert records[0]["latitude"] == SITE_LAT

    def test_empty_subset(self):
        assert tidy_records({"subset": []}) == []


class TestToRaster:
    """Test raster stack construction"""

    def test_shape_and_dates(self, subset_response):
        stack = to_raster(subset_response)

        assert isinstance(stack, RasterStack)
        assert stack.shape == (92, 3, 3)
        assert stack.nrows == 3 and stack.ncols == 3
        assert stack.dates[0] == np.datetime64("2019-01-01")
        assert stack.band == "Lai_500m"

    def test_fill_values_masked_and_scaled(self, subset_response):
        """Test fill values become NaN and valid values are scaled"""
        stack = to_raster(subset_response)

        assert np.isnan(stack.values[:, 0, 0]).all()
        raw = subset_response["subset"][25]["data"][4]
        assert stack.values[25, 1, 1] == pytest.approx(raw * 0.1)
        assert np.nanmax(stack.values) <= 10.0

    def test_explicit_valid_range(self, subset_response):
        """Test a custom range overrides the band default"""
        stack = to_raster(subset_response, valid_range=(0, 255), apply_scale=False)

        assert stack.values[0, 0, 0] == 255
        assert not np.isnan(stack.values).any()

    def test_row_major_layout(self, modis_dates):
        """Test pixel order fills rows from the north-west corner"""
        response = make_subset_response(modis_dates[:1], nrows=2, ncols=3)
        response["subset"][0]["data"] = [1, 2, 3, 4, 5, 6]
        stack = to_raster(response, apply_scale=False)

        assert stack.values[0].tolist() == [[1, 2, 3], [4, 5, 6]]

    def test_empty_subset(self):
        with pytest.raises(ValueError):
            to_raster({"subset": []})

    def test_pixel_count_mismatch(self, subset_response):
        subset_response["nrows"] = 4
        with pytest.raises(ValueError):
            to_raster(subset_response)


class TestRasterStack:
    """Test stack accessors"""

    def test_pixel_series(self, subset_response):
        stack = to_raster(subset_response)
        series = stack.pixel_series(1, 2)

        assert len(series) == 92
        np.testing.assert_array_equal(series.values, stack.values[:, 1, 2])

    def test_centre_pixel(self, subset_response):
        assert to_raster(subset_response).centre_pixel() == (1, 1)

    def test_pixel_centres(self, subset_response):
        """Test row 0 is the northernmost row"""
        stack = to_raster(subset_response)
        x, y = stack.pixel_centres()

        assert x.shape == (3, 3)
        assert y[0, 0] > y[2, 0]
        assert x[0, 2] > x[0, 0]
        assert x[0, 1] - x[0, 0] == pytest.approx(stack.cellsize)

    def test_centre_pixel_covers_site(self, subset_response):
        """Test the centre pixel lies on the requested coordinates"""
        stack = to_raster(subset_response)
        lons, lats = stack.pixel_lonlat()

        assert lats[1, 1] == pytest.approx(SITE_LAT, abs=1e-4)
        assert lons[1, 1] == pytest.approx(SITE_LON, abs=1e-4)


class TestQcMask:
    """Test quality flag masking"""

    def test_flagged_values_removed(self):
        dates = make_dates([2020])[:3]
        values = to_raster(make_subset_response(dates, nrows=1, ncols=2))
        qc_response = make_subset_response(
            dates, nrows=1, ncols=2, band="FparLai_QC", constant=0, scale="Not scaled"
        )
        qc_response["subset"][1]["data"] = [1, 8]
        qc = to_raster(qc_response, apply_scale=False)

        masked = apply_qc_mask(values, qc, bitmask=0b1)

        assert np.isnan(masked.values[1, 0, 0])
        assert not np.isnan(masked.values[1, 0, 1])
        assert not np.isnan(masked.values[0]).any()
        # Original stack untouched
        assert not np.isnan(values.values).any()

    def test_missing_flag_dates_kept(self):
        dates = make_dates([2020])[:3]
        values = to_raster(make_subset_response(dates, nrows=1, ncols=1))
        qc = to_raster(
            make_subset_response(dates[:1], nrows=1, ncols=1, constant=1, band="FparLai_QC"),
            apply_scale=False,
        )
        masked = apply_qc_mask(values, qc, bitmask=0b1)

        assert np.isnan(masked.values[0, 0, 0])
        assert not np.isnan(masked.values[1:]).any()

    def test_grid_mismatch(self, subset_response):
        stack = to_raster(subset_response)
        qc = to_raster(make_subset_response(make_dates([2020])[:1], nrows=1, ncols=1))
        with pytest.raises(ValueError):
            apply_qc_mask(stack, qc, 1)
