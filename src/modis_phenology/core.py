#!/usr/bin/env python3
"""
Core PhenologyAnalyzer class tying MODIS downloads to phenology detection.
"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import numpy as np
import requests
from loguru import logger

from .config import MODIS, PHENOLOGY, QC, SMOOTHING, load_config
from .exceptions import PhenologyError
from .landcover import class_mask, class_summary, majority_class
from .modis_query import DateLike, ModisQuery
from .phenology import detect_phenology, phenophases, pixel_phenology
from .raster import RasterStack, apply_qc_mask, to_raster

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def _nan_to_none(value: float) -> Optional[float]:
    return None if np.isnan(value) else float(value)


def _nanmedian(values: np.ndarray) -> Optional[float]:
    valid = values[~np.isnan(values)]
    return float(np.median(valid)) if valid.size else None


class PhenologyAnalyzer:
    """Fetch MODIS subsets for sites and derive their phenology"""

    def __init__(
        self, cache_dir: str = ".modis_cache", settings: Optional[Dict] = None
    ):
        settings = settings or {}
        self.modis = ModisQuery(cache_dir=cache_dir)
        self.modis_settings: Dict[str, Any] = {**MODIS, **settings.get("modis", {})}
        self.smoothing: Dict[str, Any] = {**SMOOTHING, **settings.get("smoothing", {})}
        self.phenology: Dict[str, Any] = {**PHENOLOGY, **settings.get("phenology", {})}

    def fetch_stack(
        self,
        lat: float,
        lon: float,
        start_date: DateLike,
        end_date: DateLike,
        product: Optional[str] = None,
        band: Optional[str] = None,
        qc_band: Optional[str] = None,
        km_above_below: Optional[int] = None,
        km_left_right: Optional[int] = None,
    ) -> RasterStack:
        """Download a subset and convert it to a (QC masked) raster stack"""
        product = product or self.modis_settings["product"]
        band = band or self.modis_settings["band"]
        if km_above_below is None:
            km_above_below = self.modis_settings["km_above_below"]
        if km_left_right is None:
            km_left_right = self.modis_settings["km_left_right"]

        logger.debug(
            f"Fetching {product}/{band} at ({lat:.4f}, {lon:.4f}) "
            f"from {start_date} to {end_date}"
        )
        response = self.modis.get_subset(
            lat,
            lon,
            start_date,
            end_date,
            product=product,
            band=band,
            km_above_below=km_above_below,
            km_left_right=km_left_right,
            max_workers=self.modis_settings["max_workers"],
        )
        stack = to_raster(response)

        bitmask = QC.get(qc_band, 0) if qc_band else 0
        if bitmask:
            qc_response = self.modis.get_subset(
                lat,
                lon,
                start_date,
                end_date,
                product=product,
                band=qc_band,
                km_above_below=km_above_below,
                km_left_right=km_left_right,
                max_workers=self.modis_settings["max_workers"],
            )
            if qc_response.get("subset"):
                qc_stack = to_raster(qc_response, apply_scale=False)
                stack = apply_qc_mask(stack, qc_stack, bitmask)
            else:
                logger.warning(f"No {qc_band} flags available, using unmasked values")

        return stack

    def fetch_landcover(
        self,
        lat: float,
        lon: float,
        year: int,
        km_above_below: Optional[int] = None,
        km_left_right: Optional[int] = None,
    ) -> Optional[RasterStack]:
        """Land cover grid for a year, None when the product has no layer yet"""
        response = self.modis.get_subset(
            lat,
            lon,
            f"{year}-01-01",
            f"{year}-12-31",
            product=self.modis_settings["landcover_product"],
            band=self.modis_settings["landcover_band"],
            km_above_below=km_above_below,
            km_left_right=km_left_right,
        )
        if not response.get("subset"):
            logger.warning(f"No land cover layer for {year}")
            return None
        return to_raster(response, apply_scale=False)

    def analyze_site(self, site: Dict) -> Dict:
        """Phenology of one site: centre pixel per year plus per-pixel SOS/EOS"""
        sitename = site["sitename"]
        lat, lon = site["lat"], site["lon"]
        product = site.get("product") or self.modis_settings["product"]
        qc_band = site.get(
            "qc_band",
            self.modis_settings["qc_band"]
            if product == self.modis_settings["product"]
            else None,
        )
        km_above_below = site.get("km_above_below", self.modis_settings["km_above_below"])
        km_left_right = site.get("km_left_right", self.modis_settings["km_left_right"])
        threshold = site.get("threshold", self.phenology["threshold"])
        window_length = self.smoothing["window_length"]
        polyorder = self.smoothing["polyorder"]

        try:
            stack = self.fetch_stack(
                lat,
                lon,
                site["start_date"],
                site["end_date"],
                product=product,
                band=site.get("band"),
                qc_band=qc_band,
                km_above_below=km_above_below,
                km_left_right=km_left_right,
            )

            row, col = stack.centre_pixel()
            centre = stack.pixel_series(row, col)
            seasons = detect_phenology(centre, threshold, window_length, polyorder)
            phases = phenophases(
                centre,
                {k: v for k, v in self.phenology.items() if k != "threshold"},
                window_length,
                polyorder,
            )

            complete = [s["year"] for s in seasons if s["complete"]]
            year = site.get("year")
            if not year:
                if complete:
                    year = complete[-1]
                else:
                    year = seasons[-1]["year"]
                    logger.warning(
                        f"No fully observed year for {sitename}, using partial {year}"
                    )
            result: Dict[str, Any] = {
                "sitename": sitename,
                "lat": lat,
                "lon": lon,
                "product": stack.product,
                "band": stack.band,
                "year": year,
                "threshold": threshold,
                "observations": len(centre),
                "valid_observations": len(centre.valid()),
                "complete_years": complete,
                "seasons": seasons,
                "phenophases": phases,
            }

            mask = None
            classes = site.get("landcover_classes")
            if site.get("landcover") or classes:
                landcover = self.fetch_landcover(
                    lat, lon, year, km_above_below, km_left_right
                )
                if landcover is not None:
                    grid = landcover.layer(-1)
                    result["landcover"] = class_summary(grid)
                    result["majority_class"] = majority_class(grid)
                    if classes and grid.shape == (stack.nrows, stack.ncols):
                        mask = class_mask(grid, classes)
                    elif classes:
                        logger.warning(
                            f"Land cover grid {grid.shape} does not match "
                            f"{(stack.nrows, stack.ncols)}, not masking {sitename}"
                        )

            pixels = pixel_phenology(
                stack,
                year,
                threshold,
                window_length,
                polyorder,
                mask=mask,
                max_workers=self.modis_settings["max_workers"],
            )
            lons, lats = stack.pixel_lonlat()
            result["pixels"] = [
                {
                    "row": r,
                    "col": c,
                    "lon": float(lons[r, c]),
                    "lat": float(lats[r, c]),
                    "sos_doy": _nan_to_none(pixels["sos"][r, c]),
                    "eos_doy": _nan_to_none(pixels["eos"][r, c]),
                }
                for r in range(stack.nrows)
                for c in range(stack.ncols)
            ]
            result["sos_doy_median"] = _nanmedian(pixels["sos"])
            result["eos_doy_median"] = _nanmedian(pixels["eos"])
            result["skipped_pixels"] = pixels["skipped_pixels"]

            logger.debug(
                f"{sitename} {year}: median SOS {result['sos_doy_median']}, "
                f"median EOS {result['eos_doy_median']}"
            )
            return result

        except (requests.RequestException, PhenologyError, ValueError) as e:
            logger.error(f"Error analysing site {sitename}: {str(e)}")
            return {"sitename": sitename, "lat": lat, "lon": lon, "error": str(e)}

    def analyze_sites(
        self, sites: List[Dict], max_sites: Optional[int] = None
    ) -> List[Dict]:
        """Analyse a list of sites, failures are reported per site"""
        if max_sites:
            sites = sites[:max_sites]
            logger.info(f"Limited analysis to first {max_sites} sites")

        logger.info(f"Starting phenology analysis of {len(sites)} sites")
        results = []
        for i, site in enumerate(sites, 1):
            logger.info(f"{i}/{len(sites)}: {site['sitename']}")
            results.append(self.analyze_site(site))
        return results

    def export_geojson(
        self, results: List[Dict], filename: str = "phenology_results.geojson"
    ) -> Optional[Dict]:
        """Export site and pixel phenology to GeoJSON points"""
        if not results:
            return None

        geojson: Dict[str, Any] = {"type": "FeatureCollection", "features": []}

        for result in results:
            if result.get("error"):
                continue

            site_properties = {
                key: result.get(key)
                for key in (
                    "sitename",
                    "product",
                    "band",
                    "year",
                    "threshold",
                    "valid_observations",
                    "sos_doy_median",
                    "eos_doy_median",
                    "majority_class",
                    "seasons",
                    "phenophases",
                )
            }
            site_properties["kind"] = "site"
            geojson["features"].append(
                {
                    "type": "Feature",
                    # GeoJSON uses lon, lat
                    "geometry": {"type": "Point", "coordinates": [result["lon"], result["lat"]]},
                    "properties": site_properties,
                }
            )

            for pixel in result.get("pixels", []):
                geojson["features"].append(
                    {
                        "type": "Feature",
                        "geometry": {
                            "type": "Point",
                            "coordinates": [pixel["lon"], pixel["lat"]],
                        },
                        "properties": {
                            "kind": "pixel",
                            "sitename": result["sitename"],
                            "year": result["year"],
                            "row": pixel["row"],
                            "col": pixel["col"],
                            "sos_doy": pixel["sos_doy"],
                            "eos_doy": pixel["eos_doy"],
                        },
                    }
                )

        with open(filename, "w") as f:
            json.dump(geojson, f, indent=2, default=str)

        logger.info(f"GeoJSON results saved to {filename}")
        return geojson


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modis-phenology",
        description="Threshold based phenology from MODIS land product subsets",
    )
    parser.add_argument("--config", default="config.yaml", help="Run configuration YAML")
    parser.add_argument(
        "--output", default="phenology_results.geojson", help="GeoJSON output file"
    )
    parser.add_argument("--max-sites", type=int, default=None)
    parser.add_argument("--cache-dir", default=".modis_cache")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--clear-cache", action="store_true", help="Empty the request cache first"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for command line usage"""
    args = build_parser().parse_args(argv)

    logger.remove()  # Remove default handler
    logger.add(sys.stderr, level=args.log_level, format=LOG_FORMAT)
    logger.info("=== Starting MODIS phenology analysis ===")

    config = load_config(args.config)
    analyzer = PhenologyAnalyzer(cache_dir=args.cache_dir, settings=config)

    if args.clear_cache:
        removed = analyzer.modis.clear_cache()
        logger.info(f"Removed {removed} cached responses")

    results = analyzer.analyze_sites(config["sites"], args.max_sites)
    successful_results = [r for r in results if "error" not in r]
    logger.info(
        f"Analysis completed: {len(results)} sites processed, "
        f"{len(successful_results)} successful"
    )

    print("\n=== Phenology Summary ===")
    for site in successful_results:
        print(
            f"{site['sitename']} {site['year']}: "
            f"SOS DOY {site['sos_doy_median']}, EOS DOY {site['eos_doy_median']} "
            f"(threshold {site['threshold']})"
        )

    cache_stats = analyzer.modis.get_cache_stats()
    if cache_stats["total_requests"]:
        logger.info(
            f"Cache performance: {cache_stats['cache_hits']} hits, "
            f"{cache_stats['cache_misses']} misses "
            f"({cache_stats['hit_rate_percent']}% hit rate)"
        )

    analyzer.export_geojson(results, args.output)
    logger.info("=== MODIS phenology analysis completed ===")
    return 0 if successful_results or not results else 1
