#!/usr/bin/env python3
"""
MODIS subset query module for the ORNL DAAC web service.
"""

import hashlib
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Union

import requests
from loguru import logger

from .config import APIS, MODIS
from .spatial_utils import validate_coordinates, validate_extent

DateLike = Union[str, date, datetime]

SUBSET_CACHE_DAYS = 7
CATALOGUE_CACHE_HOURS = 24


def _iso_date(value: DateLike) -> str:
    """Normalise a date-like value to YYYY-MM-DD"""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value)[:10]).isoformat()


def chunk_dates(dates: List[Dict], size: int) -> List[List[Dict]]:
    """Split a date listing into consecutive chunks of at most size entries"""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [dates[i : i + size] for i in range(0, len(dates), size)]


class ModisQuery:
    """Query the ORNL MODIS web service for land product subsets with caching"""

    def __init__(self, cache_dir: str = ".modis_cache"):
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.api_url = APIS["modis"]
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(exist_ok=True)
        self.cache_hits = 0
        self.cache_misses = 0
        self._stats_lock = threading.Lock()

    def get_products(self) -> List[Dict]:
        """List all products offered by the service"""
        data = self._get_json("products", {}, CATALOGUE_CACHE_HOURS)
        return data.get("products", [])

    def get_bands(self, product: str) -> List[Dict]:
        """List the bands of a product"""
        data = self._get_json(f"{product}/bands", {}, CATALOGUE_CACHE_HOURS)
        return data.get("bands", [])

    def get_dates(self, lat: float, lon: float, product: str) -> List[Dict]:
        """List the composite dates available for a product at a location"""
        self._check_location(lat, lon)
        params = {"latitude": lat, "longitude": lon}
        data = self._get_json(f"{product}/dates", params, CATALOGUE_CACHE_HOURS)
        return data.get("dates", [])

    def get_subset(
        self,
        lat: float,
        lon: float,
        start_date: DateLike,
        end_date: DateLike,
        product: Optional[str] = None,
        band: Optional[str] = None,
        km_above_below: Optional[int] = None,
        km_left_right: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> Dict:
        """Download a subset for all product dates within [start_date, end_date]

        The service only serves a handful of dates per request, so the date
        listing is fetched first and requested in chunks. The returned dict
        holds the grid header of the first chunk and the merged, date sorted
        ``subset`` list.
        """
        product = product or str(MODIS["product"])
        band = band or str(MODIS["band"])
        if km_above_below is None:
            km_above_below = int(MODIS["km_above_below"] or 0)
        if km_left_right is None:
            km_left_right = int(MODIS["km_left_right"] or 0)
        if max_workers is None:
            max_workers = int(MODIS["max_workers"] or 1)

        self._check_location(lat, lon)
        if not validate_extent(km_above_below, km_left_right):
            raise ValueError(
                f"Invalid subset extent: {km_above_below} km above/below, "
                f"{km_left_right} km left/right"
            )

        start, end = _iso_date(start_date), _iso_date(end_date)
        if start > end:
            raise ValueError(f"Start date {start} is after end date {end}")

        dates = [
            d
            for d in self.get_dates(lat, lon, product)
            if start <= d["calendar_date"] <= end
        ]
        if not dates:
            logger.warning(f"No {product} dates between {start} and {end}")
            return {"product": product, "band": band, "subset": []}

        chunks = chunk_dates(dates, int(MODIS["chunk_size"] or 10))
        logger.debug(
            f"Requesting {len(dates)} {product}/{band} dates in {len(chunks)} chunks"
        )

        def fetch(chunk: List[Dict]) -> Dict:
            params = {
                "latitude": lat,
                "longitude": lon,
                "band": band,
                "startDate": chunk[0]["modis_date"],
                "endDate": chunk[-1]["modis_date"],
                "kmAboveBelow": km_above_below,
                "kmLeftRight": km_left_right,
            }
            return self._get_json(
                f"{product}/subset", params, SUBSET_CACHE_DAYS * 24
            )

        if max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                responses = list(executor.map(fetch, chunks))
        else:
            responses = [fetch(chunk) for chunk in chunks]

        merged = {k: v for k, v in responses[0].items() if k != "subset"}
        merged["product"] = product
        merged["band"] = band

        seen = set()
        subset = []
        for response in responses:
            for record in response.get("subset", []):
                key = (record["modis_date"], record.get("band", band))
                if key in seen:
                    continue
                seen.add(key)
                subset.append(record)

        merged["subset"] = sorted(subset, key=lambda r: r["calendar_date"])
        logger.debug(
            f"Retrieved {len(merged['subset'])} {band} composites: "
            f"{merged['subset'][0]['calendar_date'] if merged['subset'] else '-'} to "
            f"{merged['subset'][-1]['calendar_date'] if merged['subset'] else '-'}"
        )
        return merged

    def _check_location(self, lat: float, lon: float) -> None:
        if not validate_coordinates(lat, lon):
            raise ValueError(f"Invalid coordinates: lat={lat}, lon={lon}")

    def _get_json(self, endpoint: str, params: Dict, max_age_hours: float) -> Dict:
        """GET an endpoint through the on-disk cache"""
        cache_key = self._create_cache_key(endpoint, params)
        cached_result = self._get_cached_result(cache_key, max_age_hours)

        if cached_result is not None:
            with self._stats_lock:
                self.cache_hits += 1
            logger.debug(f"🗄️  Cache HIT for {endpoint}")
            return cached_result

        with self._stats_lock:
            self.cache_misses += 1
        logger.debug(f"🌐 API query for {endpoint} {params}")

        response = self.session.get(self.api_url + endpoint, params=params)
        response.raise_for_status()
        result = response.json()

        self._cache_result(cache_key, result)
        return result

    def _create_cache_key(self, endpoint: str, params: Dict) -> str:
        """Create a unique cache key for the query parameters"""
        cache_data = {"api_url": self.api_url, "endpoint": endpoint}
        for key, value in params.items():
            # Round coordinates to avoid cache misses from tiny differences
            if key in ("latitude", "longitude"):
                value = round(float(value), 4)
            cache_data[key] = value

        cache_string = json.dumps(cache_data, sort_keys=True)
        return hashlib.md5(cache_string.encode()).hexdigest()

    def _get_cached_result(self, cache_key: str, max_age_hours: float) -> Optional[Dict]:
        """Stored response for a key, None when absent or older than max_age_hours"""
        cache_file = self.cache_dir / f"{cache_key}.json"
        if not cache_file.exists():
            return None

        try:
            entry = json.loads(cache_file.read_text())
            age = datetime.now() - datetime.fromisoformat(entry["timestamp"])
            result = entry["result"]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.debug(f"Discarding unreadable cache entry {cache_file.name}")
            cache_file.unlink(missing_ok=True)
            return None

        if age > timedelta(hours=max_age_hours):
            return None
        return result

    def _cache_result(self, cache_key: str, result: Dict) -> None:
        """Store a response with the time it was fetched"""
        cache_file = self.cache_dir / f"{cache_key}.json"
        try:
            payload = json.dumps({"timestamp": datetime.now().isoformat(), "result": result})
            cache_file.write_text(payload)
        except (OSError, TypeError) as e:
            # Response is still returned, the next call refetches
            logger.warning(f"Could not write cache entry {cache_file.name}: {e}")

    def get_cache_stats(self) -> Dict:
        """Cache hits and misses since this query object was created"""
        with self._stats_lock:
            hits, misses = self.cache_hits, self.cache_misses
        total_requests = hits + misses

        return {
            "cache_hits": hits,
            "cache_misses": misses,
            "total_requests": total_requests,
            "hit_rate_percent": round(hits / total_requests * 100, 1) if total_requests else 0,
        }

    def clear_cache(self) -> int:
        """Delete every cached response, returning how many were removed"""
        removed = 0
        for cache_file in self.cache_dir.glob("*.json"):
            cache_file.unlink()
            removed += 1
        return removed
