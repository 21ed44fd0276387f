#!/usr/bin/env python3
"""
MODIS land cover (MCD12Q1 LC_Type1, IGBP legend) helpers.
"""

from typing import Dict, Iterable, List, Optional

import numpy as np

IGBP_CLASSES: Dict[int, str] = {
    1: "Evergreen Needleleaf Forests",
    2: "Evergreen Broadleaf Forests",
    3: "Deciduous Needleleaf Forests",
    4: "Deciduous Broadleaf Forests",
    5: "Mixed Forests",
    6: "Closed Shrublands",
    7: "Open Shrublands",
    8: "Woody Savannas",
    9: "Savannas",
    10: "Grasslands",
    11: "Permanent Wetlands",
    12: "Croplands",
    13: "Urban and Built-up Lands",
    14: "Cropland/Natural Vegetation Mosaics",
    15: "Permanent Snow and Ice",
    16: "Barren",
    17: "Water Bodies",
    255: "Unclassified",
}

DECIDUOUS_BROADLEAF = 4


def class_name(code: int) -> str:
    """IGBP class name for a land cover code"""
    return IGBP_CLASSES.get(int(code), f"Unknown ({int(code)})")


def class_summary(grid: np.ndarray) -> List[Dict]:
    """Pixel count and fraction of each class, most frequent first

    NaN cells (masked or missing) are ignored.
    """
    values = np.asarray(grid, dtype=float).ravel()
    values = values[~np.isnan(values)]
    if values.size == 0:
        return []

    codes, counts = np.unique(values.astype(int), return_counts=True)
    summary = [
        {
            "code": int(code),
            "name": class_name(code),
            "pixels": int(count),
            "fraction": round(float(count) / values.size, 4),
        }
        for code, count in zip(codes, counts)
    ]
    return sorted(summary, key=lambda item: (-item["pixels"], item["code"]))


def majority_class(grid: np.ndarray) -> Optional[int]:
    """Most frequent class, None for an empty grid"""
    summary = class_summary(grid)
    return summary[0]["code"] if summary else None


def class_mask(grid: np.ndarray, classes: Iterable[int]) -> np.ndarray:
    """Boolean mask of cells belonging to any of the given classes"""
    grid = np.asarray(grid, dtype=float)
    wanted = [float(c) for c in classes]
    return np.isin(grid, wanted)
