#!/usr/bin/env python3
"""
Exception hierarchy for the MODIS phenology toolkit.

Hierarchy::

    PhenologyError
    ├── InsufficientDataError   too few valid observations for smoothing
    └── ConfigError             malformed run configuration
"""


class PhenologyError(Exception):
    """Base exception for all toolkit errors"""


class InsufficientDataError(PhenologyError, ValueError):
    """Raised when a series has fewer valid points than the smoothing window.

    Args:
        available: Number of valid observations in the series.
        required: Minimum number needed (the filter window length).
    """

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"Series has {available} valid observations, "
            f"smoothing window needs at least {required}"
        )
        self.available = available
        self.required = required


class ConfigError(PhenologyError, ValueError):
    """Raised when a run configuration cannot be used"""
