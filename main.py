#!/usr/bin/env python3
"""
Simple main entry point for the MODIS phenology toolkit.
"""

import sys
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent / "src"))

from modis_phenology.core import main

if __name__ == "__main__":
    sys.exit(main())
