"""
Canonical path resolution for the Brunei School Atlas.

Single source of truth for every path the pipeline reads or writes.
Scripts import paths from here; no relative '../' paths.

- Detect root via `.project-root` (primary) and fallback markers
- Expose canonical Paths: RAW_DIR, PROCESSED_DIR, CONFIG_DIR, etc.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's location.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = start_path

    while True:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            break
        current = current.parent

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

# Config
CONFIG_DIR = PROJECT_ROOT / "configs"
PARAMS_FILE = CONFIG_DIR / "params.yml"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
PROCESSED_DIR = DATA_DIR / "processed"

# Raw inputs (prepared upstream: tabulated school list, boundary files)
RAW_SCHOOLS_CSV = RAW_DIR / "schools.csv"
RAW_POPULATION_CSV = RAW_DIR / "population_by_mukim.csv"
RAW_MUKIM_BOUNDARIES = RAW_DIR / "mukim_boundaries.geojson"
RAW_KAMPONG_BOUNDARIES = RAW_DIR / "kampong_boundaries.geojson"
RAW_STUDY_AREA = RAW_DIR / "study_area.geojson"

# Processed subdirectories
GEO_DIR = PROCESSED_DIR / "geo"
JOINS_DIR = PROCESSED_DIR / "joins"
AUTOCORR_DIR = PROCESSED_DIR / "autocorrelation"
HOTSPOTS_DIR = PROCESSED_DIR / "hotspots"
REGRESSION_DIR = PROCESSED_DIR / "regression"
METADATA_DIR = PROCESSED_DIR / "metadata"

# Logs
LOGS_DIR = PROJECT_ROOT / "logs"

# Pipeline stage outputs, in run order
STAGE_DIRS = (GEO_DIR, JOINS_DIR, AUTOCORR_DIR, HOTSPOTS_DIR, REGRESSION_DIR)


if __name__ == "__main__":
    print(f"PROJECT_ROOT:  {PROJECT_ROOT}")
    print(f"PARAMS_FILE:   {PARAMS_FILE}")
    for d in STAGE_DIRS:
        print(f"{d.name + ':':<15}{d}")
