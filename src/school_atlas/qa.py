"""
Quality assurance utilities for geospatial data.

CRS mismatches are hard errors; there are no silent overrides.
Every boundary and point layer is bounds-checked against Brunei's extent
before it enters the analysis.
"""

from typing import Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from school_atlas.io_utils import read_yaml
from school_atlas.paths import PARAMS_FILE


# Default extents: Brunei Darussalam in WGS 84 and UTM zone 50N
DEFAULT_BOUNDS = {
    4326: {"x_min": 113.9, "x_max": 115.5, "y_min": 4.0, "y_max": 5.2},
    32650: {"x_min": 150000, "x_max": 350000, "y_min": 430000, "y_max": 580000},
}


def _load_bounds_config() -> dict:
    """Load bounds check configuration from params.yml."""
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE).get("bounds_checks", {})


# =============================================================================
# CRS Validation
# =============================================================================

class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


class BoundsError(Exception):
    """Raised when bounds validation fails."""
    pass


def _with_context(msg: str, context: str) -> str:
    return f"{msg} ({context})" if context else msg


def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert that the GeoDataFrame has a CRS set.

    Raises:
        CRSError: If CRS is None
    """
    if gdf.crs is None:
        raise CRSError(_with_context("GeoDataFrame has no CRS set", context))


def assert_expected_crs(
    gdf: gpd.GeoDataFrame,
    expected_epsg: int,
    context: str = "",
) -> None:
    """
    Assert that the GeoDataFrame has the expected CRS.

    Raises:
        CRSError: If CRS is None or doesn't match expected
    """
    assert_crs_not_none(gdf, context)

    if not gdf.crs.equals(CRS.from_epsg(expected_epsg)):
        raise CRSError(_with_context(
            f"CRS mismatch: expected EPSG:{expected_epsg}, got {gdf.crs}", context
        ))


def assert_same_crs(a: gpd.GeoDataFrame, b: gpd.GeoDataFrame, context: str = "") -> None:
    """Assert two layers share a CRS before any overlay or join."""
    assert_crs_not_none(a, context)
    assert_crs_not_none(b, context)
    if not a.crs.equals(b.crs):
        raise CRSError(_with_context(f"CRS mismatch: {a.crs} vs {b.crs}", context))


def safe_reproject(
    gdf: gpd.GeoDataFrame,
    target_epsg: int,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame with to_crs(); never set_crs with override.

    Raises:
        CRSError: If source CRS is None
    """
    assert_crs_not_none(gdf, context)

    target_crs = CRS.from_epsg(target_epsg)
    if gdf.crs.equals(target_crs):
        return gdf

    return gdf.to_crs(target_crs)


# =============================================================================
# Bounds Validation
# =============================================================================

def get_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float, float, float]:
    """Get bounds of a GeoDataFrame as (minx, miny, maxx, maxy)."""
    return tuple(float(v) for v in gdf.total_bounds)


def check_bounds(
    gdf: gpd.GeoDataFrame,
    x_min: float,
    x_max: float,
    y_min: float,
    y_max: float,
    context: str = "",
) -> bool:
    """
    Check that a layer's bounds fall inside the expected extent.

    Raises:
        BoundsError: If bounds are outside the expected range
    """
    minx, miny, maxx, maxy = get_bounds(gdf)

    errors = []
    if minx < x_min or maxx > x_max:
        errors.append(f"X out of range: [{minx}, {maxx}] not in [{x_min}, {x_max}]")
    if miny < y_min or maxy > y_max:
        errors.append(f"Y out of range: [{miny}, {maxy}] not in [{y_min}, {y_max}]")

    if errors:
        raise BoundsError(_with_context("Bounds check failed: " + "; ".join(errors), context))

    return True


def validate_bounds(
    gdf: gpd.GeoDataFrame,
    context: str = "",
) -> bool:
    """
    Validate bounds based on the GeoDataFrame's CRS.

    EPSG:4326 and EPSG:32650 are checked against the Brunei extent (from
    params.yml where configured); other CRSs only need finite bounds.

    Raises:
        CRSError: If CRS is None
        BoundsError: If bounds are outside expected range
    """
    assert_crs_not_none(gdf, context)

    epsg = gdf.crs.to_epsg()
    if epsg in DEFAULT_BOUNDS:
        configured = _load_bounds_config().get(f"epsg_{epsg}", {})
        if epsg == 4326 and configured:
            configured = {
                "x_min": configured.get("lon_min"),
                "x_max": configured.get("lon_max"),
                "y_min": configured.get("lat_min"),
                "y_max": configured.get("lat_max"),
            }
        limits = {
            key: configured.get(key) if configured.get(key) is not None else default
            for key, default in DEFAULT_BOUNDS[epsg].items()
        }
        return check_bounds(gdf, context=context, **limits)

    bounds = get_bounds(gdf)
    if not all(np.isfinite(bounds)):
        raise BoundsError(_with_context(f"Non-finite bounds: {bounds}", context))
    return True


# =============================================================================
# Geometry Validation
# =============================================================================

def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert all geometries are present, non-empty and valid.

    Raises:
        ValueError: If any geometry is missing, empty or invalid
    """
    missing = gdf.geometry.isna()
    if missing.any():
        raise ValueError(_with_context(f"{int(missing.sum())} missing geometries found", context))

    bad = gdf.geometry.is_empty | ~gdf.geometry.is_valid
    if bad.any():
        raise ValueError(_with_context(f"{int(bad.sum())} invalid or empty geometries found", context))


def assert_polygonal(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """Assert every geometry is a Polygon or MultiPolygon."""
    types = set(gdf.geometry.geom_type.dropna().unique())
    extra = types - {"Polygon", "MultiPolygon"}
    if extra:
        raise ValueError(_with_context(f"Non-polygon geometries found: {sorted(extra)}", context))


# =============================================================================
# Data Quality Summaries
# =============================================================================

def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """Compute NA rates (0-1) for all columns in a DataFrame."""
    if len(df) == 0:
        return {col: 0.0 for col in df.columns}
    return (df.isna().sum() / len(df)).to_dict()


def compute_coverage_stats(
    gdf: gpd.GeoDataFrame,
    value_column: str,
) -> dict:
    """Compute coverage statistics for a value column."""
    values = gdf[value_column]
    has_values = values.notna().any()
    return {
        "n_total": int(len(values)),
        "n_valid": int(values.notna().sum()),
        "n_missing": int(values.isna().sum()),
        "n_zero": int((values == 0).sum()),
        "min": float(values.min()) if has_values else None,
        "max": float(values.max()) if has_values else None,
        "mean": float(values.mean()) if has_values else None,
    }
