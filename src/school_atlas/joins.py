"""
Hardened point-in-polygon join of schools to regions.

- within first, then nearest polygon within a maximum distance (schools
  geocoded just off a coastline or river bank)
- every unmatched school is tracked and reported by id
- hard failure when the unmatched rate exceeds the configured limit
"""

from typing import Dict, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from school_atlas.io_utils import read_yaml
from school_atlas.paths import PARAMS_FILE
from school_atlas.qa import assert_crs_not_none, safe_reproject


class SpatialJoinError(Exception):
    """Raised when a spatial join fails validation."""
    pass


def _load_params() -> dict:
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE)


def spatial_join_points_to_polygons(
    points: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    polygon_id_col: str = "region_id",
    point_id_col: str = "school_id",
    max_distance: Optional[float] = None,
    max_unmatched_rate: Optional[float] = None,
    projected_crs: Optional[int] = None,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Join each point to the polygon containing it.

    1. Assert CRS and reproject both layers to the projected CRS
    2. sjoin(within) first
    3. Unmatched -> sjoin_nearest within max_distance
    4. Record matched/unmatched counts, unmatched ids and snap distances
    5. Fail if the unmatched share exceeds max_unmatched_rate

    Args:
        points: Point layer (one row per school)
        polygons: Region polygons with `polygon_id_col`
        polygon_id_col: Region identifier column
        point_id_col: Point identifier column (reported for unmatched points)
        max_distance: Snap distance in projected CRS units
            (default: params.yml spatial_join.max_distance_m, else 250)
        max_unmatched_rate: Tolerated share of unmatched points
            (default: params.yml spatial_join.max_unmatched_rate, else 0.01)
        projected_crs: EPSG code (default: params.yml crs.projected_epsg,
            else 32650)

    Returns:
        Tuple of (matched points with polygon_id_col, stats dictionary).
        Unmatched points are not in the frame; they are listed in
        stats["unmatched_ids"].

    Raises:
        SpatialJoinError: If too many points are unmatched.
    """
    params = _load_params()
    join_config = params.get("spatial_join", {})
    if max_distance is None:
        max_distance = float(join_config.get("max_distance_m", 250))
    if max_unmatched_rate is None:
        max_unmatched_rate = float(join_config.get("max_unmatched_rate", 0.01))
    if projected_crs is None:
        projected_crs = int(params.get("crs", {}).get("projected_epsg", 32650))

    assert_crs_not_none(points, "points input")
    assert_crs_not_none(polygons, "polygons input")

    points_proj = safe_reproject(points, projected_crs, "points").copy()
    polygons_proj = safe_reproject(polygons, projected_crs, "polygons")
    regions = polygons_proj[[polygon_id_col, polygons_proj.geometry.name]]

    stats = {
        "total_points": len(points_proj),
        "matched_within": 0,
        "matched_nearest": 0,
        "unmatched": 0,
        "unmatched_ids": [],
        "max_distance_used": 0.0,
        "mean_distance": None,
        "p95_distance": None,
    }

    points_proj["_point_idx"] = np.arange(len(points_proj))

    joined_within = gpd.sjoin(points_proj, regions, how="inner", predicate="within")
    # A point inside overlapping polygons keeps its first match only
    joined_within = joined_within.drop_duplicates("_point_idx", keep="first")
    stats["matched_within"] = len(joined_within)

    leftover = points_proj[~points_proj["_point_idx"].isin(joined_within["_point_idx"])]
    parts = [joined_within]

    if len(leftover) > 0:
        joined_nearest = gpd.sjoin_nearest(
            leftover,
            regions,
            how="left",
            distance_col="_join_distance",
            max_distance=max_distance,
        )
        joined_nearest = joined_nearest.drop_duplicates("_point_idx", keep="first")

        distances = joined_nearest["_join_distance"].dropna()
        if len(distances) > 0:
            stats["max_distance_used"] = float(distances.max())
            stats["mean_distance"] = float(distances.mean())
            stats["p95_distance"] = float(np.percentile(distances, 95))

        snapped = joined_nearest[polygon_id_col].notna()
        stats["matched_nearest"] = int(snapped.sum())
        stats["unmatched"] = int((~snapped).sum())

        unmatched = joined_nearest[~snapped]
        if point_id_col in unmatched.columns:
            stats["unmatched_ids"] = [str(v) for v in unmatched[point_id_col]]
        else:
            stats["unmatched_ids"] = [str(v) for v in unmatched.index]

        parts.append(joined_nearest[snapped].drop(columns=["_join_distance"]))

    result = pd.concat(parts)
    result = result.sort_values("_point_idx").drop(
        columns=["_point_idx", "index_right"], errors="ignore"
    )
    result = gpd.GeoDataFrame(result, geometry=points_proj.geometry.name, crs=points_proj.crs)

    if stats["total_points"] > 0:
        unmatched_rate = stats["unmatched"] / stats["total_points"]
        stats["unmatched_rate"] = unmatched_rate
        if unmatched_rate > max_unmatched_rate:
            raise SpatialJoinError(
                f"Too many unmatched points: {stats['unmatched']} ({unmatched_rate:.1%}) "
                f"exceeds {max_unmatched_rate:.1%}; ids: {stats['unmatched_ids'][:10]}"
            )

    return result, stats


def aggregate_points_to_polygons(
    points: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    polygon_id_col: str = "region_id",
    count_col: str = "school_count",
    category_col: Optional[str] = None,
    **join_kwargs,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Count points per polygon, keeping polygons with zero points.

    Args:
        points: Point layer
        polygons: Region polygons
        polygon_id_col: Region identifier column
        count_col: Name for the count column in the output
        category_col: Optional categorical column (e.g. "sector"); adds one
            `{count_col}_{category}` column per category
        **join_kwargs: Passed to spatial_join_points_to_polygons

    Returns:
        Tuple of (polygons with counts, in the input CRS and order; join stats)
    """
    joined, stats = spatial_join_points_to_polygons(
        points, polygons, polygon_id_col=polygon_id_col, **join_kwargs
    )

    counts = joined.groupby(polygon_id_col).size().rename(count_col)
    result = polygons.copy()
    result[count_col] = result[polygon_id_col].map(counts).fillna(0).astype(int)

    if category_col is not None and category_col in joined.columns:
        by_category = (
            joined.fillna({category_col: "unknown"})
            .groupby([polygon_id_col, category_col])
            .size()
            .unstack(fill_value=0)
        )
        for category in by_category.columns:
            col = f"{count_col}_{str(category).strip().lower().replace(' ', '_')}"
            result[col] = (
                result[polygon_id_col].map(by_category[category]).fillna(0).astype(int)
            )

    stats["polygons_with_points"] = int((result[count_col] > 0).sum())
    stats["polygons_without_points"] = int((result[count_col] == 0).sum())

    return result, stats


def log_join_stats(stats: Dict, logger=None) -> None:
    """
    Log spatial join statistics (via the JSONL logger when given).
    """
    msg = (
        f"Spatial join stats: "
        f"{stats['total_points']} total, "
        f"{stats['matched_within']} within, "
        f"{stats['matched_nearest']} nearest, "
        f"{stats['unmatched']} unmatched"
    )

    if stats.get("max_distance_used"):
        msg += f" | max_dist={stats['max_distance_used']:.1f}"
    if stats.get("mean_distance"):
        msg += f", mean_dist={stats['mean_distance']:.1f}"

    if logger:
        logger.info(msg, extra={"join_stats": stats})
        if stats["unmatched"]:
            logger.warning(f"Unmatched points: {stats['unmatched_ids']}")
    else:
        print(msg)
