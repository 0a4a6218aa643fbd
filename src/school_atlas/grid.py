"""
Regular square grid (fishnet) for the Gi* hotspot analysis.

Cell edges come from one shared coordinate array, so neighbouring cells
share bit-identical edges and rook contiguity on the grid is exact.
"""

import logging
from typing import Dict, Tuple

import geopandas as gpd
import numpy as np
from shapely.geometry import box

from school_atlas.qa import assert_same_crs

logger = logging.getLogger(__name__)


def create_grid(
    bounds: Tuple[float, float, float, float],
    cell_size: float,
    crs,
) -> gpd.GeoDataFrame:
    """
    Create a regular square grid covering the given bounds.

    Args:
        bounds: (minx, miny, maxx, maxy) in projected coordinates
        cell_size: Cell size in CRS units (metres for UTM)
        crs: CRS of the bounds (e.g. "EPSG:32650")

    Returns:
        GeoDataFrame with cell_id (string), row, col and geometry, ordered
        row-major from the south-west corner.
    """
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")

    minx, miny, maxx, maxy = bounds
    if maxx <= minx or maxy <= miny:
        raise ValueError(f"Degenerate bounds: {bounds}")

    n_cols = max(int(np.ceil((maxx - minx) / cell_size)), 1)
    n_rows = max(int(np.ceil((maxy - miny) / cell_size)), 1)
    xs = minx + cell_size * np.arange(n_cols + 1)
    ys = miny + cell_size * np.arange(n_rows + 1)

    logger.info("Creating grid: %d cols x %d rows = %d cells", n_cols, n_rows, n_cols * n_rows)

    cells = []
    for row in range(n_rows):
        for col in range(n_cols):
            cells.append({
                "cell_id": f"r{row:03d}c{col:03d}",
                "row": row,
                "col": col,
                "geometry": box(xs[col], ys[row], xs[col + 1], ys[row + 1]),
            })

    return gpd.GeoDataFrame(cells, geometry="geometry", crs=crs)


def clip_grid_to_boundary(
    grid: gpd.GeoDataFrame,
    boundary: gpd.GeoDataFrame,
) -> gpd.GeoDataFrame:
    """Keep only cells whose interior overlaps the boundary outline."""
    assert_same_crs(grid, boundary, "grid clip")

    outline = boundary.geometry.union_all()
    overlaps = grid.geometry.intersection(outline).area > 0
    clipped = grid[overlaps].copy()

    logger.info(
        "Kept %d cells inside boundary (dropped %d)", len(clipped), len(grid) - len(clipped)
    )
    return clipped.reset_index(drop=True)


def count_points_per_cell(
    points: gpd.GeoDataFrame,
    grid: gpd.GeoDataFrame,
    count_col: str = "count",
    point_id_col: str = "school_id",
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Count points per cell; cells without points get 0.

    A point lying exactly on a shared edge is assigned to one cell only
    (the first in grid order). Points outside every cell are not counted;
    they are listed in stats["unmatched_ids"] (by `point_id_col`, else by
    index).

    Returns:
        Tuple of (grid with `count_col`, stats dictionary with
        total_points, matched, unmatched, unmatched_ids, cells_with_points)
    """
    assert_same_crs(points, grid, "grid count")

    cells = grid[["cell_id", grid.geometry.name]]
    joined = gpd.sjoin(points, cells, how="inner", predicate="intersects")

    # One cell per point
    joined = joined.sort_values("index_right", kind="stable")
    joined = joined[~joined.index.duplicated(keep="first")]

    counts = joined.groupby("cell_id").size().rename(count_col)
    out = grid.copy()
    out[count_col] = out["cell_id"].map(counts).fillna(0).astype(int)

    outside = points[~points.index.isin(joined.index)]
    ids = outside[point_id_col] if point_id_col in outside.columns else outside.index
    stats = {
        "total_points": len(points),
        "matched": len(joined),
        "unmatched": len(outside),
        "unmatched_ids": [str(v) for v in ids],
        "cells_with_points": int((out[count_col] > 0).sum()),
    }

    if stats["unmatched"]:
        logger.warning(
            "%d point(s) fall outside every grid cell: %s",
            stats["unmatched"], stats["unmatched_ids"][:10],
        )
    logger.info("Cells with >=1 point: %d / %d", stats["cells_with_points"], len(out))

    return out, stats
