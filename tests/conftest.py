"""
Shared fixtures: small synthetic polygon layers with known contiguity.
"""

import geopandas as gpd
import pytest
from shapely.geometry import box

PROJECTED_CRS = "EPSG:32650"

# Origin inside the Brunei UTM 50N bounds
X0, Y0 = 240000.0, 500000.0


def make_lattice(n_rows: int, n_cols: int, size: float = 1000.0) -> gpd.GeoDataFrame:
    """Row-major square lattice with ids 'r{row}c{col}'."""
    records = []
    for row in range(n_rows):
        for col in range(n_cols):
            records.append({
                "region_id": f"r{row}c{col}",
                "row": row,
                "col": col,
                "geometry": box(
                    X0 + col * size, Y0 + row * size,
                    X0 + (col + 1) * size, Y0 + (row + 1) * size,
                ),
            })
    return gpd.GeoDataFrame(records, geometry="geometry", crs=PROJECTED_CRS)


@pytest.fixture
def lattice_4x4():
    """4x4 grid of unit squares."""
    return make_lattice(4, 4)


@pytest.fixture
def path_regions():
    """Five squares in a row: 1-2-3-4-5, each touching only its neighbours."""
    return gpd.GeoDataFrame(
        {
            "region_id": ["1", "2", "3", "4", "5"],
            "school_count": [0, 0, 10, 0, 0],
        },
        geometry=[box(X0 + i * 1000, Y0, X0 + (i + 1) * 1000, Y0 + 1000) for i in range(5)],
        crs=PROJECTED_CRS,
    )


@pytest.fixture
def regions_with_island():
    """Two adjacent squares plus one detached square."""
    return gpd.GeoDataFrame(
        {"region_id": ["a", "b", "island"], "school_count": [3, 1, 2]},
        geometry=[
            box(X0, Y0, X0 + 1000, Y0 + 1000),
            box(X0 + 1000, Y0, X0 + 2000, Y0 + 1000),
            box(X0 + 5000, Y0 + 5000, X0 + 6000, Y0 + 6000),
        ],
        crs=PROJECTED_CRS,
    )


@pytest.fixture
def corner_touching():
    """Two squares meeting at a single vertex."""
    return gpd.GeoDataFrame(
        {"region_id": ["sw", "ne"]},
        geometry=[
            box(X0, Y0, X0 + 1000, Y0 + 1000),
            box(X0 + 1000, Y0 + 1000, X0 + 2000, Y0 + 2000),
        ],
        crs=PROJECTED_CRS,
    )


@pytest.fixture
def study_area():
    """Study-area outline covering the left 3/4 of the 4x4 lattice."""
    return gpd.GeoDataFrame(
        geometry=[box(X0, Y0, X0 + 3000, Y0 + 4000)], crs=PROJECTED_CRS
    )
