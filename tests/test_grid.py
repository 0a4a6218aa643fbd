"""
Tests for grid creation, clipping and point counts.
"""

import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from school_atlas.contiguity import build_rook_graph
from school_atlas.grid import clip_grid_to_boundary, count_points_per_cell, create_grid
from school_atlas.qa import CRSError

CRS = "EPSG:32650"
X0, Y0 = 240000.0, 500000.0


def grid_neighbors_expected(n_rows, n_cols):
    """Rook edge count of an n_rows x n_cols lattice."""
    return n_rows * (n_cols - 1) + n_cols * (n_rows - 1)


@pytest.fixture
def grid_3x4():
    return create_grid((X0, Y0, X0 + 4000, Y0 + 3000), 1000, CRS)


class TestCreateGrid:
    """Regular grid construction."""

    def test_cell_count(self, grid_3x4):
        assert len(grid_3x4) == 12
        assert grid_3x4["row"].max() == 2
        assert grid_3x4["col"].max() == 3

    def test_ids_unique_and_stable(self, grid_3x4):
        assert grid_3x4["cell_id"].is_unique
        assert grid_3x4["cell_id"].iloc[0] == "r000c000"
        assert grid_3x4["cell_id"].iloc[-1] == "r002c003"

    def test_cell_area(self, grid_3x4):
        assert (grid_3x4.geometry.area.round(6) == 1_000_000).all()

    def test_partial_extent_rounds_up(self):
        grid = create_grid((X0, Y0, X0 + 2500, Y0 + 1000), 1000, CRS)
        assert len(grid) == 3

    def test_crs(self, grid_3x4):
        assert grid_3x4.crs.to_epsg() == 32650

    def test_grid_is_rook_lattice(self, grid_3x4):
        graph = build_rook_graph(grid_3x4, id_col="cell_id")
        assert graph.n_edges == grid_neighbors_expected(3, 4)
        assert not graph.islands

    def test_invalid_cell_size(self):
        with pytest.raises(ValueError):
            create_grid((X0, Y0, X0 + 1000, Y0 + 1000), 0, CRS)

    def test_degenerate_bounds(self):
        with pytest.raises(ValueError):
            create_grid((X0, Y0, X0, Y0 + 1000), 100, CRS)


class TestClipGrid:
    """Dropping cells outside the study area."""

    def test_clip_keeps_overlapping(self, grid_3x4):
        boundary = gpd.GeoDataFrame(geometry=[box(X0, Y0, X0 + 1500, Y0 + 3000)], crs=CRS)
        clipped = clip_grid_to_boundary(grid_3x4, boundary)
        assert sorted(clipped["col"].unique().tolist()) == [0, 1]
        assert len(clipped) == 6
        # Geometry is not trimmed, only filtered
        assert (clipped.geometry.area.round(6) == 1_000_000).all()

    def test_clip_resets_index(self, grid_3x4):
        boundary = gpd.GeoDataFrame(
            geometry=[box(X0 + 2000, Y0, X0 + 4000, Y0 + 3000)], crs=CRS
        )
        clipped = clip_grid_to_boundary(grid_3x4, boundary)
        assert clipped.index.tolist() == list(range(len(clipped)))

    def test_crs_mismatch(self, grid_3x4):
        boundary = gpd.GeoDataFrame(
            geometry=[box(X0, Y0, X0 + 1000, Y0 + 1000)], crs=CRS
        ).to_crs(4326)
        with pytest.raises(CRSError):
            clip_grid_to_boundary(grid_3x4, boundary)


class TestCountPoints:
    """Schools per cell."""

    def test_counts_and_zero_fill(self, grid_3x4):
        points = gpd.GeoDataFrame(
            {"school_id": ["s1", "s2", "s3"]},
            geometry=[
                Point(X0 + 100, Y0 + 100),
                Point(X0 + 900, Y0 + 900),
                Point(X0 + 3500, Y0 + 2500),
            ],
            crs=CRS,
        )
        counted, stats = count_points_per_cell(points, grid_3x4, count_col="school_count")
        by_id = counted.set_index("cell_id")["school_count"]
        assert by_id["r000c000"] == 2
        assert by_id["r002c003"] == 1
        assert counted["school_count"].sum() == 3
        assert (counted["school_count"] >= 0).all()
        assert stats["unmatched"] == 0
        assert stats["cells_with_points"] == 2

    def test_point_on_shared_edge_counted_once(self, grid_3x4):
        points = gpd.GeoDataFrame(
            {"school_id": ["edge"]}, geometry=[Point(X0 + 1000, Y0 + 500)], crs=CRS
        )
        counted, stats = count_points_per_cell(points, grid_3x4)
        assert counted["count"].sum() == 1
        assert stats["matched"] == 1

    def test_point_outside_grid_reported(self, grid_3x4):
        """A school outside every cell is not counted but is listed by id."""
        points = gpd.GeoDataFrame(
            {"school_id": ["in", "far"]},
            geometry=[Point(X0 + 100, Y0 + 100), Point(X0 - 5000, Y0 - 5000)],
            crs=CRS,
        )
        counted, stats = count_points_per_cell(points, grid_3x4)
        assert counted["count"].sum() == 1
        assert stats["total_points"] == 2
        assert stats["matched"] == 1
        assert stats["unmatched"] == 1
        assert stats["unmatched_ids"] == ["far"]

    def test_unmatched_ids_fall_back_to_index(self, grid_3x4):
        points = gpd.GeoDataFrame(
            geometry=[Point(X0 - 5000, Y0 - 5000)], index=[7], crs=CRS
        )
        _, stats = count_points_per_cell(points, grid_3x4)
        assert stats["unmatched_ids"] == ["7"]
