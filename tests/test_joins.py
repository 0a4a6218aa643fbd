"""
Tests for the school-to-region spatial join.
"""

import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from school_atlas.io_utils import atomic_write_json, read_json
from school_atlas.joins import (
    SpatialJoinError,
    aggregate_points_to_polygons,
    spatial_join_points_to_polygons,
)
from school_atlas.pipeline import run_stage
from school_atlas.qa import CRSError

CRS = "EPSG:32650"
X0, Y0 = 240000.0, 500000.0


@pytest.fixture
def two_mukims():
    return gpd.GeoDataFrame(
        {"region_id": ["west", "east"]},
        geometry=[
            box(X0, Y0, X0 + 1000, Y0 + 1000),
            box(X0 + 1000, Y0, X0 + 2000, Y0 + 1000),
        ],
        crs=CRS,
    )


def schools(points, sectors=None):
    data = {"school_id": [f"s{i}" for i in range(len(points))]}
    if sectors is not None:
        data["sector"] = sectors
    return gpd.GeoDataFrame(data, geometry=[Point(x, y) for x, y in points], crs=CRS)


class TestSpatialJoin:
    """Within, nearest-snap and unmatched tracking."""

    def test_within(self, two_mukims):
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 1500, Y0 + 500)])
        joined, stats = spatial_join_points_to_polygons(pts, two_mukims)
        assert joined["region_id"].tolist() == ["west", "east"]
        assert stats["matched_within"] == 2
        assert stats["unmatched"] == 0

    def test_snap_to_nearest(self, two_mukims):
        # 100 m south of the west mukim
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 500, Y0 - 100)])
        joined, stats = spatial_join_points_to_polygons(pts, two_mukims, max_distance=250)
        assert joined["region_id"].tolist() == ["west", "west"]
        assert stats["matched_nearest"] == 1
        assert stats["max_distance_used"] == pytest.approx(100.0)

    def test_unmatched_tracked(self, two_mukims):
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 500, Y0 - 5000)])
        joined, stats = spatial_join_points_to_polygons(
            pts, two_mukims, max_distance=250, max_unmatched_rate=0.6
        )
        assert len(joined) == 1
        assert stats["unmatched"] == 1
        assert stats["unmatched_ids"] == ["s1"]
        assert stats["unmatched_rate"] == pytest.approx(0.5)

    def test_too_many_unmatched(self, two_mukims):
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 500, Y0 - 5000)])
        with pytest.raises(SpatialJoinError, match="s1"):
            spatial_join_points_to_polygons(
                pts, two_mukims, max_distance=250, max_unmatched_rate=0.01
            )

    def test_reprojects_geographic_points(self, two_mukims):
        pts = schools([(X0 + 500, Y0 + 500)]).to_crs(4326)
        joined, _ = spatial_join_points_to_polygons(pts, two_mukims, projected_crs=32650)
        assert joined["region_id"].tolist() == ["west"]
        assert joined.crs.to_epsg() == 32650

    def test_missing_crs(self, two_mukims):
        pts = gpd.GeoDataFrame({"school_id": ["s0"]}, geometry=[Point(X0, Y0)])
        with pytest.raises(CRSError):
            spatial_join_points_to_polygons(pts, two_mukims)


class TestAggregate:
    """School counts per region."""

    def test_counts_keep_empty_regions(self, two_mukims):
        pts = schools([(X0 + 100, Y0 + 100), (X0 + 200, Y0 + 200)])
        counts, stats = aggregate_points_to_polygons(pts, two_mukims)
        by_id = counts.set_index("region_id")["school_count"]
        assert by_id["west"] == 2
        assert by_id["east"] == 0
        assert stats["polygons_with_points"] == 1
        assert stats["polygons_without_points"] == 1

    def test_category_columns(self, two_mukims):
        pts = schools(
            [(X0 + 100, Y0 + 100), (X0 + 200, Y0 + 200), (X0 + 1500, Y0 + 500)],
            sectors=["Government", "Private", None],
        )
        counts, _ = aggregate_points_to_polygons(pts, two_mukims, category_col="sector")
        by_id = counts.set_index("region_id")
        assert by_id.loc["west", "school_count_government"] == 1
        assert by_id.loc["west", "school_count_private"] == 1
        assert by_id.loc["east", "school_count_unknown"] == 1
        assert by_id.loc["east", "school_count_government"] == 0

    def test_input_order_and_crs_preserved(self, two_mukims):
        pts = schools([(X0 + 1500, Y0 + 500)])
        counts, _ = aggregate_points_to_polygons(pts, two_mukims)
        assert counts["region_id"].tolist() == ["west", "east"]
        assert counts.crs == two_mukims.crs


class TestJoinOutcome:
    """A join with too many unmatched schools is reported, not raised."""

    def test_excess_unmatched_becomes_failure(self, two_mukims, tmp_path):
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 500, Y0 - 5000)])
        outcome = run_stage(
            "join_mukim",
            aggregate_points_to_polygons,
            pts,
            two_mukims,
            max_distance=250,
            max_unmatched_rate=0.01,
        )
        assert not outcome.ok
        assert outcome.stage == "join_mukim"
        assert outcome.error_type == "SpatialJoinError"
        assert "s1" in outcome.reason

        # The reason survives the join_stats.json round trip
        path = tmp_path / "join_stats.json"
        atomic_write_json({"mukim": outcome.to_dict()}, path)
        persisted = read_json(path)["mukim"]
        assert persisted["ok"] is False
        assert "1 (50.0%)" in persisted["reason"]

    def test_within_limit_is_success(self, two_mukims):
        pts = schools([(X0 + 500, Y0 + 500), (X0 + 500, Y0 - 5000)])
        outcome = run_stage(
            "join_mukim",
            aggregate_points_to_polygons,
            pts,
            two_mukims,
            max_distance=250,
            max_unmatched_rate=0.6,
        )
        assert outcome.ok
        counts, stats = outcome.value
        assert counts["school_count"].sum() == 1
        assert stats["unmatched_ids"] == ["s1"]
