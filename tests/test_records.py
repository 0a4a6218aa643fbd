"""
Tests for typed School/Region records.
"""

import dataclasses

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

from school_atlas.records import (
    RecordError,
    Region,
    region_values,
    regions_from_gdf,
    schools_from_frame,
    schools_to_gdf,
)


@pytest.fixture
def school_table():
    return pd.DataFrame({
        "school_id": ["0012", "0013", "0020"],
        "name": ["SR Kiulap", "SM Berakas", None],
        "sector": ["Government", "Government", "Private"],
        "latitude": [4.89, 4.97, 4.59],
        "longitude": [114.93, 114.94, 114.23],
    })


class TestSchools:
    """School records from the register."""

    def test_build(self, school_table):
        schools = schools_from_frame(school_table)
        assert [s.school_id for s in schools] == ["0012", "0013", "0020"]
        assert schools[2].name is None
        assert schools[0].point.x == pytest.approx(114.93)

    def test_frozen(self, school_table):
        school = schools_from_frame(school_table)[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            school.latitude = 0.0

    def test_duplicate_id(self, school_table):
        school_table.loc[2, "school_id"] = "0012"
        with pytest.raises(RecordError, match="duplicate"):
            schools_from_frame(school_table)

    def test_missing_id(self, school_table):
        school_table.loc[1, "school_id"] = None
        with pytest.raises(RecordError, match="missing"):
            schools_from_frame(school_table)

    def test_non_numeric_coordinate(self, school_table):
        school_table["latitude"] = school_table["latitude"].astype(object)
        school_table.loc[0, "latitude"] = "north"
        with pytest.raises(RecordError, match="not numeric"):
            schools_from_frame(school_table)

    def test_out_of_range_coordinate(self, school_table):
        school_table.loc[0, "longitude"] = 200.0
        with pytest.raises(RecordError):
            schools_from_frame(school_table)

    def test_missing_coordinate(self, school_table):
        school_table.loc[0, "latitude"] = np.nan
        with pytest.raises(RecordError):
            schools_from_frame(school_table)

    def test_missing_column(self, school_table):
        with pytest.raises(RecordError, match="missing columns"):
            schools_from_frame(school_table.drop(columns=["longitude"]))

    def test_to_gdf(self, school_table):
        gdf = schools_to_gdf(schools_from_frame(school_table))
        assert gdf.crs.to_epsg() == 4326
        assert gdf["school_id"].tolist() == ["0012", "0013", "0020"]
        assert gdf.geometry.iloc[1].y == pytest.approx(4.97)


class TestRegions:
    """Region records from a polygon layer."""

    @pytest.fixture
    def layer(self):
        return gpd.GeoDataFrame(
            {"region_id": [" M01", "M02 "], "school_count": [4, 0]},
            geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)],
        )

    def test_ids_stripped(self, layer):
        regions = regions_from_gdf(layer)
        assert [r.region_id for r in regions] == ["M01", "M02"]

    def test_values(self, layer):
        regions = regions_from_gdf(layer, value_col="school_count")
        assert region_values(regions) == [4.0, 0.0]

    def test_default_value(self, layer):
        assert regions_from_gdf(layer)[0].value == 0.0

    def test_returns_tuple(self, layer):
        assert isinstance(regions_from_gdf(layer), tuple)

    def test_duplicate_ids(self, layer):
        layer["region_id"] = ["M01", "M01"]
        with pytest.raises(RecordError):
            regions_from_gdf(layer)

    def test_empty_geometry(self, layer):
        layer.loc[1, "geometry"] = Polygon()
        with pytest.raises(RecordError, match="no geometry"):
            regions_from_gdf(layer)

    def test_non_finite_value(self, layer):
        layer["school_count"] = [1.0, np.inf]
        with pytest.raises(RecordError):
            regions_from_gdf(layer, value_col="school_count")

    def test_missing_id_column(self, layer):
        with pytest.raises(RecordError):
            regions_from_gdf(layer, id_col="mukim")

    def test_region_is_frozen(self):
        region = Region("M01", box(0, 0, 1, 1), 2.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            region.value = 3.0
