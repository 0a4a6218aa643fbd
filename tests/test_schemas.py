"""
Tests for table schemas, id normalisation and merge validation.
"""

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from school_atlas.schemas import (
    HOTSPOT_SCHEMA,
    POPULATION_SCHEMA,
    REGION_COUNTS_SCHEMA,
    SCHOOLS_SCHEMA,
    SchemaError,
    get_schema,
    normalize_id_column,
    validate_merge,
    validate_schema,
)


class TestSchoolsSchema:

    def test_minimal_table_valid(self):
        df = pd.DataFrame({
            "school_id": ["a", "b"],
            "latitude": [4.9, 4.8],
            "longitude": [114.9, 114.8],
        })
        assert validate_schema(df, SCHOOLS_SCHEMA) == []

    def test_duplicate_ids(self):
        df = pd.DataFrame({
            "school_id": ["a", "a"],
            "latitude": [4.9, 4.8],
            "longitude": [114.9, 114.8],
        })
        with pytest.raises(SchemaError, match="duplicate"):
            validate_schema(df, SCHOOLS_SCHEMA)

    def test_missing_required_column(self):
        df = pd.DataFrame({"school_id": ["a"], "latitude": [4.9]})
        errors = validate_schema(df, SCHOOLS_SCHEMA, raise_on_error=False)
        assert any("longitude" in e for e in errors)

    def test_latitude_range(self):
        df = pd.DataFrame({"school_id": ["a"], "latitude": [95.0], "longitude": [114.9]})
        with pytest.raises(SchemaError, match="above max"):
            validate_schema(df, SCHOOLS_SCHEMA)


class TestRegionSchemas:

    def test_region_counts_valid(self):
        gdf = gpd.GeoDataFrame(
            {"region_id": ["M01", "M02"], "school_count": [3, 0]},
            geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)],
        )
        assert validate_schema(gdf, REGION_COUNTS_SCHEMA) == []

    def test_negative_count(self):
        gdf = gpd.GeoDataFrame(
            {"region_id": ["M01"], "school_count": [-1]}, geometry=[box(0, 0, 1, 1)]
        )
        with pytest.raises(SchemaError):
            validate_schema(gdf, REGION_COUNTS_SCHEMA)

    def test_counts_must_be_integer(self):
        gdf = gpd.GeoDataFrame(
            {"region_id": ["M01"], "school_count": [1.5]}, geometry=[box(0, 0, 1, 1)]
        )
        errors = validate_schema(gdf, REGION_COUNTS_SCHEMA, raise_on_error=False)
        assert any("expected integer" in e for e in errors)

    def test_population_non_negative(self):
        df = pd.DataFrame({"region_id": ["M01"], "population": [-5]})
        with pytest.raises(SchemaError):
            validate_schema(df, POPULATION_SCHEMA)

    def test_hotspot_classification_values(self):
        df = pd.DataFrame({
            "region_id": ["c1"],
            "value": [2.0],
            "gi_star": [0.3],
            "z_score": [1.0],
            "p_value": [0.3],
            "classification": ["warm"],
        })
        with pytest.raises(SchemaError, match="invalid values"):
            validate_schema(df, HOTSPOT_SCHEMA)


class TestNormalizeId:

    def test_rename_and_strip(self):
        df = pd.DataFrame({"mukim": [" Kianggeh ", "Berakas A"], "x": [1, 2]})
        out = normalize_id_column(df, "mukim")
        assert out["region_id"].tolist() == ["Kianggeh", "Berakas A"]
        assert "mukim" not in out.columns
        assert "mukim" in df.columns

    def test_numeric_codes_become_strings(self):
        df = pd.DataFrame({"code": [101, 102]})
        out = normalize_id_column(df, "code")
        assert out["region_id"].tolist() == ["101", "102"]

    def test_missing_column(self):
        with pytest.raises(SchemaError):
            normalize_id_column(pd.DataFrame({"a": [1]}), "mukim")


class TestValidateMerge:

    def test_one_to_one(self):
        left = pd.DataFrame({"region_id": ["a", "b"], "school_count": [1, 2]})
        right = pd.DataFrame({"region_id": ["a", "b"], "population": [100, 200]})
        merged = validate_merge(left, right, on="region_id")
        assert merged["population"].tolist() == [100, 200]

    def test_duplicate_right_key(self):
        left = pd.DataFrame({"region_id": ["a"], "school_count": [1]})
        right = pd.DataFrame({"region_id": ["a", "a"], "population": [100, 200]})
        with pytest.raises(SchemaError, match="Merge validation failed"):
            validate_merge(left, right, on="region_id", context="test")


class TestRegistry:

    def test_get_schema(self):
        assert get_schema("schools") is SCHOOLS_SCHEMA

    def test_unknown_schema(self):
        with pytest.raises(KeyError):
            get_schema("nta")
