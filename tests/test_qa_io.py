"""
Tests for QA checks, atomic I/O, provenance sidecars and JSONL logging.
"""

import json

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point, Polygon, box

from school_atlas.hashing import (
    hash_dict,
    hash_file,
    read_metadata_sidecar,
    write_metadata_sidecar,
)
from school_atlas.io_utils import (
    atomic_write,
    atomic_write_df,
    atomic_write_gdf,
    atomic_write_json,
    read_df,
    read_gdf,
    read_json,
    read_yaml,
)
from school_atlas.logging_utils import JSONLLogger
from school_atlas.outcomes import Outcome, StatisticUndefinedError
from school_atlas.qa import (
    BoundsError,
    CRSError,
    assert_all_valid,
    assert_expected_crs,
    assert_polygonal,
    assert_same_crs,
    compute_coverage_stats,
    compute_na_rates,
    safe_reproject,
    validate_bounds,
)


class TestCRS:
    """CRS checks are hard errors."""

    def test_missing_crs(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(114.9, 4.9)])
        with pytest.raises(CRSError):
            safe_reproject(gdf, 32650)

    def test_reproject_noop_when_same(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(240000, 500000)], crs=32650)
        assert safe_reproject(gdf, 32650) is gdf

    def test_expected_crs(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(114.9, 4.9)], crs=4326)
        assert_expected_crs(gdf, 4326)
        with pytest.raises(CRSError, match="EPSG:32650"):
            assert_expected_crs(gdf, 32650, "mukim")

    def test_same_crs_mismatch(self):
        a = gpd.GeoDataFrame(geometry=[Point(114.9, 4.9)], crs=4326)
        b = a.to_crs(32650)
        with pytest.raises(CRSError, match="mismatch"):
            assert_same_crs(a, b, "test")


class TestBounds:
    """Brunei extent checks."""

    def test_bandar_seri_begawan_in_bounds(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(114.94, 4.89)], crs=4326)
        assert validate_bounds(gdf)
        assert validate_bounds(gdf.to_crs(32650))

    def test_swapped_lat_lon_rejected(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(4.89, 114.94)], crs=4326)
        with pytest.raises(BoundsError):
            validate_bounds(gdf, "schools")

    def test_other_crs_only_needs_finite_bounds(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(0, 0)], crs=3857)
        assert validate_bounds(gdf)


class TestGeometry:

    def test_invalid_polygon(self):
        bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
        gdf = gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1), bowtie])
        with pytest.raises(ValueError, match="invalid"):
            assert_all_valid(gdf)

    def test_points_not_polygonal(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(0, 0)])
        with pytest.raises(ValueError, match="Non-polygon"):
            assert_polygonal(gdf)


class TestQualitySummaries:

    def test_na_rates(self):
        df = pd.DataFrame({"a": [1, None, 3, None], "b": [1, 2, 3, 4]})
        assert compute_na_rates(df) == {"a": 0.5, "b": 0.0}

    def test_coverage(self):
        gdf = gpd.GeoDataFrame({"school_count": [0, 2, 4]}, geometry=[Point(0, 0)] * 3)
        stats = compute_coverage_stats(gdf, "school_count")
        assert stats["n_zero"] == 1
        assert stats["max"] == 4.0


class TestAtomicIO:
    """Writes land whole or not at all."""

    def test_csv_round_trip_without_index(self, tmp_path):
        path = tmp_path / "counts.csv"
        atomic_write_df(pd.DataFrame({"region_id": ["a"], "school_count": [3]}), path)
        df = read_df(path)
        assert list(df.columns) == ["region_id", "school_count"]

    def test_geoparquet_round_trip(self, tmp_path):
        path = tmp_path / "regions.parquet"
        gdf = gpd.GeoDataFrame({"region_id": ["a"]}, geometry=[box(0, 0, 1, 1)], crs=32650)
        atomic_write_gdf(gdf, path)
        back = read_gdf(path)
        assert back.crs.to_epsg() == 32650
        assert back["region_id"].tolist() == ["a"]

    def test_failed_write_leaves_target(self, tmp_path):
        path = tmp_path / "summary.json"
        path.write_text("{}")
        with pytest.raises(RuntimeError):
            with atomic_write(path) as f:
                f.write('{"partial": ')
                raise RuntimeError("boom")
        assert path.read_text() == "{}"
        assert list(tmp_path.iterdir()) == [path]

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(ValueError):
            atomic_write_df(pd.DataFrame(), tmp_path / "table.xlsx")

    def test_json(self, tmp_path):
        path = tmp_path / "out.json"
        atomic_write_json({"p": 0.01, "path": tmp_path}, path)
        assert read_json(path)["p"] == 0.01

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert read_yaml(path) == {}


class TestProvenance:
    """Hashes and metadata sidecars."""

    def test_hash_file_stable(self, tmp_path):
        path = tmp_path / "schools.csv"
        path.write_text("school_id\n0012\n")
        assert hash_file(path) == hash_file(path)
        assert len(hash_file(path)) == 64

    def test_hash_dict_order_independent(self):
        assert hash_dict({"a": 1, "b": 2}) == hash_dict({"b": 2, "a": 1})

    def test_sidecar(self, tmp_path):
        source = tmp_path / "schools.csv"
        source.write_text("school_id\n0012\n")
        output = tmp_path / "mukim_school_counts.parquet"

        sidecar = write_metadata_sidecar(
            output_path=output,
            inputs={"schools": str(source), "absent": str(tmp_path / "nope.csv")},
            config={"grid": {"cell_size_m": 2000}},
            run_id="test_run",
            extra={"n_schools": 1},
            metadata_dir=tmp_path / "metadata",
        )
        assert sidecar.name == "mukim_school_counts_metadata.json"

        metadata = read_metadata_sidecar(output, metadata_dir=tmp_path / "metadata")
        assert metadata["run_id"] == "test_run"
        assert metadata["inputs"]["schools"]["hash"] == hash_file(source)
        assert metadata["inputs"]["absent"]["missing"] is True
        assert metadata["extra"] == {"n_schools": 1}
        assert "numpy" in metadata["versions"]

    def test_missing_sidecar(self, tmp_path):
        assert read_metadata_sidecar(tmp_path / "x.parquet", metadata_dir=tmp_path) is None


class TestJSONLLogger:
    """Structured run logs."""

    def test_records(self, tmp_path):
        with JSONLLogger("99_test", run_id="r1", log_dir=tmp_path) as logger:
            logger.info("hello", extra={"n": 3})
            logger.log_metrics({"moran_i": 0.4})
            logger.log_outcome(
                "global_moran",
                Outcome.failure("global_moran", StatisticUndefinedError("zero variance")),
            )
            log_file = logger.log_file

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert all(r["run_id"] == "r1" for r in records)
        assert records[0]["message"] == "Logger initialized"
        assert any(r.get("extra", {}).get("metrics") == {"moran_i": 0.4} for r in records)
        failed = [r for r in records if r["message"] == "Stage global_moran: failed"]
        assert failed[0]["level"] == "WARNING"
        assert failed[0]["extra"]["reason"] == "zero variance"
        assert records[-1]["message"] == "Logger closing"

    def test_graph_islands_warned(self, tmp_path):
        with JSONLLogger("99_test", run_id="r3", log_dir=tmp_path) as logger:
            logger.log_graph("mukim", {"n_regions": 3, "n_islands": 1, "islands": ["island"]})
            log_file = logger.log_file

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        graph = [r for r in records if r["message"] == "mukim: neighbour graph"]
        assert graph[0]["extra"]["graph"]["n_islands"] == 1
        warnings = [r for r in records if r["level"] == "WARNING"]
        assert "island" in warnings[0]["message"]

    def test_exception_logged(self, tmp_path):
        with pytest.raises(ValueError):
            with JSONLLogger("99_test", run_id="r2", log_dir=tmp_path) as logger:
                raise ValueError("bad input")
        text = logger.log_file.read_text()
        assert "ValueError: bad input" in text
