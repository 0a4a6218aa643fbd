#!/usr/bin/env python3
"""
01_join_schools.py

Join school locations to mukims and kampongs and count schools per region.

- Load the school register (CSV with latitude/longitude)
- Validate the table schema and build School records
- Point-in-polygon join (within, then nearest within max distance)
- Count schools per region, overall and by sector

Outputs:
- data/processed/joins/schools.parquet (GeoParquet, EPSG:32650) - schools with mukim/kampong
- data/processed/joins/mukim_school_counts.parquet (GeoParquet, EPSG:32650)
- data/processed/joins/kampong_school_counts.parquet (GeoParquet, EPSG:32650)
- data/processed/joins/join_stats.json - per level: join stats, or the reason the
  level could not be counted (too many unmatched schools)
"""

import geopandas as gpd
import pandas as pd

from school_atlas.hashing import write_metadata_sidecar
from school_atlas.io_utils import (
    atomic_write_gdf,
    atomic_write_json,
    read_df,
    read_gdf,
    read_yaml,
)
from school_atlas.joins import (
    aggregate_points_to_polygons,
    log_join_stats,
    spatial_join_points_to_polygons,
)
from school_atlas.logging_utils import get_logger
from school_atlas.paths import GEO_DIR, JOINS_DIR, PARAMS_FILE, RAW_SCHOOLS_CSV
from school_atlas.pipeline import run_stage
from school_atlas.qa import (
    compute_coverage_stats,
    compute_na_rates,
    safe_reproject,
    validate_bounds,
)
from school_atlas.records import schools_from_frame, schools_to_gdf
from school_atlas.schemas import REGION_COUNTS_SCHEMA, SCHOOLS_SCHEMA, validate_schema

# =============================================================================
# Constants
# =============================================================================

INPUT_MUKIMS = GEO_DIR / "mukims.parquet"
INPUT_KAMPONGS = GEO_DIR / "kampongs.parquet"

OUTPUT_SCHOOLS = JOINS_DIR / "schools.parquet"
OUTPUT_MUKIM_COUNTS = JOINS_DIR / "mukim_school_counts.parquet"
OUTPUT_KAMPONG_COUNTS = JOINS_DIR / "kampong_school_counts.parquet"
OUTPUT_JOIN_STATS = JOINS_DIR / "join_stats.json"

LEVEL_OUTPUTS = {
    "mukim": OUTPUT_MUKIM_COUNTS,
    "kampong": OUTPUT_KAMPONG_COUNTS,
}


# =============================================================================
# Processing
# =============================================================================

def load_schools(config: dict, logger) -> gpd.GeoDataFrame:
    """Read the school register and return validated school points (EPSG:4326)."""
    if not RAW_SCHOOLS_CSV.exists():
        raise FileNotFoundError(
            f"School register not found: {RAW_SCHOOLS_CSV}. "
            "Place schools.csv under data/raw/ first."
        )

    school_config = config["inputs"]["schools"]
    id_col = school_config["id_col"]
    lat_col = school_config["lat_col"]
    lon_col = school_config["lon_col"]

    # Ids such as "0012" must keep their leading zeros
    df = read_df(RAW_SCHOOLS_CSV, dtype={id_col: str})
    logger.info(f"Loaded {len(df)} school rows from {RAW_SCHOOLS_CSV.name}")

    df = df.rename(columns={id_col: "school_id", lat_col: "latitude", lon_col: "longitude"})
    validate_schema(df, SCHOOLS_SCHEMA, context="schools")

    na_rates = compute_na_rates(df)
    for col, rate in na_rates.items():
        if rate > 0:
            logger.info(f"  {col}: {rate:.1%} missing")

    schools = schools_from_frame(df)
    points = schools_to_gdf(schools, crs=config["crs"]["geographic_epsg"])
    validate_bounds(points, "schools")

    logger.info(f"Built {len(points)} school records")
    return points


def count_by_level(
    points: gpd.GeoDataFrame,
    regions: gpd.GeoDataFrame,
    level: str,
    config: dict,
    logger,
) -> tuple:
    """Count schools (total and by sector) per region of one level."""
    join_config = config["spatial_join"]

    counts, stats = aggregate_points_to_polygons(
        points,
        regions,
        polygon_id_col="region_id",
        count_col="school_count",
        category_col="sector",
        max_distance=join_config["max_distance_m"],
        max_unmatched_rate=join_config["max_unmatched_rate"],
        projected_crs=config["crs"]["projected_epsg"],
    )
    validate_schema(counts, REGION_COUNTS_SCHEMA, context=f"{level} counts")

    log_join_stats(stats, logger)
    logger.log_join_stats({f"{level}_{k}": v for k, v in stats.items()})
    logger.info(
        f"{level}: school_count coverage",
        extra=compute_coverage_stats(counts, "school_count"),
    )

    logger.info(
        f"{level}: {stats['polygons_with_points']} regions with schools, "
        f"{stats['polygons_without_points']} without"
    )
    return counts, stats


def label_schools(
    points: gpd.GeoDataFrame,
    mukims: gpd.GeoDataFrame,
    kampongs: gpd.GeoDataFrame,
    config: dict,
) -> gpd.GeoDataFrame:
    """
    Attach mukim and kampong ids to each school (unmatched schools keep NaN).

    The unmatched-rate limit applies to the counts, not to the labels.
    """
    join_config = config["spatial_join"]
    kwargs = dict(
        max_distance=join_config["max_distance_m"],
        max_unmatched_rate=1.0,
        projected_crs=config["crs"]["projected_epsg"],
    )

    labelled = safe_reproject(points, config["crs"]["projected_epsg"], "schools")
    for level, regions in (("mukim", mukims), ("kampong", kampongs)):
        joined, _ = spatial_join_points_to_polygons(
            points, regions, polygon_id_col="region_id", **kwargs
        )
        lookup = pd.Series(joined["region_id"].values, index=joined["school_id"].values)
        labelled[level] = labelled["school_id"].map(lookup)

    return labelled


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("01_join_schools") as logger:
        logger.info("Starting 01_join_schools.py")

        config = read_yaml(PARAMS_FILE)
        logger.log_config(config)

        try:
            for path in (INPUT_MUKIMS, INPUT_KAMPONGS):
                if not path.exists():
                    raise FileNotFoundError(
                        f"{path} not found. Run 00_build_geographies.py first."
                    )

            inputs = {
                "schools": str(RAW_SCHOOLS_CSV),
                "mukims": str(INPUT_MUKIMS),
                "kampongs": str(INPUT_KAMPONGS),
            }
            logger.log_inputs(inputs)

            points = load_schools(config, logger)
            regions = {"mukim": read_gdf(INPUT_MUKIMS), "kampong": read_gdf(INPUT_KAMPONGS)}

            JOINS_DIR.mkdir(parents=True, exist_ok=True)

            join_stats = {}
            written = {}
            for level, polygons in regions.items():
                outcome = run_stage(
                    f"join_{level}", count_by_level, points, polygons, level, config, logger
                )
                logger.log_outcome(f"join_{level}", outcome)

                if not outcome.ok:
                    # No counts for this level; record why
                    join_stats[level] = outcome.to_dict()
                    # Drop counts left by an earlier run
                    LEVEL_OUTPUTS[level].unlink(missing_ok=True)
                    logger.warning(f"{level}: no school counts written: {outcome.reason}")
                    continue

                counts, stats = outcome.value
                join_stats[level] = {"ok": True, **stats}
                atomic_write_gdf(counts, LEVEL_OUTPUTS[level])
                written[f"{level}_counts"] = LEVEL_OUTPUTS[level]

            schools = label_schools(points, regions["mukim"], regions["kampong"], config)
            atomic_write_gdf(schools, OUTPUT_SCHOOLS)
            atomic_write_json(join_stats, OUTPUT_JOIN_STATS)
            logger.info(f"Wrote join outputs to {JOINS_DIR}")

            logger.log_outputs({
                "schools": str(OUTPUT_SCHOOLS),
                "join_stats": str(OUTPUT_JOIN_STATS),
                **{name: str(path) for name, path in written.items()},
            })

            metrics = {"n_schools": len(points)}
            for level, stats in join_stats.items():
                if stats["ok"]:
                    metrics[f"{level}_unmatched"] = stats["unmatched"]
                    metrics[f"{level}_with_schools"] = stats["polygons_with_points"]
                else:
                    metrics[f"{level}_reason"] = stats["reason"]
            logger.log_metrics(metrics)

            for output in written.values():
                write_metadata_sidecar(
                    output_path=output,
                    inputs=inputs,
                    config=config,
                    run_id=logger.run_id,
                    extra=metrics,
                )

            n_failed = sum(1 for stats in join_stats.values() if not stats["ok"])
            if n_failed:
                logger.warning(
                    f"{n_failed} level(s) could not be counted; see {OUTPUT_JOIN_STATS.name}"
                )
            logger.info("SUCCESS: Joined schools to regions")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
