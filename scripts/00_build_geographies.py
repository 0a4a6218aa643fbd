#!/usr/bin/env python3
"""
00_build_geographies.py

Build canonical region geometries for the Brunei School Atlas.

- Load mukim and kampong boundaries and the study-area outline
- Normalize the region key to `region_id` (stripped string)
- Enforce uniqueness, polygonal + valid geometry, Brunei bounds
- Reproject to the projected CRS (EPSG:32650) used for all analysis

Outputs:
- data/processed/geo/mukims.parquet (GeoParquet, EPSG:32650) - canonical
- data/processed/geo/kampongs.parquet (GeoParquet, EPSG:32650) - canonical
- data/processed/geo/study_area.parquet (GeoParquet, EPSG:32650) - canonical
- data/processed/geo/mukims.geojson, kampongs.geojson (EPSG:4326 exports)
"""

from pathlib import Path

import geopandas as gpd

from school_atlas.hashing import write_metadata_sidecar
from school_atlas.io_utils import atomic_write_gdf, read_gdf, read_yaml
from school_atlas.logging_utils import get_logger
from school_atlas.paths import (
    GEO_DIR,
    PARAMS_FILE,
    RAW_KAMPONG_BOUNDARIES,
    RAW_MUKIM_BOUNDARIES,
    RAW_STUDY_AREA,
)
from school_atlas.qa import (
    assert_all_valid,
    assert_polygonal,
    safe_reproject,
    validate_bounds,
)
from school_atlas.schemas import REGIONS_SCHEMA, normalize_id_column, validate_schema

# =============================================================================
# Constants
# =============================================================================

OUTPUT_MUKIMS = GEO_DIR / "mukims.parquet"
OUTPUT_KAMPONGS = GEO_DIR / "kampongs.parquet"
OUTPUT_STUDY_AREA = GEO_DIR / "study_area.parquet"
OUTPUT_MUKIMS_GEOJSON = GEO_DIR / "mukims.geojson"
OUTPUT_KAMPONGS_GEOJSON = GEO_DIR / "kampongs.geojson"


# =============================================================================
# Processing
# =============================================================================

def load_boundaries(path: Path, label: str, logger) -> gpd.GeoDataFrame:
    """Load a raw boundary file and check it is polygonal and inside Brunei."""
    if not path.exists():
        raise FileNotFoundError(
            f"{label} boundaries not found: {path}. "
            "Place the boundary file under data/raw/ first."
        )

    gdf = read_gdf(path)
    logger.info(f"Loaded {label}: {len(gdf)} features from {path.name}")

    assert_polygonal(gdf, label)
    # Hand-digitized boundaries often carry self-touching rings
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        logger.warning(f"{label}: repairing {int(invalid.sum())} invalid geometries")
        gdf = gdf.copy()
        gdf.loc[invalid, gdf.geometry.name] = gdf.geometry[invalid].make_valid()
    assert_all_valid(gdf, label)
    validate_bounds(gdf, label)

    return gdf


def build_regions(
    gdf: gpd.GeoDataFrame,
    id_col: str,
    projected_epsg: int,
    label: str,
    logger,
) -> gpd.GeoDataFrame:
    """Normalize the key, dissolve duplicate parts, validate, reproject."""
    regions = normalize_id_column(gdf, id_col)[["region_id", gdf.geometry.name]]

    n_parts = len(regions)
    regions = regions.dissolve(by="region_id", as_index=False)
    if len(regions) < n_parts:
        logger.info(f"{label}: dissolved {n_parts} parts into {len(regions)} regions")

    validate_schema(regions, REGIONS_SCHEMA, context=label)

    regions = safe_reproject(regions, projected_epsg, label)
    validate_bounds(regions, f"{label} projected")

    logger.info(f"{label}: {len(regions)} regions in EPSG:{projected_epsg}")
    return regions


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("00_build_geographies") as logger:
        logger.info("Starting 00_build_geographies.py")

        config = read_yaml(PARAMS_FILE)
        logger.log_config(config)

        projected_epsg = config["crs"]["projected_epsg"]
        input_config = config["inputs"]

        try:
            logger.log_inputs({
                "mukim_boundaries": str(RAW_MUKIM_BOUNDARIES),
                "kampong_boundaries": str(RAW_KAMPONG_BOUNDARIES),
                "study_area": str(RAW_STUDY_AREA),
            })

            mukims = build_regions(
                load_boundaries(RAW_MUKIM_BOUNDARIES, "mukims", logger),
                input_config["mukim_id_col"], projected_epsg, "mukims", logger,
            )
            kampongs = build_regions(
                load_boundaries(RAW_KAMPONG_BOUNDARIES, "kampongs", logger),
                input_config["kampong_id_col"], projected_epsg, "kampongs", logger,
            )

            study_area = load_boundaries(RAW_STUDY_AREA, "study area", logger)
            study_area = gpd.GeoDataFrame(
                geometry=[study_area.geometry.union_all()], crs=study_area.crs
            )
            study_area = safe_reproject(study_area, projected_epsg, "study area")

            GEO_DIR.mkdir(parents=True, exist_ok=True)

            atomic_write_gdf(mukims, OUTPUT_MUKIMS)
            atomic_write_gdf(kampongs, OUTPUT_KAMPONGS)
            atomic_write_gdf(study_area, OUTPUT_STUDY_AREA)
            atomic_write_gdf(safe_reproject(mukims, 4326), OUTPUT_MUKIMS_GEOJSON)
            atomic_write_gdf(safe_reproject(kampongs, 4326), OUTPUT_KAMPONGS_GEOJSON)
            logger.info(f"Wrote geographies to {GEO_DIR}")

            logger.log_outputs({
                "mukims": str(OUTPUT_MUKIMS),
                "kampongs": str(OUTPUT_KAMPONGS),
                "study_area": str(OUTPUT_STUDY_AREA),
                "mukims_geojson": str(OUTPUT_MUKIMS_GEOJSON),
                "kampongs_geojson": str(OUTPUT_KAMPONGS_GEOJSON),
            })

            metrics = {
                "n_mukims": len(mukims),
                "n_kampongs": len(kampongs),
                "study_area_km2": float(study_area.geometry.area.sum() / 1e6),
            }
            logger.log_metrics(metrics)

            write_metadata_sidecar(
                output_path=OUTPUT_MUKIMS,
                inputs={
                    "mukim_boundaries": str(RAW_MUKIM_BOUNDARIES),
                    "kampong_boundaries": str(RAW_KAMPONG_BOUNDARIES),
                    "study_area": str(RAW_STUDY_AREA),
                },
                config=config,
                run_id=logger.run_id,
                extra=metrics,
            )

            logger.info("SUCCESS: Built canonical geographies")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
