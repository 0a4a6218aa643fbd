#!/usr/bin/env python3
"""
03_hotspot_grid.py

Local hotspots of school density on a regular grid (Getis-Ord Gi*).

- Square grid (grid.cell_size_m) over the study area, clipped to it
- Count schools per cell
- Rook contiguity between cells, star-mode weights (w_ii = 1)
- Gi* z-scores, classification at hotspots.alpha (hot tail by default)
- Significant cells clipped to the study-area outline

Outputs:
- data/processed/hotspots/grid_gi_star.parquet (GeoParquet, EPSG:32650) - all cells
- data/processed/hotspots/grid_gi_star.csv - table without geometry
- data/processed/hotspots/significant_cells.geojson (EPSG:4326) - clipped hotspots
- data/processed/hotspots/hotspot_summary.json
"""

from school_atlas.grid import clip_grid_to_boundary, count_points_per_cell, create_grid
from school_atlas.hashing import write_metadata_sidecar
from school_atlas.hotspots import hotspot_summary
from school_atlas.io_utils import (
    atomic_write_df,
    atomic_write_gdf,
    atomic_write_json,
    read_gdf,
    read_yaml,
)
from school_atlas.logging_utils import get_logger
from school_atlas.paths import GEO_DIR, HOTSPOTS_DIR, JOINS_DIR, PARAMS_FILE
from school_atlas.pipeline import run_hotspot_analysis
from school_atlas.qa import get_bounds, safe_reproject
from school_atlas.schemas import HOTSPOT_SCHEMA, validate_schema

# =============================================================================
# Constants
# =============================================================================

INPUT_SCHOOLS = JOINS_DIR / "schools.parquet"
INPUT_STUDY_AREA = GEO_DIR / "study_area.parquet"

OUTPUT_GRID = HOTSPOTS_DIR / "grid_gi_star.parquet"
OUTPUT_GRID_CSV = HOTSPOTS_DIR / "grid_gi_star.csv"
OUTPUT_SIGNIFICANT = HOTSPOTS_DIR / "significant_cells.geojson"
OUTPUT_SUMMARY = HOTSPOTS_DIR / "hotspot_summary.json"


# =============================================================================
# Processing
# =============================================================================

def build_count_grid(schools, study_area, cell_size: float, logger):
    """Grid over the study area with a school count per cell and the grid join stats."""
    grid = create_grid(get_bounds(study_area), cell_size, study_area.crs)
    grid = clip_grid_to_boundary(grid, study_area)
    logger.info(f"Grid: {len(grid)} cells of {cell_size:.0f} m inside the study area")

    grid, grid_stats = count_points_per_cell(schools, grid, count_col="school_count")
    logger.log_join_stats({f"grid_{k}": v for k, v in grid_stats.items()})
    occupied = int((grid["school_count"] > 0).sum())
    logger.info(
        f"Schools per cell: {occupied} occupied cells, "
        f"max {int(grid['school_count'].max())}, total {int(grid['school_count'].sum())}"
    )
    if grid_stats["unmatched"]:
        logger.warning(
            f"{grid_stats['unmatched']} school(s) outside every grid cell: "
            f"{grid_stats['unmatched_ids'][:10]}"
        )
    return grid, grid_stats


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("03_hotspot_grid") as logger:
        logger.info("Starting 03_hotspot_grid.py")

        config = read_yaml(PARAMS_FILE)
        logger.log_config(config)

        projected_epsg = config["crs"]["projected_epsg"]
        hotspot_config = config["hotspots"]

        try:
            if not INPUT_SCHOOLS.exists():
                raise FileNotFoundError(f"{INPUT_SCHOOLS} not found. Run 01_join_schools.py first.")
            if not INPUT_STUDY_AREA.exists():
                raise FileNotFoundError(
                    f"{INPUT_STUDY_AREA} not found. Run 00_build_geographies.py first."
                )

            logger.log_inputs({
                "schools": str(INPUT_SCHOOLS),
                "study_area": str(INPUT_STUDY_AREA),
            })

            schools = safe_reproject(read_gdf(INPUT_SCHOOLS), projected_epsg, "schools")
            study_area = safe_reproject(read_gdf(INPUT_STUDY_AREA), projected_epsg, "study area")

            grid, grid_stats = build_count_grid(
                schools, study_area, float(config["grid"]["cell_size_m"]), logger
            )

            outcome = run_hotspot_analysis(
                grid,
                value_col="school_count",
                id_col="cell_id",
                boundary=study_area,
                alpha=hotspot_config["alpha"],
                tails=hotspot_config["tails"],
                star_normalize=config["weights"]["star_normalize"],
            )
            logger.log_outcome("local_gi_star", outcome)

            HOTSPOTS_DIR.mkdir(parents=True, exist_ok=True)

            if not outcome.ok:
                # Nothing to map; record why
                summary = {
                    "ok": False,
                    **outcome.to_dict(),
                    "n_cells": len(grid),
                    "grid_join": grid_stats,
                }
                atomic_write_json(summary, OUTPUT_SUMMARY)
                logger.log_outputs({"hotspot_summary": str(OUTPUT_SUMMARY)})
                logger.warning(f"No hotspot map produced: {outcome.reason}")
                return

            analysis = outcome.value
            cells = analysis.cells
            validate_schema(
                cells.rename(columns={"cell_id": "region_id"}), HOTSPOT_SCHEMA, context="grid Gi*"
            )

            summary = {
                "ok": True,
                "n_cells": len(cells),
                "cell_size_m": config["grid"]["cell_size_m"],
                "alpha": hotspot_config["alpha"],
                "tails": hotspot_config["tails"],
                "n_significant_clipped": len(analysis.significant),
                "schools_counted": grid_stats["matched"],
                "schools_outside_grid": grid_stats["unmatched"],
                **hotspot_summary(cells),
                "graph": analysis.graph.summary(),
                "grid_join": grid_stats,
            }
            logger.log_graph("grid", summary["graph"])
            summary["graph"].pop("islands")
            logger.info(
                f"Hotspots: {summary['n_hotspots']} cells, "
                f"coldspots: {summary['n_coldspots']} cells"
            )

            atomic_write_gdf(cells, OUTPUT_GRID)
            atomic_write_df(cells.drop(columns=cells.geometry.name), OUTPUT_GRID_CSV)
            atomic_write_gdf(safe_reproject(analysis.significant, 4326), OUTPUT_SIGNIFICANT)
            atomic_write_json(summary, OUTPUT_SUMMARY)
            logger.info(f"Wrote hotspot outputs to {HOTSPOTS_DIR}")

            logger.log_outputs({
                "grid_gi_star": str(OUTPUT_GRID),
                "grid_gi_star_csv": str(OUTPUT_GRID_CSV),
                "significant_cells": str(OUTPUT_SIGNIFICANT),
                "hotspot_summary": str(OUTPUT_SUMMARY),
            })

            metrics = {k: v for k, v in summary.items() if k not in ("graph", "grid_join")}
            logger.log_metrics(metrics)

            write_metadata_sidecar(
                output_path=OUTPUT_GRID,
                inputs={
                    "schools": str(INPUT_SCHOOLS),
                    "study_area": str(INPUT_STUDY_AREA),
                },
                config=config,
                run_id=logger.run_id,
                extra=metrics,
            )

            logger.info("SUCCESS: Built Gi* hotspot grid")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
