#!/usr/bin/env python3
"""
02_global_morans_i.py

Global spatial autocorrelation of school counts (Moran's I).

- Rook contiguity between regions (shared boundary of positive length)
- Row-standardized binary weights; islands follow weights.island_policy
- Moran's I with analytical inference (normality or randomization)
- Run once per level (mukim, kampong); a level whose statistic cannot be
  reported is recorded with its reason instead of aborting the run

Outputs:
- data/processed/autocorrelation/morans_i.csv - one row per level
- data/processed/autocorrelation/morans_i.json - results + failure reasons
- data/processed/autocorrelation/<level>_neighbors.csv - contiguity edge list
"""

import pandas as pd

from school_atlas.autocorrelation import moran_summary
from school_atlas.hashing import write_metadata_sidecar
from school_atlas.io_utils import atomic_write_df, atomic_write_json, read_gdf, read_yaml
from school_atlas.logging_utils import get_logger
from school_atlas.paths import AUTOCORR_DIR, JOINS_DIR, PARAMS_FILE
from school_atlas.pipeline import run_global_analysis
from school_atlas.qa import assert_expected_crs

# =============================================================================
# Constants
# =============================================================================

LEVELS = {
    "mukim": JOINS_DIR / "mukim_school_counts.parquet",
    "kampong": JOINS_DIR / "kampong_school_counts.parquet",
}

OUTPUT_TABLE = AUTOCORR_DIR / "morans_i.csv"
OUTPUT_JSON = AUTOCORR_DIR / "morans_i.json"


# =============================================================================
# Processing
# =============================================================================

def analyze_level(level: str, config: dict, logger) -> dict:
    """Run the Moran's I chain for one level and return a result row."""
    if not LEVELS[level].exists():
        # 01 writes no counts for a level whose join failed
        reason = f"{LEVELS[level].name} not found; see join_stats.json"
        logger.warning(f"{level}: {reason}")
        return {"level": level, "ok": False, "reason": reason, "error_type": "MissingCounts"}

    regions = read_gdf(LEVELS[level])
    # Rook tolerance is in metres
    assert_expected_crs(regions, config["crs"]["projected_epsg"], level)
    logger.info(f"{level}: {len(regions)} regions, {int(regions['school_count'].sum())} schools")

    weights_config = config["weights"]
    moran_config = config["moran"]
    alpha = config["hotspots"]["alpha"]

    outcome = run_global_analysis(
        regions,
        value_col="school_count",
        id_col="region_id",
        tolerance=weights_config["rook_tolerance"],
        island_policy=weights_config["island_policy"],
        assumption=moran_config["assumption"],
    )
    logger.log_outcome(f"global_moran_{level}", outcome)

    row = {"level": level, "n_regions": len(regions), "ok": outcome.ok}
    if not outcome.ok:
        row["reason"] = outcome.reason
        row["error_type"] = outcome.error_type
        return row

    analysis = outcome.value
    graph_summary = analysis.graph.summary()
    logger.log_graph(level, graph_summary)
    islands = graph_summary.pop("islands")
    row.update(graph_summary)
    row["islands"] = ";".join(islands)
    row.update(moran_summary(analysis.result, alpha))

    logger.info(
        f"{level}: I={analysis.result.moran_i:.4f} "
        f"(E[I]={analysis.result.expected:.4f}, z={analysis.result.z_score:.3f}, "
        f"p={analysis.result.p_value:.4f}) -> {row['interpretation']}"
    )

    edges = pd.DataFrame(analysis.graph.edges(), columns=["region_id", "neighbor_id"])
    edges_path = AUTOCORR_DIR / f"{level}_neighbors.csv"
    atomic_write_df(edges, edges_path)
    row["edges_file"] = str(edges_path)

    return row


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("02_global_morans_i") as logger:
        logger.info("Starting 02_global_morans_i.py")

        config = read_yaml(PARAMS_FILE)
        logger.log_config(config)

        try:
            if not any(path.exists() for path in LEVELS.values()):
                raise FileNotFoundError(
                    f"No school counts in {JOINS_DIR}. Run 01_join_schools.py first."
                )

            logger.log_inputs({level: str(path) for level, path in LEVELS.items()})

            AUTOCORR_DIR.mkdir(parents=True, exist_ok=True)

            rows = [analyze_level(level, config, logger) for level in LEVELS]
            results = pd.DataFrame(rows)

            atomic_write_df(results, OUTPUT_TABLE)
            atomic_write_json({"levels": rows}, OUTPUT_JSON)
            logger.info(f"Wrote Moran's I results to {AUTOCORR_DIR}")

            logger.log_outputs({
                "morans_i_csv": str(OUTPUT_TABLE),
                "morans_i_json": str(OUTPUT_JSON),
            })

            metrics = {}
            for row in rows:
                if row["ok"]:
                    metrics[f"{row['level']}_moran_i"] = row["moran_i"]
                    metrics[f"{row['level']}_p_value"] = row["p_value"]
                else:
                    metrics[f"{row['level']}_reason"] = row["reason"]
            logger.log_metrics(metrics)

            write_metadata_sidecar(
                output_path=OUTPUT_TABLE,
                inputs={level: str(path) for level, path in LEVELS.items()},
                config=config,
                run_id=logger.run_id,
                extra=metrics,
            )

            n_failed = sum(1 for row in rows if not row["ok"])
            if n_failed:
                logger.warning(f"{n_failed} level(s) could not be reported")
            logger.info("SUCCESS: Computed global Moran's I")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
