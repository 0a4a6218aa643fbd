#!/usr/bin/env python3
"""
04_population_regression.py

Do mukims with more people have more schools?

- Merge mukim school counts with mukim population (one-to-one on region_id)
- OLS: school_count ~ population (statsmodels)
- Residuals flag mukims with more/fewer schools than population predicts

Outputs:
- data/processed/regression/population_regression.csv - coefficients, fit
- data/processed/regression/mukim_residuals.csv - per-mukim counts, fitted, residual
"""

import pandas as pd

from school_atlas.hashing import write_metadata_sidecar
from school_atlas.io_utils import atomic_write_df, read_df, read_gdf, read_yaml
from school_atlas.logging_utils import get_logger
from school_atlas.paths import JOINS_DIR, PARAMS_FILE, RAW_POPULATION_CSV, REGRESSION_DIR
from school_atlas.regression import fit_population_regression, regression_residuals
from school_atlas.schemas import (
    POPULATION_SCHEMA,
    normalize_id_column,
    validate_merge,
    validate_schema,
)

# =============================================================================
# Constants
# =============================================================================

INPUT_MUKIM_COUNTS = JOINS_DIR / "mukim_school_counts.parquet"

OUTPUT_RESULTS = REGRESSION_DIR / "population_regression.csv"
OUTPUT_RESIDUALS = REGRESSION_DIR / "mukim_residuals.csv"


# =============================================================================
# Processing
# =============================================================================

def load_population(config: dict, logger) -> pd.DataFrame:
    """Population per mukim keyed by region_id."""
    if not RAW_POPULATION_CSV.exists():
        raise FileNotFoundError(
            f"Population table not found: {RAW_POPULATION_CSV}. "
            "Place population_by_mukim.csv under data/raw/ first."
        )

    input_config = config["inputs"]
    id_col = input_config["population_id_col"]
    pop_col = input_config["population_col"]

    df = read_df(RAW_POPULATION_CSV, dtype={id_col: str})
    df = normalize_id_column(df, id_col).rename(columns={pop_col: "population"})
    df = df[["region_id", "population"]]
    validate_schema(df, POPULATION_SCHEMA, context="population")

    logger.info(f"Loaded population for {len(df)} mukims ({int(df['population'].sum())} people)")
    return df


def merge_counts_population(counts: pd.DataFrame, population: pd.DataFrame, logger) -> pd.DataFrame:
    """One row per mukim with school_count and population."""
    merged = validate_merge(
        counts[["region_id", "school_count"]],
        population,
        on="region_id",
        how="left",
        validate="one_to_one",
        context="mukim counts x population",
    )

    missing = merged["population"].isna()
    if missing.any():
        logger.warning(
            f"{int(missing.sum())} mukim(s) without population: "
            f"{merged.loc[missing, 'region_id'].tolist()[:10]}"
        )
    unused = set(population["region_id"]) - set(counts["region_id"])
    if unused:
        logger.warning(f"{len(unused)} population row(s) match no mukim: {sorted(unused)[:10]}")

    return merged


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    with get_logger("04_population_regression") as logger:
        logger.info("Starting 04_population_regression.py")

        config = read_yaml(PARAMS_FILE)
        logger.log_config(config)

        reg_config = config["regression"]

        try:
            if not INPUT_MUKIM_COUNTS.exists():
                raise FileNotFoundError(
                    f"{INPUT_MUKIM_COUNTS} not found. Run 01_join_schools.py first."
                )

            logger.log_inputs({
                "mukim_counts": str(INPUT_MUKIM_COUNTS),
                "population": str(RAW_POPULATION_CSV),
            })

            counts = read_gdf(INPUT_MUKIM_COUNTS)
            population = load_population(config, logger)
            merged = merge_counts_population(counts, population, logger)

            results = fit_population_regression(
                merged,
                count_col=reg_config["count_col"],
                population_col=reg_config["population_col"],
            )
            logger.info(
                f"school_count ~ population: slope={results['coef_population']:.3g} "
                f"(p={results['pval_population']:.3g}), R2={results['r_squared']:.3f}, "
                f"n={results['n']}"
            )

            complete = merged.dropna(subset=["school_count", "population"]).copy()
            complete["fitted"] = (
                results["coef_intercept"] + results["coef_population"] * complete["population"]
            )
            complete["residual"] = regression_residuals(
                complete, results, reg_config["count_col"], reg_config["population_col"]
            )
            complete = complete.sort_values("residual")

            REGRESSION_DIR.mkdir(parents=True, exist_ok=True)

            atomic_write_df(pd.DataFrame([results]), OUTPUT_RESULTS)
            atomic_write_df(complete, OUTPUT_RESIDUALS)
            logger.info(f"Wrote regression outputs to {REGRESSION_DIR}")

            logger.log_outputs({
                "population_regression": str(OUTPUT_RESULTS),
                "mukim_residuals": str(OUTPUT_RESIDUALS),
            })
            logger.log_metrics(results)

            write_metadata_sidecar(
                output_path=OUTPUT_RESULTS,
                inputs={
                    "mukim_counts": str(INPUT_MUKIM_COUNTS),
                    "population": str(RAW_POPULATION_CSV),
                },
                config=config,
                run_id=logger.run_id,
                extra=results,
            )

            logger.info("SUCCESS: Fitted population regression")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
