"""
School provision vs population: simple OLS per mukim.

    school_count ~ population
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from school_atlas.io_utils import read_yaml
from school_atlas.paths import PARAMS_FILE

logger = logging.getLogger(__name__)


def _load_regression_config() -> dict:
    """Load regression configuration from params.yml."""
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE).get("regression", {})


def fit_population_regression(
    df: pd.DataFrame,
    count_col: Optional[str] = None,
    population_col: Optional[str] = None,
    alpha: float = 0.05,
) -> Dict:
    """
    Fit school_count ~ population by ordinary least squares.

    Args:
        df: One row per region with count and population columns.
        count_col: Response column (default: params.yml, else "school_count").
        population_col: Predictor column (default: params.yml, else "population").
        alpha: Level for the confidence intervals.

    Returns:
        Dict with n, r_squared, r_squared_adj, f_pvalue and per-term
        coef_/se_/pval_/ci_low_/ci_high_ entries ("intercept", "population").

    Raises:
        ValueError: Missing columns, fewer than 3 complete rows, or a
            constant predictor.
    """
    config = _load_regression_config()
    count_col = count_col or config.get("count_col", "school_count")
    population_col = population_col or config.get("population_col", "population")

    missing = [c for c in (count_col, population_col) if c not in df.columns]
    if missing:
        raise ValueError(f"Regression input missing columns: {missing}")

    data = pd.DataFrame({
        "y": pd.to_numeric(df[count_col], errors="coerce"),
        "x": pd.to_numeric(df[population_col], errors="coerce"),
    }).replace([np.inf, -np.inf], np.nan).dropna()

    dropped = len(df) - len(data)
    if dropped:
        logger.warning("Dropped %d row(s) with missing count or population", dropped)
    if len(data) < 3:
        raise ValueError(f"Regression needs at least 3 complete rows, got {len(data)}")
    if data["x"].nunique() < 2:
        raise ValueError("Population is constant; slope is not identifiable")

    model = smf.ols("y ~ x", data=data).fit()
    ci = model.conf_int(alpha=alpha)

    results = {
        "n": int(model.nobs),
        "n_dropped": int(dropped),
        "r_squared": float(model.rsquared),
        "r_squared_adj": float(model.rsquared_adj),
        "f_pvalue": float(model.f_pvalue),
    }
    for term, name in (("Intercept", "intercept"), ("x", "population")):
        results[f"coef_{name}"] = float(model.params[term])
        results[f"se_{name}"] = float(model.bse[term])
        results[f"pval_{name}"] = float(model.pvalues[term])
        results[f"ci_low_{name}"] = float(ci.loc[term, 0])
        results[f"ci_high_{name}"] = float(ci.loc[term, 1])

    return results


def regression_residuals(
    df: pd.DataFrame,
    results: Dict,
    count_col: str = "school_count",
    population_col: str = "population",
) -> pd.Series:
    """Observed minus fitted school count (positive = more schools than population predicts)."""
    fitted = results["coef_intercept"] + results["coef_population"] * df[population_col]
    return (df[count_col] - fitted).rename("residual")
