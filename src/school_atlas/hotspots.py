"""
Local hotspot detection with the Getis-Ord Gi* statistic.

    Gi*_i = sum_j w_ij x_j / sum_j x_j

computed with star-mode weights (w_ii = 1), so each cell's own count
feeds its own score. Inference uses the Ord & Getis (1995) z-score with
the global mean and standard deviation of x, the row's weight sum W_i and
its sum of squares S1_i:

    z_i = (sum_j w_ij x_j - mean(x) W_i) / (S sqrt((n S1_i - W_i^2) / (n - 1)))
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy import stats

from school_atlas.io_utils import read_yaml
from school_atlas.outcomes import InsufficientStructureError, StatisticUndefinedError
from school_atlas.paths import PARAMS_FILE
from school_atlas.qa import assert_same_crs
from school_atlas.weights import SpatialWeights

logger = logging.getLogger(__name__)

HOTSPOT = "hotspot"
COLDSPOT = "coldspot"
NOT_SIGNIFICANT = "not_significant"
TAILS = ("hot", "both")


def _load_hotspot_config() -> dict:
    """Load hotspot configuration from params.yml."""
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE).get("hotspots", {})


def getis_ord_gi_star(
    values: Sequence[float],
    weights: SpatialWeights,
) -> pd.DataFrame:
    """
    Compute Gi* with analytical z-scores and two-sided p-values.

    Args:
        values: One non-negative value per unit, in `weights.ids` order.
        weights: Star-mode spatial weights.

    Returns:
        DataFrame with one row per unit: region_id, value, gi_star,
        expected, variance, z_score, p_value. Rows whose z-score is not
        finite (degenerate weight rows) carry NaN z_score/p_value.

    Raises:
        InsufficientStructureError: Fewer than 2 units or length mismatch.
        StatisticUndefinedError: Non-finite values, a zero total, or no
            variation in x.
    """
    x = np.asarray(values, dtype=float)
    n = len(x)

    if n < 2:
        raise InsufficientStructureError(f"Gi* needs at least 2 units, got {n}")
    if n != weights.n:
        raise InsufficientStructureError(f"{n} values supplied for {weights.n} weighted units")
    if not np.isfinite(x).all():
        raise StatisticUndefinedError("Input values contain NaN or infinite entries")
    if weights.mode != "star":
        logger.warning("Gi* computed with %s-mode weights; expected star", weights.mode)

    x_sum = float(x.sum())
    if x_sum == 0:
        raise StatisticUndefinedError("Gi* is undefined: the values sum to zero")

    mean = x_sum / n
    std = float(np.sqrt(np.mean(x * x) - mean * mean))
    if not np.isfinite(std) or std <= 0:
        raise StatisticUndefinedError("Gi* is undefined: all values are identical")

    w = weights.matrix
    lag = w @ x
    w_sum = w.sum(axis=1)
    w_sq_sum = (w * w).sum(axis=1)

    spread = (n * w_sq_sum - w_sum ** 2) / (n - 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (lag - mean * w_sum) / (std * np.sqrt(spread))
    z = np.where(spread > 0, z, np.nan)

    p = 2.0 * stats.norm.sf(np.abs(z))

    n_degenerate = int(np.isnan(z).sum())
    if n_degenerate:
        logger.warning("%d unit(s) have an undefined Gi* z-score", n_degenerate)

    return pd.DataFrame({
        "region_id": list(weights.ids),
        "value": x,
        "gi_star": lag / x_sum,
        "expected": w_sum / n,
        "variance": std ** 2 * np.clip(spread, 0.0, None) / x_sum ** 2,
        "z_score": z,
        "p_value": p,
    })


def classify_hotspots(
    table: pd.DataFrame,
    alpha: Optional[float] = None,
    tails: Optional[str] = None,
) -> pd.DataFrame:
    """
    Label each unit hotspot, coldspot or not_significant.

    A hotspot has z > 0 and p < alpha; a coldspot has z < 0 and p < alpha.
    With tails="hot" only hotspots are reported and every other unit is
    not_significant; tails="both" reports coldspots as well. Units with
    an undefined z-score are never significant.

    Args:
        table: Output of getis_ord_gi_star.
        alpha: Significance level (default: params.yml, else 0.05).
        tails: "hot" or "both" (default: params.yml, else "hot").

    Returns:
        Copy of table with a `classification` column.
    """
    config = _load_hotspot_config()
    if alpha is None:
        alpha = float(config.get("alpha", 0.05))
    if tails is None:
        tails = config.get("tails", "hot")
    if tails not in TAILS:
        raise ValueError(f"Unknown tails option {tails!r}; expected one of {TAILS}")
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")

    out = table.copy()
    significant = out["p_value"].notna() & (out["p_value"] < alpha)
    hot = significant & (out["z_score"] > 0)
    cold = significant & (out["z_score"] < 0)

    out["classification"] = NOT_SIGNIFICANT
    out.loc[hot, "classification"] = HOTSPOT
    if tails == "both":
        out.loc[cold, "classification"] = COLDSPOT

    return out


def significant_cells(table: pd.DataFrame) -> pd.DataFrame:
    """Rows classified as hotspot or coldspot."""
    return table[table["classification"] != NOT_SIGNIFICANT].copy()


def hotspot_summary(table: pd.DataFrame) -> dict:
    """Counts per classification plus the range of z-scores."""
    counts = table["classification"].value_counts()
    return {
        "n_units": int(len(table)),
        "n_hotspots": int(counts.get(HOTSPOT, 0)),
        "n_coldspots": int(counts.get(COLDSPOT, 0)),
        "n_not_significant": int(counts.get(NOT_SIGNIFICANT, 0)),
        "n_undefined_z": int(table["z_score"].isna().sum()),
        "max_z": float(table["z_score"].max()) if table["z_score"].notna().any() else None,
        "min_z": float(table["z_score"].min()) if table["z_score"].notna().any() else None,
    }


def clip_to_study_area(
    cells: gpd.GeoDataFrame,
    boundary: gpd.GeoDataFrame,
) -> gpd.GeoDataFrame:
    """
    Discard cells outside the study-area outline and trim the rest to it.

    Raises:
        CRSError: If the layers are not in the same CRS.
    """
    assert_same_crs(cells, boundary, "study area clip")

    outline = boundary.geometry.union_all()
    inside = cells[cells.geometry.intersects(outline)].copy()
    inside[inside.geometry.name] = inside.geometry.intersection(outline)
    inside = inside[inside.geometry.area > 0]

    logger.info(
        "Clipped to study area: kept %d of %d cells", len(inside), len(cells)
    )
    return inside


@dataclass(frozen=True)
class HotspotRecord:
    """Gi* result for a single unit."""
    region_id: str
    gi_star: float
    z_score: float
    p_value: float
    classification: str


def to_records(table: pd.DataFrame) -> List[HotspotRecord]:
    """Immutable per-unit records from a classified Gi* table."""
    return [
        HotspotRecord(
            region_id=str(row.region_id),
            gi_star=float(row.gi_star),
            z_score=float(row.z_score),
            p_value=float(row.p_value),
            classification=row.classification,
        )
        for row in table.itertuples(index=False)
    ]
