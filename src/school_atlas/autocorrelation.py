"""
Global spatial autocorrelation: Moran's I with analytical inference.

    I = (n / S0) * sum_ij w_ij z_i z_j / sum_i z_i^2,    z = x - mean(x)

Under the null of no spatial autocorrelation E[I] = -1 / (n - 1). The
variance follows either the normality or the randomization assumption
(Cliff & Ord), and the p-value comes from the standard normal.
"""

import logging
import math
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

import numpy as np
from scipy import stats

from school_atlas.io_utils import read_yaml
from school_atlas.outcomes import InsufficientStructureError, StatisticUndefinedError
from school_atlas.paths import PARAMS_FILE
from school_atlas.weights import SpatialWeights

logger = logging.getLogger(__name__)

ASSUMPTIONS = ("normality", "randomization")


def _load_moran_config() -> dict:
    """Load Moran's I configuration from params.yml."""
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE).get("moran", {})


@dataclass(frozen=True)
class MoranResult:
    """Moran's I and its inference under the chosen null."""
    moran_i: float
    expected: float
    variance: float
    z_score: float
    p_value: float
    n: int
    s0: float
    assumption: str
    two_tailed: bool = True

    @property
    def std_error(self) -> float:
        return math.sqrt(self.variance)

    def interpretation(self, alpha: float = 0.05) -> str:
        """'clustered', 'dispersed' or 'random' at significance level alpha."""
        if self.p_value >= alpha:
            return "random"
        return "clustered" if self.moran_i > self.expected else "dispersed"


def _variance_normality(n: int, s0: float, s1: float, s2: float) -> float:
    n2 = n * n
    s02 = s0 * s0
    return (n2 * s1 - n * s2 + 3 * s02) / ((n - 1) * (n + 1) * s02) - (1.0 / (n - 1)) ** 2


def _variance_randomization(
    n: int, s0: float, s1: float, s2: float, z: np.ndarray, expected: float,
) -> float:
    n2 = n * n
    s02 = s0 * s0
    kurtosis = (np.sum(z ** 4) / n) / (np.sum(z ** 2) / n) ** 2
    a = n * ((n2 - 3 * n + 3) * s1 - n * s2 + 3 * s02)
    b = kurtosis * ((n2 - n) * s1 - 2 * n * s2 + 6 * s02)
    return (a - b) / ((n - 1) * (n - 2) * (n - 3) * s02) - expected ** 2


def _normal_p_value(z: float, two_tailed: bool) -> float:
    if two_tailed:
        return float(2.0 * stats.norm.sf(abs(z)))
    # One-tailed in the direction of the observed deviation
    return float(stats.norm.sf(z) if z > 0 else stats.norm.cdf(z))


def morans_i(
    values: Sequence[float],
    weights: SpatialWeights,
    assumption: Optional[str] = None,
    two_tailed: Optional[bool] = None,
) -> MoranResult:
    """
    Compute global Moran's I.

    Args:
        values: One value per region, in `weights.ids` order.
        weights: Binary-mode (row-standardised) spatial weights.
        assumption: "normality" or "randomization"
            (default: params.yml `moran.assumption`, else "randomization").
        two_tailed: Two-sided p-value (default: params.yml, else True).

    Returns:
        MoranResult

    Raises:
        InsufficientStructureError: n < 2, values/weights length mismatch,
            or no neighbour pairs (S0 == 0).
        StatisticUndefinedError: All values equal, non-finite input, or a
            non-finite / non-positive variance under the null.
    """
    config = _load_moran_config()
    if assumption is None:
        assumption = config.get("assumption", "randomization")
    if two_tailed is None:
        two_tailed = bool(config.get("two_tailed", True))
    if assumption not in ASSUMPTIONS:
        raise ValueError(f"Unknown assumption {assumption!r}; expected one of {ASSUMPTIONS}")

    x = np.asarray(values, dtype=float)
    n = len(x)

    if n < 2:
        raise InsufficientStructureError(f"Moran's I needs at least 2 regions, got {n}")
    if n != weights.n:
        raise InsufficientStructureError(
            f"{n} values supplied for {weights.n} weighted regions"
        )
    if not np.isfinite(x).all():
        raise StatisticUndefinedError("Input values contain NaN or infinite entries")

    s0 = weights.s0
    if s0 == 0:
        raise InsufficientStructureError(
            "Insufficient spatial structure: weight matrix has no neighbour pairs"
        )

    z = x - x.mean()
    z2ss = float(np.sum(z * z))
    if z2ss == 0:
        raise StatisticUndefinedError(
            "Moran's I is undefined: all values are identical (zero variance)"
        )

    w = weights.matrix
    moran_i = float(n / s0 * (z @ w @ z) / z2ss)
    expected = -1.0 / (n - 1)

    if assumption == "normality":
        variance = _variance_normality(n, s0, weights.s1, weights.s2)
    else:
        if n < 4:
            raise StatisticUndefinedError(
                f"Variance under randomization needs at least 4 regions, got {n}"
            )
        variance = _variance_randomization(n, s0, weights.s1, weights.s2, z, expected)

    if not math.isfinite(variance) or variance <= 0:
        raise StatisticUndefinedError(
            f"Variance of Moran's I under {assumption} is not positive ({variance})"
        )

    z_score = (moran_i - expected) / math.sqrt(variance)
    p_value = _normal_p_value(z_score, two_tailed)

    if weights.islands:
        logger.info(
            "Moran's I computed with %d island(s) contributing zero lag",
            len(weights.islands),
        )

    return MoranResult(
        moran_i=moran_i,
        expected=expected,
        variance=float(variance),
        z_score=float(z_score),
        p_value=p_value,
        n=n,
        s0=s0,
        assumption=assumption,
        two_tailed=two_tailed,
    )


def moran_summary(result: MoranResult, alpha: float = 0.05) -> dict:
    """Flat dict for tables, JSON outputs and log metrics."""
    summary = asdict(result)
    summary["std_error"] = result.std_error
    summary["interpretation"] = result.interpretation(alpha)
    return summary
