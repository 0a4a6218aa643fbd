"""
Spatial weights built from a neighbour graph.

Binary mode
    w_ij = 1 for neighbours, then each row is divided by its sum. A region
    without neighbours either keeps an all-zero row (island_policy="zero",
    reported in `islands`) or falls back to a unit self-weight
    (island_policy="self").

Star mode
    Used by the Gi* statistic. With star_normalize="neighbors" the
    neighbour part of each row is row-standardised and the diagonal is then
    set to 1, so the focal unit keeps full weight and its neighbours share
    one unit between them. With star_normalize="full" the diagonal is set
    to 1 first and the whole row is standardised.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from school_atlas.contiguity import NeighborGraph
from school_atlas.io_utils import read_yaml
from school_atlas.paths import PARAMS_FILE

logger = logging.getLogger(__name__)

MODES = ("binary", "star")
ISLAND_POLICIES = ("zero", "self")
STAR_NORMALIZATIONS = ("neighbors", "full")


def _load_weights_config() -> dict:
    """Load weights configuration from params.yml."""
    if not PARAMS_FILE.exists():
        return {}
    return read_yaml(PARAMS_FILE).get("weights", {})


@dataclass(frozen=True)
class SpatialWeights:
    """Dense, read-only weight matrix indexed by region id."""
    ids: Tuple[str, ...]
    matrix: np.ndarray
    mode: str
    islands: Tuple[str, ...] = ()

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=float, copy=True)
        n = len(self.ids)
        if matrix.shape != (n, n):
            raise ValueError(f"Weight matrix shape {matrix.shape} does not match {n} ids")
        if (matrix < 0).any() or not np.isfinite(matrix).all():
            raise ValueError("Weights must be finite and non-negative")
        matrix.setflags(write=False)
        object.__setattr__(self, "ids", tuple(self.ids))
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "islands", tuple(self.islands))

    @property
    def n(self) -> int:
        return len(self.ids)

    @property
    def row_sums(self) -> np.ndarray:
        return self.matrix.sum(axis=1)

    @property
    def cardinalities(self) -> np.ndarray:
        """Non-zero off-diagonal entries per row."""
        off_diagonal = self.matrix.copy()
        np.fill_diagonal(off_diagonal, 0.0)
        return (off_diagonal > 0).sum(axis=1)

    @property
    def s0(self) -> float:
        """Sum of all weights."""
        return float(self.matrix.sum())

    @property
    def s1(self) -> float:
        """1/2 * sum_ij (w_ij + w_ji)^2"""
        sym = self.matrix + self.matrix.T
        return float((sym * sym).sum() / 2.0)

    @property
    def s2(self) -> float:
        """sum_i (row_sum_i + col_sum_i)^2"""
        return float(((self.matrix.sum(axis=1) + self.matrix.sum(axis=0)) ** 2).sum())

    def row(self, region_id: str) -> dict:
        """Non-zero weights of one region's row, keyed by id."""
        i = self.ids.index(region_id)
        return {
            self.ids[j]: float(w)
            for j, w in enumerate(self.matrix[i])
            if w != 0.0
        }

    def lag(self, values) -> np.ndarray:
        """Spatial lag W @ x."""
        x = np.asarray(values, dtype=float)
        if x.shape != (self.n,):
            raise ValueError(f"Expected {self.n} values, got shape {x.shape}")
        return self.matrix @ x

    def summary(self) -> dict:
        return {
            "mode": self.mode,
            "n": self.n,
            "s0": self.s0,
            "n_islands": len(self.islands),
            "mean_cardinality": float(self.cardinalities.mean()) if self.n else 0.0,
        }


def _row_standardize(matrix: np.ndarray) -> np.ndarray:
    sums = matrix.sum(axis=1, keepdims=True)
    out = np.zeros_like(matrix)
    np.divide(matrix, sums, out=out, where=sums > 0)
    return out


def build_weights(
    graph: NeighborGraph,
    mode: str = "binary",
    island_policy: Optional[str] = None,
    star_normalize: Optional[str] = None,
) -> SpatialWeights:
    """
    Turn a neighbour graph into row-standardised spatial weights.

    Args:
        graph: Neighbour relation (self loops on the graph are ignored; the
            diagonal is controlled by `mode`).
        mode: "binary" or "star".
        island_policy: Zero-neighbour rows in binary mode, "zero" or "self".
            Defaults to params.yml `weights.island_policy`, else "zero".
        star_normalize: "neighbors" or "full". Defaults to params.yml
            `weights.star_normalize`, else "neighbors".

    Returns:
        SpatialWeights with ids in graph order.
    """
    config = _load_weights_config()
    if island_policy is None:
        island_policy = config.get("island_policy", "zero")
    if star_normalize is None:
        star_normalize = config.get("star_normalize", "neighbors")

    if mode not in MODES:
        raise ValueError(f"Unknown weights mode {mode!r}; expected one of {MODES}")
    if island_policy not in ISLAND_POLICIES:
        raise ValueError(f"Unknown island policy {island_policy!r}; expected one of {ISLAND_POLICIES}")
    if star_normalize not in STAR_NORMALIZATIONS:
        raise ValueError(
            f"Unknown star normalisation {star_normalize!r}; expected one of {STAR_NORMALIZATIONS}"
        )

    adjacency = graph.to_adjacency()
    np.fill_diagonal(adjacency, 0.0)
    isolated = adjacency.sum(axis=1) == 0
    islands = tuple(i for i, flag in zip(graph.ids, isolated) if flag)

    if mode == "binary":
        matrix = _row_standardize(adjacency)
        if island_policy == "self":
            idx = np.flatnonzero(isolated)
            matrix[idx, idx] = 1.0
            reported = ()
        else:
            reported = islands
    elif star_normalize == "neighbors":
        matrix = _row_standardize(adjacency)
        np.fill_diagonal(matrix, 1.0)
        reported = islands
    else:
        np.fill_diagonal(adjacency, 1.0)
        matrix = _row_standardize(adjacency)
        reported = islands

    if reported and mode == "binary":
        logger.warning(
            "%d island row(s) left as zero weights: %s",
            len(reported), ", ".join(reported),
        )

    return SpatialWeights(ids=graph.ids, matrix=matrix, mode=mode, islands=reported)
