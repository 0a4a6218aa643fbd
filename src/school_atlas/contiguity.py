"""
Contiguity (neighbour graph) construction for polygonal regions.

Two regions are rook neighbours when their boundaries share an edge, i.e.
the boundary intersection has positive length. Touching at a single
vertex is queen contiguity and is not enough for rook.

Candidate pairs come from a shapely STRtree bounding-box query, so only
pairs whose envelopes overlap reach the exact geometric test.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
from shapely import STRtree
from shapely.geometry.base import BaseGeometry

from school_atlas.records import Region, regions_from_gdf

logger = logging.getLogger(__name__)

RegionsLike = Union[gpd.GeoDataFrame, Sequence[Region]]


@dataclass(frozen=True)
class NeighborGraph:
    """
    Symmetric neighbour relation over an ordered set of region ids.

    Isolated regions are kept as nodes with an empty neighbour set. With
    `self_loops=True` every region also counts as its own neighbour (the
    variant the Gi* statistic uses); otherwise the relation is irreflexive.
    """
    ids: Tuple[str, ...]
    neighbors: Mapping[str, FrozenSet[str]]
    self_loops: bool = False
    _index: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        ids = tuple(self.ids)
        if len(set(ids)) != len(ids):
            raise ValueError("Region ids must be unique")

        known = set(ids)
        frozen = {i: frozenset(self.neighbors.get(i, ())) for i in ids}
        for i, nbrs in frozen.items():
            unknown = nbrs - known
            if unknown:
                raise ValueError(f"Region {i!r} has unknown neighbours {sorted(unknown)}")
            if i in nbrs:
                raise ValueError(f"Region {i!r} lists itself as a neighbour")
            for j in nbrs:
                if i not in frozen[j]:
                    raise ValueError(f"Neighbour relation is not symmetric for {i!r}-{j!r}")

        object.__setattr__(self, "ids", ids)
        object.__setattr__(self, "neighbors", MappingProxyType(frozen))
        object.__setattr__(self, "_index", MappingProxyType({i: k for k, i in enumerate(ids)}))

    @classmethod
    def from_edges(
        cls,
        ids: Iterable[str],
        edges: Iterable[Tuple[str, str]],
    ) -> "NeighborGraph":
        """Build a graph from undirected (i, j) pairs."""
        ids = tuple(ids)
        neighbors: Dict[str, set] = {i: set() for i in ids}
        for i, j in edges:
            if i == j:
                raise ValueError(f"Self-loop edge for {i!r}")
            if i not in neighbors or j not in neighbors:
                raise ValueError(f"Edge ({i!r}, {j!r}) references an unknown region")
            neighbors[i].add(j)
            neighbors[j].add(i)
        return cls(ids=ids, neighbors=neighbors)

    def __len__(self) -> int:
        return len(self.ids)

    def index_of(self, region_id: str) -> int:
        return self._index[region_id]

    def is_neighbor(self, i: str, j: str) -> bool:
        if i == j:
            return self.self_loops and i in self._index
        return j in self.neighbors.get(i, frozenset())

    @property
    def cardinalities(self) -> Dict[str, int]:
        """Number of neighbours per region (self excluded)."""
        return {i: len(self.neighbors[i]) for i in self.ids}

    @property
    def islands(self) -> Tuple[str, ...]:
        """Regions with no neighbours, in id order."""
        return tuple(i for i in self.ids if not self.neighbors[i])

    @property
    def n_edges(self) -> int:
        """Number of undirected neighbour pairs."""
        return sum(len(n) for n in self.neighbors.values()) // 2

    def edges(self) -> Tuple[Tuple[str, str], ...]:
        """Undirected pairs (i, j) with i listed before j in id order."""
        return tuple(
            (i, j)
            for i in self.ids
            for j in sorted(self.neighbors[i], key=self._index.__getitem__)
            if self._index[i] < self._index[j]
        )

    def with_self_loops(self) -> "NeighborGraph":
        """The same relation with every region its own neighbour."""
        return NeighborGraph(ids=self.ids, neighbors=dict(self.neighbors), self_loops=True)

    def to_adjacency(self) -> np.ndarray:
        """Dense 0/1 matrix in id order; diagonal set only with self loops."""
        n = len(self.ids)
        adjacency = np.zeros((n, n), dtype=float)
        for i, j in self.edges():
            a, b = self._index[i], self._index[j]
            adjacency[a, b] = adjacency[b, a] = 1.0
        if self.self_loops:
            np.fill_diagonal(adjacency, 1.0)
        return adjacency

    def summary(self) -> dict:
        """Flat summary for logs and metadata."""
        cards = np.array(list(self.cardinalities.values()), dtype=float)
        return {
            "n_regions": len(self.ids),
            "n_edges": self.n_edges,
            "n_islands": len(self.islands),
            "islands": list(self.islands),
            "mean_neighbors": float(cards.mean()) if len(cards) else 0.0,
            "max_neighbors": int(cards.max()) if len(cards) else 0,
        }


def _as_regions(regions: RegionsLike, id_col: str) -> Tuple[Region, ...]:
    if isinstance(regions, gpd.GeoDataFrame):
        return regions_from_gdf(regions, id_col=id_col)
    return tuple(regions)


def _candidate_pairs(geoms: Sequence[BaseGeometry]) -> Iterable[Tuple[int, int]]:
    """Index pairs (a < b) whose bounding boxes intersect."""
    tree = STRtree(geoms)
    left, right = tree.query(geoms, predicate="intersects")
    for a, b in zip(left.tolist(), right.tolist()):
        if a < b:
            yield a, b


def shares_edge(a: BaseGeometry, b: BaseGeometry, tolerance: float = 0.0) -> bool:
    """True when the boundaries of a and b overlap along a segment longer than tolerance."""
    shared = a.boundary.intersection(b.boundary)
    return shared.length > tolerance


def _build_graph(regions: RegionsLike, id_col: str, test) -> NeighborGraph:
    records = _as_regions(regions, id_col)
    ids = [r.region_id for r in records]
    geoms = [r.geometry for r in records]

    for r in records:
        if r.geometry is None or r.geometry.is_empty:
            raise ValueError(f"Region {r.region_id!r} has empty geometry")

    edges = [
        (ids[a], ids[b])
        for a, b in _candidate_pairs(geoms)
        if test(geoms[a], geoms[b])
    ]
    graph = NeighborGraph.from_edges(ids, edges)

    if graph.islands:
        logger.warning(
            "%d region(s) have no neighbours: %s",
            len(graph.islands), ", ".join(graph.islands),
        )
    logger.info(
        "Built contiguity graph: %d regions, %d edges", len(graph), graph.n_edges
    )
    return graph


def build_rook_graph(
    regions: RegionsLike,
    id_col: str = "region_id",
    tolerance: float = 0.0,
) -> NeighborGraph:
    """
    Rook contiguity: neighbours share a boundary edge of positive length.

    Args:
        regions: GeoDataFrame (with `id_col`) or a sequence of Region records.
            Geometries should be in a projected CRS when tolerance > 0.
        id_col: Identifier column when regions is a GeoDataFrame.
        tolerance: Minimum shared-boundary length to count as an edge.

    Returns:
        NeighborGraph in input order, islands retained.
    """
    return _build_graph(regions, id_col, lambda a, b: shares_edge(a, b, tolerance))


def build_queen_graph(
    regions: RegionsLike,
    id_col: str = "region_id",
) -> NeighborGraph:
    """Queen contiguity: any boundary contact, a shared vertex included."""
    return _build_graph(regions, id_col, lambda a, b: a.intersects(b))
