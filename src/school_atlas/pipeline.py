"""
Stage runner and the two analysis chains.

    contiguity graph -> weights -> Moran's I          (regions)
    contiguity graph -> star weights -> Gi* -> clip   (grid cells)

Each chain passes immutable values from stage to stage and returns an
Outcome: the analysis value on success, or the reason the statistic could
not be reported (insufficient structure, undefined statistic, join
failure). Programming errors and bad inputs still raise.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import geopandas as gpd

from school_atlas.autocorrelation import MoranResult, morans_i
from school_atlas.contiguity import NeighborGraph, build_rook_graph
from school_atlas.hotspots import (
    classify_hotspots,
    clip_to_study_area,
    getis_ord_gi_star,
    significant_cells,
)
from school_atlas.joins import SpatialJoinError
from school_atlas.outcomes import AnalysisError, Outcome
from school_atlas.weights import SpatialWeights, build_weights

logger = logging.getLogger(__name__)

REPORTABLE_ERRORS = (AnalysisError, SpatialJoinError)


@dataclass(frozen=True)
class GlobalAnalysis:
    graph: NeighborGraph
    weights: SpatialWeights
    result: MoranResult


@dataclass(frozen=True)
class HotspotAnalysis:
    graph: NeighborGraph
    weights: SpatialWeights
    cells: gpd.GeoDataFrame
    significant: gpd.GeoDataFrame


def run_stage(stage: str, func: Callable[..., Any], *args, **kwargs) -> Outcome:
    """
    Call func and wrap its result in an Outcome.

    Reportable analysis conditions become failure outcomes; any other
    exception propagates.
    """
    try:
        value = func(*args, **kwargs)
    except REPORTABLE_ERRORS as e:
        logger.warning("Stage %s not reportable: %s", stage, e)
        return Outcome.failure(stage, e)
    return Outcome.success(stage, value)


def _global_chain(
    regions: gpd.GeoDataFrame,
    value_col: str,
    id_col: str,
    tolerance: float,
    island_policy: Optional[str],
    assumption: Optional[str],
) -> GlobalAnalysis:
    graph = build_rook_graph(regions, id_col=id_col, tolerance=tolerance)
    weights = build_weights(graph, mode="binary", island_policy=island_policy)
    values = regions[value_col].to_numpy(dtype=float)
    result = morans_i(values, weights, assumption=assumption)
    return GlobalAnalysis(graph=graph, weights=weights, result=result)


def run_global_analysis(
    regions: gpd.GeoDataFrame,
    value_col: str = "school_count",
    id_col: str = "region_id",
    tolerance: float = 0.0,
    island_policy: Optional[str] = None,
    assumption: Optional[str] = None,
) -> Outcome:
    """Moran's I of `value_col` over rook-contiguous regions."""
    return run_stage(
        "global_moran",
        _global_chain,
        regions, value_col, id_col, tolerance, island_policy, assumption,
    )


def _hotspot_chain(
    cells: gpd.GeoDataFrame,
    value_col: str,
    id_col: str,
    boundary: Optional[gpd.GeoDataFrame],
    alpha: Optional[float],
    tails: Optional[str],
    star_normalize: Optional[str],
) -> HotspotAnalysis:
    graph = build_rook_graph(cells, id_col=id_col)
    weights = build_weights(graph, mode="star", star_normalize=star_normalize)
    table = getis_ord_gi_star(cells[value_col].to_numpy(dtype=float), weights)
    table = classify_hotspots(table, alpha=alpha, tails=tails)

    # Graph ids are normalized strings
    left = cells[[id_col, cells.geometry.name]].copy()
    left[id_col] = left[id_col].astype(str).str.strip()
    classified = left.merge(
        table.rename(columns={"region_id": id_col}), on=id_col, how="left", validate="one_to_one"
    )
    classified = gpd.GeoDataFrame(classified, geometry=cells.geometry.name, crs=cells.crs)

    significant = significant_cells(classified)
    if boundary is not None:
        significant = clip_to_study_area(significant, boundary)

    return HotspotAnalysis(
        graph=graph, weights=weights, cells=classified, significant=significant
    )


def run_hotspot_analysis(
    cells: gpd.GeoDataFrame,
    value_col: str = "count",
    id_col: str = "cell_id",
    boundary: Optional[gpd.GeoDataFrame] = None,
    alpha: Optional[float] = None,
    tails: Optional[str] = None,
    star_normalize: Optional[str] = None,
) -> Outcome:
    """Gi* hotspots of `value_col` over grid cells, clipped to `boundary`."""
    return run_stage(
        "local_gi_star",
        _hotspot_chain,
        cells, value_col, id_col, boundary, alpha, tails, star_normalize,
    )
