"""
Typed records for the entities flowing through the pipeline.

Schools and regions are loaded once into frozen dataclasses; malformed rows
are rejected here, at load time, instead of being coerced later on.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry


class RecordError(ValueError):
    """Raised when an input row cannot be turned into a typed record."""
    pass


@dataclass(frozen=True)
class School:
    """A geocoded school."""
    school_id: str
    latitude: float
    longitude: float
    name: Optional[str] = None
    sector: Optional[str] = None
    cluster: Optional[str] = None

    @property
    def point(self) -> Point:
        return Point(self.longitude, self.latitude)


@dataclass(frozen=True)
class Region:
    """A polygonal spatial unit (mukim, kampong or grid cell)."""
    region_id: str
    geometry: BaseGeometry
    value: float = 0.0


def _optional_str(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    text = str(value).strip()
    return text or None


def _coordinate(value, low: float, high: float, label: str, row_label) -> float:
    try:
        coord = float(value)
    except (TypeError, ValueError):
        raise RecordError(f"Row {row_label}: {label} {value!r} is not numeric") from None
    if not math.isfinite(coord) or not low <= coord <= high:
        raise RecordError(f"Row {row_label}: {label} {coord} outside [{low}, {high}]")
    return coord


def schools_from_frame(
    df: pd.DataFrame,
    id_col: str = "school_id",
    lat_col: str = "latitude",
    lon_col: str = "longitude",
) -> List[School]:
    """
    Build School records from a school table.

    Raises:
        RecordError: On a missing id, a duplicate id, or a missing,
            non-numeric or out-of-range coordinate.
    """
    missing = [c for c in (id_col, lat_col, lon_col) if c not in df.columns]
    if missing:
        raise RecordError(f"School table is missing columns: {missing}")

    schools = []
    seen = set()
    for row_label, row in df.iterrows():
        school_id = _optional_str(row[id_col])
        if school_id is None:
            raise RecordError(f"Row {row_label}: missing {id_col}")
        if school_id in seen:
            raise RecordError(f"Row {row_label}: duplicate {id_col} {school_id!r}")
        seen.add(school_id)

        schools.append(School(
            school_id=school_id,
            latitude=_coordinate(row[lat_col], -90.0, 90.0, "latitude", row_label),
            longitude=_coordinate(row[lon_col], -180.0, 180.0, "longitude", row_label),
            name=_optional_str(row.get("name")),
            sector=_optional_str(row.get("sector")),
            cluster=_optional_str(row.get("cluster")),
        ))
    return schools


def schools_to_gdf(schools: Sequence[School], crs: int = 4326) -> gpd.GeoDataFrame:
    """Turn School records into a point GeoDataFrame (lon/lat in `crs`)."""
    return gpd.GeoDataFrame(
        {
            "school_id": [s.school_id for s in schools],
            "name": [s.name for s in schools],
            "sector": [s.sector for s in schools],
            "cluster": [s.cluster for s in schools],
        },
        geometry=[s.point for s in schools],
        crs=crs,
    )


def regions_from_gdf(
    gdf: gpd.GeoDataFrame,
    id_col: str = "region_id",
    value_col: Optional[str] = None,
) -> Tuple[Region, ...]:
    """
    Build Region records from a polygon layer, preserving row order.

    Raises:
        RecordError: On missing/duplicate ids, empty geometry, or a
            non-finite value.
    """
    if id_col not in gdf.columns:
        raise RecordError(f"Region layer is missing id column {id_col!r}")

    regions = []
    seen = set()
    for row_label, row in gdf.iterrows():
        region_id = _optional_str(row[id_col])
        if region_id is None:
            raise RecordError(f"Row {row_label}: missing {id_col}")
        if region_id in seen:
            raise RecordError(f"Row {row_label}: duplicate region id {region_id!r}")
        seen.add(region_id)

        geom = row[gdf.geometry.name]
        if geom is None or geom.is_empty:
            raise RecordError(f"Region {region_id!r} has no geometry")

        value = 0.0
        if value_col is not None:
            value = float(row[value_col])
            if not math.isfinite(value):
                raise RecordError(f"Region {region_id!r} has non-finite {value_col}")

        regions.append(Region(region_id=region_id, geometry=geom, value=value))
    return tuple(regions)


def region_values(regions: Iterable[Region]) -> List[float]:
    """The study variable of each region, in order."""
    return [r.value for r in regions]
