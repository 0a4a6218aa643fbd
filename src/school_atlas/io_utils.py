"""
I/O utilities with atomic writes and safe reads.

All outputs are written to a temp file in the destination directory and
then renamed over the target, so a failed run never leaves a half-written
table behind. GeoParquet is the internal format; GeoJSON is the export.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional, Union

import geopandas as gpd
import pandas as pd
import yaml


# =============================================================================
# Atomic Write Utilities
# =============================================================================

def _temp_path_for(target_path: Path, suffix: str) -> Path:
    """Create an empty temp file beside the target and return its path."""
    target_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    return Path(temp_path)


def _write_then_replace(
    target_path: Path,
    writer: Callable[[Path], None],
) -> None:
    """Run writer against a temp file, then atomically move it into place."""
    temp_path = _temp_path_for(target_path, target_path.suffix.lower() or ".tmp")
    try:
        writer(temp_path)
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


@contextmanager
def atomic_write(
    target_path: Union[str, Path],
    mode: str = "w",
    suffix: Optional[str] = None,
):
    """
    Context manager for atomic file writes.

    If an exception occurs, the temp file is removed and the target is left
    unchanged.

    Example:
        with atomic_write("summary.json") as f:
            f.write("{}")
    """
    target_path = Path(target_path)
    temp_path = _temp_path_for(target_path, suffix or target_path.suffix or ".tmp")

    try:
        encoding = None if "b" in mode else "utf-8"
        with open(temp_path, mode, encoding=encoding) as f:
            yield f
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_df(
    df: pd.DataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (format from extension).
    """
    target_path = Path(target_path)
    suffix = target_path.suffix.lower()

    if suffix == ".parquet":
        _write_then_replace(target_path, lambda p: df.to_parquet(p, **kwargs))
    elif suffix == ".csv":
        kwargs.setdefault("index", False)
        _write_then_replace(target_path, lambda p: df.to_csv(p, **kwargs))
    else:
        raise ValueError(f"Unsupported format: {suffix}")


def _ogr_writer(gdf: gpd.GeoDataFrame, driver: str, **kwargs) -> Callable[[Path], None]:
    """Writer for OGR formats; the empty placeholder is removed so the driver creates the file."""
    def write(path: Path) -> None:
        path.unlink()
        gdf.to_file(path, driver=driver, **kwargs)
    return write


def atomic_write_gdf(
    gdf: gpd.GeoDataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.
    """
    target_path = Path(target_path)
    suffix = target_path.suffix.lower()

    if suffix == ".parquet":
        _write_then_replace(target_path, lambda p: gdf.to_parquet(p, **kwargs))
    elif suffix == ".geojson":
        _write_then_replace(target_path, _ogr_writer(gdf, "GeoJSON", **kwargs))
    elif suffix == ".gpkg":
        _write_then_replace(target_path, _ogr_writer(gdf, "GPKG", **kwargs))
    else:
        raise ValueError(f"Unsupported geo format: {suffix}")


def atomic_write_json(
    data: Any,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """Atomically write JSON data (indented, non-serializable values as str)."""
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)

    with atomic_write(target_path, mode="w", suffix=".json") as f:
        json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML file. An empty file reads as an empty dict."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_gdf(
    path: Union[str, Path],
    **kwargs,
) -> gpd.GeoDataFrame:
    """
    Read a GeoDataFrame from GeoParquet, GeoJSON, GeoPackage or Shapefile.
    """
    path = Path(path)

    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)


def read_df(
    path: Union[str, Path],
    **kwargs,
) -> pd.DataFrame:
    """Read a DataFrame from CSV or Parquet."""
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".parquet":
        return pd.read_parquet(path, **kwargs)
    elif suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    else:
        raise ValueError(f"Unsupported format: {suffix}")
