"""
Schema validation for input tables and canonical outputs.

Inputs are validated (columns, dtypes, NA rules, ranges) when they are
loaded; outputs are validated before they are written. Schema drift is an
immediate local failure rather than a silent coercion downstream.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

import geopandas as gpd
import pandas as pd


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "string", "integer", "float", "numeric", "bool", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns if not c.nullable]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Predefined Schemas
# =============================================================================

HOTSPOT_CLASSES = {"hotspot", "coldspot", "not_significant"}

# Tabulated school list (manual entry + geocoding upstream)
SCHOOLS_SCHEMA = Schema(
    name="schools",
    columns=[
        ColumnSpec("school_id", dtype="string", nullable=False, unique=True),
        ColumnSpec("name", dtype="string"),
        ColumnSpec("sector", dtype="string"),
        ColumnSpec("cluster", dtype="string"),
        ColumnSpec("latitude", dtype="numeric", nullable=False, min_value=-90, max_value=90),
        ColumnSpec("longitude", dtype="numeric", nullable=False, min_value=-180, max_value=180),
    ],
    min_rows=1,
)

# Region boundaries (mukim or kampong) after renaming the id column
REGIONS_SCHEMA = Schema(
    name="regions",
    columns=[
        ColumnSpec("region_id", dtype="string", nullable=False, unique=True),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

# Population per mukim
POPULATION_SCHEMA = Schema(
    name="population",
    columns=[
        ColumnSpec("region_id", dtype="string", nullable=False, unique=True),
        ColumnSpec("population", dtype="numeric", nullable=False, min_value=0),
    ],
    min_rows=1,
)

# Per-region school counts
REGION_COUNTS_SCHEMA = Schema(
    name="region_counts",
    columns=[
        ColumnSpec("region_id", dtype="string", nullable=False, unique=True),
        ColumnSpec("school_count", dtype="integer", nullable=False, min_value=0),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

# Gi* hotspot table
HOTSPOT_SCHEMA = Schema(
    name="hotspots",
    columns=[
        ColumnSpec("region_id", nullable=False, unique=True),
        ColumnSpec("value", dtype="numeric", nullable=False),
        ColumnSpec("gi_star", dtype="float", nullable=False),
        ColumnSpec("z_score", dtype="float"),
        ColumnSpec("p_value", dtype="float", min_value=0, max_value=1),
        ColumnSpec("classification", nullable=False, allowed_values=HOTSPOT_CLASSES),
    ],
)


# =============================================================================
# Validation Functions
# =============================================================================

_DTYPE_CHECKS = {
    "integer": pd.api.types.is_integer_dtype,
    "float": pd.api.types.is_float_dtype,
    "numeric": pd.api.types.is_numeric_dtype,
    "bool": pd.api.types.is_bool_dtype,
    "string": lambda col: pd.api.types.is_string_dtype(col) or pd.api.types.is_object_dtype(col),
}


def _column_for(df: pd.DataFrame, spec: ColumnSpec) -> Optional[pd.Series]:
    if spec.dtype == "geometry":
        return df.geometry if isinstance(df, gpd.GeoDataFrame) else None
    return df[spec.name] if spec.name in df.columns else None


def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """Return the problems found in one column (empty if it conforms)."""
    col = _column_for(df, spec)
    if col is None:
        if spec.dtype == "geometry":
            return [f"Expected GeoDataFrame for geometry column {spec.name}"]
        return [f"Missing column: {spec.name}"]

    label = f"Column {spec.name}"
    check = _DTYPE_CHECKS.get(spec.dtype)
    if check is not None and not check(col):
        # Value checks on a wrongly typed column would only add noise
        return [f"{label}: expected {spec.dtype}, got {col.dtype}"]

    errors = []
    n_na = int(col.isna().sum())
    if n_na and not spec.nullable:
        errors.append(f"{label}: {n_na} NA values not allowed")

    if spec.unique:
        n_dup = int(col.duplicated().sum())
        if n_dup:
            errors.append(f"{label}: {n_dup} duplicate values not allowed")

    present = col.dropna()
    if spec.allowed_values is not None:
        bad = present[~present.isin(spec.allowed_values)]
        if len(bad):
            errors.append(f"{label}: invalid values {list(bad.unique()[:5])}")
    if spec.min_value is not None and (present < spec.min_value).any():
        errors.append(f"{label}: values below min {spec.min_value}")
    if spec.max_value is not None and (present > spec.max_value).any():
        errors.append(f"{label}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Check a table against a schema.

    Optional columns are only checked when present. With raise_on_error
    (the default) any problem raises SchemaError listing all of them;
    otherwise the list of problems is returned.
    """
    where = f" ({context})" if context else ""
    errors = []

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{where}")

    missing = set(schema.required_columns) - set(df.columns) - {"geometry"}
    if missing:
        errors.append(f"Missing required columns: {sorted(missing)}{where}")

    for spec in schema.columns:
        absent = spec.dtype != "geometry" and spec.name not in df.columns
        if spec.name in missing or absent:
            continue
        errors.extend(validate_column(df, spec))

    if errors and raise_on_error:
        raise SchemaError(
            f"{schema.name}{where}: {len(errors)} schema problem(s)\n  " + "\n  ".join(errors)
        )
    return errors


def normalize_id_column(
    df: pd.DataFrame,
    source_col: str,
    target_col: str = "region_id",
) -> pd.DataFrame:
    """
    Rename an identifier column and store it as stripped strings.

    Regional ids arrive as names in one file and zero-padded codes in
    another; joins only ever happen on the normalized string form.
    """
    if source_col not in df.columns:
        raise SchemaError(f"Missing id column: {source_col}")

    df = df.copy()
    if source_col != target_col:
        df = df.rename(columns={source_col: target_col})
    ids = df[target_col]
    df[target_col] = ids.where(ids.isna(), ids.astype(str).str.strip())
    return df


# =============================================================================
# Merge Validation
# =============================================================================

def validate_merge(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: Union[str, List[str]],
    how: str = "left",
    validate: str = "one_to_one",
    context: str = "",
) -> pd.DataFrame:
    """
    Perform a merge with pandas' duplicate-key validation.

    Raises:
        SchemaError: If merge validation fails
    """
    try:
        return pd.merge(left, right, on=on, how=how, validate=validate)
    except pd.errors.MergeError as e:
        raise SchemaError(f"Merge validation failed ({context}): {e}") from e


# =============================================================================
# Schema Registry
# =============================================================================

SCHEMAS: Dict[str, Schema] = {
    schema.name: schema
    for schema in [
        SCHOOLS_SCHEMA,
        REGIONS_SCHEMA,
        POPULATION_SCHEMA,
        REGION_COUNTS_SCHEMA,
        HOTSPOT_SCHEMA,
    ]
}


def get_schema(name: str) -> Schema:
    """Get a registered schema by name."""
    if name not in SCHEMAS:
        raise KeyError(f"Unknown schema: {name}. Available: {list(SCHEMAS.keys())}")
    return SCHEMAS[name]
