"""
Spatial Data Adapter (thin reference implementation)

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Turn planning-unit and feature geometries into the tabular
records assemble() consumes. Geometry stays opaque to the rest of the
package: units carry it as an untouched handle and it is never fingerprinted.

Key Functions:
- units_from_geodataframe(): id/cost/status/geometry unit table
- boundary_records(): shared + external boundary lengths (bound.dat records)
- incidence_from_overlay(): feature area held per unit (puvspr.dat records)
- load_planning_units(): Read a vector file with geopandas

Geometry handling:
- Invalid polygons are repaired with shapely.make_valid
- Shared boundary = length of the intersection of the two unit boundaries
- External boundary = perimeter minus all shared lengths (floored at 0)

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import logging
from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
import pandas as pd
from shapely.validation import make_valid

logger = logging.getLogger("MXP.Assembler")


def _repaired(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty].copy()
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        logger.warning(f"⚠️ Repairing {int(invalid.sum())} invalid geometries")
        gdf.loc[invalid, "geometry"] = gdf.loc[invalid, "geometry"].apply(make_valid)
    return gdf


def load_planning_units(path: Union[str, Path], layer: Optional[str] = None) -> gpd.GeoDataFrame:
    """Read a planning-unit layer (shapefile, GeoPackage, GeoJSON)."""
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    logger.info(f"📂 Loaded {len(gdf)} planning units from {Path(path).name}")
    return gdf


def units_from_geodataframe(
    gdf: gpd.GeoDataFrame,
    id_column: str = "id",
    cost_column: Optional[str] = "cost",
    status_column: Optional[str] = "status",
) -> pd.DataFrame:
    """
    Unit table for assemble() with the geometry kept as an opaque handle.

    Missing cost defaults to the unit area; missing status to available.
    """
    gdf = _repaired(gdf)
    table = pd.DataFrame({"id": gdf[id_column].astype(int).to_numpy()})
    if cost_column and cost_column in gdf.columns:
        table["cost"] = gdf[cost_column].astype(float).to_numpy()
    else:
        table["cost"] = gdf.geometry.area.to_numpy()
    if status_column and status_column in gdf.columns:
        table["status"] = gdf[status_column].to_numpy()
    else:
        table["status"] = 0
    table["geometry"] = list(gdf.geometry)
    return table


def boundary_records(
    gdf: gpd.GeoDataFrame,
    id_column: str = "id",
    include_external: bool = True,
    min_length: float = 0.0,
) -> pd.DataFrame:
    """
    Shared boundary lengths between touching units (id1 < id2) plus each
    unit's external boundary as an id1 == id2 record.
    """
    gdf = _repaired(gdf).reset_index(drop=True)
    ids = gdf[id_column].astype(int).to_numpy()
    geoms = list(gdf.geometry)
    shared_total = [0.0] * len(gdf)

    left, right = gdf.sindex.query(gdf.geometry, predicate="intersects")
    records = []
    for i, j in zip(left, right):
        if i >= j:
            continue
        length = geoms[i].boundary.intersection(geoms[j].boundary).length
        if length <= min_length:
            continue
        shared_total[i] += length
        shared_total[j] += length
        records.append({"id1": int(min(ids[i], ids[j])), "id2": int(max(ids[i], ids[j])), "boundary": float(length)})

    if include_external:
        for i, geom in enumerate(geoms):
            external = max(geom.length - shared_total[i], 0.0)
            if external > min_length:
                records.append({"id1": int(ids[i]), "id2": int(ids[i]), "boundary": float(external)})

    frame = pd.DataFrame(records, columns=["id1", "id2", "boundary"])
    logger.info(f"📐 Derived {len(frame)} boundary records from {len(gdf)} units")
    return frame.sort_values(["id1", "id2"], kind="mergesort").reset_index(drop=True)


def incidence_from_overlay(
    units_gdf: gpd.GeoDataFrame,
    features_gdf: gpd.GeoDataFrame,
    unit_id_column: str = "id",
    feature_id_column: str = "id",
    min_amount: float = 0.0,
) -> pd.DataFrame:
    """Long incidence records: area of each feature inside each unit."""
    units = _repaired(units_gdf)[[unit_id_column, "geometry"]].rename(columns={unit_id_column: "pu"})
    features = _repaired(features_gdf)[[feature_id_column, "geometry"]].rename(
        columns={feature_id_column: "species"}
    )
    if features.crs != units.crs and features.crs is not None and units.crs is not None:
        features = features.to_crs(units.crs)
    pieces = gpd.overlay(units, features, how="intersection", keep_geom_type=True)
    pieces["amount"] = pieces.geometry.area
    frame = (
        pieces.groupby(["species", "pu"], as_index=False)["amount"].sum()
        .astype({"species": int, "pu": int})
    )
    frame = frame[frame["amount"] > min_amount]
    logger.info(f"🌿 Derived {len(frame)} incidence records from overlay")
    return frame.sort_values(["pu", "species"], kind="mergesort").reset_index(drop=True)
