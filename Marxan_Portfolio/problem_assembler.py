"""
Problem Assembler

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Validate raw planning-unit / feature / incidence / boundary
tables and build an immutable ProblemDefinition with deterministic content
fingerprints for every derived artifact.

Key Functions:
- assemble(): Validate inputs and build the ProblemDefinition snapshot
- fingerprint(): SHA256 over a canonical (sorted, rounded) table encoding
- compute_component_fingerprints(): Fingerprint each Component of a problem
- compute_artifact_fingerprints(): Combine component fingerprints per
  ArtifactKind using ARTIFACT_DEPENDENCIES

Accepted input shapes (Marxan file conventions):
- units: id, cost, status                      (pu.dat)
- features: id, name, target/target_type | prop | amount, spf   (spec.dat)
- incidence: species, pu, amount (long, puvspr.dat) or dense unit x feature
- boundaries: id1, id2, boundary                (bound.dat)

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import hashlib
import logging
import math
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from Marxan_Portfolio.config_types import AppConfig, FingerprintConfig, normalize_config
from Marxan_Portfolio.exceptions import ValidationError
from Marxan_Portfolio.models.data_models import (
    ARTIFACT_DEPENDENCIES,
    ArtifactKind,
    Component,
    Feature,
    PlanningUnit,
    ProblemDefinition,
    ProblemOptions,
    TargetKind,
    TargetSpec,
    UnitStatus,
)

logger = logging.getLogger("MXP.Assembler")

TableLike = Union[pd.DataFrame, Sequence[Mapping[str, Any]], Sequence[Any], None]

UNIT_ID_ALIASES = ("id", "puid", "pu")
FEATURE_ID_ALIASES = ("id", "species", "feature")


# ═══════════════════════════════════════════════════════════════════════════
# 🔑 FINGERPRINTING
# ═══════════════════════════════════════════════════════════════════════════


def canonical_frame(frame: pd.DataFrame, sort_by: Sequence[str], precision: int) -> str:
    """
    Encode a table canonically for hashing.

    Rows are sorted by the key columns, float columns rounded to the given
    precision (with -0.0 folded into 0.0), and the result rendered as CSV.

    Args:
        frame: Table to encode.
        sort_by: Key columns defining row order.
        precision: Decimal places for float columns.

    Returns:
        CSV text, identical for identical content in any row order.
    """
    out = frame.sort_values(list(sort_by), kind="mergesort").reset_index(drop=True)
    for col in out.columns:
        if pd.api.types.is_float_dtype(out[col]):
            out[col] = out[col].round(precision) + 0.0
    return out.to_csv(index=False, float_format=f"%.{precision}f", lineterminator="\n")


def fingerprint(
    component: Component,
    frame: pd.DataFrame,
    sort_by: Sequence[str],
    fp_config: Optional[FingerprintConfig] = None,
) -> str:
    """
    Deterministic content hash of one problem component.

    Args:
        component: Which component the table describes (mixed into the hash).
        frame: Component records.
        sort_by: Key columns for canonical ordering.
        fp_config: Precision and hash length settings.

    Returns:
        Hex fingerprint of fp_config.hash_length characters.

    Example:
        >>> frame = pd.DataFrame({"id": [2, 1], "cost": [1.0, 3.0]})
        >>> fingerprint(Component.UNIT_COST, frame, ["id"]) == fingerprint(
        ...     Component.UNIT_COST, frame.iloc[::-1], ["id"])
        True
    """
    fp_config = fp_config or FingerprintConfig()
    hasher = hashlib.sha256()
    hasher.update(f"{component.value}|".encode("utf-8"))
    hasher.update(canonical_frame(frame, sort_by, fp_config.float_precision).encode("utf-8"))
    return hasher.hexdigest()[: fp_config.hash_length]


def component_frame(
    component: Component,
    units: Sequence[PlanningUnit],
    features: Sequence[Feature],
    options: ProblemOptions,
) -> Tuple[pd.DataFrame, List[str]]:
    """Build the canonical record table (and its key columns) for a component."""
    if component is Component.UNIT_IDENTITY:
        return pd.DataFrame({"id": [u.id for u in units]}, dtype="int64"), ["id"]
    if component is Component.UNIT_COST:
        return (
            pd.DataFrame(
                {"id": [u.id for u in units], "cost": [float(u.cost) for u in units]}
            ),
            ["id"],
        )
    if component is Component.UNIT_STATUS:
        return (
            pd.DataFrame(
                {
                    "id": [u.id for u in units],
                    "status": [u.status.marxan_code for u in units],
                }
            ),
            ["id"],
        )
    if component is Component.ADJACENCY:
        edges = {}
        for u in units:
            for other, length in u.neighbours:
                edges[(min(u.id, other), max(u.id, other))] = float(length)
        frame = pd.DataFrame(
            [(a, b, length) for (a, b), length in edges.items()],
            columns=["id1", "id2", "boundary"],
        )
        frame["boundary"] = frame["boundary"].astype(float)
        return frame, ["id1", "id2"]
    if component is Component.FEATURE_IDENTITY:
        return (
            pd.DataFrame(
                {"id": [f.id for f in features], "name": [str(f.name) for f in features]}
            ),
            ["id"],
        )
    if component is Component.FEATURE_TARGET:
        return (
            pd.DataFrame(
                {
                    "id": [f.id for f in features],
                    "target_type": [f.target.kind.value for f in features],
                    "target": [float(f.target.value) for f in features],
                }
            ),
            ["id"],
        )
    if component is Component.FEATURE_SPF:
        return (
            pd.DataFrame(
                {"id": [f.id for f in features], "spf": [float(f.spf) for f in features]}
            ),
            ["id"],
        )
    if component is Component.INCIDENCE:
        rows = [(f.id, uid, float(a)) for f in features for uid, a in f.amounts if a != 0]
        frame = pd.DataFrame(rows, columns=["species", "pu", "amount"])
        frame["amount"] = frame["amount"].astype(float)
        return frame, ["species", "pu"]
    if component is Component.BLM:
        return pd.DataFrame({"blm": [float(options.blm)]}), ["blm"]
    if component is Component.REPLICATES:
        return pd.DataFrame({"replicates": [int(options.replicates)]}), ["replicates"]
    raise ValueError(f"Unknown component: {component}")


def compute_component_fingerprints(
    units: Sequence[PlanningUnit],
    features: Sequence[Feature],
    options: ProblemOptions,
    fp_config: Optional[FingerprintConfig] = None,
    components: Optional[Iterable[Component]] = None,
) -> Dict[Component, str]:
    """
    Fingerprint the requested components (all components by default).

    The update engine passes only the components an overlay touches.
    """
    selected = list(components) if components is not None else list(Component)
    result: Dict[Component, str] = {}
    for component in selected:
        frame, keys = component_frame(component, units, features, options)
        result[component] = fingerprint(component, frame, keys, fp_config)
    return result


def compute_artifact_fingerprints(
    component_fps: Mapping[Component, str],
    fp_config: Optional[FingerprintConfig] = None,
) -> Dict[ArtifactKind, str]:
    """
    Combine component fingerprints into one fingerprint per artifact kind.

    An artifact's fingerprint depends only on the components listed for it in
    ARTIFACT_DEPENDENCIES, so changes to any other component leave it intact.
    """
    fp_config = fp_config or FingerprintConfig()
    result: Dict[ArtifactKind, str] = {}
    for kind, deps in ARTIFACT_DEPENDENCIES.items():
        parts = sorted(f"{c.value}={component_fps[c]}" for c in deps)
        combined = f"{kind.value}|" + "|".join(parts)
        result[kind] = hashlib.sha256(combined.encode("utf-8")).hexdigest()[
            : fp_config.hash_length
        ]
    return result


# ═══════════════════════════════════════════════════════════════════════════
# 📥 INPUT NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════════


def _as_frame(table: TableLike) -> pd.DataFrame:
    """Convert a DataFrame / list of dicts / list of dataclasses to a DataFrame."""
    if table is None:
        return pd.DataFrame()
    if isinstance(table, pd.DataFrame):
        return table.copy()
    rows = []
    for item in table:
        if isinstance(item, Mapping):
            rows.append(dict(item))
        elif hasattr(item, "as_dict"):
            rows.append(item.as_dict())
        else:
            raise ValidationError(f"Unsupported record type: {type(item).__name__}")
    return pd.DataFrame(rows)


def _pick_column(frame: pd.DataFrame, aliases: Sequence[str]) -> Optional[str]:
    lowered = {str(c).lower(): c for c in frame.columns}
    for alias in aliases:
        if alias in lowered:
            return lowered[alias]
    return None


def _is_finite_number(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def _is_integer_id(value: Any) -> bool:
    return _is_finite_number(value) and float(value) == int(float(value))


def _is_default_index(index: pd.Index) -> bool:
    return isinstance(index, pd.RangeIndex) and index.start == 0 and index.step == 1


def _normalize_options(
    options: Union[ProblemOptions, Mapping[str, Any], None],
    app_config: AppConfig,
    problems: List[str],
) -> ProblemOptions:
    defaults = app_config.problem_defaults
    if isinstance(options, ProblemOptions):
        opts = options
    else:
        d = dict(options or {})
        opts = ProblemOptions(
            blm=d.get("blm", defaults.blm),
            replicates=d.get("replicates", defaults.replicates),
            concurrency=d.get("concurrency", defaults.concurrency),
            seed=d.get("seed", defaults.seed),
            name=d.get("name", defaults.name),
        )
    if not _is_finite_number(opts.blm) or float(opts.blm) < 0:
        problems.append(f"BLM must be a finite number >= 0, got {opts.blm!r}")
    if not isinstance(opts.replicates, (int, np.integer)) or opts.replicates < 1:
        problems.append(f"replicate count must be an integer >= 1, got {opts.replicates!r}")
    if not isinstance(opts.concurrency, (int, np.integer)) or opts.concurrency < 1:
        problems.append(f"concurrency must be an integer >= 1, got {opts.concurrency!r}")
    return opts


def _parse_units(
    units: TableLike,
    problems: List[str],
) -> Tuple[List[Dict[str, Any]], Dict[int, Any]]:
    """Validate unit rows. Returns (rows in input order, id -> geometry)."""
    geometries: Dict[int, Any] = {}
    if units is not None and not isinstance(units, pd.DataFrame):
        units = list(units)
        for item in units:
            if isinstance(item, PlanningUnit):
                geometries[item.id] = item.geometry
    frame = _as_frame(units)
    if frame.empty:
        problems.append("no planning units supplied")
        return [], geometries

    id_col = _pick_column(frame, UNIT_ID_ALIASES)
    cost_col = _pick_column(frame, ("cost",))
    status_col = _pick_column(frame, ("status",))
    if id_col is None or cost_col is None:
        problems.append("unit table needs 'id' and 'cost' columns")
        return [], geometries
    geom_col = _pick_column(frame, ("geometry",))

    rows: List[Dict[str, Any]] = []
    seen = set()
    for i, rec in enumerate(frame.to_dict("records")):
        raw_id = rec[id_col]
        if not _is_integer_id(raw_id):
            problems.append(f"unit row {i}: id {raw_id!r} is not an integer")
            continue
        uid = int(float(raw_id))
        if uid in seen:
            problems.append(f"unit id {uid} is not unique")
            continue
        seen.add(uid)

        cost = rec[cost_col]
        if not _is_finite_number(cost):
            problems.append(f"unit {uid}: cost {cost!r} is not a finite number")
            continue
        if float(cost) < 0:
            problems.append(f"unit {uid}: cost {cost} is negative")
            continue

        raw_status = rec[status_col] if status_col is not None else None
        if raw_status is None or (isinstance(raw_status, float) and math.isnan(raw_status)):
            raw_status = UnitStatus.AVAILABLE
        try:
            status = UnitStatus.from_value(raw_status)
        except ValueError:
            problems.append(f"unit {uid}: status {raw_status!r} is not recognised")
            continue

        if geom_col is not None:
            geometries[uid] = rec[geom_col]
        rows.append({"id": uid, "cost": float(cost), "status": status})
    return rows, geometries


def _target_from_record(rec: Mapping[str, Any], fid: int, problems: List[str]) -> Optional[TargetSpec]:
    lowered = {str(k).lower(): v for k, v in rec.items()}
    kind_raw = lowered.get("target_type")
    if kind_raw is not None and "target" in lowered:
        try:
            kind = TargetKind(str(kind_raw).lower())
        except ValueError:
            problems.append(f"feature {fid}: target_type {kind_raw!r} is not 'prop' or 'amount'")
            return None
        value = lowered["target"]
    elif _is_finite_number(lowered.get("prop")):
        kind, value = TargetKind.PROPORTION, lowered["prop"]
    elif _is_finite_number(lowered.get("amount")):
        kind, value = TargetKind.AMOUNT, lowered["amount"]
    elif "target" in lowered:
        kind, value = TargetKind.AMOUNT, lowered["target"]
    else:
        problems.append(f"feature {fid}: no target supplied")
        return None
    if not _is_finite_number(value):
        problems.append(f"feature {fid}: target {value!r} is not a finite number")
        return None
    target = TargetSpec(kind, float(value))
    error = target.domain_error()
    if error:
        problems.append(f"feature {fid}: {error}")
        return None
    return target


def _parse_features(
    features: TableLike,
    problems: List[str],
) -> Tuple[List[Dict[str, Any]], Dict[int, Tuple[Tuple[int, float], ...]]]:
    """Validate feature rows. Returns (rows in input order, id -> embedded amounts)."""
    embedded: Dict[int, Tuple[Tuple[int, float], ...]] = {}
    if features is not None and not isinstance(features, pd.DataFrame):
        features = list(features)
        for item in features:
            if isinstance(item, Feature):
                embedded[item.id] = item.amounts
    frame = _as_frame(features)
    if frame.empty:
        problems.append("no features supplied")
        return [], embedded

    id_col = _pick_column(frame, FEATURE_ID_ALIASES)
    if id_col is None:
        problems.append("feature table needs an 'id' column")
        return [], embedded

    rows: List[Dict[str, Any]] = []
    seen = set()
    for i, rec in enumerate(frame.to_dict("records")):
        raw_id = rec[id_col]
        if not _is_integer_id(raw_id):
            problems.append(f"feature row {i}: id {raw_id!r} is not an integer")
            continue
        fid = int(float(raw_id))
        if fid in seen:
            problems.append(f"feature id {fid} is not unique")
            continue
        seen.add(fid)

        target = _target_from_record(rec, fid, problems)
        if target is None:
            continue
        lowered = {str(k).lower(): v for k, v in rec.items()}
        spf = lowered.get("spf", 1.0)
        if not _is_finite_number(spf) or float(spf) < 0:
            problems.append(f"feature {fid}: spf {spf!r} must be a finite number >= 0")
            continue
        name = lowered.get("name")
        if name is None or (isinstance(name, float) and math.isnan(name)):
            name = f"feature_{fid}"
        rows.append({"id": fid, "name": str(name), "target": target, "spf": float(spf)})
    return rows, embedded


def _parse_incidence(
    incidence: Union[pd.DataFrame, np.ndarray, Sequence[Mapping[str, Any]], None],
    unit_order: Sequence[int],
    feature_order: Sequence[int],
    problems: List[str],
) -> Optional[Dict[int, Dict[int, float]]]:
    """
    Parse incidence into feature id -> {unit id: amount}.

    Long format (species, pu, amount) is matched by id. Dense format must have
    exactly one row per planning unit; rows align on an explicit index when it
    holds the unit ids, otherwise on the unit input order. Columns align on
    feature ids when they match, otherwise on the feature input order. numpy
    arrays and default RangeIndex rows are always positional.
    """
    if incidence is None:
        return None
    unit_set, feature_set = set(unit_order), set(feature_order)
    amounts: Dict[int, Dict[int, float]] = {fid: {} for fid in feature_order}

    positional = isinstance(incidence, np.ndarray)
    if positional:
        incidence = pd.DataFrame(incidence)
    frame = _as_frame(incidence)

    species_col = _pick_column(frame, ("species", "feature"))
    pu_col = _pick_column(frame, ("pu", "unit", "puid"))
    amount_col = _pick_column(frame, ("amount",))
    if species_col is not None and pu_col is not None and amount_col is not None:
        for rec in frame.to_dict("records"):
            fid, uid, amount = rec[species_col], rec[pu_col], rec[amount_col]
            if not (_is_integer_id(fid) and _is_integer_id(uid)):
                problems.append(f"incidence record {rec!r} has a non-integer id")
                continue
            fid, uid = int(float(fid)), int(float(uid))
            if fid not in feature_set:
                problems.append(f"incidence record names unknown feature {fid}")
                continue
            if uid not in unit_set:
                problems.append(f"incidence record names unknown unit {uid}")
                continue
            if not _is_finite_number(amount) or float(amount) < 0:
                problems.append(f"incidence amount {amount!r} for feature {fid}, unit {uid} is invalid")
                continue
            amounts[fid][uid] = amounts[fid].get(uid, 0.0) + float(amount)
        return amounts

    # Dense unit x feature table
    if len(frame) != len(unit_order):
        problems.append(
            f"incidence table has {len(frame)} rows but there are {len(unit_order)} planning units"
        )
        return amounts
    index_ids: List[int] = []
    if not (positional or _is_default_index(frame.index)):
        try:
            index_ids = [int(v) for v in frame.index]
        except (TypeError, ValueError):
            index_ids = []
    row_ids = index_ids if set(index_ids) == unit_set else list(unit_order)

    col_ids: List[int] = []
    if not positional:
        try:
            col_ids = [int(c) for c in frame.columns]
        except (TypeError, ValueError):
            col_ids = []
    if set(col_ids) != feature_set:
        if len(frame.columns) != len(feature_order):
            problems.append(
                f"incidence table has {len(frame.columns)} columns but there are "
                f"{len(feature_order)} features"
            )
            return amounts
        col_ids = list(feature_order)

    values = frame.apply(pd.to_numeric, errors="coerce").to_numpy(dtype=float)
    if np.isnan(values).any() or (values < 0).any():
        problems.append("incidence table contains missing, non-numeric or negative amounts")
        return amounts
    for j, fid in enumerate(col_ids):
        for i, uid in enumerate(row_ids):
            if values[i, j] != 0:
                amounts[fid][uid] = float(values[i, j])
    return amounts


def _parse_boundaries(
    boundaries: TableLike,
    unit_set: set,
    problems: List[str],
) -> Dict[Tuple[int, int], float]:
    """Parse bound.dat style records into canonical (min id, max id) -> length."""
    frame = _as_frame(boundaries)
    edges: Dict[Tuple[int, int], float] = {}
    if frame.empty:
        return edges
    id1_col = _pick_column(frame, ("id1",))
    id2_col = _pick_column(frame, ("id2",))
    len_col = _pick_column(frame, ("boundary", "length"))
    if id1_col is None or id2_col is None or len_col is None:
        problems.append("boundary table needs 'id1', 'id2' and 'boundary' columns")
        return edges
    for rec in frame.to_dict("records"):
        a, b, length = rec[id1_col], rec[id2_col], rec[len_col]
        if not (_is_integer_id(a) and _is_integer_id(b)):
            problems.append(f"boundary record {rec!r} has a non-integer id")
            continue
        a, b = int(float(a)), int(float(b))
        if a not in unit_set or b not in unit_set:
            problems.append(f"boundary record ({a}, {b}) names an unknown unit")
            continue
        if not _is_finite_number(length) or float(length) < 0:
            problems.append(f"boundary ({a}, {b}): length {length!r} must be >= 0")
            continue
        key = (min(a, b), max(a, b))
        if key in edges and not math.isclose(edges[key], float(length)):
            problems.append(f"boundary ({a}, {b}) listed twice with different lengths")
            continue
        edges[key] = float(length)
    return edges


# ═══════════════════════════════════════════════════════════════════════════
# 🏗️ ASSEMBLY
# ═══════════════════════════════════════════════════════════════════════════


def assemble(
    units: TableLike,
    features: TableLike,
    options: Union[ProblemOptions, Mapping[str, Any], None] = None,
    incidence: Union[pd.DataFrame, np.ndarray, Sequence[Mapping[str, Any]], None] = None,
    boundaries: TableLike = None,
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> ProblemDefinition:
    """
    Validate raw tables and build an immutable ProblemDefinition.

    All validation problems are collected and reported together in a single
    ValidationError.

    Args:
        units: Planning unit table (id, cost, status[, geometry]) or PlanningUnits.
        features: Feature table (id, name, target/target_type|prop|amount, spf)
            or Features (whose embedded amounts are used when incidence is None).
        options: ProblemOptions or dict (blm, replicates, concurrency, seed, name).
        incidence: Long (species, pu, amount) or dense unit x feature table.
        boundaries: Boundary records (id1, id2, boundary); id1 == id2 is the
            external boundary of that unit. When None, neighbours embedded in
            PlanningUnit inputs are used.
        config: CONFIG dict or AppConfig.

    Returns:
        ProblemDefinition with units/features sorted by id and fingerprints set.

    Raises:
        ValidationError: Non-unique ids, negative cost, unknown status,
            out-of-domain target, incidence/unit count mismatch, unknown ids in
            incidence or boundary records.
    """
    app_config = normalize_config(config)
    problems: List[str] = []

    opts = _normalize_options(options, app_config, problems)
    embedded_neighbours: Dict[int, Tuple[Tuple[int, float], ...]] = {}
    if units is not None and not isinstance(units, pd.DataFrame):
        units = list(units)
        embedded_neighbours = {
            u.id: u.neighbours for u in units if isinstance(u, PlanningUnit)
        }
    unit_rows, geometries = _parse_units(units, problems)
    feature_rows, embedded_amounts = _parse_features(features, problems)

    unit_order = [r["id"] for r in unit_rows]
    feature_order = [r["id"] for r in feature_rows]
    amounts = _parse_incidence(incidence, unit_order, feature_order, problems)
    if amounts is None:
        unit_set = set(unit_order)
        amounts = {}
        for fid in feature_order:
            pairs = embedded_amounts.get(fid, ())
            unknown = [uid for uid, _ in pairs if uid not in unit_set]
            if unknown:
                problems.append(f"feature {fid} holds amounts in unknown units {unknown}")
            amounts[fid] = {uid: float(a) for uid, a in pairs if uid in unit_set}

    if boundaries is not None:
        edges = _parse_boundaries(boundaries, set(unit_order), problems)
    else:
        records = [
            {"id1": uid, "id2": other, "boundary": length}
            for uid, pairs in embedded_neighbours.items()
            for other, length in pairs
        ]
        edges = _parse_boundaries(records, set(unit_order), problems)

    if problems:
        logger.warning(f"❌ Assembly rejected: {len(problems)} problem(s)")
        for p in problems[:20]:
            logger.warning(f"   - {p}")
        raise ValidationError(
            f"Invalid problem input: {problems[0]}"
            + (f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""),
            problems,
        )

    neighbours: Dict[int, Dict[int, float]] = {uid: {} for uid in unit_order}
    for (a, b), length in edges.items():
        neighbours[a][b] = length
        neighbours[b][a] = length

    built_units = tuple(
        PlanningUnit(
            id=r["id"],
            cost=r["cost"],
            status=r["status"],
            neighbours=tuple(sorted(neighbours[r["id"]].items())),
            geometry=geometries.get(r["id"]),
        )
        for r in sorted(unit_rows, key=lambda r: r["id"])
    )
    built_features = tuple(
        Feature(
            id=r["id"],
            name=r["name"],
            target=r["target"],
            spf=r["spf"],
            amounts=tuple(sorted((uid, a) for uid, a in amounts[r["id"]].items() if a != 0)),
        )
        for r in sorted(feature_rows, key=lambda r: r["id"])
    )

    component_fps = compute_component_fingerprints(
        built_units, built_features, opts, app_config.fingerprint
    )
    artifact_fps = compute_artifact_fingerprints(component_fps, app_config.fingerprint)

    problem = ProblemDefinition(
        units=built_units,
        features=built_features,
        options=opts,
        component_fingerprints=MappingProxyType(component_fps),
        fingerprints=MappingProxyType(artifact_fps),
    )
    logger.info(
        f"🧩 Assembled '{opts.name}': {len(built_units)} units, "
        f"{len(built_features)} features, {len(edges)} boundary records"
    )
    logger.debug(f"   Fingerprints: { {k.value: v for k, v in artifact_fps.items()} }")
    return problem
