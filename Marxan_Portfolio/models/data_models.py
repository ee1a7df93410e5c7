"""
Typed data models for planning problems.

Architectural Overview:
=======================
This module contains the immutable dataclasses describing a planning problem:
planning units, features, run options and the ProblemDefinition snapshot that
ties them together with its fingerprint table.

Key Interactions:
-----------------
- Input: problem_assembler.assemble() validates raw tables and creates instances
- Derivation: update_engine.derive() creates NEW instances, sharing unchanged
  units and features by reference
- Output: preprocessing.py builds matrices/tables from a ProblemDefinition
- Navigation: Use VS Code outline (Ctrl+Shift+O) for quick navigation

Data Flow:
----------
1. Assembler builds PlanningUnit/Feature tuples sorted by id
2. Assembler fingerprints each Component and derives ArtifactKind fingerprints
   from ARTIFACT_DEPENDENCIES
3. Update engine re-fingerprints only the components an overlay touches

MODIFICATION POINT: Add new artifact kinds to ArtifactKind and declare their
component dependencies in ARTIFACT_DEPENDENCIES
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# 🏷️ ENUMS SECTION
# ═══════════════════════════════════════════════════════════════════════════


class UnitStatus(Enum):
    """Lock status of a planning unit.

    Marxan encodes status as 0 (available), 1 (available, seeded into the
    initial reserve), 2 (locked in) and 3 (locked out). Code 1 carries no
    meaning for portfolio analysis and is read as AVAILABLE.
    """

    AVAILABLE = "available"
    LOCKED_IN = "locked-in"
    LOCKED_OUT = "locked-out"

    @property
    def marxan_code(self) -> int:
        """Status code written to pu.dat."""
        return {"available": 0, "locked-in": 2, "locked-out": 3}[self.value]

    @classmethod
    def from_value(cls, value: Any) -> "UnitStatus":
        """Convert an enum, name, alias or Marxan code to UnitStatus.

        Raises:
            ValueError: If the value is not a recognised status.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unrecognised planning unit status: {value!r}")
        if isinstance(value, (int, float)) and float(value).is_integer():
            code = int(value)
            if code in (0, 1):
                return cls.AVAILABLE
            if code == 2:
                return cls.LOCKED_IN
            if code == 3:
                return cls.LOCKED_OUT
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "-").replace(" ", "-")
            if key.isdigit():
                return cls.from_value(int(key))
            for member in cls:
                if member.value == key or member.name.lower().replace("_", "-") == key:
                    return member
        raise ValueError(f"Unrecognised planning unit status: {value!r}")


class TargetKind(Enum):
    """How a feature target is expressed."""

    PROPORTION = "prop"  # Fraction in [0, 1] of the feature's total amount
    AMOUNT = "amount"  # Absolute amount >= 0


class Component(Enum):
    """Independently fingerprinted slices of a ProblemDefinition."""

    UNIT_IDENTITY = "unit_identity"
    UNIT_COST = "unit_cost"
    UNIT_STATUS = "unit_status"
    ADJACENCY = "adjacency"
    FEATURE_IDENTITY = "feature_identity"
    FEATURE_TARGET = "feature_target"
    FEATURE_SPF = "feature_spf"
    INCIDENCE = "incidence"
    BLM = "blm"
    REPLICATES = "replicates"


class ArtifactKind(Enum):
    """Expensive derived artifacts held in the preprocessing cache."""

    BOUNDARY_MATRIX = "boundary_matrix"
    INCIDENCE_MATRIX = "incidence_matrix"
    UNIT_TABLE = "unit_table"
    FEATURE_TABLE = "feature_table"


# Which components can change each artifact's fingerprint. BLM only scales the
# boundary term at evaluation time, so no artifact depends on it.
ARTIFACT_DEPENDENCIES: Mapping[ArtifactKind, FrozenSet[Component]] = MappingProxyType(
    {
        ArtifactKind.BOUNDARY_MATRIX: frozenset(
            {Component.UNIT_IDENTITY, Component.ADJACENCY}
        ),
        ArtifactKind.INCIDENCE_MATRIX: frozenset(
            {Component.UNIT_IDENTITY, Component.FEATURE_IDENTITY, Component.INCIDENCE}
        ),
        ArtifactKind.UNIT_TABLE: frozenset(
            {Component.UNIT_IDENTITY, Component.UNIT_COST, Component.UNIT_STATUS}
        ),
        ArtifactKind.FEATURE_TABLE: frozenset(
            {
                Component.FEATURE_IDENTITY,
                Component.FEATURE_TARGET,
                Component.FEATURE_SPF,
                Component.INCIDENCE,
            }
        ),
    }
)


# ═══════════════════════════════════════════════════════════════════════════
# 🎯 TARGETS
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TargetSpec:
    """Representation target for a feature."""

    kind: TargetKind
    value: float

    @classmethod
    def proportion(cls, value: float) -> "TargetSpec":
        return cls(TargetKind.PROPORTION, float(value))

    @classmethod
    def amount(cls, value: float) -> "TargetSpec":
        return cls(TargetKind.AMOUNT, float(value))

    def domain_error(self) -> Optional[str]:
        """Describe why the target is outside its domain, or None if valid."""
        if self.value != self.value:  # NaN
            return "target is NaN"
        if self.kind is TargetKind.PROPORTION and not 0.0 <= self.value <= 1.0:
            return f"proportion target {self.value} not in [0, 1]"
        if self.kind is TargetKind.AMOUNT and self.value < 0:
            return f"absolute target {self.value} is negative"
        return None

    def resolve(self, total_amount: float) -> float:
        """Absolute amount required given the feature's total amount."""
        if self.kind is TargetKind.PROPORTION:
            return self.value * total_amount
        return self.value


# ═══════════════════════════════════════════════════════════════════════════
# 🏗️ PLANNING UNITS + FEATURES
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PlanningUnit:
    """Atomic parcel eligible for selection.

    neighbours holds (unit id, shared boundary length) pairs sorted by id. A
    pair naming the unit's own id is its external (irreducible) boundary, the
    same convention as a Marxan bound.dat self-edge.

    geometry is an opaque handle owned by the spatial adapter. It is neither
    compared nor fingerprinted.
    """

    id: int
    cost: float
    status: UnitStatus = UnitStatus.AVAILABLE
    neighbours: Tuple[Tuple[int, float], ...] = ()
    geometry: Any = field(default=None, compare=False, repr=False)

    def neighbour_map(self) -> Dict[int, float]:
        return dict(self.neighbours)

    def as_dict(self) -> Dict[str, Any]:
        """Row form used for the unit table (pu.dat columns)."""
        return {"id": self.id, "cost": self.cost, "status": self.status.marxan_code}


@dataclass(frozen=True)
class Feature:
    """Biodiversity feature with a target and sparse per-unit amounts.

    amounts holds (unit id, amount) pairs sorted by unit id; units absent from
    the tuple hold zero.
    """

    id: int
    name: str
    target: TargetSpec
    spf: float = 1.0
    amounts: Tuple[Tuple[int, float], ...] = ()

    @property
    def total_amount(self) -> float:
        return float(sum(a for _, a in self.amounts))

    @property
    def target_amount(self) -> float:
        """Target resolved to an absolute amount."""
        return self.target.resolve(self.total_amount)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "target": self.target.value,
            "target_type": self.target.kind.value,
            "spf": self.spf,
        }


# ═══════════════════════════════════════════════════════════════════════════
# 📦 PROBLEM SNAPSHOT
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ProblemOptions:
    """Global run options carried by a ProblemDefinition."""

    blm: float = 0.0
    replicates: int = 10
    concurrency: int = 1
    seed: Optional[int] = None
    name: str = "scenario"


@dataclass(frozen=True, eq=False)
class ProblemDefinition:
    """Immutable snapshot of a planning problem.

    Created by assemble() and thereafter only by derive(). Equality is by
    identity; compare content with same_content(), which compares fingerprints.

    Attributes:
        units: PlanningUnits sorted by id.
        features: Features sorted by id.
        options: Global run options.
        component_fingerprints: Component -> content fingerprint.
        fingerprints: ArtifactKind -> artifact fingerprint.
        lineage: Names of the overlays applied since assembly, oldest first.
    """

    units: Tuple[PlanningUnit, ...]
    features: Tuple[Feature, ...]
    options: ProblemOptions
    component_fingerprints: Mapping[Component, str]
    fingerprints: Mapping[ArtifactKind, str]
    lineage: Tuple[str, ...] = ()

    @cached_property
    def unit_ids(self) -> Tuple[int, ...]:
        return tuple(u.id for u in self.units)

    @cached_property
    def feature_ids(self) -> Tuple[int, ...]:
        return tuple(f.id for f in self.features)

    @cached_property
    def unit_index(self) -> Dict[int, int]:
        """Unit id -> row position in every unit-indexed artifact."""
        return {uid: i for i, uid in enumerate(self.unit_ids)}

    @cached_property
    def feature_index(self) -> Dict[int, int]:
        return {fid: j for j, fid in enumerate(self.feature_ids)}

    @property
    def n_units(self) -> int:
        return len(self.units)

    @property
    def n_features(self) -> int:
        return len(self.features)

    @property
    def name(self) -> str:
        return self.options.name

    def unit(self, unit_id: int) -> PlanningUnit:
        return self.units[self.unit_index[unit_id]]

    def feature(self, feature_id: int) -> Feature:
        return self.features[self.feature_index[feature_id]]

    def fingerprint(self, kind: ArtifactKind) -> str:
        return self.fingerprints[kind]

    def same_content(self, other: "ProblemDefinition") -> bool:
        """True when both snapshots have identical component fingerprints."""
        return dict(self.component_fingerprints) == dict(other.component_fingerprints)

    def __repr__(self) -> str:
        return (
            f"ProblemDefinition(name={self.name!r}, units={self.n_units}, "
            f"features={self.n_features}, blm={self.options.blm}, "
            f"replicates={self.options.replicates}, lineage={list(self.lineage)})"
        )
