"""
Update Engine - Incremental Re-parametrization

ARCHITECTURAL OVERVIEW:
=======================
Responsibility: Apply a ParameterOverlay (named set of overrides) to a base
ProblemDefinition, producing a derived definition whose artifact fingerprints
change only where the overlay touches a declared dependency.

Key Insight: derive() is fingerprint bookkeeping only. It never builds an
artifact; unchanged artifacts keep their fingerprint and are therefore reused
from the ArtifactCache on next access, changed ones are rebuilt lazily.

Merge semantics:
- Scalars (blm, replicates): last write wins
- Per-id maps (targets, spf, costs, statuses): merge by key, later overlays
  override only the ids they list
- merge()/compose() are associative

Structural sharing:
- Units/features not listed in the overlay are the SAME objects as in base
- If no unit changes, the units tuple itself is shared (same for features)

For Navigation: Use VS Code outline (Ctrl+Shift+O)
"""

import logging
import math
from dataclasses import dataclass, field, replace
from functools import reduce
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Union

import numpy as np

from Marxan_Portfolio.config_types import AppConfig, normalize_config
from Marxan_Portfolio.exceptions import ValidationError
from Marxan_Portfolio.models.data_models import (
    ARTIFACT_DEPENDENCIES,
    ArtifactKind,
    Component,
    ProblemDefinition,
    TargetKind,
    TargetSpec,
    UnitStatus,
)
from Marxan_Portfolio.problem_assembler import (
    compute_artifact_fingerprints,
    compute_component_fingerprints,
)

logger = logging.getLogger("MXP.UpdateEngine")


def _frozen(mapping: Optional[Mapping[int, Any]]) -> Mapping[int, Any]:
    return MappingProxyType(dict(mapping or {}))


# ═══════════════════════════════════════════════════════════════════════════
# 📝 PARAMETER OVERLAY
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ParameterOverlay:
    """
    Named set of field-level overrides applied atomically by derive().

    Attributes:
        name: Label recorded in the derived problem's lineage.
        targets: Feature id -> TargetSpec.
        spf: Feature id -> species penalty factor.
        costs: Unit id -> cost.
        statuses: Unit id -> UnitStatus.
        blm: New boundary length modifier (None = inherit).
        replicates: New replicate count (None = inherit).
    """

    name: str = "overlay"
    targets: Mapping[int, TargetSpec] = field(default_factory=dict)
    spf: Mapping[int, float] = field(default_factory=dict)
    costs: Mapping[int, float] = field(default_factory=dict)
    statuses: Mapping[int, UnitStatus] = field(default_factory=dict)
    blm: Optional[float] = None
    replicates: Optional[int] = None

    def __post_init__(self) -> None:
        for attr in ("targets", "spf", "costs", "statuses"):
            object.__setattr__(self, attr, _frozen(getattr(self, attr)))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ParameterOverlay":
        """
        Build an overlay from a plain dictionary.

        Targets may be TargetSpec, a bare number (proportion) or a
        {"value": .., "type": "prop"|"amount"} mapping.
        """
        builder = OverlayBuilder(d.get("name", "overlay"))
        for fid, target in dict(d.get("targets", {})).items():
            if isinstance(target, Mapping):
                builder.target(fid, target.get("value"), target.get("type", "prop"))
            else:
                builder.target(fid, target)
        for fid, value in dict(d.get("spf", {})).items():
            builder.spf(fid, value)
        for uid, value in dict(d.get("costs", {})).items():
            builder.cost(uid, value)
        for uid, value in dict(d.get("statuses", {})).items():
            builder.status(uid, value)
        if d.get("blm") is not None:
            builder.blm(d["blm"])
        if d.get("replicates") is not None:
            builder.replicates(d["replicates"])
        return builder.build()

    def merge(self, other: "ParameterOverlay") -> "ParameterOverlay":
        """Combine with a later overlay (scalars last-write-wins, maps by key)."""
        return ParameterOverlay(
            name=f"{self.name}+{other.name}",
            targets={**self.targets, **other.targets},
            spf={**self.spf, **other.spf},
            costs={**self.costs, **other.costs},
            statuses={**self.statuses, **other.statuses},
            blm=other.blm if other.blm is not None else self.blm,
            replicates=other.replicates if other.replicates is not None else self.replicates,
        )

    def touched_components(self) -> FrozenSet[Component]:
        touched: Set[Component] = set()
        if self.targets:
            touched.add(Component.FEATURE_TARGET)
        if self.spf:
            touched.add(Component.FEATURE_SPF)
        if self.costs:
            touched.add(Component.UNIT_COST)
        if self.statuses:
            touched.add(Component.UNIT_STATUS)
        if self.blm is not None:
            touched.add(Component.BLM)
        if self.replicates is not None:
            touched.add(Component.REPLICATES)
        return frozenset(touched)

    def affected_artifacts(self) -> FrozenSet[ArtifactKind]:
        """Artifact kinds whose fingerprint this overlay may change."""
        touched = self.touched_components()
        return frozenset(
            kind for kind, deps in ARTIFACT_DEPENDENCIES.items() if deps & touched
        )

    def is_empty(self) -> bool:
        return not self.touched_components()


def compose(*overlays: ParameterOverlay) -> ParameterOverlay:
    """Merge overlays left to right; compose() with no arguments is the identity."""
    if not overlays:
        return ParameterOverlay(name="identity")
    return reduce(lambda a, b: a.merge(b), overlays)


class OverlayBuilder:
    """
    Fluent builder for ParameterOverlay.

    Example:
        overlay = (
            OverlayBuilder("strict-targets")
            .target(1, 0.5)
            .cost(12, 3.0)
            .blm(0.1)
            .build()
        )
    """

    def __init__(self, name: str = "overlay"):
        self._name = name
        self._targets: Dict[int, TargetSpec] = {}
        self._spf: Dict[int, float] = {}
        self._costs: Dict[int, float] = {}
        self._statuses: Dict[int, UnitStatus] = {}
        self._blm: Optional[float] = None
        self._replicates: Optional[int] = None

    def named(self, name: str) -> "OverlayBuilder":
        self._name = name
        return self

    def target(
        self,
        feature_id: int,
        value: Union[TargetSpec, float],
        kind: Union[TargetKind, str] = TargetKind.PROPORTION,
    ) -> "OverlayBuilder":
        if isinstance(value, TargetSpec):
            spec = value
        else:
            try:
                spec = TargetSpec(TargetKind(kind), float(value))
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid target for feature {feature_id}: {e}") from e
        self._targets[int(feature_id)] = spec
        return self

    def spf(self, feature_id: int, value: float) -> "OverlayBuilder":
        self._spf[int(feature_id)] = value
        return self

    def cost(self, unit_id: int, value: float) -> "OverlayBuilder":
        self._costs[int(unit_id)] = value
        return self

    def status(self, unit_id: int, value: Union[UnitStatus, str, int]) -> "OverlayBuilder":
        try:
            self._statuses[int(unit_id)] = UnitStatus.from_value(value)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return self

    def blm(self, value: float) -> "OverlayBuilder":
        self._blm = value
        return self

    def replicates(self, count: int) -> "OverlayBuilder":
        self._replicates = count
        return self

    def build(self) -> ParameterOverlay:
        return ParameterOverlay(
            name=self._name,
            targets=self._targets,
            spf=self._spf,
            costs=self._costs,
            statuses=self._statuses,
            blm=self._blm,
            replicates=self._replicates,
        )


# ═══════════════════════════════════════════════════════════════════════════
# ✅ VALIDATION
# ═══════════════════════════════════════════════════════════════════════════


def _non_negative(value: Any) -> bool:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(v) and v >= 0


def validate_overlay(base: ProblemDefinition, delta: ParameterOverlay) -> List[str]:
    """Collect every reason the overlay cannot be applied to base."""
    problems: List[str] = []
    unit_ids = base.unit_index
    feature_ids = base.feature_index

    for fid, target in delta.targets.items():
        if fid not in feature_ids:
            problems.append(f"target override names unknown feature {fid}")
        elif not isinstance(target, TargetSpec):
            problems.append(f"target override for feature {fid} is not a TargetSpec")
        else:
            err = target.domain_error()
            if err:
                problems.append(f"feature {fid}: {err}")
    for fid, value in delta.spf.items():
        if fid not in feature_ids:
            problems.append(f"spf override names unknown feature {fid}")
        elif not _non_negative(value):
            problems.append(f"feature {fid}: spf must be a finite number >= 0, got {value!r}")
    for uid, value in delta.costs.items():
        if uid not in unit_ids:
            problems.append(f"cost override names unknown unit {uid}")
        elif not _non_negative(value):
            problems.append(f"unit {uid}: cost must be a finite number >= 0, got {value!r}")
    for uid, value in delta.statuses.items():
        if uid not in unit_ids:
            problems.append(f"status override names unknown unit {uid}")
        else:
            try:
                UnitStatus.from_value(value)
            except ValueError as e:
                problems.append(f"unit {uid}: {e}")
    if delta.blm is not None and not _non_negative(delta.blm):
        problems.append(f"BLM must be a finite number >= 0, got {delta.blm!r}")
    if delta.replicates is not None and (
        isinstance(delta.replicates, bool)
        or not isinstance(delta.replicates, (int, np.integer))
        or delta.replicates < 1
    ):
        problems.append(f"replicate count must be an integer >= 1, got {delta.replicates!r}")
    return problems


# ═══════════════════════════════════════════════════════════════════════════
# 🔀 DERIVATION
# ═══════════════════════════════════════════════════════════════════════════


def derive(
    base: ProblemDefinition,
    delta: Union[ParameterOverlay, Mapping[str, Any]],
    config: Union[Dict[str, Any], AppConfig, None] = None,
) -> ProblemDefinition:
    """
    Apply an overlay to a base ProblemDefinition.

    Only the components the overlay touches are re-fingerprinted; artifact
    fingerprints are then recombined from component fingerprints. No
    artifact is computed.

    Args:
        base: Problem to derive from (never modified).
        delta: ParameterOverlay or dictionary accepted by ParameterOverlay.from_dict.
        config: CONFIG dict or AppConfig (fingerprint precision).

    Returns:
        New ProblemDefinition sharing unchanged units/features with base.

    Raises:
        ValidationError: Unknown ids, negative cost/spf/BLM, unrecognised
            status, out-of-domain target or replicate count < 1.
    """
    app_config = normalize_config(config)
    if not isinstance(delta, ParameterOverlay):
        delta = ParameterOverlay.from_dict(delta)

    problems = validate_overlay(base, delta)
    if problems:
        logger.warning(f"❌ Overlay '{delta.name}' rejected: {len(problems)} problem(s)")
        for p in problems[:20]:
            logger.warning(f"   - {p}")
        raise ValidationError(
            f"Invalid overlay '{delta.name}': {problems[0]}"
            + (f" (+{len(problems) - 1} more)" if len(problems) > 1 else ""),
            problems,
        )

    units = base.units
    if delta.costs or delta.statuses:
        new_units = []
        for unit in units:
            cost = float(delta.costs.get(unit.id, unit.cost))
            status = UnitStatus.from_value(delta.statuses.get(unit.id, unit.status))
            if cost != unit.cost or status is not unit.status:
                unit = replace(unit, cost=cost, status=status)
            new_units.append(unit)
        if any(a is not b for a, b in zip(new_units, units)):
            units = tuple(new_units)

    features = base.features
    if delta.targets or delta.spf:
        new_features = []
        for feature in features:
            target = delta.targets.get(feature.id, feature.target)
            spf = float(delta.spf.get(feature.id, feature.spf))
            if target != feature.target or spf != feature.spf:
                feature = replace(feature, target=target, spf=spf)
            new_features.append(feature)
        if any(a is not b for a, b in zip(new_features, features)):
            features = tuple(new_features)

    options = base.options
    if delta.blm is not None and float(delta.blm) != options.blm:
        options = replace(options, blm=float(delta.blm))
    if delta.replicates is not None and int(delta.replicates) != options.replicates:
        options = replace(options, replicates=int(delta.replicates))

    touched = delta.touched_components()
    component_fps = dict(base.component_fingerprints)
    component_fps.update(
        compute_component_fingerprints(
            units, features, options, app_config.fingerprint, components=touched
        )
    )
    artifact_fps = compute_artifact_fingerprints(component_fps, app_config.fingerprint)

    derived = ProblemDefinition(
        units=units,
        features=features,
        options=options,
        component_fingerprints=MappingProxyType(component_fps),
        fingerprints=MappingProxyType(artifact_fps),
        lineage=base.lineage + (delta.name,),
    )

    changed = invalidated_artifacts(base, derived)
    reused = [k.value for k in ArtifactKind if k not in changed]
    logger.info(
        f"🔀 Derived '{base.name}' + '{delta.name}': "
        f"reusing {reused or 'nothing'}, invalidated {[k.value for k in changed] or 'nothing'}"
    )
    return derived


def invalidated_artifacts(
    base: ProblemDefinition, derived: ProblemDefinition
) -> FrozenSet[ArtifactKind]:
    """Artifact kinds whose fingerprints differ between two problems."""
    return frozenset(
        kind
        for kind in ArtifactKind
        if base.fingerprints.get(kind) != derived.fingerprints.get(kind)
    )
