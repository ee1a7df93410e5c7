"""Data models package for planning problems and portfolio results."""

from .data_models import (
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

from .portfolio import (
    Portfolio,
    Solution,
    build_portfolio,
    # Portfolio metric accessors
    boundary,
    cost,
    score,
    selection_frequency,
    shortfall,
    targets_met,
)

__all__ = [
    # Problem models
    "ARTIFACT_DEPENDENCIES",
    "ArtifactKind",
    "Component",
    "Feature",
    "PlanningUnit",
    "ProblemDefinition",
    "ProblemOptions",
    "TargetKind",
    "TargetSpec",
    "UnitStatus",
    # Portfolio models
    "Portfolio",
    "Solution",
    "build_portfolio",
    "boundary",
    "cost",
    "score",
    "selection_frequency",
    "shortfall",
    "targets_met",
]
