"""
Shared fixtures for Marxan Portfolio tests.

Problems used across modules:
- grid_tables: 2x2 grid of unit squares (ids 1-4) with two features
- three_unit_problem: 3 units of cost 1 and one feature needing 2 units
"""

import pytest


TEST_CONFIG = {
    "solver": {"max_attempts": 3, "max_failure_fraction": 0.5, "poll_interval_s": 0.01, "base_seed": 1234},
    "cache": {"max_entries": 64, "log_cache_hits": False},
    "parallel": {"max_workers": 2, "backend": "threading", "verbose": 0},
    "analytics": {"mds_seed": 0},
}


def make_grid_tables():
    """
    2x2 grid:   1 | 2
                --+--
                3 | 4
    Every unit is a unit square: shared edges have length 1, each unit has
    an external boundary of 2.
    """
    units = [
        {"id": 1, "cost": 1.0, "status": 0},
        {"id": 2, "cost": 2.0, "status": 0},
        {"id": 3, "cost": 3.0, "status": 0},
        {"id": 4, "cost": 4.0, "status": 0},
    ]
    features = [
        {"id": 10, "name": "heath", "target": 0.5, "target_type": "prop", "spf": 2.0},
        {"id": 20, "name": "wetland", "target": 3.0, "target_type": "amount", "spf": 1.0},
    ]
    incidence = [
        {"species": 10, "pu": 1, "amount": 2.0},
        {"species": 10, "pu": 2, "amount": 2.0},
        {"species": 20, "pu": 3, "amount": 1.5},
        {"species": 20, "pu": 4, "amount": 1.5},
        {"species": 20, "pu": 1, "amount": 1.0},
    ]
    boundaries = [
        {"id1": 1, "id2": 2, "boundary": 1.0},
        {"id1": 1, "id2": 3, "boundary": 1.0},
        {"id1": 2, "id2": 4, "boundary": 1.0},
        {"id1": 3, "id2": 4, "boundary": 1.0},
        {"id1": 1, "id2": 1, "boundary": 2.0},
        {"id1": 2, "id2": 2, "boundary": 2.0},
        {"id1": 3, "id2": 3, "boundary": 2.0},
        {"id1": 4, "id2": 4, "boundary": 2.0},
    ]
    return units, features, incidence, boundaries


@pytest.fixture
def test_config():
    return TEST_CONFIG


@pytest.fixture
def grid_tables():
    return make_grid_tables()


@pytest.fixture
def grid_problem(test_config):
    from Marxan_Portfolio.problem_assembler import assemble

    units, features, incidence, boundaries = make_grid_tables()
    return assemble(
        units,
        features,
        options={"blm": 0.5, "replicates": 4, "name": "grid"},
        incidence=incidence,
        boundaries=boundaries,
        config=test_config,
    )


@pytest.fixture
def three_unit_problem(test_config):
    from Marxan_Portfolio.problem_assembler import assemble

    units = [{"id": uid, "cost": 1.0, "status": "available"} for uid in (1, 2, 3)]
    features = [{"id": 1, "name": "f1", "target": 2.0, "target_type": "amount", "spf": 1.0}]
    incidence = [{"species": 1, "pu": uid, "amount": 1.0} for uid in (1, 2, 3)]
    return assemble(
        units,
        features,
        options={"replicates": 4, "name": "three"},
        incidence=incidence,
        config=test_config,
    )


@pytest.fixture
def cache():
    from Marxan_Portfolio.parallel.artifact_cache import ArtifactCache

    cache = ArtifactCache(max_entries=64, log_cache_hits=False)
    yield cache
    cache.shutdown()
