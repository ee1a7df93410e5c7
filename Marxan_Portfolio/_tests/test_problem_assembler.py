"""
Unit tests for the Problem Assembler.

Tests:
1. Fingerprints are independent of input ordering
2. Fingerprints only move for the components whose content changed
3. Validation collects every problem into one ValidationError
4. Input variants (status codes, dense incidence, Marxan column names)

Run with: python -m pytest Marxan_Portfolio/_tests/test_problem_assembler.py -v
"""

import numpy as np
import pandas as pd
import pytest


class TestFingerprintDeterminism:
    """Equal content always yields equal fingerprints."""

    def test_row_order_does_not_change_fingerprints(self, grid_tables, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        first = assemble(units, features, incidence=incidence, boundaries=boundaries, config=test_config)

        swapped_boundaries = [
            {"id1": b["id2"], "id2": b["id1"], "boundary": b["boundary"]} for b in reversed(boundaries)
        ]
        second = assemble(
            list(reversed(units)),
            list(reversed(features)),
            incidence=list(reversed(incidence)),
            boundaries=swapped_boundaries,
            config=test_config,
        )

        assert dict(first.fingerprints) == dict(second.fingerprints)
        assert first.same_content(second)
        assert first is not second

    def test_dataframe_and_records_agree(self, grid_tables, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        from_records = assemble(units, features, incidence=incidence, boundaries=boundaries, config=test_config)
        from_frames = assemble(
            pd.DataFrame(units).sample(frac=1.0, random_state=3),
            pd.DataFrame(features),
            incidence=pd.DataFrame(incidence),
            boundaries=pd.DataFrame(boundaries),
            config=test_config,
        )
        assert dict(from_records.fingerprints) == dict(from_frames.fingerprints)

    def test_float_noise_below_precision_is_ignored(self, grid_tables, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        noisy = [dict(u, cost=u["cost"] + 1e-10) for u in units]
        a = assemble(units, features, incidence=incidence, boundaries=boundaries, config=test_config)
        b = assemble(noisy, features, incidence=incidence, boundaries=boundaries, config=test_config)
        assert dict(a.fingerprints) == dict(b.fingerprints)

    def test_negative_zero_matches_zero(self, grid_tables, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        zero = [dict(u, cost=0.0) for u in units]
        neg_zero = [dict(u, cost=-0.0) for u in units]
        a = assemble(zero, features, incidence=incidence, config=test_config)
        b = assemble(neg_zero, features, incidence=incidence, config=test_config)
        assert dict(a.fingerprints) == dict(b.fingerprints)

    def test_cost_change_moves_only_unit_table(self, grid_tables, test_config):
        from Marxan_Portfolio.models.data_models import ArtifactKind
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        changed = [dict(u, cost=u["cost"] * 2) for u in units]
        a = assemble(units, features, incidence=incidence, boundaries=boundaries, config=test_config)
        b = assemble(changed, features, incidence=incidence, boundaries=boundaries, config=test_config)

        assert a.fingerprint(ArtifactKind.UNIT_TABLE) != b.fingerprint(ArtifactKind.UNIT_TABLE)
        for kind in (ArtifactKind.INCIDENCE_MATRIX, ArtifactKind.BOUNDARY_MATRIX, ArtifactKind.FEATURE_TABLE):
            assert a.fingerprint(kind) == b.fingerprint(kind)


class TestAssembledStructure:
    """Shape of the ProblemDefinition snapshot."""

    def test_units_and_features_sorted_by_id(self, grid_tables, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, boundaries = grid_tables
        problem = assemble(
            list(reversed(units)), list(reversed(features)),
            incidence=incidence, boundaries=boundaries, config=test_config,
        )
        assert problem.unit_ids == (1, 2, 3, 4)
        assert problem.feature_ids == (10, 20)
        assert problem.unit_index[3] == 2

    def test_neighbours_are_symmetric_with_external_self_edge(self, grid_problem):
        unit1 = grid_problem.unit(1)
        unit2 = grid_problem.unit(2)
        assert unit1.neighbour_map() == {1: 2.0, 2: 1.0, 3: 1.0}
        assert unit2.neighbour_map()[1] == 1.0

    def test_proportion_target_resolves_against_total(self, grid_problem):
        heath = grid_problem.feature(10)
        wetland = grid_problem.feature(20)
        assert heath.total_amount == pytest.approx(4.0)
        assert heath.target_amount == pytest.approx(2.0)
        assert wetland.target_amount == pytest.approx(3.0)

    def test_status_codes_and_names_accepted(self, test_config):
        from Marxan_Portfolio.models.data_models import UnitStatus
        from Marxan_Portfolio.problem_assembler import assemble

        units = [
            {"id": 1, "cost": 1, "status": 0},
            {"id": 2, "cost": 1, "status": 1},
            {"id": 3, "cost": 1, "status": 2},
            {"id": 4, "cost": 1, "status": "locked-out"},
            {"id": 5, "cost": 1},
        ]
        features = [{"id": 1, "name": "f", "prop": 0.3}]
        incidence = [{"species": 1, "pu": 1, "amount": 1.0}]
        problem = assemble(units, features, incidence=incidence, config=test_config)
        statuses = [u.status for u in problem.units]
        assert statuses == [
            UnitStatus.AVAILABLE,
            UnitStatus.AVAILABLE,
            UnitStatus.LOCKED_IN,
            UnitStatus.LOCKED_OUT,
            UnitStatus.AVAILABLE,
        ]

    def test_dense_incidence_aligned_by_index(self, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 7, "cost": 1.0}, {"id": 3, "cost": 1.0}]
        features = [{"id": 1, "name": "a", "amount": 1.0}, {"id": 2, "name": "b", "amount": 1.0}]
        dense = pd.DataFrame({1: [5.0, 0.0], 2: [0.0, 9.0]}, index=[3, 7])
        problem = assemble(units, features, incidence=dense, config=test_config)
        assert problem.feature(1).amounts == ((3, 5.0),)
        assert problem.feature(2).amounts == ((7, 9.0),)

    def test_dense_numpy_incidence_follows_input_order(self, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 7, "cost": 1.0}, {"id": 3, "cost": 1.0}]
        features = [{"id": 1, "name": "a", "amount": 1.0}]
        problem = assemble(units, features, incidence=np.array([[2.0], [4.0]]), config=test_config)
        assert problem.feature(1).amounts == ((3, 4.0), (7, 2.0))

    def test_dense_numpy_rows_positional_when_ids_look_like_positions(self, test_config):
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 2, "cost": 1.0}, {"id": 0, "cost": 1.0}, {"id": 1, "cost": 1.0}]
        features = [{"id": 7, "name": "a", "amount": 1.0}]
        incidence = np.array([[5.0], [0.0], [0.0]])
        problem = assemble(units, features, incidence=incidence, config=test_config)
        assert problem.feature(7).amounts == ((2, 5.0),)

        frame = pd.DataFrame({7: [5.0, 0.0, 0.0]})
        problem = assemble(units, features, incidence=frame, config=test_config)
        assert problem.feature(7).amounts == ((2, 5.0),)


class TestValidation:
    """Malformed inputs raise ValidationError listing every problem."""

    def test_duplicate_ids_and_negative_cost_collected(self, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        units = [
            {"id": 1, "cost": 1.0},
            {"id": 1, "cost": 2.0},
            {"id": 2, "cost": -5.0},
        ]
        features = [{"id": 1, "name": "f", "prop": 0.5}]
        with pytest.raises(ValidationError) as exc_info:
            assemble(units, features, incidence=[], config=test_config)
        problems = " | ".join(exc_info.value.problems)
        assert "not unique" in problems
        assert "negative" in problems
        assert isinstance(exc_info.value, ValueError)

    @pytest.mark.parametrize(
        "feature",
        [
            {"id": 1, "name": "f", "target": 1.5, "target_type": "prop"},
            {"id": 1, "name": "f", "target": -1.0, "target_type": "amount"},
            {"id": 1, "name": "f", "target": 0.5, "target_type": "percent"},
            {"id": 1, "name": "f", "prop": 0.5, "spf": -1.0},
        ],
    )
    def test_out_of_domain_feature_rejected(self, feature, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        with pytest.raises(ValidationError):
            assemble([{"id": 1, "cost": 1.0}], [feature], incidence=[], config=test_config)

    def test_unknown_status_rejected(self, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        with pytest.raises(ValidationError, match="status"):
            assemble(
                [{"id": 1, "cost": 1.0, "status": "maybe"}],
                [{"id": 1, "name": "f", "prop": 0.1}],
                config=test_config,
            )

    def test_dense_incidence_row_count_mismatch(self, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 1, "cost": 1.0}, {"id": 2, "cost": 1.0}, {"id": 3, "cost": 1.0}]
        features = [{"id": 1, "name": "f", "prop": 0.5}]
        with pytest.raises(ValidationError, match="rows"):
            assemble(units, features, incidence=np.ones((2, 1)), config=test_config)

    def test_unknown_ids_in_records(self, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 1, "cost": 1.0}]
        features = [{"id": 1, "name": "f", "prop": 0.5}]
        with pytest.raises(ValidationError) as exc_info:
            assemble(
                units,
                features,
                incidence=[{"species": 9, "pu": 1, "amount": 1.0}, {"species": 1, "pu": 8, "amount": 1.0}],
                boundaries=[{"id1": 1, "id2": 5, "boundary": 1.0}],
                config=test_config,
            )
        assert len(exc_info.value.problems) == 3

    def test_fractional_record_ids_rejected(self, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        units = [{"id": 1, "cost": 1.0}, {"id": 2, "cost": 1.0}]
        features = [{"id": 10, "name": "f", "prop": 0.5}]
        with pytest.raises(ValidationError) as exc_info:
            assemble(
                units,
                features,
                incidence=[{"species": 10.5, "pu": 1, "amount": 1.0}, {"species": 10, "pu": 2, "amount": 1.0}],
                boundaries=[{"id1": 1.5, "id2": 2, "boundary": 1.0}],
                config=test_config,
            )
        problems = exc_info.value.problems
        assert len(problems) == 2
        assert all("non-integer id" in p for p in problems)

    def test_bad_options_rejected(self, grid_tables, test_config):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.problem_assembler import assemble

        units, features, incidence, _ = grid_tables
        with pytest.raises(ValidationError, match="replicate"):
            assemble(units, features, options={"replicates": 0}, incidence=incidence, config=test_config)
        with pytest.raises(ValidationError, match="BLM"):
            assemble(units, features, options={"blm": -1}, incidence=incidence, config=test_config)
