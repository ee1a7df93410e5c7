"""
Unit tests for the Solver Invoker.

Tests:
1. Solutions are ordered by submission slot regardless of completion order
2. Failed attempts (including lock-breaking selections) are retried with fresh
   seeds up to max_attempts
3. Failure policy: failed slots recorded, InsufficientSolutionsError over threshold
4. Cancellation in PARTIAL and FAIL modes
5. Seed derivation is deterministic and distinct per (slot, attempt)

All tests use CallableSolver stubs; no external executable is needed.

Run with: python -m pytest Marxan_Portfolio/_tests/test_solver_invoker.py -v
"""

import random
import threading
import time

import pytest


def _pick_by_slot(selections):
    """Stub returning selections[slot % len(selections)]."""

    def fn(solver_input, context):
        return selections[context.slot % len(selections)]

    return fn


class TestSlotOrdering:
    """Portfolio order is the submission order."""

    def test_random_delays_keep_slot_order(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        selections = [{1}, {2}, {3}, {4}, {1, 2}, {3, 4}, {1, 4}, {2, 3}]
        delays = [random.uniform(0.0, 0.05) for _ in selections]

        def fn(solver_input, context):
            time.sleep(delays[context.slot])
            return selections[context.slot]

        portfolio = run(
            grid_problem, replicate_count=8, concurrency=4,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )

        assert portfolio.replicates == tuple(range(8))
        assert portfolio.is_complete
        for slot, expected in enumerate(selections):
            selected = {
                uid for uid, flag in portfolio.solution_vector(slot).items() if flag
            }
            assert selected == expected

    def test_concurrency_capped_by_pool(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def fn(solver_input, context):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.05)
            with lock:
                state["running"] -= 1
            return {1}

        run(
            grid_problem, replicate_count=6, concurrency=2,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert state["peak"] <= 2

    def test_defaults_come_from_problem_options(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        portfolio = run(
            grid_problem, solver=CallableSolver(_pick_by_slot([{1}])),
            cache=cache, config=test_config,
        )
        assert portfolio.replicate_count == grid_problem.options.replicates

    @pytest.mark.parametrize("kwargs", [{"replicate_count": 0}, {"concurrency": 0}])
    def test_invalid_counts_rejected(self, grid_problem, cache, test_config, kwargs):
        from Marxan_Portfolio.exceptions import ValidationError
        from Marxan_Portfolio.solvers import CallableSolver, run

        with pytest.raises(ValidationError):
            run(
                grid_problem, solver=CallableSolver(_pick_by_slot([{1}])),
                cache=cache, config=test_config, **kwargs,
            )


class TestRetries:
    """Per-slot retry loop."""

    def test_fail_twice_then_succeed(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.solvers import CallableSolver, run

        def fn(solver_input, context):
            if context.slot == 1 and context.attempt < 3:
                raise SolverAttemptError("transient", context.slot, context.attempt)
            return {1, 2}

        portfolio = run(
            grid_problem, replicate_count=3, concurrency=2,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert portfolio.replicates == (0, 1, 2)
        assert portfolio.by_replicate(1).attempts == 3
        assert portfolio.by_replicate(0).attempts == 1
        assert portfolio.failed_replicates == ()

    def test_unexpected_exception_is_an_attempt_failure(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        def fn(solver_input, context):
            if context.attempt == 1:
                raise KeyError("backend bug")
            return [1, 0, 0, 1]

        portfolio = run(
            grid_problem, replicate_count=2, concurrency=1,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert all(s.attempts == 2 for s in portfolio)

    def test_malformed_selection_retried_then_failed(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        def fn(solver_input, context):
            if context.slot == 0:
                return {99}  # unknown unit
            return {1}

        portfolio = run(
            grid_problem, replicate_count=4, concurrency=2,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert portfolio.failed_replicates == (0,)
        assert portfolio.replicates == (1, 2, 3)
        with pytest.raises(KeyError):
            portfolio.by_replicate(0)

    def test_lock_breaking_selection_retried(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run
        from Marxan_Portfolio.update_engine import OverlayBuilder, derive

        locked = derive(grid_problem, OverlayBuilder("locks").status(1, 3).status(4, 2).build())

        def fn(solver_input, context):
            if context.slot == 0 and context.attempt == 1:
                return {1, 4}  # unit 1 is locked out
            if context.slot == 1:
                return {2, 3}  # never includes locked-in unit 4
            return {2, 4}

        portfolio = run(
            locked, replicate_count=3, concurrency=1,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert portfolio.by_replicate(0).attempts == 2
        assert portfolio.by_replicate(0).selection.tolist() == [0, 1, 0, 1]
        assert portfolio.failed_replicates == (1,)

    def test_each_attempt_gets_a_distinct_seed(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.solvers import CallableSolver, run

        seen = []
        lock = threading.Lock()

        def fn(solver_input, context):
            with lock:
                seen.append((context.slot, context.attempt, context.seed))
            if context.attempt < 2:
                raise SolverAttemptError("retry me")
            return {1}

        portfolio = run(
            grid_problem, replicate_count=4, concurrency=2,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        seeds = [seed for _, _, seed in seen]
        assert len(seen) == 8
        assert len(set(seeds)) == len(seeds)
        for solution in portfolio:
            successful = [s for slot, att, s in seen if slot == solution.replicate and att == 2]
            assert solution.seed == successful[0]


class TestFailurePolicy:
    """Permanently failed slots and the failure threshold."""

    def test_failed_slot_recorded(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.solvers import CallableSolver, run

        calls = []

        def fn(solver_input, context):
            if context.slot == 2:
                calls.append(context.attempt)
                raise SolverAttemptError("always fails")
            return {1, 3}

        portfolio = run(
            grid_problem, replicate_count=4, concurrency=2,
            solver=CallableSolver(fn), cache=cache, config=test_config,
        )
        assert portfolio.failed_replicates == (2,)
        assert portfolio.replicates == (0, 1, 3)
        assert not portfolio.is_complete
        assert sorted(calls) == [1, 2, 3]

    def test_too_many_failures_raise(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.exceptions import InsufficientSolutionsError, SolverAttemptError
        from Marxan_Portfolio.solvers import CallableSolver, run

        def fn(solver_input, context):
            if context.slot < 3:
                raise SolverAttemptError("broken")
            return {1}

        with pytest.raises(InsufficientSolutionsError) as exc_info:
            run(
                grid_problem, replicate_count=4, concurrency=2,
                solver=CallableSolver(fn), cache=cache, config=test_config,
            )
        assert exc_info.value.failed_replicates == (0, 1, 2)
        assert exc_info.value.replicate_count == 4

    def test_zero_successes_raise_even_under_lenient_threshold(self, grid_problem, cache):
        from Marxan_Portfolio.exceptions import InsufficientSolutionsError, SolverAttemptError
        from Marxan_Portfolio.solvers import CallableSolver, run

        def fn(solver_input, context):
            raise SolverAttemptError("broken")

        config = {"solver": {"max_attempts": 1, "max_failure_fraction": 1.0}}
        with pytest.raises(InsufficientSolutionsError):
            run(
                grid_problem, replicate_count=2,
                solver=CallableSolver(fn), cache=cache, config=config,
            )


class TestCancellation:
    """Cancelling a run part-way through."""

    @staticmethod
    def _cancelling_solver():
        """Slot 0 completes; later slots cancel the run and observe it."""
        from Marxan_Portfolio.exceptions import AttemptCancelledError
        from Marxan_Portfolio.solvers import CallableSolver

        slot0_done = threading.Event()

        def fn(solver_input, context):
            if context.slot == 0:
                slot0_done.set()
                return {1, 2}
            slot0_done.wait(timeout=5)
            context.cancel_token.cancel("test cancel")
            raise AttemptCancelledError("stopped")

        return CallableSolver(fn)

    def test_partial_mode_returns_completed_slots(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CancellationToken, CancelMode, run

        token = CancellationToken()
        portfolio = run(
            grid_problem, replicate_count=4, concurrency=2,
            solver=self._cancelling_solver(), cache=cache, config=test_config,
            cancel_token=token, cancel_mode=CancelMode.PARTIAL,
        )
        assert token.is_cancelled
        assert token.reason == "test cancel"
        assert portfolio.replicates == (0,)
        assert portfolio.cancelled_replicates == (1, 2, 3)
        assert portfolio.failed_replicates == ()

    def test_fail_mode_raises(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.exceptions import RunCancelledError
        from Marxan_Portfolio.solvers import CancellationToken, CancelMode, run

        with pytest.raises(RunCancelledError) as exc_info:
            run(
                grid_problem, replicate_count=4, concurrency=2,
                solver=self._cancelling_solver(), cache=cache, config=test_config,
                cancel_token=CancellationToken(), cancel_mode=CancelMode.FAIL,
            )
        assert exc_info.value.completed_replicates == (0,)

    def test_pre_cancelled_partial_run_is_empty(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.models.portfolio import selection_frequency
        from Marxan_Portfolio.solvers import CallableSolver, CancellationToken, CancelMode, run

        token = CancellationToken()
        token.cancel()
        portfolio = run(
            grid_problem, replicate_count=3,
            solver=CallableSolver(_pick_by_slot([{1}])), cache=cache, config=test_config,
            cancel_token=token, cancel_mode=CancelMode.PARTIAL,
        )
        assert len(portfolio) == 0
        assert portfolio.cancelled_replicates == (0, 1, 2)
        assert selection_frequency(portfolio).sum() == 0.0


class TestSeeds:
    """Seed derivation."""

    def test_attempt_seed_deterministic_and_distinct(self):
        from Marxan_Portfolio.solvers import attempt_seed

        seeds = {attempt_seed(7, slot, attempt) for slot in range(10) for attempt in range(1, 4)}
        assert len(seeds) == 30
        assert attempt_seed(7, 3, 1) == attempt_seed(7, 3, 1)
        assert attempt_seed(7, 3, 1) != attempt_seed(8, 3, 1)

    def test_content_derived_base_seed(self, grid_problem):
        from Marxan_Portfolio.config_types import AppConfig
        from Marxan_Portfolio.solvers.solver_invoker import resolve_base_seed
        from Marxan_Portfolio.update_engine import derive

        app_config = AppConfig.from_dict({})
        same = derive(grid_problem, {"name": "noop"})
        other = derive(grid_problem, {"blm": 2.0})
        assert resolve_base_seed(grid_problem, app_config) == resolve_base_seed(same, app_config)
        assert resolve_base_seed(grid_problem, app_config) != resolve_base_seed(other, app_config)

    def test_repeat_runs_reproduce_seeds(self, grid_problem, cache, test_config):
        from Marxan_Portfolio.solvers import CallableSolver, run

        solver = CallableSolver(_pick_by_slot([{1}, {2}]))
        first = run(grid_problem, replicate_count=3, solver=solver, cache=cache, config=test_config)
        second = run(grid_problem, replicate_count=3, solver=solver, cache=cache, config=test_config)
        assert [s.seed for s in first] == [s.seed for s in second]
        assert len({s.seed for s in first}) == 3
