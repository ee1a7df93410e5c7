"""
Unit tests for the Marxan process backend.

A fake solver script stands in for the Marxan executable: it reads the
input files the backend writes and produces a Marxan-style solution CSV.

Tests:
1. Input file layout (input.dat, pu.dat, spec.dat, puvspr.dat, bound.dat)
2. Solution file discovery and parsing
3. Process outcomes: success, nonzero exit, missing output, timeout, cancellation
4. Selection coercion and lock checks on backend results
5. SolverProcess misuse

Run with: python -m pytest Marxan_Portfolio/_tests/test_marxan_backend.py -v
"""

import sys
import textwrap
import threading

import numpy as np
import pandas as pd
import pytest


FAKE_MARXAN = textwrap.dedent(
    """
    import csv
    import sys
    from pathlib import Path

    params = dict(
        line.split(None, 1) for line in Path(sys.argv[1]).read_text().splitlines() if line.strip()
    )
    with open(Path(params["INPUTDIR"].strip()) / "pu.dat") as f:
        units = list(csv.DictReader(f))
    out = Path(params["OUTPUTDIR"].strip())
    out.mkdir(exist_ok=True)
    name = params["SCENNAME"].strip()
    with open(out / f"{name}_r00001.csv", "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["planning_unit", "solution"])
        for row in units:
            # Select odd ids plus anything locked in, never locked-out units
            status = int(row["status"])
            picked = status == 2 or (status != 3 and int(row["id"]) % 2 == 1)
            writer.writerow([row["id"], int(picked)])
    print("fake marxan done, seed", params["RANDSEED"].strip())
    """
)

FAILING_MARXAN = "import sys\nprint('licence error')\nsys.exit(3)\n"
SILENT_MARXAN = "print('nothing written')\n"
SLOW_MARXAN = "import time\ntime.sleep(30)\n"


def _script(tmp_path, name, source):
    path = tmp_path / name
    path.write_text(source)
    return path


def _solver(script, **config_kwargs):
    from Marxan_Portfolio.config_types import SolverConfig
    from Marxan_Portfolio.solvers.solver_backends import MarxanSolver

    config = SolverConfig(poll_interval_s=0.01, **config_kwargs)
    return MarxanSolver(command=[sys.executable, str(script)], config=config)


class TestInputFiles:
    """Files written for one attempt."""

    def test_layout_and_contents(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.config_types import SolverConfig
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers.solver_backends import write_marxan_inputs

        solver_input = load_solver_input(grid_problem, cache)
        write_marxan_inputs(tmp_path, solver_input, seed=99, config=SolverConfig())

        input_dat = (tmp_path / "input.dat").read_text()
        assert "BLM 0.5" in input_dat
        assert "RANDSEED 99" in input_dat
        assert "NUMREPS 1" in input_dat
        assert (tmp_path / "output").is_dir()

        pu = pd.read_csv(tmp_path / "input" / "pu.dat")
        assert pu.columns.tolist() == ["id", "cost", "status"]
        assert pu["id"].tolist() == [1, 2, 3, 4]

        spec = pd.read_csv(tmp_path / "input" / "spec.dat")
        assert spec["target"].tolist() == pytest.approx([2.0, 3.0])

        puvspr = pd.read_csv(tmp_path / "input" / "puvspr.dat")
        assert puvspr["pu"].tolist() == sorted(puvspr["pu"].tolist())
        assert len(puvspr) == 5

        bound = pd.read_csv(tmp_path / "input" / "bound.dat")
        assert (bound["id1"] <= bound["id2"]).all()
        assert len(bound) == 8
        self_edges = bound[bound["id1"] == bound["id2"]]
        assert self_edges["boundary"].tolist() == [2.0, 2.0, 2.0, 2.0]


class TestSolutionFiles:
    """find_solution_file() / parse_solution_file()."""

    def test_run_file_preferred_over_best(self, tmp_path):
        from Marxan_Portfolio.solvers.solver_backends import find_solution_file

        (tmp_path / "output_best.csv").write_text("planning_unit,solution\n")
        (tmp_path / "output_r00001.csv").write_text("planning_unit,solution\n")
        assert find_solution_file(tmp_path).name == "output_r00001.csv"

    def test_no_file(self, tmp_path):
        from Marxan_Portfolio.solvers.solver_backends import find_solution_file

        assert find_solution_file(tmp_path) is None

    def test_parse_reorders_by_unit_id(self, tmp_path):
        from Marxan_Portfolio.solvers.solver_backends import parse_solution_file

        path = tmp_path / "s.csv"
        path.write_text("planning_unit,solution\n3,1\n1,0\n2,1\n")
        assert parse_solution_file(path, [1, 2, 3]).tolist() == [0, 1, 1]

    @pytest.mark.parametrize(
        "content",
        [
            "planning_unit,solution\n1,1\n",  # missing unit 2
            "planning_unit,solution\n1,1\n2,5\n",  # not 0/1
            "planning_unit,solution\n1,1\n1,0\n2,1\n",  # duplicate id
            "planning_unit\n1\n2\n",  # one column
        ],
    )
    def test_malformed_files_rejected(self, tmp_path, content):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.solvers.solver_backends import parse_solution_file

        path = tmp_path / "s.csv"
        path.write_text(content)
        with pytest.raises(SolverAttemptError):
            parse_solution_file(path, [1, 2])


class TestMarxanSolver:
    """End-to-end attempts against fake executables."""

    def test_successful_run(self, grid_problem, cache, tmp_path, test_config):
        from Marxan_Portfolio.solvers import run

        solver = _solver(_script(tmp_path, "fake_marxan.py", FAKE_MARXAN))
        portfolio = run(
            grid_problem, replicate_count=2, concurrency=2,
            solver=solver, cache=cache, config=test_config,
        )
        assert portfolio.replicates == (0, 1)
        assert portfolio[0].selection.tolist() == [1, 0, 1, 0]

    def test_status_respected_by_fake_solver(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext
        from Marxan_Portfolio.update_engine import OverlayBuilder, derive

        problem = derive(grid_problem, OverlayBuilder("locks").status(2, 2).status(3, 3).build())
        solver = _solver(_script(tmp_path, "fake_marxan.py", FAKE_MARXAN))
        selection = solver.solve(load_solver_input(problem, cache), AttemptContext(0, 1, 5))
        assert selection.tolist() == [1, 1, 0, 0]

    def test_nonzero_exit_is_attempt_error(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext

        solver = _solver(_script(tmp_path, "failing.py", FAILING_MARXAN))
        with pytest.raises(SolverAttemptError, match="licence error"):
            solver.solve(load_solver_input(grid_problem, cache), AttemptContext(0, 1, 5))

    def test_missing_output_is_attempt_error(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext

        solver = _solver(_script(tmp_path, "silent.py", SILENT_MARXAN))
        with pytest.raises(SolverAttemptError, match="no solution file"):
            solver.solve(load_solver_input(grid_problem, cache), AttemptContext(0, 1, 5))

    def test_timeout_is_attempt_error(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext

        solver = _solver(_script(tmp_path, "slow.py", SLOW_MARXAN), timeout_s=0.5)
        with pytest.raises(SolverAttemptError, match="timed out"):
            solver.solve(load_solver_input(grid_problem, cache), AttemptContext(0, 1, 5))

    def test_cancellation_terminates_process(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.exceptions import AttemptCancelledError
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext, CancellationToken

        token = CancellationToken()
        timer = threading.Timer(0.3, token.cancel)
        solver = _solver(_script(tmp_path, "slow.py", SLOW_MARXAN), timeout_s=20)
        timer.start()
        try:
            with pytest.raises(AttemptCancelledError):
                solver.solve(
                    load_solver_input(grid_problem, cache),
                    AttemptContext(0, 1, 5, cancel_token=token),
                )
        finally:
            timer.cancel()

    def test_kept_workdir(self, grid_problem, cache, tmp_path):
        from Marxan_Portfolio.config_types import SolverConfig
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext, MarxanSolver

        script = _script(tmp_path, "fake_marxan.py", FAKE_MARXAN)
        root = tmp_path / "work"
        root.mkdir()
        solver = MarxanSolver(
            command=[sys.executable, str(script)],
            config=SolverConfig(poll_interval_s=0.01),
            keep_workdirs=True,
            workdir_root=root,
        )
        solver.solve(load_solver_input(grid_problem, cache), AttemptContext(2, 1, 5))
        kept = list(root.iterdir())
        assert len(kept) == 1
        assert kept[0].name.startswith("mxp_grid_r00002_a1_")
        assert (kept[0] / "output" / "output_r00001.csv").exists()

    def test_missing_executable(self, grid_problem, cache):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.preprocessing import load_solver_input
        from Marxan_Portfolio.solvers import AttemptContext, MarxanSolver

        solver = MarxanSolver(command="definitely-not-a-marxan-binary")
        with pytest.raises(SolverAttemptError, match="not found"):
            solver.solve(load_solver_input(grid_problem, cache), AttemptContext(0, 1, 5))


class TestCoerceSelection:
    """Backend result normalization."""

    def test_accepted_forms(self):
        from Marxan_Portfolio.solvers.solver_backends import coerce_selection

        ids = [10, 20, 30]
        assert coerce_selection({20}, ids).tolist() == [0, 1, 0]
        assert coerce_selection({10: 1, 30: True}, ids).tolist() == [1, 0, 1]
        vector = coerce_selection(np.array([1.0, 1.0, 0.0]), ids)
        assert vector.tolist() == [1, 1, 0]
        assert vector.dtype == np.int8

    @pytest.mark.parametrize("raw", [None, {99}, {10: 2}, [1, 0], [1, 0, 0.5]])
    def test_rejected_forms(self, raw):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.solvers.solver_backends import coerce_selection

        with pytest.raises(SolverAttemptError):
            coerce_selection(raw, [10, 20, 30])

    def test_lock_status_violations_rejected(self):
        from Marxan_Portfolio.exceptions import SolverAttemptError
        from Marxan_Portfolio.models.data_models import PlanningUnit, UnitStatus
        from Marxan_Portfolio.solvers.solver_backends import check_lock_status

        units = [
            PlanningUnit(id=1, cost=1.0, status=UnitStatus.LOCKED_IN),
            PlanningUnit(id=2, cost=1.0),
            PlanningUnit(id=3, cost=1.0, status=UnitStatus.LOCKED_OUT),
        ]
        check_lock_status(np.array([1, 0, 0], dtype=np.int8), units)
        with pytest.raises(SolverAttemptError, match=r"locked-out selected \[3\]"):
            check_lock_status(np.array([1, 1, 1], dtype=np.int8), units)
        with pytest.raises(SolverAttemptError, match=r"locked-in missing \[1\]"):
            check_lock_status(np.array([0, 1, 0], dtype=np.int8), units)


class TestSolverProcess:
    """Owned process handle misuse."""

    def test_wait_outside_context_raises(self, tmp_path):
        from Marxan_Portfolio.solvers import SolverProcess

        process = SolverProcess([sys.executable, "-c", "pass"], cwd=tmp_path, timeout_s=5)
        with pytest.raises(RuntimeError, match="outside its context"):
            process.wait()
