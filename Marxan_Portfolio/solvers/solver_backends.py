"""
═══════════════════════════════════════════════════════════════════════════════
🧮 SOLVER BACKENDS MODULE
═══════════════════════════════════════════════════════════════════════════════

ARCHITECTURAL OVERVIEW
----------------------
Purpose: Run ONE replicate attempt of the external optimizer and return its
         selection vector. The invoker owns retries, ordering and failure
         policy; a backend only knows how to solve once.

Key Interactions:
- solver_invoker.py: Calls backend.solve(solver_input, context) per attempt
- preprocessing.py: Supplies the SolverInput bundle (tables + matrices)

Backends:
- MarxanSolver: Writes Marxan input files into a scoped working directory,
  runs the executable inside an owned SolverProcess handle, parses the
  *_r00001.csv / *_best.csv solution file
- CallableSolver: Wraps an in-process callable (stubs, tests, custom solvers)

Failure contract:
- Nonzero exit, missing/malformed output, timeout -> SolverAttemptError
- Cancellation observed mid-attempt -> AttemptCancelledError
- The working directory and process tree are released on every exit path

NAVIGATION GUIDE
----------------
# ═════ 1. ATTEMPT CONTEXT + BACKEND PROTOCOL
# ═════ 2. SELECTION COERCION
# ═════ 3. OWNED PROCESS HANDLE
# ═════ 4. MARXAN FILE FORMATS
# ═════ 5. BACKENDS

═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import re
import shutil
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import psutil
from scipy import sparse

from Marxan_Portfolio.config_types import AppConfig, SolverConfig, normalize_config
from Marxan_Portfolio.exceptions import AttemptCancelledError, SolverAttemptError
from Marxan_Portfolio.models.data_models import PlanningUnit, UnitStatus
from Marxan_Portfolio.preprocessing import SolverInput
from Marxan_Portfolio.solvers.cancellation import CancellationToken

logger = logging.getLogger("MXP.Solver.Marxan")


# ═══════════════════════════════════════════════════════════════════════════════
# 📋 1. ATTEMPT CONTEXT + BACKEND PROTOCOL
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AttemptContext:
    """
    Identity of one replicate attempt.

    Attributes:
        slot: Submission slot (0..replicate_count-1).
        attempt: 1-based attempt number within the slot.
        seed: Seed derived for this (slot, attempt) pair.
        cancel_token: Token to poll for cooperative cancellation.
    """

    slot: int
    attempt: int
    seed: int
    cancel_token: Optional[CancellationToken] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.is_cancelled


class SolverBackend(ABC):
    """A backend solves one replicate attempt at a time and keeps no shared state."""

    name = "backend"

    @abstractmethod
    def solve(self, solver_input: SolverInput, context: AttemptContext) -> Any:
        """Return a selection (0/1 vector, unit-id mapping or selected id set)."""


# ═══════════════════════════════════════════════════════════════════════════════
# 🔢 2. SELECTION COERCION
# ═══════════════════════════════════════════════════════════════════════════════


def coerce_selection(raw: Any, unit_ids: Sequence[int]) -> np.ndarray:
    """
    Normalize a backend result into a 0/1 int8 vector in unit-id order.

    Accepted forms:
    - set/frozenset of selected unit ids
    - mapping unit id -> 0/1 (missing ids are unselected)
    - sequence/array of 0/1 with one entry per unit

    Raises:
        SolverAttemptError: Result cannot be read as a selection.
    """
    index = {uid: i for i, uid in enumerate(unit_ids)}
    n = len(unit_ids)
    if raw is None:
        raise SolverAttemptError("Solver returned no selection")

    if isinstance(raw, (set, frozenset)):
        unknown = sorted(u for u in raw if u not in index)
        if unknown:
            raise SolverAttemptError(f"Solver selected unknown units {unknown}")
        vector = np.zeros(n, dtype=np.int8)
        for uid in raw:
            vector[index[uid]] = 1
        return vector

    if isinstance(raw, Mapping):
        vector = np.zeros(n, dtype=np.int8)
        for uid, flag in raw.items():
            if uid not in index:
                raise SolverAttemptError(f"Solver returned unknown unit {uid}")
            if flag not in (0, 1, True, False):
                raise SolverAttemptError(f"Selection flag for unit {uid} is {flag!r}")
            vector[index[uid]] = int(flag)
        return vector

    try:
        values = np.asarray(raw, dtype=float).ravel()
    except (TypeError, ValueError) as e:
        raise SolverAttemptError(f"Malformed selection: {e}") from e
    if values.shape[0] != n:
        raise SolverAttemptError(
            f"Selection has {values.shape[0]} entries, expected {n}"
        )
    if not np.isin(values, (0.0, 1.0)).all():
        raise SolverAttemptError("Selection vector contains values other than 0/1")
    return values.astype(np.int8)


def check_lock_status(selection: np.ndarray, units: Sequence[PlanningUnit]) -> None:
    """
    Reject a selection that breaks a unit lock.

    Raises:
        SolverAttemptError: A locked-out unit is selected or a locked-in unit is not.
    """
    selected_out = [u.id for u, x in zip(units, selection) if x and u.status is UnitStatus.LOCKED_OUT]
    dropped_in = [u.id for u, x in zip(units, selection) if not x and u.status is UnitStatus.LOCKED_IN]
    if selected_out or dropped_in:
        raise SolverAttemptError(
            f"Selection breaks unit locks: locked-out selected {selected_out}, "
            f"locked-in missing {dropped_in}"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# ⚙️ 3. OWNED PROCESS HANDLE
# ═══════════════════════════════════════════════════════════════════════════════


def terminate_process_tree(pid: int, grace_s: float = 3.0) -> None:
    """Terminate a process and all its descendants, killing stragglers."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        procs = [parent]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=grace_s)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=grace_s)


class SolverProcess:
    """
    Owned handle on one external solver process.

    Used as a context manager; on exit the process tree is terminated if it is
    still running and the log file is closed, whatever the exit path.

    Example:
        with SolverProcess(cmd, cwd=workdir, timeout_s=60) as proc:
            returncode = proc.wait()
    """

    def __init__(
        self,
        args: Sequence[str],
        cwd: Union[str, Path],
        timeout_s: float,
        poll_interval_s: float = 0.05,
        cancel_token: Optional[CancellationToken] = None,
        log_path: Optional[Path] = None,
    ):
        self.args = list(args)
        self.cwd = Path(cwd)
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.cancel_token = cancel_token
        self.log_path = log_path or (self.cwd / "solver.log")
        self._popen: Optional[subprocess.Popen] = None
        self._log_file = None

    def __enter__(self) -> "SolverProcess":
        self._log_file = open(self.log_path, "wb")
        try:
            self._popen = subprocess.Popen(
                self.args,
                cwd=str(self.cwd),
                stdin=subprocess.DEVNULL,
                stdout=self._log_file,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            self._log_file.close()
            raise SolverAttemptError(f"Could not start solver {self.args[0]!r}: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    @property
    def pid(self) -> Optional[int]:
        return self._popen.pid if self._popen is not None else None

    def wait(self) -> int:
        """
        Block until the process exits.

        Raises:
            SolverAttemptError: Wall clock limit exceeded.
            AttemptCancelledError: Cancellation token was set.
            RuntimeError: Called outside the context manager.
        """
        if self._popen is None:
            raise RuntimeError("SolverProcess used outside its context")
        start = time.monotonic()
        while True:
            returncode = self._popen.poll()
            if returncode is not None:
                return returncode
            if self.cancel_token is not None and self.cancel_token.is_cancelled:
                self.terminate()
                raise AttemptCancelledError("Solver process terminated by cancellation")
            elapsed = time.monotonic() - start
            if elapsed > self.timeout_s:
                self.terminate()
                raise SolverAttemptError(
                    f"Solver timed out after {self.timeout_s:.1f}s"
                )
            if self.cancel_token is not None:
                self.cancel_token.wait(self.poll_interval_s)
            else:
                time.sleep(self.poll_interval_s)

    def terminate(self) -> None:
        if self._popen is None or self._popen.poll() is not None:
            return
        logger.debug(f"   🛑 Terminating solver process tree (pid={self._popen.pid})")
        terminate_process_tree(self._popen.pid)
        try:
            self._popen.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._popen.kill()
            self._popen.wait()

    def log_tail(self, n_chars: int = 500) -> str:
        try:
            text = self.log_path.read_text(errors="replace")
        except OSError:
            return ""
        return text[-n_chars:].strip()


# ═══════════════════════════════════════════════════════════════════════════════
# 📄 4. MARXAN FILE FORMATS
# ═══════════════════════════════════════════════════════════════════════════════

SCENARIO_NAME = "output"


def build_input_dat(blm: float, seed: int, config: SolverConfig) -> str:
    """Marxan input.dat for one single-replicate attempt (CSV outputs)."""
    params = [
        ("BLM", blm),
        ("PROP", config.prop_adjust),
        ("RANDSEED", seed),
        ("NUMREPS", 1),
        ("NUMITNS", config.num_iterations),
        ("STARTTEMP", -1),
        ("NUMTEMP", config.num_temp),
        ("COSTTHRESH", 0),
        ("THRESHPEN1", 0),
        ("THRESHPEN2", 0),
        ("INPUTDIR", "input"),
        ("PUNAME", "pu.dat"),
        ("SPECNAME", "spec.dat"),
        ("PUVSPRNAME", "puvspr.dat"),
        ("BOUNDNAME", "bound.dat"),
        ("SCENNAME", SCENARIO_NAME),
        ("SAVERUN", 3),
        ("SAVEBEST", 3),
        ("SAVESUMMARY", 0),
        ("SAVESCEN", 0),
        ("SAVETARGMET", 0),
        ("SAVESUMSOLN", 0),
        ("SAVELOG", 1),
        ("OUTPUTDIR", "output"),
        ("RUNMODE", config.run_mode),
        ("MISSLEVEL", 1),
        ("ITIMPTYPE", 0),
        ("HEURTYPE", -1),
        ("CLUMPTYPE", 0),
        ("VERBOSITY", 1),
    ]
    return "\n".join(f"{key} {value}" for key, value in params) + "\n"


def boundary_records(boundary: sparse.spmatrix, unit_ids: Sequence[int]) -> pd.DataFrame:
    """bound.dat records (id1 <= id2) from the symmetric boundary matrix."""
    upper = sparse.triu(boundary, format="coo")
    ids = np.asarray(unit_ids)
    frame = pd.DataFrame(
        {"id1": ids[upper.row], "id2": ids[upper.col], "boundary": upper.data}
    )
    return frame.sort_values(["id1", "id2"], kind="mergesort").reset_index(drop=True)


def incidence_records(
    incidence: sparse.spmatrix, unit_ids: Sequence[int], feature_ids: Sequence[int]
) -> pd.DataFrame:
    """puvspr.dat records sorted by planning unit, as Marxan requires."""
    coo = incidence.tocoo()
    frame = pd.DataFrame(
        {
            "species": np.asarray(feature_ids)[coo.col],
            "pu": np.asarray(unit_ids)[coo.row],
            "amount": coo.data,
        }
    )
    return frame.sort_values(["pu", "species"], kind="mergesort").reset_index(drop=True)


def write_marxan_inputs(workdir: Path, solver_input: SolverInput, seed: int, config: SolverConfig) -> None:
    """Write input.dat plus the input/ directory for one attempt."""
    problem = solver_input.problem
    input_dir = workdir / "input"
    input_dir.mkdir(parents=True, exist_ok=True)
    (workdir / "output").mkdir(exist_ok=True)

    (workdir / "input.dat").write_text(build_input_dat(solver_input.blm, seed, config))
    solver_input.unit_table[["id", "cost", "status"]].to_csv(
        input_dir / "pu.dat", index=False
    )
    spec = solver_input.feature_table[["id", "target_amount", "spf", "name"]].rename(
        columns={"target_amount": "target"}
    )
    spec.to_csv(input_dir / "spec.dat", index=False)
    incidence_records(
        solver_input.incidence, problem.unit_ids, problem.feature_ids
    ).to_csv(input_dir / "puvspr.dat", index=False)
    boundary_records(solver_input.boundary, problem.unit_ids).to_csv(
        input_dir / "bound.dat", index=False
    )


def find_solution_file(output_dir: Path) -> Optional[Path]:
    for pattern in (f"{SCENARIO_NAME}_r00001.csv", f"{SCENARIO_NAME}_best.csv", "*_r00001.csv", "*_best.csv"):
        matches = sorted(output_dir.glob(pattern))
        if matches:
            return matches[0]
    return None


def parse_solution_file(path: Path, unit_ids: Sequence[int]) -> np.ndarray:
    """
    Read a Marxan solution CSV (planning unit id, selection) into a vector.

    Raises:
        SolverAttemptError: Unreadable file, missing units or non-0/1 flags.
    """
    try:
        frame = pd.read_csv(path)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise SolverAttemptError(f"Unreadable solution file {path.name}: {e}") from e
    if frame.shape[1] < 2:
        raise SolverAttemptError(f"Solution file {path.name} has fewer than 2 columns")
    try:
        ids = frame.iloc[:, 0].astype(np.int64)
        flags = frame.iloc[:, 1].astype(float)
    except (TypeError, ValueError) as e:
        raise SolverAttemptError(f"Malformed solution file {path.name}: {e}") from e
    selection = pd.Series(flags.to_numpy(), index=ids.to_numpy())
    if selection.index.has_duplicates:
        raise SolverAttemptError(f"Solution file {path.name} repeats unit ids")
    missing = sorted(set(unit_ids) - set(selection.index))
    if missing:
        raise SolverAttemptError(
            f"Solution file {path.name} is missing units {missing[:10]}"
        )
    return coerce_selection(selection.reindex(list(unit_ids)).to_numpy(), unit_ids)


# ═══════════════════════════════════════════════════════════════════════════════
# 🚀 5. BACKENDS
# ═══════════════════════════════════════════════════════════════════════════════


class MarxanSolver(SolverBackend):
    """
    Runs a Marxan-compatible executable once per attempt.

    Args:
        command: Executable name/path, or a full command prefix such as
            [sys.executable, "my_solver.py"]. "input.dat" is appended.
        config: SolverConfig (timeout, poll interval, annealing parameters).
        keep_workdirs: Keep each attempt's directory instead of deleting it.
    """

    name = "marxan"

    def __init__(
        self,
        command: Union[str, Sequence[str], None] = None,
        config: Optional[SolverConfig] = None,
        keep_workdirs: Optional[bool] = None,
        workdir_root: Optional[Union[str, Path]] = None,
    ):
        self.config = config or SolverConfig()
        command = command if command is not None else self.config.executable
        self.command: List[str] = [command] if isinstance(command, str) else list(command)
        self.keep_workdirs = (
            self.config.keep_workdirs if keep_workdirs is None else keep_workdirs
        )
        self.workdir_root = Path(workdir_root) if workdir_root else None

    @classmethod
    def from_config(cls, config: Union[Dict[str, Any], AppConfig, None] = None) -> "MarxanSolver":
        return cls(config=normalize_config(config).solver)

    def _resolve_command(self) -> List[str]:
        exe = self.command[0]
        resolved = shutil.which(exe) or (str(Path(exe).resolve()) if Path(exe).exists() else None)
        if resolved is None:
            raise SolverAttemptError(f"Solver executable not found: {exe!r}")
        return [resolved] + self.command[1:]

    def solve(self, solver_input: SolverInput, context: AttemptContext) -> np.ndarray:
        if context.cancelled:
            raise AttemptCancelledError("Attempt cancelled before start")
        command = self._resolve_command()
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "-", solver_input.problem.name)
        prefix = f"mxp_{safe_name}_r{context.slot:05d}_a{context.attempt}_"
        if self.keep_workdirs:
            workdir = Path(tempfile.mkdtemp(prefix=prefix, dir=self.workdir_root))
            logger.info(f"   📁 Keeping solver workdir {workdir}")
            return self._solve_in(workdir, command, solver_input, context)
        with tempfile.TemporaryDirectory(prefix=prefix, dir=self.workdir_root) as tmp:
            return self._solve_in(Path(tmp), command, solver_input, context)

    def _solve_in(
        self,
        workdir: Path,
        command: List[str],
        solver_input: SolverInput,
        context: AttemptContext,
    ) -> np.ndarray:
        write_marxan_inputs(workdir, solver_input, context.seed, self.config)
        start = time.perf_counter()
        with SolverProcess(
            command + ["input.dat"],
            cwd=workdir,
            timeout_s=self.config.timeout_s,
            poll_interval_s=self.config.poll_interval_s,
            cancel_token=context.cancel_token,
        ) as proc:
            returncode = proc.wait()
            if returncode != 0:
                raise SolverAttemptError(
                    f"Solver exited with code {returncode}: {proc.log_tail()}",
                    slot=context.slot,
                    attempt=context.attempt,
                )
        solution_file = find_solution_file(workdir / "output")
        if solution_file is None:
            raise SolverAttemptError(
                "Solver produced no solution file", slot=context.slot, attempt=context.attempt
            )
        selection = parse_solution_file(solution_file, solver_input.problem.unit_ids)
        logger.debug(
            f"   ✅ Slot {context.slot} attempt {context.attempt}: "
            f"{int(selection.sum())} units selected in {time.perf_counter() - start:.2f}s"
        )
        return selection


class CallableSolver(SolverBackend):
    """
    In-process backend around fn(solver_input, context) -> selection.

    Example:
        solver = CallableSolver(lambda inp, ctx: {1, 2})
    """

    name = "callable"

    def __init__(self, fn: Callable[[SolverInput, AttemptContext], Any], name: Optional[str] = None):
        self.fn = fn
        if name:
            self.name = name

    def solve(self, solver_input: SolverInput, context: AttemptContext) -> Any:
        if context.cancelled:
            raise AttemptCancelledError("Attempt cancelled before start")
        return self.fn(solver_input, context)
