"""Run record storage.

The engine and aggregator talk to storage only through ``RunRepository``'s
structured create/update calls. Records are stored as serialized snapshots,
so a reader never sees a run mutate underneath it.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from exceptions import RunStateError
from pool_manager import Allocation
from test_types import ReliabilityScore, TestCase, TestRun, TestStep


class RunRepository(ABC):
    """Persistence boundary for test cases, runs, steps and allocations."""

    @abstractmethod
    async def get_test_case(self, test_case_id: str) -> Optional[TestCase]:
        ...

    @abstractmethod
    async def save_test_case(self, test_case: TestCase) -> None:
        ...

    @abstractmethod
    async def create_run(self, run: TestRun) -> None:
        ...

    @abstractmethod
    async def update_run(self, run: TestRun) -> None:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[TestRun]:
        ...

    @abstractmethod
    async def save_step(self, run_id: str, step: TestStep) -> None:
        """Insert or replace one step record of a run."""

    @abstractmethod
    async def record_allocation(self, allocation: Allocation) -> None:
        ...

    @abstractmethod
    async def list_runs(self, test_case_id: str, terminal_only: bool = True) -> List[TestRun]:
        ...

    @abstractmethod
    async def update_reliability(self, score: ReliabilityScore) -> None:
        """Store a recomputed score and mirror it onto the test case record."""

    @abstractmethod
    async def get_reliability(self, test_case_id: str) -> Optional[ReliabilityScore]:
        ...


def _merge_step(run_data: Dict[str, Any], step: TestStep) -> None:
    steps = run_data.setdefault("steps", [])
    payload = step.to_dict()
    for i, existing in enumerate(steps):
        if existing["step_number"] == step.step_number:
            steps[i] = payload
            return
    steps.append(payload)
    steps.sort(key=lambda s: s["step_number"])


class InMemoryRunRepository(RunRepository):
    """Process-local repository used by tests and one-off CLI runs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._cases: Dict[str, Dict[str, Any]] = {}
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._allocations: Dict[str, Dict[str, Any]] = {}
        self._reliability: Dict[str, Dict[str, Any]] = {}

    async def get_test_case(self, test_case_id: str) -> Optional[TestCase]:
        data = self._cases.get(test_case_id)
        return TestCase.from_dict(data) if data else None

    async def save_test_case(self, test_case: TestCase) -> None:
        async with self._lock:
            self._cases[test_case.id] = test_case.to_dict()

    async def create_run(self, run: TestRun) -> None:
        async with self._lock:
            if run.id in self._runs:
                raise RunStateError("Run already exists", run_id=run.id)
            self._runs[run.id] = run.to_dict()

    async def update_run(self, run: TestRun) -> None:
        async with self._lock:
            self._runs[run.id] = run.to_dict()

    async def get_run(self, run_id: str) -> Optional[TestRun]:
        data = self._runs.get(run_id)
        return TestRun.from_dict(data) if data else None

    async def save_step(self, run_id: str, step: TestStep) -> None:
        async with self._lock:
            run_data = self._runs.get(run_id)
            if run_data is None:
                raise RunStateError("Unknown run", run_id=run_id)
            _merge_step(run_data, step)

    async def record_allocation(self, allocation: Allocation) -> None:
        async with self._lock:
            self._allocations[allocation.id] = allocation.to_dict()

    async def list_allocations(self, test_run_id: Optional[str] = None) -> List[Allocation]:
        return [
            Allocation.from_dict(a)
            for a in self._allocations.values()
            if test_run_id is None or a["test_run_id"] == test_run_id
        ]

    async def list_runs(self, test_case_id: str, terminal_only: bool = True) -> List[TestRun]:
        runs = [TestRun.from_dict(d) for d in self._runs.values() if d["test_case_id"] == test_case_id]
        if terminal_only:
            runs = [r for r in runs if r.is_terminal]
        return sorted(runs, key=lambda r: r.created_at)

    async def update_reliability(self, score: ReliabilityScore) -> None:
        async with self._lock:
            self._reliability[score.test_case_id] = score.to_dict()
            case = self._cases.get(score.test_case_id)
            if case is not None:
                case["reliability_score"] = score.score

    async def get_reliability(self, test_case_id: str) -> Optional[ReliabilityScore]:
        data = self._reliability.get(test_case_id)
        return ReliabilityScore.from_dict(data) if data else None


class JsonRunRepository(RunRepository):
    """Repository writing one JSON document per record under ``store_dir``.

    Layout::

        store_dir/cases/<test_case_id>.json
        store_dir/runs/<test_run_id>.json
        store_dir/allocations/<allocation_id>.json
        store_dir/reliability/<test_case_id>.json
    """

    def __init__(self, store_dir: Path, logger: Optional[logging.Logger] = None):
        self.store_dir = Path(store_dir)
        self.logger = logger or logging.getLogger("persistence")
        self._lock = asyncio.Lock()
        for sub in ("cases", "runs", "allocations", "reliability"):
            (self.store_dir / sub).mkdir(parents=True, exist_ok=True)

    def _path(self, kind: str, record_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in record_id)
        if safe != record_id:
            # Keep ids that sanitize alike (``a/b``, ``a_b``) in separate files
            safe = f"{safe}-{hashlib.sha1(record_id.encode('utf-8')).hexdigest()[:8]}"
        return self.store_dir / kind / f"{safe}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            self.logger.error(f"Corrupt record {path}: {e}")
            return None

    def _write(self, path: Path, data: Dict[str, Any]) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    async def get_test_case(self, test_case_id: str) -> Optional[TestCase]:
        data = self._read(self._path("cases", test_case_id))
        return TestCase.from_dict(data) if data else None

    async def save_test_case(self, test_case: TestCase) -> None:
        async with self._lock:
            self._write(self._path("cases", test_case.id), test_case.to_dict())

    async def create_run(self, run: TestRun) -> None:
        async with self._lock:
            path = self._path("runs", run.id)
            if path.exists():
                raise RunStateError("Run already exists", run_id=run.id)
            self._write(path, run.to_dict())

    async def update_run(self, run: TestRun) -> None:
        async with self._lock:
            self._write(self._path("runs", run.id), run.to_dict())

    async def get_run(self, run_id: str) -> Optional[TestRun]:
        data = self._read(self._path("runs", run_id))
        return TestRun.from_dict(data) if data else None

    async def save_step(self, run_id: str, step: TestStep) -> None:
        async with self._lock:
            path = self._path("runs", run_id)
            run_data = self._read(path)
            if run_data is None:
                raise RunStateError("Unknown run", run_id=run_id)
            _merge_step(run_data, step)
            self._write(path, run_data)

    async def record_allocation(self, allocation: Allocation) -> None:
        async with self._lock:
            self._write(self._path("allocations", allocation.id), allocation.to_dict())

    async def list_runs(self, test_case_id: str, terminal_only: bool = True) -> List[TestRun]:
        runs: List[TestRun] = []
        for path in sorted((self.store_dir / "runs").glob("*.json")):
            data = self._read(path)
            if not data or data.get("test_case_id") != test_case_id:
                continue
            run = TestRun.from_dict(data)
            if terminal_only and not run.is_terminal:
                continue
            runs.append(run)
        return sorted(runs, key=lambda r: r.created_at)

    async def update_reliability(self, score: ReliabilityScore) -> None:
        async with self._lock:
            self._write(self._path("reliability", score.test_case_id), score.to_dict())
            case_path = self._path("cases", score.test_case_id)
            case = self._read(case_path)
            if case is not None:
                case["reliability_score"] = score.score
                self._write(case_path, case)

    async def get_reliability(self, test_case_id: str) -> Optional[ReliabilityScore]:
        data = self._read(self._path("reliability", test_case_id))
        return ReliabilityScore.from_dict(data) if data else None


def create_repository(store_dir: Optional[Path] = None, logger: Optional[logging.Logger] = None) -> RunRepository:
    if store_dir is None:
        return InMemoryRunRepository()
    return JsonRunRepository(store_dir, logger=logger)
