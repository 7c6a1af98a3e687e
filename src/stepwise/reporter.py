# reporter.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .model import Branch, Step
from .tree import ELAPSED_PAUSED, Tree

logger = logging.getLogger(__name__)

DEFAULT_REPORT_PATH = "report.json"


# -------------------- Schemas --------------------

class StepReport(BaseModel):
    text: str
    indents: int = 0
    status: str
    as_expected: bool
    elapsed: float
    error: Optional[str] = None
    log: str = ""
    filename: Optional[str] = None
    line_number: Optional[int] = None


class BranchReport(BaseModel):
    hash: str
    status: str
    frequency: str
    groups: list[str] = Field(default_factory=list)
    elapsed: float
    steps: list[StepReport]


class RunReport(BaseModel):
    written_at: str
    is_debug: bool
    elapsed: Optional[float]  # None while paused
    counts: dict[str, int]
    branches: list[BranchReport]


# -------------------- Helpers --------------------

def _step_status(step: Step) -> str:
    if step.is_running:
        return "running"
    if step.is_failed:
        return "failed"
    if step.is_passed:
        return "passed"
    if step.is_skipped:
        return "skipped"
    return "pending"


def _branch_status(branch: Branch) -> str:
    if branch.is_failed:
        return "failed"
    if branch.is_passed:
        return "passed"
    if branch.is_skipped:
        return "skipped"
    if branch.is_running:
        return "running"
    return "pending"


def step_report(step: Step) -> StepReport:
    return StepReport(
        text=step.text,
        indents=step.branch_indents,
        status=_step_status(step),
        as_expected=step.as_expected,
        elapsed=round(step.elapsed, 4),
        error=str(step.error) if step.error is not None else None,
        log=step.log,
        filename=step.filename,
        line_number=step.line_number,
    )


def branch_report(branch: Branch) -> BranchReport:
    return BranchReport(
        hash=branch.hash,
        status=_branch_status(branch),
        frequency=branch.frequency,
        groups=list(branch.groups),
        elapsed=round(branch.elapsed, 4),
        steps=[step_report(s) for s in branch.steps],
    )


def build_report(tree: Tree) -> RunReport:
    branches = [branch_report(b) for b in tree.branches]
    counts = {"passed": 0, "failed": 0, "skipped": 0, "running": 0, "pending": 0}
    for b in branches:
        counts[b.status] += 1
    return RunReport(
        written_at=datetime.now(timezone.utc).isoformat(),
        is_debug=tree.is_debug,
        elapsed=None if tree.elapsed == ELAPSED_PAUSED else round(tree.elapsed, 4),
        counts=counts,
        branches=branches,
    )


def passed_hashes(path: str | Path) -> set[str]:
    """Hashes of the branches that passed in the report at path. No report, no hashes."""
    path = Path(path)
    if not path.exists():
        return set()
    report = RunReport.model_validate_json(path.read_text(encoding="utf-8"))
    return {b.hash for b in report.branches if b.status == "passed"}


# -------------------- Reporter --------------------

class Reporter:
    """
    Writes a JSON report of the tree's branches.

    The runner calls start() when a run (or resume, or single step) begins
    and stop() when it ends. Every stop() rewrites the report file, stopping
    the runner included.
    """

    def __init__(self, tree: Tree, path: str | Path = DEFAULT_REPORT_PATH):
        self.tree = tree
        self.path = Path(path)
        self.is_reporting = False
        self._lock = threading.Lock()

    def start(self) -> None:
        self.is_reporting = True

    def stop(self) -> None:
        with self._lock:
            self.is_reporting = False
            self.write()

    def write(self) -> Path:
        """Write the report, to a temp file first, then renamed into place."""
        report = build_report(self.tree)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(report.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(self.path)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        logger.debug("report written to %s", self.path)
        return self.path
