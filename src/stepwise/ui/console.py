"""Console output formatting utilities for stepwise."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ..model import Branch, Step
from ..tree import ELAPSED_PAUSED


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        test_file: str,
        branch_count: int,
        instances: int,
        is_debug: bool = False,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Test file: {test_file}")
        print(f"Branches: {branch_count}")
        print(f"Instances: {instances}")
        if is_debug:
            print("Mode: debug (only the first debug branch runs)")
        print()

    def print_step_result(self, step: Optional[Step]) -> None:
        """Print the outcome of a single step (used while stepping through a paused branch)."""
        if step is None:
            return
        indent = "  " * step.branch_indents
        if step.is_failed:
            status = "failed (expected)" if step.as_expected else "FAILED"
        elif step.is_passed:
            status = "passed" if step.as_expected else "PASSED (expected to fail)"
        elif step.is_skipped:
            status = "skipped"
        else:
            status = "not run"
        print(f"{indent}STEP: {step.text} [{status}]")
        if step.error is not None:
            print(f"{indent}  Error: {step.error}")
        if self.debug and step.log:
            for line in step.log.rstrip("\n").split("\n"):
                print(f"{indent}  | {line}")

    def print_paused(self, next_step: Optional[Step], last_step: Optional[Step]) -> None:
        """Print where the run is paused and the available commands."""
        print("\nPAUSED")
        if last_step is not None:
            print(f"Last step: {last_step.text}")
            if last_step.error is not None:
                print(f"  Error: {last_step.error}")
        if next_step is not None:
            print(f"Next step: {next_step.text}")
            if next_step.filename:
                print(f"  at {next_step.filename}:{next_step.line_number}")
        print("Enter = run next step, s = skip it, p = re-run previous step, r = resume, x = stop,")
        print("anything else runs as a step")

    def print_results(self, branches: Iterable[Branch], elapsed: float = 0) -> None:
        """Print final results summary."""
        branches = list(branches)
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for branch in branches:
            if branch.is_failed:
                status = "FAILED"
            elif branch.is_passed:
                status = "SUCCESS"
            elif branch.is_skipped:
                status = "SKIPPED"
            else:
                status = "NOT RUN"
            last = branch.steps[-1].text if branch.steps else ""
            print(f"  {branch.hash}: {status}  ({len(branch.steps)} steps, ends with '{last}')")
            if branch.is_failed:
                for s in branch.steps:
                    if (s.is_passed or s.is_failed) and not s.as_expected:
                        reason = str(s.error) if s.error is not None else "passed, but was expected to fail"
                        print(f"    at '{s.text}': {(reason.splitlines() or [''])[0]}")
                        break

        passed = sum(1 for b in branches if b.is_passed)
        failed = sum(1 for b in branches if b.is_failed)
        skipped = sum(1 for b in branches if b.is_skipped)
        print(f"\n{passed} passed, {failed} failed, {skipped} skipped")
        if elapsed != ELAPSED_PAUSED and elapsed:
            print(f"Duration: {elapsed:.1f}s")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
