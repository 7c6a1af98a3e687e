# runner.py
from __future__ import annotations

import logging
import runpy
import threading
import time
from concurrent.futures import as_completed
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError

from . import dsl
from .artifacts import ScreenshotStore
from .config import UNLIMITED_SCREENSHOTS, RunConfig
from .errors import ConfigError, RunnerError
from .model import Branch, Step
from .reporter import passed_hashes
from .run_instance import RunInstance
from .tree import ELAPSED_PAUSED, Tree

logger = logging.getLogger(__name__)

_UNSET = object()

# Persistent registry key holding every browser session opened during the run
BROWSERS_KEY = "browsers"

# idle -> running -> paused | stopped | complete
IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"
STOPPED = "stopped"
COMPLETE = "complete"


# ----------------------------------------------------------------------
# Test file loading (local file/module)
# ----------------------------------------------------------------------

def load_tree(path: str | Path) -> Tree:
    """
    Load a step tree from a python file path.

    The file must define either:
      - tree() -> Tree
      - TREE = Tree(...)
    """
    tree_path = Path(path).expanduser().resolve()
    if not tree_path.exists():
        raise FileNotFoundError(f"Test file not found: {tree_path}")
    if tree_path.suffix != ".py":
        raise ValueError(f"Test file must be a .py file, got: {tree_path.name}")

    module_name = f"stepwise_tests_{tree_path.stem}"
    globals_dict = runpy.run_path(str(tree_path), run_name=module_name)

    loaded = None
    if "TREE" in globals_dict:
        loaded = globals_dict["TREE"]
    elif callable(globals_dict.get("tree")) and globals_dict["tree"] is not dsl.tree:
        loaded = globals_dict["tree"]()

    if not isinstance(loaded, Tree):
        raise TypeError(
            "Test file must return/define a Tree. "
            "Define tree() -> Tree or TREE = Tree(...)."
        )
    return loaded


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class Runner:
    """
    Runs the branches of a Tree on up to config.max_instances RunInstances in parallel.

    Also owns the before/after-everything hooks, the pause/step/stop protocol
    and the run-wide persistent registry (the only state RunInstances share).
    """

    def __init__(self, config: RunConfig | None = None):
        self.config = config or RunConfig()

        self.tree: Optional[Tree] = None
        self.reporter: Any = None

        self.max_instances = self.config.max_instances
        self.pause_on_fail = self.config.pause_on_fail

        self.persistent: dict = {}      # survives from branch to branch, guarded by _lock
        self.global_init: dict = {}     # every branch's global variables start from these
        self.run_instances: List[RunInstance] = []
        self._hook_instance: Optional[RunInstance] = None

        self.is_stopped = False
        self.state = IDLE

        self.screenshots = ScreenshotStore(self.config.screenshot_dir)
        self._screenshots_taken = 0

        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)

    def init(self, tree: Tree, reporter: Any = None) -> None:
        """Attach a tree (and optional reporter) and generate its branches."""
        if not self.config.no_report:
            self.reporter = reporter
        self.tree = tree
        tree.step_data_mode = self.config.step_data
        tree.generate_branches(
            groups=self.config.groups,
            min_frequency=self.config.min_frequency,
            no_debug=self.config.no_debug,
        )
        if self.config.rerun_not_passed:
            self._drop_passed_branches()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> bool:
        """
        Start, or resume from a pause, running the tree's branches.

        Returns True if there's nothing left to run, False if work remains
        (i.e. the run paused).
        """
        if self.tree is None:
            raise RunnerError("Runner.init() must be called before run()")
        if self.has_stopped():
            raise RunnerError("Cannot run a stopped runner")

        self.tree.time_started = time.time()
        self._start_reporter()

        if self.tree.is_debug:
            self.pause_on_fail = True

        num_instances = min(self.max_instances, len(self.tree.branches))
        if self.pause_on_fail:
            num_instances = min(1, num_instances)  # a pause only makes sense with a single RunInstance

        self.state = RUNNING
        if self.has_paused():
            self.run_instances[0].run()  # resume the one branch that was paused
            if self.has_paused():
                self.tree.elapsed = ELAPSED_PAUSED
                self.state = PAUSED
            else:
                self._end()
        else:
            if self._run_before_everything():
                self._run_branches(num_instances)
            self._end()

        self._stop_reporter()

        return self.get_next_ready_step() is None

    def stop(self) -> None:
        """Stop every RunInstance, close open browsers, run after-everything hooks. Safe to call twice."""
        with self._lock:
            if self.is_stopped:
                return
            already_complete = self.state == COMPLETE
            self.is_stopped = True
            self.state = STOPPED
            instances = list(self.run_instances)
            self._cond.notify_all()

        for run_instance in instances:
            run_instance.stop()

        self._kill_all_sessions()
        if not already_complete:
            self._run_after_everything()  # a completed run already ran them
        self._shutdown_instances()
        self._stop_reporter()

    def run_one_step(self) -> bool:
        """Run the next step, then pause again. True once the last branch is done (after-everything ran)."""
        self._require_paused("run a step")
        self._start_reporter()

        is_branch_complete = self.run_instances[0].run_one_step()
        if is_branch_complete:
            self._complete()

        self._stop_reporter()
        return is_branch_complete

    def skip_one_step(self) -> bool:
        """Skip the next step, then pause again. True once the last branch is done (after-everything ran)."""
        self._require_paused("skip a step")
        self._start_reporter()

        is_branch_complete = self.run_instances[0].skip_one_step()
        if is_branch_complete:
            self._complete()

        self._stop_reporter()
        return is_branch_complete

    def run_last_step(self) -> Optional[Step]:
        """Re-run the previous step without moving forward."""
        self._require_paused("run a step")
        return self.run_instances[0].run_last_step()

    def inject_step(self, step: Step) -> List[Step]:
        """Run an ad hoc step in the context of the paused branch."""
        self._require_paused("run a step")
        return self.run_instances[0].inject_step(step)

    def get_last_step(self) -> Optional[Step]:
        if not self.run_instances:
            return None
        return self.run_instances[0].get_last_step()

    def get_next_ready_step(self) -> Optional[Step]:
        """Next step to run when paused (possibly the first step of the next branch), None if nothing is left."""
        if not self.run_instances:
            return None
        step = self.run_instances[0].get_next_ready_step()
        if step is None and self.has_paused():
            pending = self._pending_branches()
            if pending:
                return pending[0].get_next_ready_step()
        return step

    def has_pending_branches(self) -> bool:
        return bool(self._pending_branches())

    def has_paused(self) -> bool:
        return len(self.run_instances) == 1 and self.run_instances[0].is_paused

    def has_stopped(self) -> bool:
        return self.is_stopped

    def is_headless(self) -> bool:
        """Headless unless debugging (express debug stays headless); an explicit setting always wins."""
        if self.config.headless is not None:
            return self.config.headless
        return not self.tree.is_debug or self.tree.is_express_debug

    # ------------------------------------------------------------------
    # Shared state (called from RunInstances, any thread)
    # ------------------------------------------------------------------

    def p(self, name: str, value: Any = _UNSET) -> Any:
        """Get or set a persistent variable."""
        with self._lock:
            if value is not _UNSET:
                self.persistent[name] = value
                return value
            return self.persistent.get(name)

    def append_persistent(self, name: str, item: Any) -> None:
        """Append to a persistent list, creating it if needed."""
        with self._lock:
            self.persistent.setdefault(name, []).append(item)

    def claim_screenshot(self) -> bool:
        """Consume one screenshot from the run-wide budget. False once it's used up."""
        with self._lock:
            budget = self.config.max_screenshots
            if budget == UNLIMITED_SCREENSHOTS:
                return True
            if self._screenshots_taken >= budget:
                return False
            self._screenshots_taken += 1
            return True

    def release_screenshot(self) -> None:
        """Hand back a claimed screenshot that was never saved."""
        with self._lock:
            if self._screenshots_taken > 0:
                self._screenshots_taken -= 1

    def should_capture(self) -> bool:
        return self.reporter is not None and self.tree.step_data_mode != "none"

    def next_branch(self, run_instance: RunInstance) -> Optional[Branch]:
        """
        Hand the next runnable branch to run_instance, or None when there's nothing left for it.

        A branch sharing a non-parallel key with a branch that's currently
        running waits until that one finishes.
        """
        with self._cond:
            while not self.is_stopped:
                pending = self._pending_branches()
                if not pending:
                    return None

                busy = [
                    ri for ri in self.run_instances
                    if ri is not run_instance and ri.current_branch is not None
                ]
                for branch in pending:
                    if not any(branch.conflicts_with(ri.current_branch) for ri in busy):
                        branch.is_running = True
                        run_instance.current_branch = branch
                        return branch

                if all(ri.is_paused for ri in busy):
                    return None  # only paused branches hold the keys; nobody will release them
                self._cond.wait()
            return None

    def branch_finished(self, branch: Branch) -> None:
        self.screenshots.retain(branch, self.tree.step_data_mode)
        with self._cond:
            self._cond.notify_all()

    def instance_paused(self, run_instance: RunInstance) -> None:
        with self._cond:
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pending_branches(self) -> List[Branch]:
        with self._lock:
            return [b for b in self.tree.branches if not b.is_started()]

    def _drop_passed_branches(self) -> None:
        """Keep only the branches that didn't pass in the previous report."""
        path = self.config.report_path
        try:
            passed = passed_hashes(path)
        except ValidationError as e:
            raise ConfigError(field="rerun_not_passed", message=f"cannot read the previous report {path}: {e}") from e
        before = len(self.tree.branches)
        self.tree.branches = [b for b in self.tree.branches if b.hash not in passed]
        logger.debug("rerun: %d of %d branch(es) passed last time", before - len(self.tree.branches), before)

    def _require_paused(self, action: str) -> None:
        if not self.has_paused():
            raise RunnerError(f"Must be paused to {action}")

    def _hooks(self) -> RunInstance:
        """The RunInstance that before/after-everything steps run on, created on first use."""
        with self._lock:
            if self._hook_instance is None:
                self._hook_instance = RunInstance(self)
            return self._hook_instance

    def _run_before_everything(self) -> bool:
        """Run Before Everything steps in order. False as soon as one fails or a stop comes in."""
        if not self.tree.before_everything:
            return True
        hook_instance = self._hooks()
        for step in self.tree.before_everything:
            hook_instance.run_hook_step(step)
            if step.error is not None or self.has_stopped():
                logger.debug("before everything aborted at %r", step.text)
                return False
        return True

    def _run_branches(self, num_instances: int) -> None:
        """Spawn num_instances RunInstances; each one runs branches until none are left."""
        if num_instances <= 0:
            return

        instances = [RunInstance(self) for _ in range(num_instances)]
        with self._lock:
            self.run_instances.extend(instances)

        futures = {ri.start(): ri for ri in instances}
        for future in as_completed(futures):
            future.result()

    def _run_after_everything(self) -> None:
        """Run After Everything steps in order; a failing one doesn't stop the rest."""
        if self.tree.after_everything:
            hook_instance = self._hooks()
            for step in self.tree.after_everything:
                hook_instance.run_hook_step(step)
                if step.error is not None:
                    logger.debug("after everything step %r failed: %s", step.text, step.error)

        if self.tree.elapsed != ELAPSED_PAUSED and self.tree.time_started is not None:
            self.tree.elapsed = time.time() - self.tree.time_started  # only measured if never paused

    def _end(self) -> None:
        if self.has_stopped():
            pass  # stop() runs after-everything itself
        elif self.has_paused():
            self.tree.elapsed = ELAPSED_PAUSED
            self.state = PAUSED
        else:
            self._complete()

    def _complete(self) -> None:
        """Every branch is done: run after-everything, close leftover browsers, release the owner threads."""
        self._run_after_everything()
        self.state = COMPLETE
        self._kill_all_sessions()
        self._shutdown_instances()

    def _shutdown_instances(self) -> None:
        with self._lock:
            instances = list(self.run_instances)
            hook_instance, self._hook_instance = self._hook_instance, None
        if hook_instance is not None:
            instances.append(hook_instance)
        for run_instance in instances:
            run_instance.shutdown()

    def _kill_all_sessions(self) -> None:
        for session in list(self.p(BROWSERS_KEY) or []):
            try:
                session.close()
            except Exception as e:
                logger.debug("ignoring error while closing browser session: %s", e)

    def _start_reporter(self) -> None:
        if self.reporter is not None:
            self.reporter.start()

    def _stop_reporter(self) -> None:
        if self.reporter is not None:
            self.reporter.stop()
