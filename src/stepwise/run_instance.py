# run_instance.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .errors import GenerationError, RunnerError
from .matching import VAR_REGEX, declaration_parameters, extract_arguments, has_quotes, strip_quotes
from .model import Branch, Step

if TYPE_CHECKING:
    from .runner import Runner

logger = logging.getLogger(__name__)

_UNSET = object()


class RunInstance:
    """
    Executes branches handed out by a Runner, one at a time, one step at a time.

    Everything an instance runs (branch loop, single steps, hooks, browser calls)
    happens on its one owner thread, which lives until shutdown(), pauses included.
    Browser sessions opened by a step are bound to that thread.

    A code block is called with this instance, which gives it access to:
      g(name[, value])  variables global to the branch
      l(name[, value])  variables local to the current function call
      p(name[, value])  variables that persist across branches (shared, locked)
      log(text)         the running step's log
    """

    def __init__(self, runner: "Runner"):
        self.runner = runner
        self.tree = runner.tree

        self.current_branch: Optional[Branch] = None
        self.current_step: Optional[Step] = None
        self.last_step: Optional[Step] = None  # most recently completed step

        self.is_paused = False
        self.is_stopped = False

        self.global_vars: Dict[str, Any] = dict(runner.global_init)
        self._local_frames: List[Dict[str, Any]] = [{}]
        self._paused_before: Optional[Step] = None

        self.playwright: Any = None  # browser driver, started on the owner thread by the first session
        self._owner_ident: Optional[int] = None
        self._owner = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="stepwise-instance",
            initializer=self._bind_owner,
        )
        self._is_shut_down = False

    # ------------------------------------------------------------------
    # Owner thread
    # ------------------------------------------------------------------

    def _bind_owner(self) -> None:
        self._owner_ident = threading.get_ident()

    def on_owner_thread(self) -> bool:
        return threading.get_ident() == self._owner_ident

    def call_on_owner(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run fn on the owner thread and wait for its result (or exception)."""
        if self.on_owner_thread():
            return fn(*args, **kwargs)
        return self._owner.submit(fn, *args, **kwargs).result()

    def start(self) -> Future:
        """Start run() on the owner thread without waiting for it."""
        return self._owner.submit(self._run)

    def shutdown(self) -> None:
        """Stop the browser driver and let the owner thread go. Safe to call twice."""
        if self._is_shut_down:
            return
        self._is_shut_down = True
        if self.on_owner_thread():
            self._stop_driver()
            self._owner.shutdown(wait=False)  # can't join ourselves
            return
        if self.playwright is not None:
            self._owner.submit(self._stop_driver).result()
        self._owner.shutdown(wait=True)

    def _stop_driver(self) -> None:
        driver, self.playwright = self.playwright, None
        if driver is None:
            return
        try:
            driver.stop()
        except Exception as e:
            logger.debug("ignoring error while stopping the browser driver: %s", e)

    # ------------------------------------------------------------------
    # Branch loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run branches until none are left, this instance pauses, or the run is stopped."""
        self.call_on_owner(self._run)

    def _run(self) -> None:
        self.is_paused = False
        if self.current_branch is not None:
            # resuming from a pause
            self._run_branch(self.current_branch)
            if self.is_paused or self.is_stopped:
                return

        while not self.is_stopped:
            branch = self.runner.next_branch(self)
            if branch is None:
                return
            self._start_branch(branch)
            self._run_branch(branch)
            if self.is_paused:
                return

    def _start_branch(self, branch: Branch) -> None:
        self.current_branch = branch
        self.last_step = None
        self.global_vars = dict(self.runner.global_init)
        self._local_frames = [{}]
        self._paused_before = None
        logger.debug("branch %s started (%d steps)", branch.hash, len(branch.steps))

    def _run_branch(self, branch: Branch) -> None:
        while not self.is_stopped:
            step = branch.get_next_ready_step()
            if step is None:
                break

            if step.is_debug and not self.tree.is_express_debug and self._paused_before is not step:
                self._paused_before = step
                self.pause()
                return

            self.run_step(step, branch)

            if (step.is_passed or step.is_failed) and not step.as_expected:
                if self.runner.pause_on_fail:
                    self.pause()
                    return
                for rest in branch.steps:
                    if not rest.is_complete():
                        rest.is_skipped = True
                break

        if self.is_stopped:
            return
        self._finish_branch(branch)

    def _finish_branch(self, branch: Branch) -> None:
        branch.finish()
        self.current_branch = None
        self.runner.branch_finished(branch)
        logger.debug(
            "branch %s finished: %s",
            branch.hash,
            "passed" if branch.is_passed else "failed" if branch.is_failed else "skipped",
        )

    # ------------------------------------------------------------------
    # Pause / stop
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self.is_paused = True
        self.runner.instance_paused(self)
        logger.debug("paused before/after step %r", self.current_step.text if self.current_step else None)

    def stop(self) -> None:
        self.is_stopped = True

    # ------------------------------------------------------------------
    # Single-step protocol (paused only)
    # ------------------------------------------------------------------

    def _require_paused(self) -> None:
        if not self.is_paused:
            raise RunnerError("This run instance isn't paused")

    def _paused_branch(self, start_next: bool = False) -> Branch:
        """The branch we're paused in. Paused between branches, start_next picks up the next one."""
        self._require_paused()
        if self.current_branch is None and start_next:
            branch = self.runner.next_branch(self)
            if branch is not None:
                self._start_branch(branch)
        if self.current_branch is None:
            raise RunnerError("This run instance is paused between branches")
        return self.current_branch

    def _complete_if_done(self, branch: Branch) -> bool:
        """Finish branch if it has no steps left. True once there's nothing left to step through at all."""
        if branch.get_next_ready_step() is not None:
            return False
        self._finish_branch(branch)
        if self.runner.has_pending_branches():
            return False  # stay paused, between branches
        self.is_paused = False
        return True

    def run_one_step(self) -> bool:
        """Run the next step, stay paused. True if that completed the last branch."""
        return self.call_on_owner(self._run_one_step)

    def _run_one_step(self) -> bool:
        branch = self._paused_branch(start_next=True)
        step = branch.get_next_ready_step()
        if step is not None:
            self._paused_before = step
            self.run_step(step, branch)
        return self._complete_if_done(branch)

    def skip_one_step(self) -> bool:
        """Mark the next step skipped without running it. True if that completed the last branch."""
        return self.call_on_owner(self._skip_one_step)

    def _skip_one_step(self) -> bool:
        branch = self._paused_branch(start_next=True)
        step = branch.get_next_ready_step()
        if step is not None:
            step.is_skipped = True
            step.append_to_log("Skipped while paused")
            self.last_step = step
        return self._complete_if_done(branch)

    def run_last_step(self) -> Optional[Step]:
        """Re-run the most recently completed step in place."""
        return self.call_on_owner(self._run_last_step)

    def _run_last_step(self) -> Optional[Step]:
        branch = self._paused_branch()
        step = self.last_step
        if step is None:
            return None
        self.run_step(step, branch)
        return step

    def inject_step(self, step: Step) -> List[Step]:
        """Run an ad hoc step in this instance's context without touching the branch."""
        return self.call_on_owner(self._inject_step, step)

    def _inject_step(self, step: Step) -> List[Step]:
        self._require_paused()
        near = self.last_step or self.get_next_ready_step()
        steps = self.tree.branchify_injected(step, near)
        for s in steps:
            self.run_step(s, None)
        return steps

    def get_next_ready_step(self) -> Optional[Step]:
        if self.current_branch is None:
            return None
        return self.current_branch.get_next_ready_step()

    def get_last_step(self) -> Optional[Step]:
        return self.last_step

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def run_hook_step(self, step: Step) -> Step:
        """Run a before/after-everything step. Its error (if any) ends up on step.error."""
        return self.call_on_owner(self._run_hook_step, step)

    def _run_hook_step(self, step: Step) -> Step:
        if not step.is_function_call:
            self.run_step(step, None)
            return step

        step.reset_outcome()
        try:
            expanded = self.tree.branchify_injected(step)
        except GenerationError as e:
            step.error = e
            step.is_failed = True
            step.append_to_log(str(e))
            return step

        for s in expanded:
            self.run_step(s, None)
            if s.log:
                step.append_to_log(s.log.rstrip("\n"))
            if s.is_failed:
                step.error = s.error
                step.is_failed = True
                return step
        step.is_passed = True
        return step

    def run_step(self, step: Step, branch: Optional[Branch]) -> None:
        step.reset_outcome()
        step.is_running = True
        self.current_step = step
        start = time.monotonic()

        if step.is_to_do or step.is_manual:
            step.is_skipped = True
            step.append_to_log("Skipped (to do)" if step.is_to_do else "Skipped (manual step)")
            self._end_step(step, branch, start)
            return

        self._enter_scope(step)
        ordinal = branch.steps.index(step) + 1 if branch is not None and step in branch.steps else None

        self._screenshot(step, branch, ordinal, is_after=False)
        try:
            result = step.code_block(self) if step.code_block is not None else None
            self._assign_bindings(step, result)
        except Exception as e:  # a failing step never takes the branch loop down with it
            step.error = e
            step.is_failed = True
            step.append_to_log(f"Error: {type(e).__name__}: {e}")
        else:
            step.is_passed = True
        self._screenshot(step, branch, ordinal, is_after=True)

        step.as_expected = step.is_failed == step.is_expected_fail
        if step.is_expected_fail and step.is_passed:
            step.append_to_log("This step passed, but was expected to fail")

        self._end_step(step, branch, start)

    def _end_step(self, step: Step, branch: Optional[Branch], start: float) -> None:
        step.elapsed = time.monotonic() - start
        step.is_running = False
        if branch is not None:
            branch.elapsed += step.elapsed
            self.last_step = step

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def _enter_scope(self, step: Step) -> None:
        """Pick the local frame for step; a function call opens a new one holding its arguments."""
        depth = step.branch_indents
        del self._local_frames[depth + 1:]
        while len(self._local_frames) <= depth:
            self._local_frames.append({})

        if step.is_function_call and step.function_declaration_text:
            names = declaration_parameters(step.function_declaration_text)
            args = extract_arguments(step.get_function_call_text() or "")
            self._local_frames.append(
                {name: self._evaluate_argument(arg) for name, arg in zip(names, args)}
            )

    def _evaluate_argument(self, arg: str) -> Any:
        if has_quotes(arg):
            return strip_quotes(arg)
        if VAR_REGEX.fullmatch(arg):
            return self.get_var(arg.strip("{}").strip())
        return arg  # [element finder], passed through as written

    def _assign_bindings(self, step: Step, result: Any) -> None:
        if not step.var_bindings:
            return
        scope_frame = self._local_frames[min(step.branch_indents, len(self._local_frames) - 1)]
        for binding in step.var_bindings:
            if has_quotes(binding.value):
                value = strip_quotes(binding.value)
            elif step.code_block is not None:
                value = result
            elif VAR_REGEX.fullmatch(binding.value.strip()):
                value = self.get_var(binding.value.strip().strip("{}").strip())
            else:
                continue
            if binding.is_local:
                scope_frame[binding.name] = value
            else:
                self.global_vars[binding.name] = value

    def g(self, name: str, value: Any = _UNSET) -> Any:
        if value is not _UNSET:
            self.global_vars[name] = value
            return value
        return self.global_vars.get(name)

    def l(self, name: str, value: Any = _UNSET) -> Any:  # noqa: E743
        frame = self._local_frames[-1]
        if value is not _UNSET:
            frame[name] = value
            return value
        return frame.get(name)

    def p(self, name: str, value: Any = _UNSET) -> Any:
        if value is not _UNSET:
            return self.runner.p(name, value)
        return self.runner.p(name)

    def get_var(self, name: str) -> Any:
        """Local variable if set, else global. KeyError if neither is set."""
        frame = self._local_frames[-1]
        if name in frame:
            return frame[name]
        if name in self.global_vars:
            return self.global_vars[name]
        raise KeyError(f"The variable {{{name}}} wasn't set")

    def log(self, text: str) -> None:
        if self.current_step is not None:
            self.current_step.append_to_log(text)

    # ------------------------------------------------------------------
    # Screenshots
    # ------------------------------------------------------------------

    def _screenshot(self, step: Step, branch: Optional[Branch], ordinal: Optional[int], is_after: bool) -> None:
        if branch is None or ordinal is None or not self.runner.should_capture():
            return
        browser = self.global_vars.get("browser")
        if browser is None:
            return
        if not self.runner.claim_screenshot():
            return
        saved = False
        try:
            data = browser.take_screenshot(is_after)
            if data:
                self.runner.screenshots.save(branch.hash, ordinal, is_after, data)
                saved = True
        except Exception as e:
            logger.debug("screenshot of step %r failed: %s", step.text, e)
        if not saved:
            self.runner.release_screenshot()  # nothing was written, give the budget back
