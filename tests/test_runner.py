"""Tests for the Runner and the RunInstances it drives.

Sections
--------
1.  TestRun              - top-level run, outcomes, expected-fail, to-do steps
2.  TestParallelism      - instance bound, each branch once, non-parallel keys
3.  TestHooks            - before/after everything
4.  TestPause            - pause on fail, debug pause, step protocol
5.  TestStop             - stop idempotence, session teardown
6.  TestVariables        - global / local / persistent variables and bindings
7.  TestScreenshots      - capture, budget, retention
"""

from __future__ import annotations

import threading

import pytest

from stepwise import call, func, group, let, step, tree
from stepwise.errors import ConfigError, RunnerError
from stepwise.reporter import Reporter
from stepwise.run_instance import RunInstance
from stepwise.runner import BROWSERS_KEY, COMPLETE, PAUSED, STOPPED, Runner
from stepwise.tree import ELAPSED_PAUSED

from conftest import Boom, FakeBrowser, FakeReporter, Recorder

# ---------------------------------------------------------------------------
# 1. Top-level run
# ---------------------------------------------------------------------------


class TestRun:
    def test_all_branches_pass(self, make_runner, recorder):
        t = tree(step("A", step("B", code=recorder), step("C", code=recorder), code=recorder))
        runner = make_runner(t)

        assert runner.run() is True
        assert runner.state == COMPLETE
        assert all(b.is_passed for b in t.branches)
        assert sorted(recorder.calls) == ["A", "A", "B", "C"]
        assert t.elapsed >= 0

    def test_failing_step_fails_branch_and_skips_the_rest(self, make_runner, recorder, boom):
        t = tree(
            step("A", step("B", code=recorder), code=boom),
            step("Other", code=recorder),
        )
        runner = make_runner(t)

        assert runner.run() is True

        failed, other = t.branches
        assert failed.is_failed
        assert failed.steps[0].is_failed
        assert isinstance(failed.steps[0].error, RuntimeError)
        assert "boom" in failed.steps[0].log
        assert failed.steps[1].is_skipped
        assert other.is_passed
        assert recorder.calls == ["Other"]

    def test_expected_fail_that_fails_passes(self, make_runner, boom, recorder):
        t = tree(step("A", step("after", code=recorder), code=boom, expected_fail=True))
        runner = make_runner(t)
        runner.run()

        (branch,) = t.branches
        assert branch.is_passed
        assert branch.steps[0].is_failed and branch.steps[0].as_expected
        assert recorder.calls == ["after"]

    def test_expected_fail_that_passes_fails(self, make_runner, recorder):
        t = tree(step("A", code=recorder, expected_fail=True))
        runner = make_runner(t)
        runner.run()

        (branch,) = t.branches
        assert branch.is_failed
        assert "expected to fail" in branch.steps[0].log

    def test_to_do_and_manual_steps_are_skipped(self, make_runner, recorder):
        t = tree(
            step("A", code=recorder, to_do=True),
            step("B", code=recorder, manual=True),
            step("C", step("D", code=recorder, to_do=True), code=recorder),
        )
        runner = make_runner(t)
        runner.run()

        a, b, c = t.branches
        assert a.is_skipped and b.is_skipped
        assert c.is_passed
        assert c.steps[1].is_skipped
        assert recorder.calls == ["C"]

    def test_textual_steps_pass(self, make_runner):
        t = tree(step("Just words", step("More words")))
        runner = make_runner(t)
        runner.run()
        assert t.branches[0].is_passed

    def test_built_in_steps_run(self, make_runner):
        t = tree(call("Log 'hello there'", step("next")), call("Fail 'nope'"))
        runner = make_runner(t)
        runner.run()

        logged, failed = t.branches
        assert "hello there" in logged.steps[0].log
        assert failed.is_failed
        assert str(failed.steps[0].error) == "nope"

    def test_no_branches(self, make_runner):
        runner = make_runner(tree())
        assert runner.run() is True
        assert runner.run_instances == []

    def test_reporter_started_and_stopped(self, make_runner, reporter):
        runner = make_runner(tree(step("A")), reporter=reporter)
        runner.run()
        assert reporter.starts == 1
        assert reporter.stops == 1

    def test_no_report_drops_reporter(self, make_runner, reporter):
        runner = make_runner(tree(step("A")), reporter=reporter, no_report=True)
        runner.run()
        assert runner.reporter is None
        assert reporter.starts == 0

    def test_run_before_init(self):
        with pytest.raises(RunnerError):
            Runner().run()

    def test_rerun_not_passed(self, make_runner, tmp_path, recorder, boom):
        report_path = str(tmp_path / "report.json")

        def build():
            return tree(step("A", code=recorder), step("B", code=boom), step("C", to_do=True))

        first = build()
        make_runner(first, reporter=Reporter(first, report_path), report_path=report_path).run()
        assert recorder.calls == ["A"]

        second = build()
        runner = make_runner(second, report_path=report_path, rerun_not_passed=True)

        assert [b.steps[0].text for b in second.branches] == ["B", "C"]
        runner.run()
        assert recorder.calls == ["A"]

    def test_rerun_not_passed_without_a_report_runs_everything(self, make_runner, tmp_path):
        t = tree(step("A"), step("B"))
        make_runner(t, report_path=str(tmp_path / "missing.json"), rerun_not_passed=True)
        assert len(t.branches) == 2

    def test_rerun_not_passed_with_an_unreadable_report(self, make_runner, tmp_path):
        report_path = tmp_path / "report.json"
        report_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="rerun_not_passed"):
            make_runner(tree(step("A")), report_path=str(report_path), rerun_not_passed=True)


# ---------------------------------------------------------------------------
# 2. Parallelism
# ---------------------------------------------------------------------------


class TestParallelism:
    def test_instances_bounded_by_max_instances(self, make_runner, slow_recorder):
        t = tree(*[step(f"B{i}", code=slow_recorder) for i in range(6)])
        runner = make_runner(t, max_instances=2)
        runner.run()

        assert len(runner.run_instances) == 2
        assert slow_recorder.max_active <= 2
        assert all(b.is_passed for b in t.branches)

    def test_instances_bounded_by_branch_count(self, make_runner, recorder):
        t = tree(*[step(f"B{i}", code=recorder) for i in range(3)])
        runner = make_runner(t, max_instances=10)
        runner.run()

        assert len(runner.run_instances) == 3

    def test_every_branch_runs_exactly_once(self, make_runner, slow_recorder):
        t = tree(*[step(f"B{i}", code=slow_recorder) for i in range(8)])
        runner = make_runner(t, max_instances=3)
        runner.run()

        assert sorted(slow_recorder.calls) == sorted(f"B{i}" for i in range(8))

    def test_branches_actually_run_in_parallel(self, make_runner):
        barrier = threading.Barrier(2, timeout=5)

        def meet(run):
            barrier.wait()

        t = tree(step("X", code=meet), step("Y", code=meet))
        runner = make_runner(t, max_instances=2)
        runner.run()

        assert all(b.is_passed for b in t.branches)

    def test_non_parallel_branches_never_overlap(self, make_runner, slow_recorder):
        t = tree(
            step(
                "Shared",
                *[step(f"L{i}", code=slow_recorder) for i in range(4)],
                code=slow_recorder,
                non_parallel=True,
            )
        )
        runner = make_runner(t, max_instances=4)
        runner.run()

        assert slow_recorder.max_active == 1
        assert all(b.is_passed for b in t.branches)
        assert len(slow_recorder.calls) == 8

    def test_non_parallel_function_across_call_sites(self, make_runner, slow_recorder):
        t = tree(
            func("Reset db", code=slow_recorder, non_parallel=True),
            step("A", call("Reset db")),
            step("B", call("Reset db")),
            step("C", call("Reset db")),
        )
        runner = make_runner(t, max_instances=3)
        runner.run()

        assert slow_recorder.max_active == 1
        assert len(slow_recorder.calls) == 3

    def test_unrelated_branches_still_run(self, make_runner, slow_recorder):
        t = tree(
            step("Shared", step("S1", code=slow_recorder), step("S2", code=slow_recorder), non_parallel=True),
            step("Free", code=slow_recorder),
        )
        runner = make_runner(t, max_instances=3)
        runner.run()

        assert sorted(slow_recorder.calls) == ["Free", "S1", "S2"]


# ---------------------------------------------------------------------------
# 3. Hooks
# ---------------------------------------------------------------------------


class TestHooks:
    def test_hooks_wrap_the_branches(self, make_runner):
        events = []
        lock = threading.Lock()

        def note(name):
            def code(run):
                with lock:
                    events.append(name)
            return code

        t = tree(
            step("A", code=note("A")),
            step("B", code=note("B")),
            before_everything=[step("setup", code=note("setup"))],
            after_everything=[step("teardown", code=note("teardown"))],
        )
        runner = make_runner(t)
        runner.run()

        assert events[0] == "setup"
        assert events[-1] == "teardown"
        assert sorted(events[1:-1]) == ["A", "B"]

    def test_failing_before_everything_aborts(self, make_runner, recorder, boom):
        t = tree(
            step("A", code=recorder),
            before_everything=[step("setup 1", code=boom), step("setup 2", code=recorder)],
            after_everything=[step("teardown", code=recorder)],
        )
        runner = make_runner(t)
        runner.run()

        assert recorder.calls == ["teardown"]
        assert not t.branches[0].is_started()
        assert t.before_everything[0].is_failed

    def test_hook_function_calls_are_resolved(self, make_runner, recorder):
        t = tree(
            func("Seed data", code=recorder),
            step("A"),
            before_everything=[call("Seed data"), call("Log 'seeded'")],
            after_everything=[call("Missing hook")],
        )
        make_runner(t).run()

        seed, logged = t.before_everything
        assert seed.is_passed and logged.is_passed
        assert recorder.calls == ["Seed data"]
        assert "seeded" in logged.log
        assert t.branches[0].is_passed
        assert t.after_everything[0].is_failed
        assert "cannot be found" in t.after_everything[0].log

    def test_failing_after_everything_runs_the_rest(self, make_runner, recorder, boom):
        t = tree(
            step("A"),
            after_everything=[step("teardown 1", code=boom), step("teardown 2", code=recorder)],
        )
        runner = make_runner(t)
        runner.run()

        assert recorder.calls == ["teardown 2"]
        assert t.after_everything[0].is_failed


# ---------------------------------------------------------------------------
# 4. Pause and the step protocol
# ---------------------------------------------------------------------------


class TestPause:
    def test_pause_on_fail(self, make_runner, recorder, boom):
        t = tree(step("A", step("B", step("C", code=recorder), code=boom), code=recorder))
        runner = make_runner(t, pause_on_fail=True)

        assert runner.run() is False
        assert runner.has_paused()
        assert runner.state == PAUSED
        assert runner.get_last_step().text == "B"
        assert runner.get_next_ready_step().text == "C"
        assert t.elapsed == ELAPSED_PAUSED

        assert runner.run_one_step() is True
        assert runner.state == COMPLETE
        assert not runner.has_paused()
        (branch,) = t.branches
        assert branch.is_failed
        assert branch.steps[2].is_passed
        assert recorder.calls == ["A", "C"]

    def test_pause_uses_a_single_instance(self, make_runner, boom, recorder):
        t = tree(step("A", code=boom), step("B", code=recorder), step("C", code=recorder))
        runner = make_runner(t, pause_on_fail=True, max_instances=5)

        assert runner.run() is False
        assert len(runner.run_instances) == 1
        assert runner.has_paused()

        # resume: the failed branch wraps up and the rest run
        assert runner.run() is True
        assert not runner.has_paused()
        assert sorted(recorder.calls) == ["B", "C"]
        assert [b.is_failed for b in t.branches] == [True, False, False]

    def test_debug_pauses_before_the_debug_step(self, make_runner, recorder):
        t = tree(step("A", step("B", code=recorder, debug=True), code=recorder), step("Other", code=recorder))
        runner = make_runner(t)

        assert runner.run() is False
        assert t.is_debug
        assert runner.has_paused()
        assert runner.get_next_ready_step().text == "B"
        assert recorder.calls == ["A"]
        assert runner.is_headless() is False

        assert runner.run() is True
        assert recorder.calls == ["A", "B"]
        assert t.branches[0].is_passed

    def test_express_debug_does_not_pause(self, make_runner, recorder):
        t = tree(step("A", code=recorder, debug=True), express_debug=True)
        runner = make_runner(t)

        assert runner.run() is True
        assert recorder.calls == ["A"]
        assert runner.is_headless() is True

    def test_skip_one_step(self, make_runner, recorder):
        t = tree(step("A", step("B", step("C", code=recorder), code=recorder, debug=True)))
        runner = make_runner(t)
        runner.run()

        assert runner.skip_one_step() is False
        assert runner.get_last_step().text == "B"
        assert runner.get_last_step().is_skipped
        assert runner.run_one_step() is True
        assert recorder.calls == ["C"]

    def test_run_last_step_runs_it_again(self, make_runner, recorder, boom):
        t = tree(step("A", step("B", step("C"), code=boom), code=recorder))
        runner = make_runner(t, pause_on_fail=True)
        runner.run()

        again = runner.run_last_step()
        assert again.text == "B"
        assert again.is_failed
        assert runner.get_next_ready_step().text == "C"
        assert runner.has_paused()

    def test_inject_step_runs_in_branch_context(self, make_runner):
        seen = []
        t = tree(
            func("Remember {{what}}", code=lambda run: seen.append((run.l("what"), run.g("user")))),
            let("user", "bob", step("B", debug=True)),
        )
        runner = make_runner(t)
        runner.run()

        (injected,) = runner.inject_step(call("Remember 'this'"))
        assert injected.is_passed
        assert seen == [("this", "bob")]
        # the branch itself didn't move
        assert runner.get_next_ready_step().text == "B"

    def test_step_protocol_requires_pause(self, make_runner):
        runner = make_runner(tree(step("A")))
        runner.run()

        with pytest.raises(RunnerError):
            runner.run_one_step()
        with pytest.raises(RunnerError):
            runner.skip_one_step()
        with pytest.raises(RunnerError):
            runner.run_last_step()
        with pytest.raises(RunnerError):
            runner.inject_step(step("x"))

    def test_paused_only_with_a_single_instance(self):
        runner = Runner()
        paused, running = RunInstance(runner), RunInstance(runner)
        paused.is_paused = True
        runner.run_instances.extend([paused, running])

        assert not runner.has_paused()

        runner.run_instances.remove(running)
        assert runner.has_paused()

    def test_paused_steps_stay_on_one_thread(self, make_runner):
        threads = []

        def note(run):
            threads.append(threading.get_ident())

        t = tree(
            func("Note the thread", code=note),
            step("A", step("B", step("C", step("D", code=note), code=note), code=note, debug=True), code=note),
        )
        runner = make_runner(t)

        assert runner.run() is False
        assert runner.run_one_step() is False
        runner.inject_step(call("Note the thread"))
        runner.run_last_step()
        assert runner.run() is True

        assert len(threads) == 6  # A, B, injected, B again, C, D
        assert len(set(threads)) == 1
        assert threads[0] != threading.get_ident()


# ---------------------------------------------------------------------------
# 5. Stop
# ---------------------------------------------------------------------------


class TestStop:
    def test_stop_is_idempotent(self, make_runner, recorder):
        t = tree(step("A", debug=True), after_everything=[step("teardown", code=recorder)])
        reporter = FakeReporter()
        runner = make_runner(t, reporter=reporter)
        runner.run()

        browser = FakeBrowser()
        runner.append_persistent(BROWSERS_KEY, browser)

        runner.stop()
        runner.stop()

        assert runner.has_stopped()
        assert runner.state == STOPPED
        assert recorder.calls == ["teardown"]
        assert browser.closed == 1
        assert all(ri.is_stopped for ri in runner.run_instances)

    def test_stop_after_a_complete_run(self, make_runner, recorder):
        t = tree(step("A"), after_everything=[step("teardown", code=recorder)])
        runner = make_runner(t)
        runner.run()

        runner.stop()

        assert recorder.calls == ["teardown"]
        assert runner.state == STOPPED

    def test_session_close_errors_are_ignored(self, make_runner):
        runner = make_runner(tree(step("A")))
        broken, fine = FakeBrowser(fail_close=True), FakeBrowser()
        runner.append_persistent(BROWSERS_KEY, broken)
        runner.append_persistent(BROWSERS_KEY, fine)

        runner.stop()

        assert broken.closed == 1
        assert fine.closed == 1

    def test_cannot_run_after_stop(self, make_runner):
        runner = make_runner(tree(step("A")))
        runner.stop()
        with pytest.raises(RunnerError):
            runner.run()

    def test_stop_from_a_step(self, make_runner, recorder):
        t = tree(step("A", step("B", code=recorder), code=lambda run: run.runner.stop()))
        runner = make_runner(t)
        runner.run()

        assert runner.has_stopped()
        assert recorder.calls == []


# ---------------------------------------------------------------------------
# 6. Variables
# ---------------------------------------------------------------------------


class TestVariables:
    def test_literal_binding(self, make_runner):
        seen = []
        t = tree(let("user", "bob", step("check", code=lambda run: seen.append(run.get_var("user")))))
        make_runner(t).run()
        assert seen == ["bob"]

    def test_function_parameters_are_locals(self, make_runner):
        seen = []
        t = tree(
            func("Greet {{name}}", code=lambda run: seen.append(run.l("name"))),
            call("Greet 'Ann'"),
            let("who", "Bo", call("Greet {who}")),
        )
        make_runner(t, max_instances=1).run()
        assert sorted(seen) == ["Ann", "Bo"]

    def test_locals_visible_in_function_body(self, make_runner):
        seen = []
        t = tree(
            func("Visit {{page}}", step("look", code=lambda run: seen.append(run.get_var("page")))),
            call("Visit 'home'"),
        )
        make_runner(t).run()
        assert seen == ["home"]

    def test_return_value_binding(self, make_runner):
        seen = []
        t = tree(
            func("Make token", code=lambda run: "tok-1"),
            let("token", "Make token", step("use", code=lambda run: seen.append(run.g("token"))), call=True),
        )
        make_runner(t).run()
        assert seen == ["tok-1"]

    def test_code_block_binding(self, make_runner):
        seen = []
        t = tree(let("total", None, step("use", code=lambda run: seen.append(run.g("total"))), code=lambda run: 1 + 2))
        make_runner(t).run()
        assert seen == [3]

    def test_globals_reset_between_branches(self, make_runner):
        seen = []
        t = tree(
            step("A", code=lambda run: run.g("x", "set")),
            step("B", code=lambda run: seen.append(run.g("x"))),
        )
        make_runner(t, max_instances=1).run()
        assert seen == [None]

    def test_global_init_seeds_every_branch(self, make_runner):
        seen = []
        t = tree(step("A", code=lambda run: seen.append(run.g("base_url"))))
        runner = make_runner(t)
        runner.global_init["base_url"] = "http://localhost"
        runner.run()
        assert seen == ["http://localhost"]

    def test_persistent_variables_are_shared(self, make_runner):
        t = tree(*[step(f"B{i}", code=lambda run: run.runner.append_persistent("seen", 1)) for i in range(5)])
        runner = make_runner(t, max_instances=3)
        runner.run()
        assert runner.p("seen") == [1] * 5

    def test_missing_variable_fails_the_step(self, make_runner):
        t = tree(step("A", code=lambda run: run.get_var("nope")))
        make_runner(t).run()
        (branch,) = t.branches
        assert branch.is_failed
        assert isinstance(branch.steps[0].error, KeyError)

    def test_run_instance_scopes(self):
        runner = Runner()
        ri = RunInstance(runner)

        ri.g("a", 1)
        ri.l("b", 2)
        ri.p("c", 3)

        assert ri.get_var("a") == 1
        assert ri.get_var("b") == 2
        assert runner.p("c") == 3
        with pytest.raises(KeyError):
            ri.get_var("c")


# ---------------------------------------------------------------------------
# 7. Screenshots
# ---------------------------------------------------------------------------


def _browser_tree(browser):
    return tree(step("Open", step("Look", code=lambda run: None), code=lambda run: run.g("browser", browser)))


class TestScreenshots:
    def test_before_and_after_each_step(self, make_runner, reporter):
        browser = FakeBrowser()
        runner = make_runner(_browser_tree(browser), reporter=reporter)
        runner.run()

        branch = runner.tree.branches[0]
        files = [p.name for p in runner.screenshots.files_for(branch.hash)]
        assert files == [
            f"{branch.hash}_1_after.png",
            f"{branch.hash}_2_after.png",
            f"{branch.hash}_2_before.png",
        ]
        assert browser.screenshots == [True, False, True]

    def test_budget(self, make_runner, reporter):
        runner = make_runner(_browser_tree(FakeBrowser()), reporter=reporter, max_screenshots=1)
        runner.run()
        assert len(runner.screenshots.files_for(runner.tree.branches[0].hash)) == 1

    def test_no_reporter_no_screenshots(self, make_runner):
        browser = FakeBrowser()
        runner = make_runner(_browser_tree(browser))
        runner.run()
        assert browser.screenshots == []

    def test_step_data_none(self, make_runner, reporter):
        browser = FakeBrowser()
        runner = make_runner(_browser_tree(browser), reporter=reporter, step_data="none")
        runner.run()
        assert browser.screenshots == []

    def test_step_data_fail_prunes_passed_branches(self, make_runner, reporter):
        runner = make_runner(_browser_tree(FakeBrowser()), reporter=reporter, step_data="fail")
        runner.run()
        assert runner.screenshots.files_for(runner.tree.branches[0].hash) == []

    def test_screenshot_failure_does_not_fail_the_step(self, make_runner, reporter):
        runner = make_runner(_browser_tree(FakeBrowser(fail_screenshots=True)), reporter=reporter)
        runner.run()
        assert runner.tree.branches[0].is_passed

    def test_failed_capture_does_not_use_up_the_budget(self, make_runner, reporter):
        browser = FakeBrowser(fail_times=1)
        runner = make_runner(_browser_tree(browser), reporter=reporter, max_screenshots=1)
        runner.run()

        branch = runner.tree.branches[0]
        assert [p.name for p in runner.screenshots.files_for(branch.hash)] == [f"{branch.hash}_2_before.png"]
        assert browser.screenshots == [False]

    def test_step_data_fail_keeps_a_failed_twin(self, make_runner, reporter):
        browser = FakeBrowser()
        t = tree(step("Open", group(step("Look"), step("Look", code=Boom())), code=lambda run: run.g("browser", browser)))
        runner = make_runner(t, reporter=reporter, step_data="fail", max_instances=1)
        runner.run()

        passed, failed = t.branches
        assert passed.is_passed and failed.is_failed
        assert passed.hash != failed.hash
        assert runner.screenshots.files_for(passed.hash) == []
        assert len(runner.screenshots.files_for(failed.hash)) == 3
