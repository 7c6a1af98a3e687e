"""Shared fixtures and reusable fakes for stepwise tests.

Nothing here touches a real browser: browser sessions and reporters are
replaced by small fakes that only record how they were used.
"""

from __future__ import annotations

import threading
import time

import pytest

from stepwise.config import RunConfig
from stepwise.runner import Runner

# ---------------------------------------------------------------------------
# Reusable code blocks
# ---------------------------------------------------------------------------


class Recorder:
    """Code block that records the text of every step it runs (thread-safe).

    Also tracks how many steps were inside it at the same time, so tests can
    assert on parallelism.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, run) -> None:
        with self._lock:
            self.calls.append(run.current_step.text)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
        finally:
            with self._lock:
                self.active -= 1


class Boom:
    """Always raises RuntimeError."""

    def __init__(self, message: str = "boom"):
        self.message = message

    def __call__(self, run) -> None:
        raise RuntimeError(self.message)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeReporter:
    def __init__(self):
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1


class FakeBrowser:
    """Stands in for BrowserInstance: screenshots are fixed bytes, close() is counted.

    fail_times makes only the first few screenshots fail.
    """

    def __init__(self, fail_screenshots: bool = False, fail_close: bool = False, fail_times: int = 0):
        self.fail_screenshots = fail_screenshots
        self.fail_close = fail_close
        self.fail_times = fail_times
        self.screenshots: list[bool] = []
        self.closed = 0

    def take_screenshot(self, is_after: bool) -> bytes:
        if self.fail_screenshots:
            raise RuntimeError("no display")
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("page is busy")
        self.screenshots.append(is_after)
        return b"\x89PNG fake"

    def close(self) -> None:
        self.closed += 1
        if self.fail_close:
            raise RuntimeError("already gone")


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def slow_recorder():
    return Recorder(delay=0.05)


@pytest.fixture
def boom():
    return Boom()


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture
def make_runner(tmp_path):
    """Build a Runner over a tree, with screenshots kept under tmp_path."""

    def _make(tree, reporter=None, **config):
        config.setdefault("screenshot_dir", str(tmp_path / "screenshots"))
        runner = Runner(RunConfig(**config))
        runner.init(tree, reporter)
        return runner

    return _make
