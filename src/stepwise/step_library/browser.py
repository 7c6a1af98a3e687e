# step_library/browser.py
from __future__ import annotations

from typing import List

from ..browser import BrowserInstance
from ..errors import StepFailure
from ..model import Step


def _browser(run) -> BrowserInstance:
    b = run.g("browser")
    if b is None:
        raise StepFailure("No browser is open. Use \"Open browser 'chromium'\" first.")
    return b


# ---------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------

def open_browser(run) -> BrowserInstance:
    b = BrowserInstance.create(run)
    b.open(name=str(run.l("name")))
    return b


def navigate(run) -> None:
    _browser(run).navigate(str(run.l("url")))


def execute_script(run):
    return _browser(run).execute_script(str(run.l("script")))


def close_browser(run) -> None:
    _browser(run).close()
    run.g("browser", None)


def mock_time(run) -> None:
    _browser(run).mock_time(run.l("timestamp"))


def stop_all_mocks(run) -> None:
    _browser(run).mock_stop()


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

def declarations() -> List[Step]:
    table = [
        ("Open browser {{name}}", open_browser),
        ("Navigate to {{url}}", navigate),
        ("Execute script {{script}}", execute_script),
        ("Close browser", close_browser),
        ("Mock time to {{timestamp}}", mock_time),
        ("Stop all mocks", stop_all_mocks),
    ]
    return [Step(text=text, code_block=code, is_function_declaration=True) for text, code in table]
