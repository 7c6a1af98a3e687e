# step_library/core.py
from __future__ import annotations

import time
from typing import List

from ..errors import StepFailure
from ..model import Step


# ---------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------

def log(run) -> None:
    run.log(str(run.l("text")))


def wait(run) -> None:
    raw = run.l("seconds")
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        raise StepFailure(f"Wait needs a number of seconds, got {raw!r}")
    time.sleep(seconds)


def fail(run) -> None:
    raise StepFailure(str(run.l("message")))


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

def declarations() -> List[Step]:
    return [
        Step(text="Log {{text}}", code_block=log, is_function_declaration=True),
        Step(text="Wait {{seconds}} seconds", code_block=wait, is_function_declaration=True),
        Step(text="Fail {{message}}", code_block=fail, is_function_declaration=True),
    ]
