# step_library/__init__.py
from __future__ import annotations

from typing import List

from ..model import Step
from . import browser, core


def declarations() -> List[Step]:
    """Fresh built-in function declarations, one set per tree."""
    return core.declarations() + browser.declarations()


__all__ = ["declarations"]
