# errors.py
from __future__ import annotations

from dataclasses import dataclass


class StepwiseError(Exception):
    """Base class for every error raised by stepwise itself."""


@dataclass
class GenerationError(StepwiseError):
    """
    Fatal error raised while turning a tree into branches.

    Carries the file/line of the step that caused it so the CLI can point
    the author at the right place without a traceback.
    """
    message: str
    filename: str | None = None
    line_number: int | None = None

    def __str__(self) -> str:
        if self.filename:
            return f"{self.message} [{self.filename}:{self.line_number}]"
        return self.message


@dataclass
class FunctionMatchError(GenerationError):
    """A function call matches a declaration only when letter case is ignored."""


@dataclass
class ConfigError(StepwiseError):
    """Invalid value in the run configuration."""
    field: str
    message: str

    def __str__(self) -> str:
        return f"Invalid value for '{self.field}': {self.message}"


class RunnerError(StepwiseError):
    """The runner was asked to do something its current state doesn't allow."""


@dataclass
class StepFailure(StepwiseError):
    """Raised from a code block to fail the step with a plain message."""
    message: str

    def __str__(self) -> str:
        return self.message
