# model.py
from __future__ import annotations

import copy
import weakref
from dataclasses import dataclass, field, fields
from functools import cached_property
from typing import Any, Callable, List, Optional, Union

from .artifacts import stable_hash
from .errors import FunctionMatchError
from .matching import call_shape, declaration_shape

# The eight structural modifiers. A function call inherits each of them from
# its declaration with a plain OR.
MODIFIERS = (
    "is_to_do",
    "is_manual",
    "is_debug",
    "is_only",
    "is_non_parallel",
    "is_sequential",
    "is_expected_fail",
    "is_built_in",
)

# Links into the authored tree. A branch clone never carries these.
TREE_LINKS = ("parent", "children", "containing_group", "function_declaration_in_tree")

# Copied by reference when cloning
_SHARED = ("code_block", "error")

FREQUENCIES = ("low", "med", "high")


@dataclass
class VarBinding:
    """One `{name}=value` (global) or `{{name}}=value` (local) assignment on a step."""
    name: str
    value: str
    is_local: bool = False


@dataclass(eq=False)
class Step:
    """
    A node in the authored step tree, and the unit that gets cloned into a Branch.

    Authored steps own parent/children/containing_group links. Clones made
    with clone_for_branch() own none of them and only remember the authored
    step they came from (original_step_in_tree).
    """
    text: str = ""
    code_block: Optional[Callable[..., Any]] = None
    comment: str | None = None

    filename: str | None = None
    line_number: int | None = None

    # ---- modifiers ----
    is_to_do: bool = False
    is_manual: bool = False
    is_debug: bool = False
    is_only: bool = False
    is_non_parallel: bool = False
    is_sequential: bool = False
    is_expected_fail: bool = False
    is_built_in: bool = False

    # ---- role (one of) ----
    is_function_declaration: bool = False
    is_function_call: bool = False
    is_textual_step: bool = False

    var_bindings: List[VarBinding] = field(default_factory=list)

    # ---- tree links (authored steps only) ----
    parent: Union["Step", "StepGroup", None] = field(default=None, repr=False)
    children: Optional[list] = field(default_factory=list, repr=False)
    containing_group: Optional["StepGroup"] = field(default=None, repr=False)
    function_declaration_in_tree: Optional["Step"] = field(default=None, repr=False)
    function_declaration_text: str | None = None

    # ---- execution state (branch clones) ----
    branch_indents: int = 0
    is_running: bool = False
    is_passed: bool = False
    is_failed: bool = False
    is_skipped: bool = False
    as_expected: bool = False
    error: Optional[BaseException] = field(default=None, repr=False)
    log: str = field(default="", repr=False)
    elapsed: float = 0.0

    _origin: Optional[weakref.ref] = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Cloning
    # ------------------------------------------------------------------

    @property
    def original_step_in_tree(self) -> Optional["Step"]:
        """The authored step this clone ultimately descends from (None on authored steps)."""
        return self._origin() if self._origin is not None else None

    def clone_for_branch(self, no_refs: bool = False) -> "Step":
        """
        Distinct copy of this step, ready to be placed into a Branch.

        Tree links are dropped. Cloning a clone keeps pointing at the first
        generation step, never at the intermediate clone.
        """
        clone = copy.copy(self)
        memo: dict = {}
        for f in fields(self):
            if f.name in TREE_LINKS:
                setattr(clone, f.name, None)
            elif f.name == "_origin" or f.name in _SHARED:
                continue
            else:
                setattr(clone, f.name, copy.deepcopy(getattr(self, f.name), memo))

        if no_refs:
            clone._origin = None
        else:
            clone._origin = self._origin if self._origin is not None else weakref.ref(self)
        return clone

    def clone_as_function_call(self) -> "Step":
        """Clone of this function declaration, turned into a function call."""
        clone = self.clone_for_branch()
        clone.is_function_declaration = False
        clone.is_function_call = True
        return clone

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def get_function_call_text(self) -> str | None:
        """Text of the call without a leading {var}=, None if this isn't a function call."""
        if not self.is_function_call:
            return None
        if len(self.var_bindings) == 1:
            return self.var_bindings[0].value
        return self.text

    def is_function_match(self, function_declaration: "Step") -> bool:
        """
        True if this function call matches the given declaration.

        Raises FunctionMatchError when the two only match case-insensitively.
        """
        call = call_shape(self.get_function_call_text() or "")
        declaration = declaration_shape(function_declaration.text)

        if call == declaration:
            return True
        if call.lower() == declaration.lower():
            raise FunctionMatchError(
                f"The function call '{call}' matches function declaration "
                f"'{declaration}', but must match case sensitively",
                self.filename,
                self.line_number,
            )
        return False

    def merge_in_function_declaration(self, function_declaration: "Step") -> None:
        """OR the declaration's modifiers into this call, take its code block and text."""
        for name in MODIFIERS:
            if getattr(function_declaration, name):
                setattr(self, name, True)

        if function_declaration.code_block is not None:
            self.code_block = function_declaration.code_block

        self.function_declaration_text = function_declaration.text

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def append_to_log(self, text: str) -> None:
        self.log += text + "\n"

    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped

    def reset_outcome(self) -> None:
        self.is_running = False
        self.is_passed = False
        self.is_failed = False
        self.is_skipped = False
        self.as_expected = False
        self.error = None

    def __str__(self) -> str:
        return self.text


@dataclass(eq=False)
class StepGroup:
    """
    Sibling steps that share one parent and one list of children.

    By default each member is an alternative (its own branch); a sequential
    group runs its members one after another inside a single branch.
    """
    steps: List[Step] = field(default_factory=list)
    parent: Optional[Step] = field(default=None, repr=False)
    children: list = field(default_factory=list, repr=False)
    is_sequential: bool = False

    filename: str | None = None
    line_number: int | None = None


@dataclass(eq=False)
class Branch:
    """
    One linear path through the tree: cloned steps plus pass/fail bookkeeping.

    Owned by exactly one RunInstance while it runs.
    """
    steps: List[Step] = field(default_factory=list)

    non_parallel_ids: frozenset = frozenset()
    groups: List[str] = field(default_factory=list)
    frequency: str = "med"
    is_debug: bool = False
    is_only: bool = False

    is_running: bool = False
    is_passed: bool = False
    is_failed: bool = False
    is_skipped: bool = False
    elapsed: float = 0.0
    occurrence: int = 0  # tells apart branches whose identity() is the same

    def identity(self) -> tuple:
        """What makes two branches the same branch: each step's text, depth and origin."""
        return tuple(
            (s.text, s.branch_indents, s.is_function_call, s.filename, s.line_number)
            for s in self.steps
        )

    @cached_property
    def hash(self) -> str:
        """Stable identity of the step sequence, used to name artifacts and to match earlier reports."""
        payload = {"steps": [list(i) for i in self.identity()], "occurrence": self.occurrence}
        return stable_hash(payload)[:16]

    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped

    def is_started(self) -> bool:
        return self.is_running or self.is_complete()

    def get_next_ready_step(self) -> Optional[Step]:
        for step in self.steps:
            if not step.is_complete():
                return step
        return None

    def has_unexpected_outcome(self) -> bool:
        return any((s.is_passed or s.is_failed) and not s.as_expected for s in self.steps)

    def finish(self) -> None:
        """Derive the branch outcome from its steps."""
        self.is_running = False
        if self.has_unexpected_outcome():
            self.is_failed = True
        elif self.steps and all(s.is_skipped for s in self.steps):
            self.is_skipped = True
        else:
            self.is_passed = True

    def conflicts_with(self, other: "Branch") -> bool:
        """True if both branches carry the same non-parallel key."""
        return bool(self.non_parallel_ids & other.non_parallel_ids)
