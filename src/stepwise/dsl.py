# dsl.py
from __future__ import annotations

import inspect
from typing import Any, Callable, Iterable, Optional, Tuple, Union

from .matching import VAR_REGEX, has_quotes
from .model import Step, StepGroup, VarBinding
from .tree import Tree, attach

Node = Union[Step, StepGroup]
CodeBlock = Callable[..., Any]


# ---------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------

def _caller() -> Tuple[Optional[str], Optional[int]]:
    """File and line of whoever called the builder that called us."""
    frame = inspect.currentframe()
    try:
        outer = frame.f_back.f_back if frame is not None and frame.f_back is not None else None
        if outer is None:
            return None, None
        return outer.f_code.co_filename, outer.f_lineno
    finally:
        del frame


def _modifiers(
    to_do: bool,
    manual: bool,
    debug: bool,
    only: bool,
    non_parallel: bool,
    sequential: bool,
    expected_fail: bool,
) -> dict:
    return {
        "is_to_do": to_do,
        "is_manual": manual,
        "is_debug": debug,
        "is_only": only,
        "is_non_parallel": non_parallel,
        "is_sequential": sequential,
        "is_expected_fail": expected_fail,
    }


def _with_children(node: Node, children: Iterable[Node]) -> Node:
    for child in children:
        attach(node, child)
    return node


def _quote(value: Any) -> str:
    text = str(value)
    if has_quotes(text):
        return text
    return f'"{text}"' if "'" in text else f"'{text}'"


# ---------------------------------------------------------------------
# Step builders
# ---------------------------------------------------------------------

def step(
    text: str,
    *children: Node,
    code: CodeBlock | None = None,
    comment: str | None = None,
    to_do: bool = False,
    manual: bool = False,
    debug: bool = False,
    only: bool = False,
    non_parallel: bool = False,
    sequential: bool = False,
    expected_fail: bool = False,
) -> Step:
    """
    A plain step. With code it runs code(run_instance); without it's a textual step that just passes.

        step("Open the app", code=lambda run: ...,
            step("Log in"),
            step("Sign up"),
        )
    """
    filename, line_number = _caller()
    s = Step(
        text=text,
        code_block=code,
        comment=comment,
        filename=filename,
        line_number=line_number,
        is_textual_step=code is None,
        **_modifiers(to_do, manual, debug, only, non_parallel, sequential, expected_fail),
    )
    return _with_children(s, children)


def func(
    text: str,
    *children: Node,
    code: CodeBlock | None = None,
    comment: str | None = None,
    to_do: bool = False,
    manual: bool = False,
    debug: bool = False,
    only: bool = False,
    non_parallel: bool = False,
    sequential: bool = False,
    expected_fail: bool = False,
) -> Step:
    """Function declaration. Its {{params}} become locals of every call; children are its body."""
    filename, line_number = _caller()
    s = Step(
        text=text,
        code_block=code,
        comment=comment,
        filename=filename,
        line_number=line_number,
        is_function_declaration=True,
        **_modifiers(to_do, manual, debug, only, non_parallel, sequential, expected_fail),
    )
    return _with_children(s, children)


def call(
    text: str,
    *children: Node,
    comment: str | None = None,
    to_do: bool = False,
    manual: bool = False,
    debug: bool = False,
    only: bool = False,
    non_parallel: bool = False,
    sequential: bool = False,
    expected_fail: bool = False,
) -> Step:
    """Function call, e.g. call("Log in as 'bob'")."""
    filename, line_number = _caller()
    s = Step(
        text=text,
        comment=comment,
        filename=filename,
        line_number=line_number,
        is_function_call=True,
        **_modifiers(to_do, manual, debug, only, non_parallel, sequential, expected_fail),
    )
    return _with_children(s, children)


def let(
    name: str,
    value: Any = None,
    *children: Node,
    local: bool = False,
    call: bool = False,
    code: CodeBlock | None = None,
    comment: str | None = None,
    to_do: bool = False,
    manual: bool = False,
    debug: bool = False,
    only: bool = False,
    non_parallel: bool = False,
    sequential: bool = False,
    expected_fail: bool = False,
) -> Step:
    """
    Variable binding step.

        let("user", "bob")                      {user}='bob'
        let("user", "{other}")                  {user}={other}
        let("total", code=lambda run: 1 + 2)    {total} gets the return value
        let("token", "Get token", call=True)    {token}=Get token (the call's return value)
        let("x", "1", local=True)               {{x}}='1'

    Binding {frequency} or {group} to a literal tags the branches that pass through here.
    """
    filename, line_number = _caller()

    if call:
        raw = str(value)
    elif value is None:
        raw = ""
    elif isinstance(value, str) and VAR_REGEX.fullmatch(value.strip()):
        raw = value.strip()
    else:
        raw = _quote(value)

    var = f"{{{{{name}}}}}" if local else f"{{{name}}}"
    text = f"{var}={raw}" if raw else var

    s = Step(
        text=text,
        code_block=code,
        comment=comment,
        filename=filename,
        line_number=line_number,
        is_function_call=call,
        is_textual_step=not call and code is None,
        var_bindings=[VarBinding(name=name, value=raw, is_local=local)],
        **_modifiers(to_do, manual, debug, only, non_parallel, sequential, expected_fail),
    )
    return _with_children(s, children)


def group(*members: Step, children: Iterable[Node] = (), sequential: bool = False) -> StepGroup:
    """
    Step group: each member is its own alternative (or all of them in a row if sequential),
    followed by the shared children.
    """
    filename, line_number = _caller()
    if not members:
        raise ValueError("group() needs at least one member step")
    g = StepGroup(
        steps=list(members),
        is_sequential=sequential,
        filename=filename,
        line_number=line_number,
    )
    for member in g.steps:
        member.containing_group = g
    return _with_children(g, children)


# ---------------------------------------------------------------------
# Tree helper (single-file story)
# ---------------------------------------------------------------------

def tree(
    *nodes: Node,
    before_everything: Iterable[Step] = (),
    after_everything: Iterable[Step] = (),
    built_ins: bool = True,
    express_debug: bool = False,
) -> Tree:
    """
    Tree definition helper. Test files write:

        from stepwise import tree, step, call

        TREE = tree(step(...), call(...))

    or define their own tree() returning stepwise.dsl.tree(...).

    express_debug runs a debug branch straight through, without pausing
    before debug steps and without showing the browser.
    """
    t = Tree()
    t.is_express_debug = express_debug
    t.add(*nodes)
    t.before_everything.extend(before_everything)
    t.after_everything.extend(after_everything)
    if built_ins:
        from .step_library import declarations

        t.add_built_ins(declarations())
    return t
