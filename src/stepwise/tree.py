# tree.py
from __future__ import annotations

import logging
from itertools import chain
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .errors import GenerationError
from .matching import canonical_declaration_text, has_quotes, strip_quotes
from .model import FREQUENCIES, Branch, Step, StepGroup

logger = logging.getLogger(__name__)

Node = Union[Step, StepGroup]

# Elapsed time is not measurable across a human-timed pause
ELAPSED_PAUSED = -1

# Deeper than this, a function is assumed to be calling itself forever
MAX_CALL_DEPTH = 200


def _parent_of(node: Node) -> Optional[Node]:
    """Structural parent; members of a StepGroup hang off the group's parent."""
    if isinstance(node, Step) and node.containing_group is not None:
        return node.containing_group.parent
    return node.parent


def attach(parent: Node, node: Node) -> Node:
    """Hang node under parent, wiring parent and containing-group links."""
    node.parent = parent
    if isinstance(node, StepGroup):
        for member in node.steps:
            member.containing_group = node
            member.parent = None
    parent.children.append(node)
    return node


def _siblings(parent: Node) -> Iterator[Step]:
    """Steps directly under parent, with group members flattened in."""
    for child in parent.children or []:
        if isinstance(child, StepGroup):
            yield from child.steps
        else:
            yield child


class Tree:
    """
    The authored step tree plus the branches derived from it.

    Built once, then generate_branches() fills self.branches. The runner only
    ever writes back time_started / elapsed.
    """

    def __init__(self, root: Step | None = None):
        self.root: Step = root or Step()
        self.before_everything: List[Step] = []
        self.after_everything: List[Step] = []
        self.built_ins: List[Step] = []
        self.branches: List[Branch] = []

        self.time_started: float | None = None
        self.elapsed: float = 0

        self.is_debug = False           # a debug step is present in the generated branches
        self.is_express_debug = False   # debug without pausing before debug steps (headless stays on)
        self.step_data_mode = "all"     # all | fail | none

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add(self, *nodes: Node) -> "Tree":
        for node in nodes:
            attach(self.root, node)
        return self

    def add_built_ins(self, declarations: Iterable[Step]) -> None:
        for declaration in declarations:
            declaration.is_built_in = True
            self.built_ins.append(declaration)

    def walk(self, node: Node | None = None) -> Iterator[Step]:
        """Every authored step under node (root by default), declarations included."""
        node = node if node is not None else self.root
        if isinstance(node, StepGroup):
            yield from node.steps
        elif node is not self.root:
            yield node
        for child in node.children or []:
            yield from self.walk(child)

    # ------------------------------------------------------------------
    # Function resolution
    # ------------------------------------------------------------------

    def _declarations_in_scope(self, call: Step, start: Node) -> List[Step]:
        """Matching declarations at the nearest level, walking up from start."""
        node: Optional[Node] = start
        while node is not None:
            matches = [
                s for s in _siblings(node)
                if s.is_function_declaration and call.is_function_match(s)
            ]
            if matches:
                return matches
            node = _parent_of(node)
        return []

    def find_function_declarations(self, call: Step, call_sites: Sequence[Step] = ()) -> List[Step]:
        """
        Declarations that a function call resolves to.

        Looks lexically around the call first, then around each enclosing
        call site (innermost first), then among the built-ins.
        """
        parent = _parent_of(call)
        if parent is not None:
            found = self._declarations_in_scope(call, parent)
            if found:
                return found

        for site in reversed(call_sites):
            site_parent = _parent_of(site)
            if site_parent is None:
                continue
            found = self._declarations_in_scope(call, site_parent)
            if found:
                return found

        found = [s for s in self.built_ins if call.is_function_match(s)]
        if found:
            return found

        raise GenerationError(
            f"The function '{call.get_function_call_text()}' cannot be found. "
            f"Is there a typo, or did you mean to make this a textual step?",
            call.filename,
            call.line_number,
        )

    # ------------------------------------------------------------------
    # Branch enumeration
    # ------------------------------------------------------------------

    def _branchify_node(self, node: Node, call_sites: List[Step], depth: int) -> List[List[Step]]:
        if isinstance(node, StepGroup):
            member_seqs = [self._branchify_step(m, call_sites, depth) for m in node.steps]
            if node.is_sequential:
                own = [list(chain.from_iterable(chain.from_iterable(member_seqs)))]
            else:
                own = list(chain.from_iterable(member_seqs))
            return self._extend(own, node.children, node.is_sequential, call_sites, depth)

        if node.is_function_declaration:
            return []  # only expanded where it's called

        own = self._branchify_step(node, call_sites, depth)
        if not node.is_function_call or node is self.root:
            return self._extend(own, node.children, node.is_sequential, call_sites, depth)

        # each sequence starts with the call merged with one declaration, modifiers included
        seqs: List[List[Step]] = []
        for seq in own:
            sequential = node.is_sequential or bool(seq and seq[0].is_sequential)
            seqs.extend(self._extend([seq], node.children, sequential, call_sites, depth))
        return seqs

    def _extend(
        self,
        own: List[List[Step]],
        children: list | None,
        sequential: bool,
        call_sites: List[Step],
        depth: int,
    ) -> List[List[Step]]:
        """Cross every sequence in own with every path through children."""
        child_seqs: List[List[Step]] = []
        for child in children or []:
            child_seqs.extend(self._branchify_node(child, call_sites, depth))

        if not child_seqs:
            return own
        if sequential:
            child_seqs = [list(chain.from_iterable(child_seqs))]

        return [o + c for o in own for c in child_seqs]

    def _branchify_step(self, step: Step, call_sites: List[Step], depth: int) -> List[List[Step]]:
        """Sequences contributed by one step on its own (function bodies included, children not)."""
        if step is self.root:
            return [[]]

        if not step.is_function_call:
            return [[step.clone_for_branch()]]

        if depth > MAX_CALL_DEPTH:
            raise GenerationError(
                f"Infinite loop detected while expanding '{step.text}'",
                step.filename,
                step.line_number,
            )

        declarations = self.find_function_declarations(step, call_sites)
        if len(declarations) == 1:
            step.function_declaration_in_tree = declarations[0]

        seqs: List[List[Step]] = []
        for declaration in declarations:
            call = step.clone_for_branch()
            call.merge_in_function_declaration(declaration)

            body = self._extend(
                [[]],
                declaration.children,
                declaration.is_sequential,
                call_sites + [step],
                depth + 1,
            )
            for body_seq in body:
                indented = []
                for s in body_seq:
                    s = s.clone_for_branch()
                    s.branch_indents += 1
                    indented.append(s)
                seqs.append([call] + indented)
        return seqs

    def _make_branch(self, seq: List[Step]) -> Branch:
        steps = [s.clone_for_branch() for s in seq]

        non_parallel_ids = set()
        groups: List[str] = []
        frequency = "med"
        for s in steps:
            if s.is_non_parallel:
                if s.is_function_call and s.function_declaration_text:
                    non_parallel_ids.add("function:" + canonical_declaration_text(s.function_declaration_text))
                else:
                    non_parallel_ids.add(f"step:{id(s.original_step_in_tree)}")

            for binding in s.var_bindings:
                name = binding.name.strip().lower()
                if not has_quotes(binding.value):
                    continue
                value = strip_quotes(binding.value).strip()
                if name == "frequency":
                    if value not in FREQUENCIES:
                        raise GenerationError(
                            f"The frequency '{value}' must be one of {list(FREQUENCIES)}",
                            s.filename,
                            s.line_number,
                        )
                    frequency = value
                elif name == "group":
                    groups.extend(g.strip() for g in value.split(",") if g.strip())

        return Branch(
            steps=steps,
            non_parallel_ids=frozenset(non_parallel_ids),
            groups=groups,
            frequency=frequency,
            is_debug=any(s.is_debug for s in steps),
            is_only=any(s.is_only for s in steps),
        )

    def _check_no_debug(self) -> None:
        for s in chain(self.walk(), self.before_everything, self.after_everything):
            if s.is_debug or s.is_only:
                marker = "debug" if s.is_debug else "only"
                raise GenerationError(
                    f"A step is marked {marker}, which is not allowed in no-debug mode",
                    s.filename,
                    s.line_number,
                )

    def generate_branches(
        self,
        groups: Optional[Iterable[str]] = None,
        min_frequency: str | None = None,
        no_debug: bool = False,
    ) -> List[Branch]:
        """
        Expand the tree into self.branches.

        groups:        keep only branches tagged with one of these group names
        min_frequency: keep only branches at or above this frequency
        no_debug:      a debug or only marker anywhere is an error
        """
        if min_frequency is not None and min_frequency not in FREQUENCIES:
            raise GenerationError(f"Invalid min frequency '{min_frequency}', must be one of {list(FREQUENCIES)}")

        if no_debug:
            self._check_no_debug()

        seqs = self._branchify_node(self.root, [], 0)
        branches = [self._make_branch(seq) for seq in seqs if seq]

        seen: Dict[tuple, int] = {}
        for branch in branches:
            key = branch.identity()
            branch.occurrence = seen.get(key, 0)
            seen[key] = branch.occurrence + 1

        if any(b.is_only for b in branches):
            branches = [b for b in branches if b.is_only]

        self.is_debug = False
        debug_branch = next((b for b in branches if b.is_debug), None)
        if debug_branch is not None:
            branches = [debug_branch]
            self.is_debug = True

        if groups is not None:
            wanted = {g.strip() for g in groups if g.strip()}
            branches = [b for b in branches if wanted.intersection(b.groups)]

        if min_frequency is not None:
            floor = FREQUENCIES.index(min_frequency)
            branches = [b for b in branches if FREQUENCIES.index(b.frequency) >= floor]

        logger.debug("generated %d branch(es)", len(branches))
        self.branches = branches
        return branches

    def branchify_injected(self, step: Step, near: Step | None = None) -> List[Step]:
        """
        Resolve an ad hoc step as if it sat next to `near`, without adding it to the tree.

        Returns the cloned steps of the first resulting sequence.
        """
        origin = near.original_step_in_tree if near is not None else None
        step.parent = _parent_of(origin) if origin is not None else self.root
        if step.parent is None:
            step.parent = self.root

        seqs = self._branchify_node(step, [], 0)
        if not seqs:
            return []
        return [s.clone_for_branch() for s in seqs[0]]
