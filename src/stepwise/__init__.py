from .dsl import step, func, call, let, group, tree
from .runner import Runner, load_tree
from .run_instance import RunInstance
from .config import RunConfig
from .model import Step, StepGroup, Branch
from .tree import Tree

__all__ = [
    "step", "func", "call", "let", "group", "tree",
    "Runner", "load_tree", "RunInstance", "RunConfig",
    "Step", "StepGroup", "Branch", "Tree",
]
