# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from .model import Branch

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Screenshots are correlated with the step that produced them by name alone:
#
#   <branch hash>_<step ordinal>_<before|after>.<ext>
#
# where the branch hash is a stable function of the branch's step sequence,
# so re-running the same tree lands on the same file names.
#
# Retention follows the run's step data mode:
#   all  -> keep everything
#   fail -> keep only the artifacts of branches that did not pass
#   none -> nothing is captured in the first place
# ---------------------------------------------------------------------

logger = logging.getLogger(__name__)

DEFAULT_SCREENSHOT_DIR = "screenshots"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def stable_hash(obj) -> str:
    """sha256 of the canonical JSON form of obj."""
    return _sha256_str(_json_dumps_stable(obj))


class ScreenshotStore:
    """
    File-based screenshot store:
      root/
        <branch_hash>_<ordinal>_before.png
        <branch_hash>_<ordinal>_after.png
    """

    def __init__(self, root: str | Path = DEFAULT_SCREENSHOT_DIR):
        self.root = Path(root).resolve()

    def filename(self, branch_hash: str, ordinal: int, is_after: bool, ext: str = "png") -> str:
        phase = "after" if is_after else "before"
        return f"{branch_hash}_{ordinal}_{phase}.{ext}"

    def path_for(self, branch_hash: str, ordinal: int, is_after: bool, ext: str = "png") -> Path:
        return self.root / self.filename(branch_hash, ordinal, is_after, ext)

    def save(self, branch_hash: str, ordinal: int, is_after: bool, data: bytes, ext: str = "png") -> Path:
        """Write one screenshot. Written to a temp file first, then renamed into place."""
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.path_for(branch_hash, ordinal, is_after, ext)
        tmp = dest.with_suffix(dest.suffix + ".tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(dest)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return dest

    def files_for(self, branch_hash: str) -> List[Path]:
        if not self.root.exists():
            return []
        return sorted(self.root.glob(f"{branch_hash}_*"))

    def prune(self, branch_hash: str) -> int:
        """Delete every artifact of one branch. Returns how many files were removed."""
        removed = 0
        for p in self.files_for(branch_hash):
            p.unlink(missing_ok=True)
            removed += 1
        return removed

    def retain(self, branch: "Branch", step_data_mode: str) -> None:
        """Apply the retention policy once a branch has finished."""
        if step_data_mode == "fail" and branch.is_passed:
            removed = self.prune(branch.hash)
            if removed:
                logger.debug("pruned %d screenshot(s) of passed branch %s", removed, branch.hash)
