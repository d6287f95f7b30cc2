"""Git, patch and baseline helpers used by the pipeline."""

from .baseline import BaselineReport, restore_baseline
from .patch import (
    HunkOutcome,
    HunkStatus,
    PatchApplication,
    PatchDescription,
    PatchError,
    apply_with_rejects,
    cleanup_rejects,
    describe_patch,
)
from .vcs import GitError, GitRepository

__all__ = [
    "BaselineReport",
    "GitError",
    "GitRepository",
    "HunkOutcome",
    "HunkStatus",
    "PatchApplication",
    "PatchDescription",
    "PatchError",
    "apply_with_rejects",
    "cleanup_rejects",
    "describe_patch",
    "restore_baseline",
]
