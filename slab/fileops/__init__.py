"""Detection, safety policy, preview and application of model-proposed file changes."""

from slab.fileops.engine import ApplyResult, ApplyStatus, Decision, FileOpEngine, PendingOperation
from slab.fileops.operations import (
    Create,
    Delete,
    Edit,
    FileOperation,
    Rename,
    compute_preview,
    describe,
    kind,
    primary_path,
    truncation_check,
)
from slab.fileops.parsing import parse_exec_blocks, parse_file_operations
from slab.fileops.safety import Allowed, AllowedWithConfirmation, Denied, SafetyVerdict, evaluate_safety

__all__ = [
    "Allowed",
    "AllowedWithConfirmation",
    "ApplyResult",
    "ApplyStatus",
    "Create",
    "Decision",
    "Delete",
    "Denied",
    "Edit",
    "FileOpEngine",
    "FileOperation",
    "PendingOperation",
    "Rename",
    "SafetyVerdict",
    "compute_preview",
    "describe",
    "evaluate_safety",
    "kind",
    "parse_exec_blocks",
    "parse_file_operations",
    "primary_path",
    "truncation_check",
]
