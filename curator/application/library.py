import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from curator.application.batching import LIBRARY_BATCH_SIZE, chunked
from curator.domain.entities import LibraryDiff
from curator.domain.errors import ValidationError


MS_PER_LIBRARY_CALL = 300
LARGE_OPERATION_THRESHOLD = 1000
DEFAULT_MAX_REMOVAL_PERCENTAGE = 20

_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{22}$")


@dataclass(frozen=True)
class LibraryBatches:
    save_batches: List[List[str]]
    remove_batches: List[List[str]]

    @property
    def total_operations(self) -> int:
        return len(self.save_batches) + len(self.remove_batches)

    def to_json(self) -> Dict:
        return {
            "saveBatches": self.save_batches,
            "removeBatches": self.remove_batches,
            "totalOperations": self.total_operations,
        }


@dataclass
class SafetyReport:
    is_safe: bool
    warnings: List[str] = field(default_factory=list)
    critical_issues: List[str] = field(default_factory=list)

    def to_json(self) -> Dict:
        return {"isSafe": self.is_safe, "warnings": self.warnings, "criticalIssues": self.critical_issues}


def compute_library_diff(current: Sequence[str], desired: Sequence[str]) -> LibraryDiff:
    """Ids to save (desired, not current) and to remove (current, not desired), in input order."""
    current_set = set(current)
    desired_set = set(desired)
    to_save = [i for i in dict.fromkeys(desired) if i not in current_set]
    to_remove = [i for i in dict.fromkeys(current) if i not in desired_set]
    return LibraryDiff(to_save=to_save, to_remove=to_remove)


def batch_library_diff(diff: LibraryDiff) -> LibraryBatches:
    return LibraryBatches(
        save_batches=chunked(diff.to_save, LIBRARY_BATCH_SIZE),
        remove_batches=chunked(diff.to_remove, LIBRARY_BATCH_SIZE),
    )


def validate_library_operation(operation: str, ids: Sequence[str]) -> None:
    errors: List[str] = []

    if operation not in ("save", "remove"):
        errors.append(f"Unknown library operation: {operation}")
    if not ids:
        errors.append("No IDs provided for operation")
    if len(ids) > LIBRARY_BATCH_SIZE:
        errors.append(f"Too many IDs ({len(ids)}), maximum is {LIBRARY_BATCH_SIZE} per operation")

    invalid = [i for i in ids if not isinstance(i, str) or not _ID_PATTERN.match(i)]
    if invalid:
        errors.append(f"Invalid Spotify IDs: {', '.join(map(str, invalid[:5]))}")

    if len(set(ids)) != len(ids):
        errors.append("Duplicate IDs found in operation")

    if errors:
        raise ValidationError(
            f"Invalid library operation: {'; '.join(errors)}",
            {"operation": operation, "violations": errors},
        )


def merge_library_diffs(*diffs: LibraryDiff) -> LibraryDiff:
    """Combine diffs; saving an id cancels any earlier or later removal of it."""
    to_save: Dict[str, None] = {}
    to_remove: Dict[str, None] = {}

    for diff in diffs:
        for item in diff.to_save:
            to_save[item] = None
            to_remove.pop(item, None)
        for item in diff.to_remove:
            if item not in to_save:
                to_remove[item] = None

    return LibraryDiff(to_save=list(to_save), to_remove=list(to_remove))


def create_library_rollback_plan(diff: LibraryDiff) -> LibraryDiff:
    return LibraryDiff(to_save=list(diff.to_remove), to_remove=list(diff.to_save))


def estimate_library_duration_ms(diff: LibraryDiff) -> int:
    return batch_library_diff(diff).total_operations * MS_PER_LIBRARY_CALL


def validate_library_safety(current: Sequence[str], diff: LibraryDiff, allow_data_loss: bool = False,
                            max_removal_percentage: float = DEFAULT_MAX_REMOVAL_PERCENTAGE) -> SafetyReport:
    warnings: List[str] = []
    critical: List[str] = []

    def flag(issue: str) -> None:
        (warnings if allow_data_loss else critical).append(issue)

    removal_percentage = len(diff.to_remove) / len(current) * 100 if current else 0.0
    if removal_percentage > max_removal_percentage:
        flag(f"Removing {removal_percentage:.1f}% of library items exceeds "
             f"safety threshold of {max_removal_percentage}%")

    if current and len(diff.to_remove) == len(current) and not diff.to_save:
        flag("Operation would remove all items from library")

    if len(diff.to_save) > LARGE_OPERATION_THRESHOLD:
        warnings.append(f"Large save operation: {len(diff.to_save)} items")
    if len(diff.to_remove) > LARGE_OPERATION_THRESHOLD:
        warnings.append(f"Large remove operation: {len(diff.to_remove)} items")

    return SafetyReport(is_safe=not critical, warnings=warnings, critical_issues=critical)
