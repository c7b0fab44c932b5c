from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DomainError(Exception):
    """Base error raised by the curation core.

    Carries a machine-readable ``code`` and structured ``meta`` alongside the
    human-readable message.
    """

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None,
                 code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.meta: Dict[str, Any] = dict(meta or {})

    def to_json(self) -> Dict[str, Any]:
        """Serialize error to JSON."""
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "meta": _jsonable(self.meta),
        }


class ValidationError(DomainError):
    """Malformed or out-of-range input, raised before any logic runs."""

    code = "VALIDATION_ERROR"


class RuleViolation(DomainError):
    """A rule set is internally inconsistent."""

    code = "RULE_VIOLATION"

    def __init__(self, message: str, rule: str,
                 violating_items: Optional[Sequence[Any]] = None,
                 meta: Optional[Dict[str, Any]] = None) -> None:
        self.rule = rule
        self.violating_items = list(violating_items or [])
        merged = dict(meta or {})
        merged.update({"rule": rule, "violatingItems": self.violating_items})
        super().__init__(message, meta=merged)


class PlanningError(DomainError):
    """A fully built plan fails a post-hoc invariant."""

    code = "PLANNING_ERROR"


class IdempotencyError(DomainError):
    """Re-applying a plan would not converge."""

    code = "IDEMPOTENCY_ERROR"


class ConstraintError(DomainError):
    code = "CONSTRAINT_ERROR"

    def __init__(self, message: str, constraint: str, violating_value: Any = None,
                 meta: Optional[Dict[str, Any]] = None) -> None:
        self.constraint = constraint
        self.violating_value = violating_value
        merged = dict(meta or {})
        merged.update({"constraint": constraint, "violatingValue": violating_value})
        super().__init__(message, meta=merged)


class SelectionError(DomainError):
    code = "SELECTION_ERROR"


class AggregateError(DomainError):
    """Bundles several domain errors for batch-style callers."""

    code = "AGGREGATE_ERROR"

    def __init__(self, message: str, errors: Sequence[DomainError],
                 meta: Optional[Dict[str, Any]] = None) -> None:
        self.errors: List[DomainError] = list(errors)
        merged = dict(meta or {})
        merged["errorCount"] = len(self.errors)
        super().__init__(message, meta=merged)

    @classmethod
    def from_errors(cls, errors: Sequence[DomainError],
                    message: Optional[str] = None) -> "AggregateError":
        default = f"Multiple errors occurred: {len(errors)} error(s)"
        if message is None and errors:
            default = f"{default}: " + "; ".join(e.message for e in errors)
        return cls(message or default, errors)

    def to_json(self) -> Dict[str, Any]:
        data = super().to_json()
        data["errors"] = [e.to_json() for e in self.errors]
        return data


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "to_json"):
        return value.to_json()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


# Adapter-level failures. These never originate in the pure core.

class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input or authorization issues."""


class NotFound(Exception):
    """Requested resource was not found."""
