"""Error taxonomy for the risk core.

Every public function either returns a value or raises one of the errors
below. None of them is retryable: validation and precondition failures are
fixed by the caller, invariant violations abort the enclosing transaction.

    RiskCoreError
    ├── ValidationError          malformed / out-of-range input
    │   └── ConfigurationError   invalid risk profile data
    ├── PreconditionError        lifecycle rule violated
    └── InvariantViolation       fatal for the operation
        ├── CyclicLineageError
        └── ConcurrentModificationError
"""
from typing import Any, Dict, Optional


class RiskCoreError(Exception):
    """Base class for all errors raised by the risk core."""

    code: str = "RISK_CORE_ERROR"
    is_retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging and API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(RiskCoreError):
    """Numeric or structural input is malformed or out of range."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, value: Any, message: str):
        super().__init__(message, {"field": field, "value": str(value)})
        self.field = field
        self.value = value


class ConfigurationError(ValidationError):
    """Risk profile or settings data failed validation."""

    code = "CONFIGURATION_ERROR"


class PreconditionError(RiskCoreError):
    """A lifecycle rule does not allow the requested operation."""

    code = "PRECONDITION_FAILED"


class InvariantViolation(RiskCoreError):
    """State would become inconsistent; the enclosing transaction must abort."""

    code = "INVARIANT_VIOLATION"


class CyclicLineageError(InvariantViolation):
    """parent_strategy_id links form a cycle."""

    code = "CYCLIC_LINEAGE"


class ConcurrentModificationError(InvariantViolation):
    """A row changed underneath a read-modify-write transaction."""

    code = "CONCURRENT_MODIFICATION"


__all__ = [
    "RiskCoreError",
    "ValidationError",
    "ConfigurationError",
    "PreconditionError",
    "InvariantViolation",
    "CyclicLineageError",
    "ConcurrentModificationError",
]
