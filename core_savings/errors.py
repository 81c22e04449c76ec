"""
Error Taxonomy

Every failure raised by the savings core derives from SavingsError and carries
a stable error code plus structured details for the API layer.
"""

from typing import Any, Dict, Optional


class SavingsError(Exception):
    """Base class for all savings core errors"""

    error_code = "SAVINGS_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses"""
        return {
            "detail": self.message,
            "code": self.error_code,
            "details": {k: str(v) if v is not None else None for k, v in self.details.items()}
        }


class ValidationError(SavingsError, ValueError):
    """Malformed or out-of-range input; nothing was mutated"""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_name: Optional[str] = None,
                 invalid_value: Any = None, **details):
        if field_name:
            details["field_name"] = field_name
        if invalid_value is not None:
            details["invalid_value"] = invalid_value
        super().__init__(message, details=details)


class StateConflictError(SavingsError):
    """Transition attempted from a state that does not allow it"""

    error_code = "STATE_CONFLICT"

    def __init__(self, message: str, entity_type: Optional[str] = None,
                 entity_id: Optional[str] = None, current_state: Optional[str] = None):
        super().__init__(message, details={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "current_state": current_state
        })


class ConcurrencyError(StateConflictError):
    """A lock could not be acquired within the configured timeout"""

    error_code = "CONCURRENCY_CONFLICT"

    def __init__(self, message: str, lock_name: Optional[str] = None):
        super().__init__(message)
        self.details = {"lock_name": lock_name}


class NotFoundError(SavingsError, LookupError):
    """Referenced member, loan or penalty does not exist"""

    error_code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found", details={
            "entity_type": entity_type,
            "entity_id": entity_id
        })
        self.entity_type = entity_type
        self.entity_id = entity_id


class IntegrityError(SavingsError):
    """An internal invariant does not hold; never expected in correct operation"""

    error_code = "INTEGRITY_ERROR"
