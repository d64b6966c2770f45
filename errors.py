# errors.py
"""
Error taxonomy for the scanner and the mock backend.

- Every raised error carries an ErrorKind tag so callers can match on kind
  instead of message text.
- Parse errors are data (see scanner.ast_nodes.ParseError), never raised.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    PARSE = "parse"
    RULE_EXECUTION = "rule_execution"
    CONFIGURATION = "configuration"
    MOCK_NOT_FOUND = "mock_not_found"
    MOCK_DUPLICATE = "mock_duplicate"
    MOCK_STATE = "mock_state"
    MOCK_INTEGRITY = "mock_integrity"
    MOCK_VALIDATION = "mock_validation"


class HarnessError(Exception):
    """Base exception for all harness errors."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(HarnessError):
    """Missing or malformed settings / rule configuration. Fatal for a scan."""

    kind = ErrorKind.CONFIGURATION


class RuleExecutionError(HarnessError):
    """A rule implementation raised while inspecting a file."""

    kind = ErrorKind.RULE_EXECUTION

    def __init__(self, rule_id: str, file_path: str, cause: BaseException):
        super().__init__(
            f"Rule {rule_id} failed on {file_path}: {type(cause).__name__}: {cause}",
            details={"rule_id": rule_id, "file_path": file_path, "cause": repr(cause)},
        )
        self.rule_id = rule_id
        self.file_path = file_path
        self.cause = cause


# --- Mock backend errors ---------------------------------------------------

class MockError(HarnessError):
    """Base for errors raised by the in-memory backend."""

    kind = ErrorKind.MOCK_STATE

    def __init__(self, message: str, entity_id: Optional[str] = None, **details: Any):
        if entity_id is not None:
            details["entity_id"] = entity_id
        super().__init__(message, details=details)
        self.entity_id = entity_id


class MockNotFoundError(MockError):
    kind = ErrorKind.MOCK_NOT_FOUND


class MockDuplicateError(MockError):
    kind = ErrorKind.MOCK_DUPLICATE


class MockStateError(MockError):
    """Illegal state transition (e.g. stopping a non-stoppable service)."""

    kind = ErrorKind.MOCK_STATE


class MockIntegrityError(MockError):
    """A referential invariant between mock entities would be broken."""

    kind = ErrorKind.MOCK_INTEGRITY


class MockValidationError(MockIntegrityError):
    """A value does not match the structural grammar the backend enforces."""

    kind = ErrorKind.MOCK_VALIDATION
