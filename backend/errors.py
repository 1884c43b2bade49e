from typing import Any, Dict, Optional


class TotalsError(Exception):
    code = "TOTALS_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(TotalsError, ValueError):
    """Malformed or out-of-range input. The caller must fix the input."""

    code = "VALIDATION_ERROR"


class DanglingReferenceError(TotalsError, LookupError):
    """A share points at an item or person that is not part of the bill."""

    code = "DANGLING_REFERENCE"


class EmptyParticipantsError(TotalsError):
    """Items are present but nobody is on the bill to pay for them."""

    code = "EMPTY_PARTICIPANTS"
