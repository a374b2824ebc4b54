from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Error codes for expected (non-exceptional) failures
CONTEXT_NOT_FOUND = "context_not_found"
NO_RUNNING_SESSION = "no_running_session"
RESEND_REQUESTED = "resend_requested"
DIALOG_NOT_FOUND = "dialog_not_found"
FINALIZE_ERROR = "finalize_error"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {"ok": False, "error": self.error, "error_code": self.error_code}
