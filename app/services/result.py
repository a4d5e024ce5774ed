from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a call to an external channel or provider."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Transient failures are worth retrying; auth or validation failures are not.
    retryable: bool = True

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", retryable: bool = True) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, retryable=retryable)
