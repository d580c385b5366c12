"""Service result type shared by application services.

Services report expected failures through results rather than raising,
so callers can branch on ``error_code``/``error_kind`` without knowing
the domain exception hierarchy.
"""

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from orderflow.domain.exceptions import DomainError, ErrorKind

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """Outcome of an application service operation.

    Attributes:
        value: Operation output when successful.
        success: Whether the operation succeeded.
        error: Human-readable error message.
        error_code: Stable machine-readable code.
        error_kind: Failure category.
        warnings: Best-effort problems that did not fail the operation.
    """

    value: T | None = None
    success: bool = True
    error: str | None = None
    error_code: str | None = None
    error_kind: ErrorKind | None = None
    warnings: list[str] = field(default_factory=list)
    cause: DomainError | None = field(default=None, repr=False, compare=False)

    @classmethod
    def ok(cls, value: T | None = None, warnings: list[str] | None = None) -> "ServiceResult[T]":
        return cls(value=value, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        error: DomainError,
        warnings: list[str] | None = None,
    ) -> "ServiceResult[T]":
        """Build a failed result from a domain error."""
        return cls(
            success=False,
            error=error.message,
            error_code=error.code,
            error_kind=error.kind,
            warnings=list(warnings or []),
            cause=error,
        )

    @classmethod
    def internal_error(cls, message: str) -> "ServiceResult[T]":
        return cls(
            success=False,
            error=message,
            error_code="INTERNAL_ERROR",
            error_kind=ErrorKind.INTERNAL,
        )

    @property
    def is_conflict(self) -> bool:
        return self.error_kind == ErrorKind.CONFLICT

    def unwrap(self) -> T:
        """Return the value, re-raising the failure if there was one.

        Raises:
            DomainError: The error the failed operation reported.
        """
        if not self.success:
            if self.cause is not None:
                raise self.cause
            raise DomainError(self.error or "Operation failed")
        return self.value
