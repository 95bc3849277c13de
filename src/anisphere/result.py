"""Success/failure values returned across the pipeline boundary."""

from typing import Generic, TypeVar

import msgspec

T = TypeVar("T")


class Result(msgspec.Struct, Generic[T], frozen=True):
    """Outcome of a fallible operation.

    A result is successful when ``error`` is None. Callers inspect ``ok``
    instead of catching exceptions from store, client and engine operations.
    """

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
