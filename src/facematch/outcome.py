"""Tagged success/failure values returned by pipeline operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from facematch.errors import FaceMatchError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one pipeline operation.

    Exactly one of ``value`` / ``error`` is meaningful: ``error is None`` marks
    a success. ``value`` may legitimately be ``None`` on success (e.g. delete).
    """

    value: T | None = None
    error: FaceMatchError | None = None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: FaceMatchError) -> Outcome[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
