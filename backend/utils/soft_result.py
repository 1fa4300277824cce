"""
Value-plus-degraded-flag result for collaborators that fail soft.

The balance oracle and the enrichment gateway never raise to their callers;
instead they hand back a usable fallback value with `degraded=True`, so the
caller has to look at the flag to tell a fallback from a genuine answer.
"""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SoftResult(Generic[T]):
    value: T
    degraded: bool = False
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "SoftResult[T]":
        return cls(value=value)

    @classmethod
    def fallback(cls, value: T, reason: str) -> "SoftResult[T]":
        return cls(value=value, degraded=True, reason=reason)
