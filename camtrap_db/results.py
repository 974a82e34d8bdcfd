"""
Typed results returned by store operations.
"""
import functools
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, TypeVar

from .exceptions import ErrorKind, StoreError

T = TypeVar("T")


@dataclass(frozen=True)
class Diagnostic:
    kind: ErrorKind
    message: str

    def __str__(self):
        return self.message


@dataclass
class Result(Generic[T]):
    """
    Outcome of a store operation.
    A result with error=None succeeded, possibly with non-fatal diagnostics.
    A failed result may still carry a value (e.g. a partially applied import).
    """
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def lines(self) -> List[str]:
        """Diagnostics as plain text, in the order they were reported."""
        return [d.message for d in self.diagnostics]

    def of_kind(self, kind: ErrorKind) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

    def warn(self, kind: ErrorKind, message: str):
        self.diagnostics.append(Diagnostic(kind, message))

    @classmethod
    def success(cls, value: Optional[T] = None, diagnostics: Optional[List[Diagnostic]] = None) -> "Result[T]":
        return cls(value=value, diagnostics=list(diagnostics or []))

    @classmethod
    def failure(cls, kind: ErrorKind, lines: List[str], value: Optional[T] = None) -> "Result[T]":
        return cls(value=value, error=kind, diagnostics=[Diagnostic(kind, line) for line in lines])

    @classmethod
    def from_error(cls, error: StoreError, value: Optional[T] = None) -> "Result[T]":
        return cls.failure(error.kind, error.lines, value)


def returns_result(func: Callable[..., Any]) -> Callable[..., Result]:
    """
    Wraps a function that returns a plain value or raises StoreError so that
    callers always receive a Result. sqlite3 errors are reported as an
    unreadable store.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Result:
        try:
            value = func(*args, **kwargs)
        except StoreError as e:
            logging.warning(f"{func.__name__} failed: {e}")
            return Result.from_error(e)
        except sqlite3.DatabaseError as e:
            logging.error(f"{func.__name__} failed with a database error: {e}")
            return Result.failure(ErrorKind.STORE_UNREADABLE, [str(e)])
        if isinstance(value, Result):
            return value
        return Result.success(value)
    return wrapper
