"""
Result — the return type of every provider contract operation.

Expected failures travel as values, not exceptions:

    match await queue.add("send_email", {"to": "a@b.c"}):
        case Ok(job):
            print(job.id)
        case Err(error):
            print(error.code)

Only programming errors (invalid internal state) raise.
"""

from __future__ import annotations

import dataclasses
from typing import Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclasses.dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: object) -> T:
        return self.value


@dataclasses.dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        """Raise the carried error. Use only where failure is a programming error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default


Result = Union[Ok[T], Err[E]]
