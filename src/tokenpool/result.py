from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: "T"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: "E"

    def __str__(self) -> "str":
        return str(self.error)


# every fallible step between components returns one of the two,
# callers branch on isinstance(result, Err)
Result = Ok[T] | Err[E]
