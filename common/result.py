"""
Tagged results returned by the ledger and the orchestrators.

Routes consume them uniformly: ``result.unwrap()`` either returns the success
payload or re-raises the error, which the exception handlers in
``common.error_handling`` turn into the standard error envelope.
"""
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

@dataclass(frozen=True)
class Err:
    error: Exception

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise self.error

Result = Union[Ok, Err]
