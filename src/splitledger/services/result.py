from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    value: T
    warning: Optional[str] = None

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    message: str
    code: str

    @property
    def success(self) -> bool:
        return False


Result = Union[Success[T], Failure]
