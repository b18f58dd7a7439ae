from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from course_payments.errors import PaymentServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: PaymentServiceError


Result = Union[Ok[T], Err]
