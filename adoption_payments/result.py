"""
Result type returned by core operations.

Core code returns ``Ok(value)`` or one of the ``Err`` subclasses below; only the
HTTP layer turns an ``Err`` into an ``HTTPException``.
"""
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from fastapi import HTTPException

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    ok = True


@dataclass(frozen=True)
class Err:
    message: str

    ok = False
    status_code = 500
    public_message = None

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self.public_message or self.message,
        )


class ValidationError(Err):
    status_code = 400


class AuthenticationError(Err):
    status_code = 401


class SignatureError(AuthenticationError):
    # failed provider signature on an unauthenticated callback
    status_code = 400


class AuthorizationError(Err):
    # 404 instead of 403 so foreign records are indistinguishable from missing ones
    status_code = 404


class NotFoundError(Err):
    status_code = 404


class ConflictError(Err):
    status_code = 409


class UnavailableError(Err):
    # feature switched off by configuration
    status_code = 501


class ProviderError(Err):
    status_code = 500
    public_message = "Payment provider error"


Result = Union[Ok[Any], Err]


def unwrap(result: Result) -> Any:
    if isinstance(result, Err):
        raise result.to_http()
    return result.value
