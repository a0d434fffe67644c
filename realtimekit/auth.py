"""Token authentication for WebSocket upgrade requests."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Generic, Mapping, Optional, Protocol, TypeVar

U = TypeVar("U")

_BEARER = "Bearer "


class TokenValidator(abc.ABC, Generic[U]):
    """Turns a token into a user, or raises when the token is not valid."""

    @abc.abstractmethod
    async def validate_token(self, token: str) -> U:
        """Return the user the token belongs to; raise on failure."""


class AuthenticationError(Exception):
    """The request carried no usable token, or the token was rejected."""

    status = HTTPStatus.UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class _Connection(Protocol):
    @property
    def headers(self) -> Mapping[str, str]: ...

    @property
    def query_params(self) -> Mapping[str, str]: ...


def token_from_headers(headers: Mapping[str, Any]) -> Optional[str]:
    """Return the bearer token from the Authorization header, if present."""
    value: Any = None
    for name, candidate in headers.items():
        if name.lower() == "authorization":
            value = candidate
            break
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            return None
    if not value.startswith(_BEARER):
        return None
    return value[len(_BEARER):]


def extract_token(headers: Mapping[str, Any], query_params: Mapping[str, str]) -> Optional[str]:
    """Return the token from the header, else from the ``token`` query parameter."""
    token = token_from_headers(headers)
    if token is not None:
        return token
    return query_params.get("token")


@dataclass(frozen=True)
class WsAuth(Generic[U]):
    """An authenticated user of a WebSocket request."""

    user: U

    @classmethod
    async def authenticate(cls, connection: _Connection, validator: TokenValidator[U]) -> "WsAuth[U]":
        """Authenticate ``connection`` with ``validator``.

        Raises :class:`AuthenticationError` when no token is found or the
        validator rejects it.
        """
        token = extract_token(connection.headers, connection.query_params)
        if token is None:
            raise AuthenticationError("Missing token")
        try:
            user = await validator.validate_token(token)
        except Exception as exc:
            raise AuthenticationError("Invalid token") from exc
        return cls(user)