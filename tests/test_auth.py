from http import HTTPStatus

import pytest
from starlette.datastructures import Headers, QueryParams
from starlette.requests import HTTPConnection

from realtimekit.auth import (
    AuthenticationError,
    TokenValidator,
    WsAuth,
    extract_token,
    token_from_headers,
)


class FixedValidator(TokenValidator):
    def __init__(self):
        self.seen = []

    async def validate_token(self, token):
        self.seen.append(token)
        if token == "token":
            return {"id": 123, "username": "Alice"}
        raise ValueError("Invalid token")


def make_connection(headers=(), query=b""):
    scope = {
        "type": "websocket",
        "path": "/ws/general",
        "headers": [(k.encode(), v.encode()) for k, v in headers],
        "query_string": query,
    }
    return HTTPConnection(scope)


def test_token_from_bearer_header():
    assert token_from_headers({"Authorization": "Bearer token"}) == "token"


def test_token_header_name_is_case_insensitive():
    assert token_from_headers(Headers({"authorization": "Bearer token"})) == "token"
    assert token_from_headers({"AUTHORIZATION": "Bearer token"}) == "token"


def test_token_header_requires_bearer_prefix():
    assert token_from_headers({"Authorization": "token"}) is None
    assert token_from_headers({"Authorization": "Basic token"}) is None
    assert token_from_headers({}) is None


def test_token_header_bytes_value():
    assert token_from_headers({"Authorization": b"Bearer token"}) == "token"
    assert token_from_headers({"Authorization": b"Bearer \xff"}) is None


def test_extract_prefers_header_over_query():
    headers = {"Authorization": "Bearer token"}
    query = QueryParams("token=placeholder")
    assert extract_token(headers, query) == "token"


def test_extract_falls_back_to_query():
    assert extract_token({}, QueryParams("token=token")) == "token"
    assert extract_token({"Authorization": "Basic x"}, QueryParams("token=token")) == "token"


def test_extract_returns_none_without_token():
    assert extract_token({}, QueryParams("other=1")) is None


@pytest.mark.asyncio
async def test_authenticate_with_header():
    validator = FixedValidator()
    conn = make_connection(headers=[("authorization", "Bearer token")])
    auth = await WsAuth.authenticate(conn, validator)
    assert auth.user == {"id": 123, "username": "Alice"}
    assert validator.seen == ["token"]


@pytest.mark.asyncio
async def test_authenticate_with_query():
    validator = FixedValidator()
    conn = make_connection(query=b"token=token")
    auth = await WsAuth.authenticate(conn, validator)
    assert auth.user["id"] == 123


@pytest.mark.asyncio
async def test_authenticate_missing_token_is_unauthorized():
    validator = FixedValidator()
    with pytest.raises(AuthenticationError) as info:
        await WsAuth.authenticate(make_connection(), validator)
    assert info.value.status is HTTPStatus.UNAUTHORIZED
    assert validator.seen == []


@pytest.mark.asyncio
async def test_authenticate_rejected_token_is_unauthorized():
    validator = FixedValidator()
    conn = make_connection(headers=[("authorization", "Bearer placeholder")])
    with pytest.raises(AuthenticationError) as info:
        await WsAuth.authenticate(conn, validator)
    assert isinstance(info.value.__cause__, ValueError)
    assert validator.seen == ["placeholder"]