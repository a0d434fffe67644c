"""Topic authorisation and hand-over of WebSocket requests to the service."""

from __future__ import annotations

import inspect
import logging
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Optional, Union

from starlette.responses import Response

from realtimekit.service import WebsocketService

logger = logging.getLogger(__name__)

_DENIAL_EXTENSION = "websocket.http.response"
_POLICY_VIOLATION = 1008

TopicValidator = Callable[[Any, Any, str], Union[Awaitable[None], None]]


class TopicRejected(Exception):
    """Raised by a topic validator to refuse a connection with an HTTP status."""

    def __init__(self, status: Union[HTTPStatus, int]) -> None:
        self.status = HTTPStatus(status)
        super().__init__(f"Topic access rejected: {self.status.value} {self.status.phrase}")


async def _deny(websocket: Any, status: HTTPStatus) -> None:
    extensions = websocket.scope.get("extensions") or {}
    if _DENIAL_EXTENSION in extensions:
        await websocket.send_denial_response(Response(status_code=status.value))
    else:
        await websocket.close(code=_POLICY_VIOLATION)


async def upgrade_handler(
    websocket: Any,
    service: WebsocketService,
    user_id: Any,
    topic: str,
    validator: TopicValidator,
) -> Optional[HTTPStatus]:
    """Authorise ``user_id`` for ``topic``, then accept and serve the connection.

    ``validator`` is called with the service's app state, the user id and the
    topic, and raises :class:`TopicRejected` to refuse. A refused request gets
    an HTTP response with that status where the server supports it, and a
    policy-violation close otherwise; the status is returned. An accepted
    connection is served until it closes and None is returned.
    """
    try:
        outcome = validator(service.app_state, user_id, topic)
        if inspect.isawaitable(outcome):
            await outcome
    except TopicRejected as exc:
        logger.error("WebSocket connection rejected by validator with status: %s", exc.status.value)
        await _deny(websocket, exc.status)
        return exc.status

    await websocket.accept()
    await service.handle_connection(websocket, topic, user_id)
    return None