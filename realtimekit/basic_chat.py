"""A small chat server built on the toolkit: rooms, direct pings and broadcasts."""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import uuid
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, AsyncIterator, Optional, Sequence, Union

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from realtimekit.auth import AuthenticationError, TokenValidator, WsAuth
from realtimekit.handler import ConnectionContext, HandlerError, MessageHandler, SerializationError
from realtimekit.service import WebsocketService
from realtimekit.upgrade import TopicRejected, upgrade_handler

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379"
_BEARER = "Bearer "
_DENIAL_EXTENSION = "websocket.http.response"
_POLICY_VIOLATION = 1008


class AuthError(Exception):
    """A token could not be turned into a user."""


@dataclass(frozen=True)
class User:
    """An authenticated chat user."""

    id: uuid.UUID
    username: str


@dataclass(frozen=True)
class SendMessage:
    """Client request to post ``text`` to ``room``."""

    room: str
    text: str


@dataclass(frozen=True)
class Ping:
    """Client request expecting a direct ``Pong`` reply."""


@dataclass(frozen=True)
class UserJoined:
    """Event announcing that a user joined a room."""

    username: str
    room: str


@dataclass(frozen=True)
class NewMessage:
    """Event carrying a message posted to a room."""

    room: str
    username: str
    text: str


@dataclass(frozen=True)
class Pong:
    """Direct reply to a ``Ping``."""


ClientMessage = Union[SendMessage, Ping]
ServerEvent = Union[UserJoined, NewMessage, Pong]


def _event_value(event: Any) -> Any:
    if isinstance(event, Pong):
        return "Pong"
    if isinstance(event, NewMessage):
        return {"NewMessage": {"room": event.room, "username": event.username, "text": event.text}}
    if isinstance(event, UserJoined):
        return {"UserJoined": {"username": event.username, "room": event.room}}
    raise SerializationError(TypeError(f"not a server event: {event!r}"))


@dataclass
class ChatAppState(TokenValidator[User]):
    """Shared application state; also validates tokens of the form ``<uuid>:<name>``."""

    server_secret: str = "secret"

    async def validate_token(self, token: str) -> User:
        """Return the user named by ``token``; raise :class:`AuthError` otherwise."""
        body = token[len(_BEARER):] if token.startswith(_BEARER) else token
        parts = body.split(":", 1)
        if len(parts) == 2:
            try:
                user_id = uuid.UUID(parts[0])
            except ValueError:
                logger.info("Failed to parse UUID: %s", parts[0])
            else:
                logger.info("Token validated for user: %s (%s)", parts[1], user_id)
                return User(id=user_id, username=parts[1])
        else:
            logger.info("Invalid number of parts: %d", len(parts))
        raise AuthError("Invalid token format or content")


class ChatMessageHandler(MessageHandler):
    """Answers pings directly and broadcasts chat messages to their room."""

    def parse_message(self, text: str) -> ClientMessage:
        """Decode a client frame; raises ValueError when it is not a known message."""
        value = json.loads(text)
        if value == "Ping":
            return Ping()
        if isinstance(value, dict) and len(value) == 1 and "SendMessage" in value:
            body = value["SendMessage"]
            if isinstance(body, dict):
                room, text_ = body.get("room"), body.get("text")
                if isinstance(room, str) and isinstance(text_, str):
                    return SendMessage(room=room, text=text_)
        raise ValueError(f"unknown client message: {text!r}")

    def serialize_event(self, event: Any) -> str:
        """Encode a server event as compact JSON."""
        return json.dumps(_event_value(event), separators=(",", ":"))

    async def on_connect(self, context: ConnectionContext) -> None:
        logger.info("User %s connected to topic %r", context.user_id, context.topic)

    async def handle_direct_message(self, msg: Any, context: ConnectionContext) -> Optional[Any]:
        if isinstance(msg, Ping):
            logger.info("Received Ping, sending Pong directly")
            return _event_value(Pong())
        return None

    async def handle_broadcast_message(self, msg: Any, context: ConnectionContext) -> Optional[Any]:
        if isinstance(msg, SendMessage):
            username = f"User_{str(context.user_id).split('-')[0] or 'anon'}"
            logger.info(
                "User %s broadcasting message to room %r: %s", username, msg.room, msg.text
            )
            if msg.room != context.topic:
                raise HandlerError(
                    HTTPStatus.BAD_REQUEST,
                    f"Cannot send to room '{msg.room}' from topic '{context.topic}'",
                )
            return NewMessage(room=msg.room, username=username, text=msg.text)
        logger.info("Ping reached broadcast handler")
        return None

    async def on_disconnect(self, context: ConnectionContext) -> None:
        logger.info("User %s disconnected from topic %r", context.user_id, context.topic)


async def validate_topic_access(app_state: Any, user_id: Any, topic: str) -> None:
    """Allow the public rooms and a user's own private room; refuse the rest."""
    logger.info("Validating topic access for user %s to topic %r", user_id, topic)
    if topic.startswith("private-"):
        if topic == f"private-user-{user_id}":
            return
        logger.info("Access to %s forbidden for user %s", topic, user_id)
        raise TopicRejected(HTTPStatus.FORBIDDEN)
    if topic in ("general", "random"):
        return
    raise TopicRejected(HTTPStatus.NOT_FOUND)


async def _deny(websocket: WebSocket, status: HTTPStatus) -> None:
    extensions = websocket.scope.get("extensions") or {}
    if _DENIAL_EXTENSION in extensions:
        await websocket.send_denial_response(Response(status_code=status.value))
    else:
        await websocket.close(code=_POLICY_VIOLATION)


def create_app(redis_url: Optional[str] = None, redis_client: Any = None) -> Starlette:
    """Build the chat application with ``/ws/{topic}`` and ``/health`` routes."""
    if redis_url is None and redis_client is None:
        redis_url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
    chat_state = ChatAppState()
    service = WebsocketService(redis_url, ChatMessageHandler(), chat_state, redis_client)

    async def chat_socket(websocket: WebSocket) -> None:
        topic = websocket.path_params["topic"]
        try:
            auth = await WsAuth.authenticate(websocket, chat_state)
        except AuthenticationError as exc:
            await _deny(websocket, exc.status)
            return
        await upgrade_handler(websocket, service, auth.user.id, topic, validate_topic_access)

    async def health(request: Request) -> PlainTextResponse:
        return PlainTextResponse("OK")

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with service:
            yield

    app = Starlette(
        routes=[WebSocketRoute("/ws/{topic}", chat_socket), Route("/health", health)],
        lifespan=lifespan,
    )
    app.state.chat = chat_state
    app.state.ws_service = service
    return app


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the chat server."""
    parser = argparse.ArgumentParser(description="Real-time chat server.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--redis-url", default=os.environ.get("REDIS_URL", DEFAULT_REDIS_URL))
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    logger.info("Listening on %s:%d", args.host, args.port)
    uvicorn.run(create_app(args.redis_url), host=args.host, port=args.port)
    return 0