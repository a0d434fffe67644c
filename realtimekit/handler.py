"""The message handler interface that carries application logic."""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Generic, Optional, TypeVar, Union

from realtimekit.types import ConnectionId, Sink, Topic

S = TypeVar("S")
U = TypeVar("U")


@dataclass
class ConnectionContext(Generic[S, U]):
    """Everything a handler needs to know about one connection."""

    conn_id: ConnectionId
    user_id: U
    topic: Topic
    app_state: S
    sink: Sink


class HandlerError(Exception):
    """A handler failure carrying an HTTP status and an optional message."""

    def __init__(self, status: Union[HTTPStatus, int], message: Optional[str] = None) -> None:
        self.status = HTTPStatus(status)
        self.message = message
        super().__init__(self.client_message())

    def client_message(self) -> str:
        """The text sent to the client for this error."""
        if self.message is not None:
            return self.message
        return f"{self.status.value} {self.status.phrase}"


class SerializationError(HandlerError):
    """A response or event could not be serialised."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(HTTPStatus.INTERNAL_SERVER_ERROR, f"Response serialization error: {cause}")


class MessageHandler(abc.ABC):
    """Application logic plugged into the WebSocket service.

    Subclasses must implement :meth:`handle_broadcast_message`; the other
    hooks have sensible defaults.
    """

    def parse_message(self, text: str) -> Any:
        """Decode a client text frame; raises ValueError when it is malformed."""
        return json.loads(text)

    def serialize_event(self, event: Any) -> str:
        """Encode an event for publishing; raises SerializationError on failure."""
        try:
            return json.dumps(event, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise SerializationError(exc) from exc

    async def on_connect(self, context: ConnectionContext) -> None:
        """Called once a client is connected and subscribed. Does nothing by default."""

    async def handle_direct_message(self, msg: Any, context: ConnectionContext) -> Optional[Any]:
        """Return a JSON value to send straight back, or None to fall through.

        When None is returned the same message goes to
        :meth:`handle_broadcast_message`.
        """
        return None

    @abc.abstractmethod
    async def handle_broadcast_message(self, msg: Any, context: ConnectionContext) -> Optional[Any]:
        """Return an event to broadcast on the topic, or None for nothing."""

    async def on_disconnect(self, context: ConnectionContext) -> None:
        """Called after a client has disconnected. Does nothing by default."""