"""Connection identifiers, client sinks and per-node subscription state."""

from __future__ import annotations

import asyncio
import enum
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Set

ConnectionId = uuid.UUID
"""A unique identifier for a single WebSocket connection."""

Topic = str
"""A topic name, used both as a Redis channel and as a subscription key."""


def new_connection_id() -> ConnectionId:
    """Return a fresh random connection identifier."""
    return uuid.uuid4()


class CommandKind(enum.Enum):
    """What the background Redis listener is asked to do."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True)
class RedisCommand:
    """A subscription change sent to the background Redis listener."""

    kind: CommandKind
    topic: Topic


class _TextSender(Protocol):
    async def send_text(self, data: str) -> None: ...


class Sink:
    """The writing half of a WebSocket, serialised by a lock.

    Several tasks may write to one client; the lock keeps their frames whole
    and in the order the writers acquired it.
    """

    def __init__(self, websocket: _TextSender) -> None:
        self.websocket = websocket
        self._lock = asyncio.Lock()

    async def send_text(self, text: str) -> None:
        """Send one text frame to the client."""
        async with self._lock:
            await self.websocket.send_text(text)

    async def send_json(self, data: Any) -> None:
        """Serialise ``data`` as compact JSON and send it as a text frame."""
        await self.send_text(json.dumps(data, separators=(",", ":")))


@dataclass(repr=False)
class WsState:
    """Connections and topic subscriptions held by one server instance."""

    connections: Dict[ConnectionId, Sink] = field(default_factory=dict)
    subscriptions: Dict[Topic, Set[ConnectionId]] = field(default_factory=dict)

    def add_connection(self, conn_id: ConnectionId, sink: Sink) -> None:
        """Register the sink used to reach ``conn_id``."""
        self.connections[conn_id] = sink

    def remove_connection(self, conn_id: ConnectionId) -> Optional[Sink]:
        """Forget ``conn_id``; return its sink, or None if it was unknown."""
        return self.connections.pop(conn_id, None)

    def subscribe(self, conn_id: ConnectionId, topic: Topic) -> bool:
        """Subscribe ``conn_id`` to ``topic``.

        Returns True when it is the first subscriber of the topic on this node.
        """
        subscribers = self.subscriptions.setdefault(topic, set())
        first = not subscribers
        subscribers.add(conn_id)
        return first

    def unsubscribe(self, conn_id: ConnectionId, topic: Topic) -> bool:
        """Remove ``conn_id`` from ``topic``.

        Returns True when that left the topic without subscribers; the topic
        is then dropped.
        """
        subscribers = self.subscriptions.get(topic)
        if subscribers is None:
            return False
        subscribers.discard(conn_id)
        if subscribers:
            return False
        del self.subscriptions[topic]
        return True

    def subscribers(self, topic: Topic) -> FrozenSet[ConnectionId]:
        """Return a snapshot of the connections subscribed to ``topic``."""
        return frozenset(self.subscriptions.get(topic, ()))

    def topics(self) -> List[Topic]:
        """Return the topics that have at least one subscriber."""
        return list(self.subscriptions)

    def __repr__(self) -> str:
        return (
            f"WsState(connections_count={len(self.connections)}, "
            f"subscriptions_count={len(self.subscriptions)})"
        )