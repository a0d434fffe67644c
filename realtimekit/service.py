"""The WebSocket service: connection lifecycle and Redis Pub/Sub fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from realtimekit.handler import ConnectionContext, HandlerError, MessageHandler
from realtimekit.types import (
    CommandKind,
    ConnectionId,
    RedisCommand,
    Sink,
    Topic,
    WsState,
    new_connection_id,
)

logger = logging.getLogger(__name__)

_COMMAND_QUEUE_SIZE = 100


class WebsocketService:
    """Manages WebSocket connections and relays topic events through Redis.

    Each instance keeps the connections of one server node. Events produced
    by the handler are published to Redis, and a background listener relays
    everything published on a topic to the local subscribers of that topic,
    so several nodes can serve the same topics.
    """

    poll_interval: float = 0.1
    """Seconds the listener waits for a Redis message before checking commands."""
    reconnect_delay: float = 5.0
    """Seconds the listener waits before reconnecting after a Redis error."""

    def __init__(
        self,
        redis_url: Optional[str],
        handler: MessageHandler,
        app_state: Any,
        redis_client: Any = None,
    ) -> None:
        if redis_client is None:
            if redis_url is None:
                raise ValueError("either redis_url or redis_client is required")
            redis_client = aioredis.Redis.from_url(redis_url)
            self._owns_client = True
        else:
            self._owns_client = False
        self._redis = redis_client
        self.handler = handler
        self.app_state = app_state
        self._state = WsState()
        self._commands: "asyncio.Queue[RedisCommand]" = asyncio.Queue(maxsize=_COMMAND_QUEUE_SIZE)
        self._listener: Optional["asyncio.Task[None]"] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def __repr__(self) -> str:
        return f"WebsocketService(handler={self.handler!r}, state={self._state!r})"

    async def __aenter__(self) -> "WebsocketService":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Start the background Redis listener if it is not running yet."""
        if self._listener is None or self._listener.done():
            logger.info("Spawning Redis Pub/Sub listener task...")
            self._listener = asyncio.ensure_future(self._run_listener())

    async def close(self) -> None:
        """Stop the listener and pending deliveries; close an owned Redis client."""
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        for task in list(self._tasks):
            task.cancel()
        if self._owns_client:
            await self._redis.aclose()

    def subscribed_topics(self) -> List[Topic]:
        """Topics with at least one connection on this node."""
        return self._state.topics()

    def connection_count(self) -> int:
        """Number of connections currently open on this node."""
        return len(self._state.connections)

    async def handle_connection(self, websocket: Any, topic: Topic, user_id: Any) -> None:
        """Serve one accepted WebSocket until the client goes away."""
        self.start()
        conn_id = new_connection_id()
        sink = Sink(websocket)
        self._state.add_connection(conn_id, sink)
        await self._subscribe(conn_id, topic)

        context = ConnectionContext(
            conn_id=conn_id,
            user_id=user_id,
            topic=topic,
            app_state=self.app_state,
            sink=sink,
        )
        logger.info("Client %s (user %r) connected and subscribed to %r.", conn_id, user_id, topic)
        try:
            await self.handler.on_connect(context)
            await self._receive_messages(websocket, context)
        finally:
            await self._on_disconnect(context)

    async def publish_event(self, topic: Topic, event: Any) -> int:
        """Serialise ``event`` and publish it on ``topic``; return the receiver count."""
        payload = self.handler.serialize_event(event)
        receivers = await self._redis.publish(topic, payload)
        logger.debug("Published event %r to %r (%s receivers).", event, topic, receivers)
        return receivers

    async def _receive_messages(self, websocket: Any, context: ConnectionContext) -> None:
        logger.info("Starting message receiver loop for client %s.", context.conn_id)
        while True:
            try:
                message: Dict[str, Any] = await websocket.receive()
            except Exception as exc:
                logger.debug("Receiving from client %s failed: %s", context.conn_id, exc)
                break
            if message.get("type") == "websocket.disconnect":
                logger.debug("Received close frame from client %s.", context.conn_id)
                break
            text = message.get("text")
            if text is None:
                continue
            try:
                parsed = self.handler.parse_message(text)
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("Failed to parse message from client: %s", exc)
                await self._send_error("Invalid message format", context.sink)
                continue
            logger.debug("Received message from client: %r", parsed)
            await self._route_message(parsed, context)

    async def _route_message(self, msg: Any, context: ConnectionContext) -> None:
        try:
            response = await self.handler.handle_direct_message(msg, context)
        except HandlerError as exc:
            await self._send_error(exc.client_message(), context.sink)
            return
        if response is not None:
            if not await self._send_json(response, context.sink):
                logger.warning("Failed to send direct response to client.")
            return

        try:
            event = await self.handler.handle_broadcast_message(msg, context)
        except HandlerError as exc:
            await self._send_error(exc.client_message(), context.sink)
            return
        if event is None:
            return
        try:
            await self.publish_event(context.topic, event)
        except Exception as exc:
            logger.error("Failed to publish event after handling message: %s", exc)
            await self._send_error("Failed to broadcast event", context.sink)

    async def _subscribe(self, conn_id: ConnectionId, topic: Topic) -> None:
        if self._state.subscribe(conn_id, topic):
            logger.info("First subscriber to %r on this node. Sending Subscribe command.", topic)
            await self._commands.put(RedisCommand(CommandKind.SUBSCRIBE, topic))

    async def _on_disconnect(self, context: ConnectionContext) -> None:
        logger.info("Client %s disconnected. Cleaning up...", context.conn_id)
        try:
            await self.handler.on_disconnect(context)
        finally:
            self._state.remove_connection(context.conn_id)
            if self._state.unsubscribe(context.conn_id, context.topic):
                logger.info(
                    "Last subscriber of %r disconnected. Sending Unsubscribe command.",
                    context.topic,
                )
                await self._commands.put(RedisCommand(CommandKind.UNSUBSCRIBE, context.topic))

    async def _run_listener(self) -> None:
        while True:
            pubsub = self._redis.pubsub()
            try:
                topics = self._state.topics()
                if topics:
                    await pubsub.subscribe(*topics)
                logger.info("Redis Pub/Sub listener connected successfully.")
                await self._listen(pubsub, set(topics))
            except (RedisError, OSError) as exc:
                logger.error("Redis Pub/Sub listener failed: %s. Retrying.", exc)
            finally:
                await self._discard_pubsub(pubsub)
            await asyncio.sleep(self.reconnect_delay)

    @staticmethod
    async def _discard_pubsub(pubsub: Any) -> None:
        with contextlib.suppress(Exception):
            await pubsub.reset()

    async def _listen(self, pubsub: Any, subscribed: Set[Topic]) -> None:
        while True:
            while True:
                try:
                    command = self._commands.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._apply_command(pubsub, command, subscribed)
            if not subscribed:
                command = await self._commands.get()
                await self._apply_command(pubsub, command, subscribed)
                continue
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=self.poll_interval
            )
            if message is not None:
                self._handle_redis_broadcast(message)

    @staticmethod
    async def _apply_command(pubsub: Any, command: RedisCommand, subscribed: Set[Topic]) -> None:
        if command.kind is CommandKind.SUBSCRIBE:
            logger.info("Listener subscribing to topic %r", command.topic)
            await pubsub.subscribe(command.topic)
            subscribed.add(command.topic)
        else:
            logger.info("Listener unsubscribing from topic %r", command.topic)
            await pubsub.unsubscribe(command.topic)
            subscribed.discard(command.topic)

    def _handle_redis_broadcast(self, message: Dict[str, Any]) -> None:
        if message.get("type") != "message":
            return
        channel = message.get("channel")
        topic = channel.decode("utf-8", errors="replace") if isinstance(channel, bytes) else str(channel)
        data = message.get("data")
        try:
            payload = data.decode("utf-8") if isinstance(data, bytes) else str(data)
        except UnicodeDecodeError as exc:
            logger.error("Failed to get payload from Redis message on %r: %s", topic, exc)
            return

        conn_ids = self._state.subscribers(topic)
        if not conn_ids:
            return
        logger.debug("Broadcasting Redis message on %r to %d clients", topic, len(conn_ids))
        for conn_id in conn_ids:
            sink = self._state.connections.get(conn_id)
            if sink is not None:
                self._spawn(self._deliver(conn_id, sink, payload))

    @staticmethod
    async def _deliver(conn_id: ConnectionId, sink: Sink, payload: str) -> None:
        try:
            await sink.send_text(payload)
        except Exception as exc:
            logger.warning(
                "Failed to send broadcast message to %s, client likely disconnected: %s",
                conn_id,
                exc,
            )

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _send_json(data: Any, sink: Sink) -> bool:
        try:
            await sink.send_json(data)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialize response for client: %s", exc)
            return False
        except Exception as exc:
            logger.warning("Failed to send message to client sink: %s", exc)
            return False
        return True

    async def _send_error(self, message: str, sink: Sink) -> None:
        if not await self._send_json({"message": message, "type": "error"}, sink):
            logger.warning("Could not send error response. Client connection is likely dead.")