# realtimekit

Building blocks for real-time WebSocket applications on Starlette, scaled
across processes and machines with Redis Pub/Sub.

You write the application logic; the kit keeps track of connections and
per-topic subscriptions, relays events through Redis, authenticates the
WebSocket request and sends error replies to clients.

## What is inside

- **`realtimekit.service.WebsocketService`** owns every live connection on one
  node. The first connection to a topic on a node makes the node's Redis
  listener subscribe to the channel of that name; the last one to leave makes
  it unsubscribe. Everything published on a channel is sent to every local
  subscriber of that topic. After a Redis error the listener waits
  `reconnect_delay` seconds (5 by default), reconnects and subscribes again to
  the topics that still have connections.
  - `WebsocketService(redis_url, handler, app_state, redis_client=None)`:
    give either a Redis URL or an existing `redis.asyncio` client. A client
    the service created itself is closed by `close()`.
  - `start()` starts the listener; `close()` stops it and any pending
    deliveries. The service is also an async context manager.
  - `handle_connection(websocket, topic, user_id)` serves an accepted
    WebSocket until the client disconnects.
  - `publish_event(topic, event)` serialises an event with the handler and
    publishes it; it returns the number of Redis receivers.
  - `subscribed_topics()` and `connection_count()` describe the node's state.
- **`realtimekit.handler.MessageHandler`** is the base class you subclass.
  Each incoming text frame is decoded with `parse_message` (JSON by default).
  A frame that fails to parse gets the reply
  `{"message":"Invalid message format","type":"error"}`. A parsed message
  goes first to `handle_direct_message`; if that returns a value, the value
  is sent as JSON to the sender alone. If it returns `None`, the message goes
  to `handle_broadcast_message`, and whatever that returns (other than
  `None`) is serialised with `serialize_event` and published on the topic,
  so every subscriber receives it, the sender included. `on_connect` and
  `on_disconnect` are lifecycle hooks that do nothing by default.
  `ConnectionContext` gives each call the connection id, user id, topic,
  application state and the client's `Sink`.
- **`realtimekit.handler.HandlerError`** raised from a handler sends the
  client `{"message": ..., "type": "error"}`, where the message is the one
  given or else the status line, such as `400 Bad Request`.
  `SerializationError` is the variant used when an event cannot be encoded.
- **`realtimekit.upgrade.upgrade_handler(websocket, service, user_id, topic, validator)`**
  calls `validator(app_state, user_id, topic)` (plain function or
  coroutine). If the validator raises `TopicRejected(status)`, the request is
  refused with an HTTP response of that status where the server supports
  WebSocket denial responses, and with a policy-violation close (code 1008)
  otherwise; the status is returned. Otherwise the WebSocket is accepted and
  served by the service, and `None` is returned once it closes.
- **`realtimekit.auth`**: `WsAuth.authenticate(connection, validator)` takes
  the token from an `Authorization` header of the form `Bearer token`, or from
  the `token` query parameter when there is no such header, and passes it to
  your `TokenValidator.validate_token`. The result is a `WsAuth` whose `user`
  is the validated user. A missing token, or any exception from the
  validator, raises `AuthenticationError` (status 401). The helpers
  `token_from_headers` and `extract_token` are available on their own.
- **`realtimekit.types`** holds `WsState` (connection and subscription
  bookkeeping), `Sink` (a lock-guarded writer for one WebSocket, with
  `send_text` and `send_json`), `RedisCommand`, `CommandKind` and
  `new_connection_id()`.
- **`realtimekit.coalescing.CoalescingService`** runs one operation per key at
  a time; concurrent callers asking for the same key await the same result
  instead of starting the work again. A caller that is cancelled does not
  cancel the shared operation. An optional timeout (seconds or a
  `timedelta`) fails slow operations with `OperationTimeoutError`, raised to
  every waiter. `get_stats()` returns a `CoalescingStats` snapshot of
  initiated, coalesced, failed and timed-out operations; `reset_stats()`
  clears it and `get_pending_tasks_count()` counts the keys in flight.

## Installation

```
pip install realtimekit
```

`WebsocketService` needs a reachable Redis server.

## Coalescing expensive work

```python
from realtimekit.coalescing import CoalescingService

service = CoalescingService(timeout=2.0)

async def load_profile():
    ...  # an expensive database or HTTP call

# Any number of concurrent callers with the same key share one call.
profile = await service.execute("profile:42", load_profile)
```

If the operation raises, every waiting caller receives the same exception.

## Writing a handler and a route

```python
import contextlib

from starlette.applications import Starlette
from starlette.routing import WebSocketRoute

from realtimekit.auth import AuthenticationError, TokenValidator, WsAuth
from realtimekit.handler import HandlerError, MessageHandler
from realtimekit.service import WebsocketService
from realtimekit.upgrade import TopicRejected, upgrade_handler


class EchoHandler(MessageHandler):
    async def handle_broadcast_message(self, msg, context):
        if not msg:
            raise HandlerError(400, "Empty message")
        return {"topic": context.topic, "from": str(context.user_id), "body": msg}


class Tokens(TokenValidator):
    async def validate_token(self, token):
        if token != "token":
            raise ValueError("unknown token")
        return "alice"


async def only_lobby(app_state, user_id, topic):
    if topic != "lobby":
        raise TopicRejected(404)


tokens = Tokens()
service = WebsocketService("redis://localhost:6379", EchoHandler(), app_state=None)


async def socket(websocket):
    try:
        auth = await WsAuth.authenticate(websocket, tokens)
    except AuthenticationError:
        await websocket.close(code=1008)
        return
    await upgrade_handler(
        websocket, service, auth.user, websocket.path_params["topic"], only_lobby
    )


@contextlib.asynccontextmanager
async def lifespan(app):
    async with service:
        yield


app = Starlette(routes=[WebSocketRoute("/ws/{topic}", socket)], lifespan=lifespan)
```

## The chat server

`realtimekit.basic_chat` is a small chat server built from these pieces.
`create_app(redis_url=None, redis_client=None)` returns a Starlette
application with two routes:

- `/health` answers `OK`.
- `/ws/{topic}` is the chat socket. The topics `general` and `random` are
  open to everyone, `private-user-<id>` only to the user with that id; other
  `private-` topics are refused with 403 and any other topic with 404. A
  request without a valid token is refused with 401.

Tokens have the form `<user uuid>:<username>`, optionally after `Bearer `,
sent in the `Authorization` header or as the `token` query parameter.

Clients send JSON frames:

- `"Ping"` is answered directly to the sender with `"Pong"`.
- `{"SendMessage": {"room": "general", "text": "hello"}}` is broadcast to the
  room as `{"NewMessage": {"room": ..., "username": ..., "text": ...}}`, where
  the username is `User_` followed by the first group of the sender's uuid.
  The room must be the topic the client is connected to; otherwise the
  sender gets an error reply.

Start it with:

```
realtimekit-chat
```

Options: `--host` (default `127.0.0.1`), `--port` (default `3000`) and
`--redis-url` (default: the `REDIS_URL` environment variable, else
`redis://localhost:6379`).

## What it does not do

Messages are relayed, never stored: there is no history, and a client sees
only what is published while it is connected. The chat server knows users
only from their tokens; it keeps no accounts and does not announce users
joining or leaving a room.

## Running the tests

Install the test extra and run pytest:

```
pip install realtimekit[test]
pytest
```