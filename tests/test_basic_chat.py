import asyncio
import json
import uuid
from http import HTTPStatus
from unittest import mock

import pytest
from starlette.testclient import TestClient, WebSocketDenialResponse

from realtimekit.basic_chat import (
    AuthError,
    ChatAppState,
    ChatMessageHandler,
    NewMessage,
    Ping,
    Pong,
    SendMessage,
    User,
    UserJoined,
    create_app,
    main,
    validate_topic_access,
)
from realtimekit.handler import ConnectionContext, HandlerError, SerializationError
from realtimekit.types import Sink, new_connection_id
from realtimekit.upgrade import TopicRejected

USER_ID = uuid.UUID("12345678-1234-5678-1234-567812345678")


class FakePubSub:
    def __init__(self, broker):
        self.broker = broker
        self.channels = set()

    async def subscribe(self, *channels):
        self.channels.update(channels)

    async def unsubscribe(self, *channels):
        self.channels.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages=True, timeout=0.0):
        for index, (channel, data) in enumerate(self.broker.pending):
            if channel in self.channels:
                del self.broker.pending[index]
                return {"type": "message", "channel": channel.encode(), "data": data.encode()}
        await asyncio.sleep(min(timeout, 0.01))
        return None

    async def reset(self):
        self.channels.clear()


class FakeRedis:
    def __init__(self):
        self.published = []
        self.pending = []

    async def publish(self, channel, data):
        self.published.append((channel, data))
        self.pending.append((channel, data))
        return 1

    def pubsub(self):
        return FakePubSub(self)


def make_context(topic="general", user_id=USER_ID):
    return ConnectionContext(
        conn_id=new_connection_id(),
        user_id=user_id,
        topic=topic,
        app_state=ChatAppState(),
        sink=Sink(None),
    )


@pytest.mark.asyncio
async def test_validate_token_accepts_uuid_and_name():
    user = await ChatAppState().validate_token(f"{USER_ID}:alice")
    assert user == User(id=USER_ID, username="alice")


@pytest.mark.asyncio
async def test_validate_token_keeps_colons_in_name():
    user = await ChatAppState().validate_token(f"{USER_ID}:a:b")
    assert user.username == "a:b"


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["no-colon", "not-a-uuid:alice", ""])
async def test_validate_token_rejects_bad_values(value):
    with pytest.raises(AuthError, match="Invalid token format or content"):
        await ChatAppState().validate_token(value)


def test_parse_message_known_forms():
    handler = ChatMessageHandler()
    assert handler.parse_message('"Ping"') == Ping()
    parsed = handler.parse_message(json.dumps({"SendMessage": {"room": "general", "text": "hi"}}))
    assert parsed == SendMessage(room="general", text="hi")


@pytest.mark.parametrize(
    "text",
    [
        "nope",
        '"Pong"',
        '{"Unknown": {}}',
        '{"SendMessage": {"room": "general"}}',
        '{"SendMessage": {"room": 1, "text": "hi"}}',
    ],
)
def test_parse_message_rejects_unknown(text):
    with pytest.raises(ValueError):
        ChatMessageHandler().parse_message(text)


def test_serialize_event_wire_format():
    handler = ChatMessageHandler()
    assert handler.serialize_event(Pong()) == '"Pong"'
    encoded = handler.serialize_event(NewMessage(room="general", username="bob", text="hi"))
    assert encoded == '{"NewMessage":{"room":"general","username":"bob","text":"hi"}}'
    joined = json.loads(handler.serialize_event(UserJoined(username="bob", room="general")))
    assert joined == {"UserJoined": {"username": "bob", "room": "general"}}


def test_serialize_event_rejects_other_objects():
    with pytest.raises(SerializationError):
        ChatMessageHandler().serialize_event(object())


@pytest.mark.asyncio
async def test_direct_message_answers_ping_only():
    handler = ChatMessageHandler()
    context = make_context()
    assert await handler.handle_direct_message(Ping(), context) == "Pong"
    assert await handler.handle_direct_message(SendMessage("general", "hi"), context) is None


@pytest.mark.asyncio
async def test_broadcast_message_builds_new_message():
    event = await ChatMessageHandler().handle_broadcast_message(
        SendMessage("general", "hello"), make_context()
    )
    assert event == NewMessage(room="general", username="User_12345678", text="hello")


@pytest.mark.asyncio
async def test_broadcast_message_rejects_other_room():
    with pytest.raises(HandlerError) as info:
        await ChatMessageHandler().handle_broadcast_message(
            SendMessage("random", "hi"), make_context("general")
        )
    assert info.value.status is HTTPStatus.BAD_REQUEST
    assert info.value.client_message() == "Cannot send to room 'random' from topic 'general'"


@pytest.mark.asyncio
async def test_broadcast_ping_produces_nothing():
    assert await ChatMessageHandler().handle_broadcast_message(Ping(), make_context()) is None


@pytest.mark.asyncio
async def test_lifecycle_hooks_log_topic(caplog):
    caplog.set_level("INFO", logger="realtimekit.basic_chat")
    handler = ChatMessageHandler()
    context = make_context("random")
    await handler.on_connect(context)
    await handler.on_disconnect(context)
    messages = [r.getMessage() for r in caplog.records]
    assert any("connected" in m and "random" in m for m in messages)
    assert any("disconnected" in m and "random" in m for m in messages)


@pytest.mark.asyncio
@pytest.mark.parametrize("topic", ["general", "random", f"private-user-{USER_ID}"])
async def test_topic_access_allowed(topic):
    assert await validate_topic_access(None, USER_ID, topic) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "topic, status",
    [("private-user-other", HTTPStatus.FORBIDDEN), ("elsewhere", HTTPStatus.NOT_FOUND)],
)
async def test_topic_access_refused(topic, status):
    with pytest.raises(TopicRejected) as info:
        await validate_topic_access(None, USER_ID, topic)
    assert info.value.status is status


def test_health_route():
    with TestClient(create_app(redis_client=FakeRedis())) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.text == "OK"


def test_websocket_ping_and_errors():
    with TestClient(create_app(redis_client=FakeRedis())) as client:
        with client.websocket_connect(f"/ws/general?token={USER_ID}:alice") as ws:
            ws.send_text('"Ping"')
            assert ws.receive_json() == "Pong"
            ws.send_text("nope")
            assert ws.receive_json() == {"message": "Invalid message format", "type": "error"}
            ws.send_text(json.dumps({"SendMessage": {"room": "random", "text": "hi"}}))
            assert ws.receive_json() == {
                "message": "Cannot send to room 'random' from topic 'general'",
                "type": "error",
            }


def test_websocket_broadcast_round_trip():
    redis = FakeRedis()
    with TestClient(create_app(redis_client=redis)) as client:
        with client.websocket_connect(f"/ws/general?token={USER_ID}:alice") as ws:
            ws.send_text(json.dumps({"SendMessage": {"room": "general", "text": "hi"}}))
            received = ws.receive_json()
    expected = {"NewMessage": {"room": "general", "username": "User_12345678", "text": "hi"}}
    assert received == expected
    assert [channel for channel, _ in redis.published] == ["general"]
    assert json.loads(redis.published[0][1]) == expected


def test_websocket_without_token_is_unauthorized():
    with TestClient(create_app(redis_client=FakeRedis())) as client:
        with pytest.raises(WebSocketDenialResponse) as info:
            with client.websocket_connect("/ws/general"):
                pass
    assert info.value.status_code == 401


def test_websocket_unknown_topic_is_not_found():
    with TestClient(create_app(redis_client=FakeRedis())) as client:
        with pytest.raises(WebSocketDenialResponse) as info:
            with client.websocket_connect(f"/ws/elsewhere?token={USER_ID}:alice"):
                pass
    assert info.value.status_code == 404


@mock.patch("uvicorn.run")
def test_main_runs_server(run):
    assert main(["--port", "4000", "--redis-url", "redis://localhost:6379"]) == 0
    run.assert_called_once()
    assert run.call_args.kwargs == {"host": "127.0.0.1", "port": 4000}