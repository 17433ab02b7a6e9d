import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from orjson import orjson
from redis import RedisError, WatchError

from room_sync.application.exceptions import ConflictError, NetworkError
from room_sync.domain.events import ChangeKind, Channel, make_payload
from room_sync.infrastructure.redis import RedisBackingStore, RedisSubscription


class FakePubSub:
    """redis PubSub 대역"""

    def __init__(self, messages=(), block=False, error: Exception | None = None):
        self.messages = list(messages)
        self.block = block
        self.error = error
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message
        if self.error:
            raise self.error
        if self.block:
            await asyncio.Event().wait()


@pytest.fixture
def store():
    store = RedisBackingStore(host="localhost", port=6379)
    store.client = AsyncMock()
    store.pubsub_client = MagicMock()
    return store


@pytest.fixture
def pipe(store):
    """store.client.pipeline(transaction=True) 가 돌려주는 파이프라인 mock"""
    pipe = MagicMock()
    pipe.watch = AsyncMock()
    pipe.hexists = AsyncMock(return_value=False)
    pipe.execute = AsyncMock()
    store.client.pipeline = MagicMock()
    store.client.pipeline.return_value.__aenter__.return_value = pipe
    return pipe


def published(pipe) -> list[tuple[str, dict]]:
    return [(c.args[0], orjson.loads(c.args[1])) for c in pipe.publish.call_args_list]


class TestKeys:
    def test_key_layout(self):
        assert RedisBackingStore.room_key("r1") == "room:r1"
        assert (
            RedisBackingStore.records_key("r1", Channel.PARTICIPANTS)
            == "room:r1:participants"
        )
        assert RedisBackingStore.get_channel("r1", Channel.TYPING) == "chat:room:r1:typing"


@pytest.mark.asyncio
class TestRedisBackingStore:
    async def test_get_missing_room(self, store):
        store.client.get.return_value = None
        assert await store.get_room("r1") is None

    async def test_list_messages_sorted(self, store, make_message):
        m1 = make_message("b", minute=1)
        m2 = make_message("a", minute=1)
        m0 = make_message("z", minute=0)
        store.client.lrange.return_value = [
            orjson.dumps(m.model_dump(mode="json")) for m in (m1, m2, m0)
        ]

        messages = await store.list_messages("room1")

        assert [m.id for m in messages] == ["z", "a", "b"]

    async def test_malformed_row_is_network_error(self, store):
        """깨진 행은 pydantic 에러가 아니라 NetworkError로"""
        store.client.lrange.return_value = [b'{"id": "m1"}']

        with pytest.raises(NetworkError):
            await store.list_messages("room1")

    async def test_redis_error_becomes_network_error(self, store):
        store.client.get.side_effect = RedisError("connection refused")

        with pytest.raises(NetworkError):
            await store.get_room("r1")

    async def test_insert_message_uses_transaction(self, store, pipe):
        message = await store.insert_message("room1", "ana", "hello")

        store.client.pipeline.assert_called_once_with(transaction=True)
        pipe.rpush.assert_called_once()
        [(channel, payload)] = published(pipe)
        assert channel == "chat:room:room1:messages"
        assert payload["record"]["id"] == message.id
        pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
class TestInsertParticipant:
    async def test_row_and_event_commit_together(self, store, pipe):
        participant = await store.insert_participant("room1", "ana")

        pipe.watch.assert_awaited_once_with("room:room1:participants")
        pipe.multi.assert_called_once()
        pipe.hset.assert_called_once()
        [(channel, payload)] = published(pipe)
        assert channel == "chat:room:room1:participants"
        assert payload["kind"] == "insert"
        assert payload["record"]["id"] == participant.id
        pipe.execute.assert_awaited_once()
        store.client.publish.assert_not_awaited()

    async def test_conflict(self, store, pipe):
        pipe.hexists.return_value = True

        with pytest.raises(ConflictError):
            await store.insert_participant("room1", "ana")

        pipe.hset.assert_not_called()
        pipe.execute.assert_not_awaited()

    async def test_failed_commit_leaves_no_row(self, store, pipe):
        """EXEC가 실패하면 행도 이벤트도 반영되지 않고 NetworkError"""
        pipe.execute.side_effect = RedisError("connection reset")

        with pytest.raises(NetworkError):
            await store.insert_participant("room1", "ana")

        store.client.hset.assert_not_awaited()
        store.client.publish.assert_not_awaited()

    async def test_concurrent_change_is_retried(self, store, pipe):
        pipe.execute.side_effect = [WatchError(), None]

        await store.insert_participant("room1", "ana")

        assert pipe.execute.await_count == 2

    async def test_gives_up_after_retries(self, store, pipe):
        pipe.execute.side_effect = WatchError()

        with pytest.raises(NetworkError):
            await store.insert_participant("room1", "ana")

        assert pipe.execute.await_count == store.max_watch_retries


@pytest.mark.asyncio
class TestTypingAndDeletes:
    @pytest.mark.parametrize("existed, kind", [(False, "insert"), (True, "update")])
    async def test_upsert_typing_kind(self, store, pipe, make_typing, existed, kind):
        store.client.hexists.return_value = existed
        state = make_typing("ana")

        await store.upsert_typing("room1", "ana", True, state.updated_at)

        pipe.hset.assert_called_once()
        [(_, payload)] = published(pipe)
        assert payload["kind"] == kind
        assert payload["record"]["is_typing"] is True

    async def test_upsert_typing_failure_is_atomic(self, store, pipe, make_typing):
        pipe.execute.side_effect = RedisError("connection reset")

        with pytest.raises(NetworkError):
            await store.upsert_typing(
                "room1", "ana", True, make_typing("ana").updated_at
            )

        store.client.hset.assert_not_awaited()
        store.client.publish.assert_not_awaited()

    async def test_delete_typing_absent_is_silent(self, store, pipe):
        store.client.hget.return_value = None

        await store.delete_typing("room1", "ana")

        store.client.pipeline.assert_not_called()

    async def test_delete_participant_publishes_old_record(
        self, store, pipe, make_participant
    ):
        participant = make_participant("ana", "p1")
        store.client.hget.return_value = orjson.dumps(participant.model_dump(mode="json"))

        await store.delete_participant("room1", "ana")

        pipe.hdel.assert_called_once_with("room:room1:participants", "ana")
        [(_, payload)] = published(pipe)
        assert payload["kind"] == "delete"
        assert payload["record"]["id"] == "p1"

    async def test_delete_failure_keeps_row_and_event_together(
        self, store, pipe, make_participant
    ):
        participant = make_participant("ana", "p1")
        store.client.hget.return_value = orjson.dumps(participant.model_dump(mode="json"))
        pipe.execute.side_effect = RedisError("connection reset")

        with pytest.raises(NetworkError):
            await store.delete_participant("room1", "ana")

        store.client.hdel.assert_not_awaited()
        store.client.publish.assert_not_awaited()


@pytest.mark.asyncio
class TestRedisSubscription:
    async def test_messages_are_dispatched_in_order(self, make_message):
        payloads = [
            make_payload(ChangeKind.INSERT, make_message(f"m{i}")) for i in range(3)
        ]
        pubsub = FakePubSub(
            [{"type": "subscribe", "data": 1}]
            + [{"type": "message", "data": b"{not json"}]
            + [{"type": "message", "data": orjson.dumps(p)} for p in payloads],
            block=True,
        )
        received = []
        subscription = RedisSubscription(pubsub, "chat:room:r1:messages", received.append)

        await subscription.start()
        await asyncio.sleep(0.01)

        pubsub.subscribe.assert_awaited_once_with("chat:room:r1:messages")
        assert received == payloads

        await subscription.cancel()
        await subscription.cancel()
        pubsub.unsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()

    async def test_stream_failure_reports_network_error(self):
        on_error = Mock()
        pubsub = FakePubSub(error=RedisError("connection lost"))
        subscription = RedisSubscription(pubsub, "c", Mock(), on_error=on_error)

        await subscription.start()
        await asyncio.sleep(0.01)

        on_error.assert_called_once()
        assert isinstance(on_error.call_args.args[0], NetworkError)
        await subscription.cancel()

    async def test_cancel_suppresses_error_report(self):
        on_error = Mock()
        pubsub = FakePubSub(block=True)
        subscription = RedisSubscription(pubsub, "c", Mock(), on_error=on_error)

        await subscription.start()
        await subscription.cancel()

        assert subscription.cancelled
        on_error.assert_not_called()

    async def test_handler_error_does_not_stop_listener(self, make_message):
        payload = make_payload(ChangeKind.INSERT, make_message("m1"))
        pubsub = FakePubSub(
            [{"type": "message", "data": orjson.dumps(payload)}] * 2, block=True
        )
        handler = Mock(side_effect=[RuntimeError("boom"), None])
        subscription = RedisSubscription(pubsub, "c", handler)

        await subscription.start()
        await asyncio.sleep(0.01)

        assert handler.call_count == 2
        await subscription.cancel()
