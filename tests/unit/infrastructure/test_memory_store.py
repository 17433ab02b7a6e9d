import pytest

from room_sync.application.exceptions import ConflictError, NetworkError
from room_sync.domain.events import Channel


@pytest.mark.asyncio
class TestInMemoryBackingStore:
    async def test_room_lifecycle(self, memory_store):
        room = await memory_store.create_room("Lounge")

        assert await memory_store.get_room(room.id) == room
        assert await memory_store.get_room("missing") is None

    async def test_participant_conflict(self, memory_store):
        await memory_store.insert_participant("room1", "ana")

        with pytest.raises(ConflictError):
            await memory_store.insert_participant("room1", "ana")

        assert [p.username for p in await memory_store.list_participants("room1")] == [
            "ana"
        ]

    async def test_events_are_delivered_after_write(self, memory_store, flush_events):
        received = []
        await memory_store.subscribe(Channel.MESSAGES, "room1", received.append)

        message = await memory_store.insert_message("room1", "ana", "hi")
        assert received == []  # 아직 루프가 돌지 않음

        await flush_events()
        assert received[0]["kind"] == "insert"
        assert received[0]["record"]["id"] == message.id

    async def test_other_rooms_are_filtered(self, memory_store, flush_events):
        received = []
        await memory_store.subscribe(Channel.MESSAGES, "room1", received.append)

        await memory_store.insert_message("room2", "ana", "hi")
        await flush_events()

        assert received == []

    async def test_typing_upsert_then_delete(self, memory_store, make_typing, flush_events):
        received = []
        await memory_store.subscribe(Channel.TYPING, "room1", received.append)
        state = make_typing("bo")

        await memory_store.upsert_typing("room1", "bo", True, state.updated_at)
        await memory_store.upsert_typing("room1", "bo", True, state.updated_at)
        await memory_store.delete_typing("room1", "bo")
        await memory_store.delete_typing("room1", "bo")  # 멱등
        await flush_events()

        assert [e["kind"] for e in received] == ["insert", "update", "delete"]

    async def test_cancelled_subscription_gets_nothing(self, memory_store, flush_events):
        received = []
        subscription = await memory_store.subscribe(
            Channel.PARTICIPANTS, "room1", received.append
        )

        await memory_store.insert_participant("room1", "ana")
        await subscription.cancel()
        await flush_events()

        assert received == []
        assert subscription.cancelled

    async def test_drop_reports_network_error(self, memory_store):
        errors = []
        subscription = await memory_store.subscribe(
            Channel.TYPING, "room1", lambda _: None, on_error=errors.append
        )

        subscription.drop("connection reset")

        assert isinstance(errors[0], NetworkError)
        assert memory_store.subscriptions("room1", Channel.TYPING) == []
