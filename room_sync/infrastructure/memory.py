import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from uuid import uuid4

from room_sync.application.backing_store import ErrorHandler, PayloadHandler
from room_sync.application.exceptions import ConflictError, NetworkError
from room_sync.domain.events import ChangeKind, Channel, make_payload
from room_sync.domain.models import (
    Message,
    Participant,
    Room,
    TypingState,
    utcnow,
)

logger = logging.getLogger(__name__)


class MemorySubscription:
    def __init__(
        self,
        store: "InMemoryBackingStore",
        key: tuple[str, Channel],
        handler: PayloadHandler,
        on_error: ErrorHandler | None = None,
    ):
        self._store = store
        self.key = key
        self.handler = handler
        self.on_error = on_error
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def deliver(self, payload: dict) -> None:
        if self._cancelled:
            return
        try:
            self.handler(payload)
        except Exception as e:
            logger.error(f"Handler error on {self.key}: {e}", exc_info=True)

    def drop(self, reason: str = "Subscription dropped") -> None:
        """구독 끊김 (로컬 개발 / 장애 재현용)"""
        if self._cancelled:
            return
        self._store._remove(self)
        self._cancelled = True
        if self.on_error:
            self.on_error(NetworkError(reason))

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._store._remove(self)


class InMemoryBackingStore:
    """
    단일 프로세스용 백킹 스토어 (BACKING_STORE=memory)

    변경 알림은 쓰기 호출이 반환된 뒤 이벤트 루프에서 비동기로 전달된다.
    """

    def __init__(self):
        self.rooms: dict[str, Room] = {}
        self.messages: dict[str, list[Message]] = defaultdict(list)
        self.participants: dict[str, dict[str, Participant]] = defaultdict(dict)
        self.typing: dict[str, dict[str, TypingState]] = defaultdict(dict)
        self._subscriptions: dict[tuple[str, Channel], list[MemorySubscription]] = (
            defaultdict(list)
        )

    async def start(self):
        logger.info("In-memory backing store started")

    async def stop(self):
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                await subscription.cancel()
        logger.info("In-memory backing store stopped")

    def subscriptions(self, room_id: str, channel: Channel) -> list[MemorySubscription]:
        return list(self._subscriptions.get((room_id, channel), []))

    def _remove(self, subscription: MemorySubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.key, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)

    def _publish(
        self, room_id: str, channel: Channel, kind: ChangeKind, record
    ) -> None:
        payload = make_payload(kind, record)
        loop = asyncio.get_running_loop()
        for subscription in self.subscriptions(room_id, channel):
            loop.call_soon(subscription.deliver, payload)

    async def create_room(self, name: str) -> Room:
        room = Room(id=str(uuid4()), name=name)
        self.rooms[room.id] = room
        return room

    async def get_room(self, room_id: str) -> Room | None:
        return self.rooms.get(room_id)

    async def list_messages(self, room_id: str) -> list[Message]:
        return sorted(self.messages.get(room_id, []), key=lambda m: m.sort_key)

    async def list_participants(self, room_id: str) -> list[Participant]:
        return sorted(
            self.participants.get(room_id, {}).values(),
            key=lambda p: (p.joined_at, p.id),
        )

    async def subscribe(
        self,
        channel: Channel,
        room_id: str,
        handler: PayloadHandler,
        on_error: ErrorHandler | None = None,
    ) -> MemorySubscription:
        subscription = MemorySubscription(self, (room_id, channel), handler, on_error)
        self._subscriptions[(room_id, channel)].append(subscription)
        return subscription

    async def insert_message(
        self, room_id: str, author_username: str, content: str
    ) -> Message:
        message = Message(
            id=str(uuid4()),
            room_id=room_id,
            author_username=author_username,
            content=content,
            created_at=utcnow(),
        )
        self.messages[room_id].append(message)
        self._publish(room_id, Channel.MESSAGES, ChangeKind.INSERT, message)
        return message

    async def insert_participant(self, room_id: str, username: str) -> Participant:
        room_participants = self.participants[room_id]
        if username in room_participants:
            raise ConflictError()

        participant = Participant(
            id=str(uuid4()), room_id=room_id, username=username, joined_at=utcnow()
        )
        room_participants[username] = participant
        self._publish(room_id, Channel.PARTICIPANTS, ChangeKind.INSERT, participant)
        return participant

    async def delete_participant(self, room_id: str, username: str) -> None:
        participant = self.participants.get(room_id, {}).pop(username, None)
        if participant is not None:
            self._publish(
                room_id, Channel.PARTICIPANTS, ChangeKind.DELETE, participant
            )

    async def upsert_typing(
        self, room_id: str, username: str, is_typing: bool, updated_at: datetime
    ) -> None:
        room_typing = self.typing[room_id]
        kind = ChangeKind.UPDATE if username in room_typing else ChangeKind.INSERT
        state = TypingState(
            room_id=room_id,
            username=username,
            is_typing=is_typing,
            updated_at=updated_at,
        )
        room_typing[username] = state
        self._publish(room_id, Channel.TYPING, kind, state)

    async def delete_typing(self, room_id: str, username: str) -> None:
        state = self.typing.get(room_id, {}).pop(username, None)
        if state is not None:
            self._publish(room_id, Channel.TYPING, ChangeKind.DELETE, state)
