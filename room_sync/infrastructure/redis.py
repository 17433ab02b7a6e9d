import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import TypeVar
from uuid import uuid4

import redis.asyncio as redis
from orjson import orjson
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from redis import RedisError, WatchError

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

T = TypeVar("T", bound=BaseModel)


@contextmanager
def _translate_errors(action: str):
    try:
        yield
    except RedisError as e:
        logger.error(f"Redis {action} failed: {e}")
        raise NetworkError(f"{action} failed") from e


class RedisSubscription:
    """채널 하나에 대한 Redis Pub/Sub 구독"""

    def __init__(
        self,
        pubsub: redis.client.PubSub,
        channel_name: str,
        handler: PayloadHandler,
        on_error: ErrorHandler | None = None,
    ):
        self._pubsub = pubsub
        self.channel_name = channel_name
        self._handler = handler
        self._on_error = on_error
        self._cancelled = False
        self._listener_task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def start(self) -> None:
        with _translate_errors(f"subscribe {self.channel_name}"):
            await self._pubsub.subscribe(self.channel_name)
        self._listener_task = asyncio.create_task(self._listen())

    async def cancel(self) -> None:
        if self._cancelled:
            return
        # 이 시점 이후로 handler 호출 없음
        self._cancelled = True

        if self._listener_task and not self._listener_task.done():
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)

        try:
            await self._pubsub.unsubscribe(self.channel_name)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Failed to unsubscribe from {self.channel_name}: {e}")

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if self._cancelled:
                    break

                if message["type"] != "message":
                    continue

                try:
                    payload = orjson.loads(message["data"])
                except orjson.JSONDecodeError as e:
                    logger.error(f"JSON decode error on {self.channel_name}: {e}")
                    continue

                try:
                    self._handler(payload)
                except Exception as e:
                    logger.error(
                        f"Handler error on {self.channel_name}: {e}", exc_info=True
                    )

        except asyncio.CancelledError:
            logger.debug(f"Listener for {self.channel_name} cancelled")
            raise

        except Exception as e:
            self._report(f"Subscription to {self.channel_name} dropped: {e}")
            return

        self._report(f"Subscription to {self.channel_name} ended")

    def _report(self, reason: str) -> None:
        if self._cancelled:
            return
        logger.error(reason)
        if self._on_error:
            self._on_error(NetworkError(reason))


class RedisBackingStore:
    """
    Redis 기반 백킹 스토어

    room:{id}                -> Room (json)
    room:{id}:messages       -> list of Message (json)
    room:{id}:participants   -> hash username -> Participant (json)
    room:{id}:typing         -> hash username -> TypingState (json)

    변경 알림은 chat:room:{id}:{channel} 채널로 publish 한다.
    행 변경과 publish는 같은 MULTI/EXEC 트랜잭션으로 묶어서 하나만 반영되는 일이 없다.
    """

    def __init__(
        self,
        host: str = "redis",
        port: int = 6379,
        max_connections: int = 100,
        socket_timeout: int = 5,
        max_watch_retries: int = 5,
    ):
        self.max_watch_retries = max_watch_retries
        self.pool = redis.ConnectionPool(
            host=host,
            port=port,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            retry_on_timeout=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)
        self.pubsub_client = redis.Redis(
            host=host,
            port=port,
            retry_on_timeout=True,
        )

    async def start(self):
        await self.client.ping()
        await self.pubsub_client.ping()
        logger.info("Redis backing store started")

    async def stop(self):
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
        await self.pubsub_client.aclose()
        logger.info("Redis backing store stopped")

    @staticmethod
    def room_key(room_id: str) -> str:
        return f"room:{room_id}"

    @staticmethod
    def records_key(room_id: str, channel: Channel) -> str:
        return f"room:{room_id}:{channel}"

    @staticmethod
    def get_channel(room_id: str, channel: Channel) -> str:
        return f"chat:room:{room_id}:{channel}"

    @staticmethod
    def _encode(record) -> bytes:
        return orjson.dumps(record.model_dump(mode="json"))

    @staticmethod
    def _decode(model: type[T], raw: bytes) -> T:
        try:
            return model.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, PydanticValidationError) as e:
            logger.error(f"Malformed {model.__name__} row: {e}")
            raise NetworkError(f"Malformed {model.__name__} row") from e

    @classmethod
    def _queue_publish(
        cls, pipe, room_id: str, channel: Channel, kind: ChangeKind, record
    ) -> None:
        pipe.publish(
            cls.get_channel(room_id, channel),
            orjson.dumps(make_payload(kind, record)),
        )

    async def create_room(self, name: str) -> Room:
        room = Room(id=str(uuid4()), name=name)
        with _translate_errors("create_room"):
            await self.client.set(self.room_key(room.id), self._encode(room))
        return room

    async def get_room(self, room_id: str) -> Room | None:
        with _translate_errors("get_room"):
            raw = await self.client.get(self.room_key(room_id))
        if raw is None:
            return None
        return self._decode(Room, raw)

    async def list_messages(self, room_id: str) -> list[Message]:
        with _translate_errors("list_messages"):
            raw = await self.client.lrange(
                self.records_key(room_id, Channel.MESSAGES), 0, -1
            )
        messages = [self._decode(Message, r) for r in raw]
        return sorted(messages, key=lambda m: m.sort_key)

    async def list_participants(self, room_id: str) -> list[Participant]:
        with _translate_errors("list_participants"):
            raw = await self.client.hvals(
                self.records_key(room_id, Channel.PARTICIPANTS)
            )
        participants = [self._decode(Participant, r) for r in raw]
        return sorted(participants, key=lambda p: (p.joined_at, p.id))

    async def subscribe(
        self,
        channel: Channel,
        room_id: str,
        handler: PayloadHandler,
        on_error: ErrorHandler | None = None,
    ) -> RedisSubscription:
        subscription = RedisSubscription(
            self.pubsub_client.pubsub(ignore_subscribe_messages=True),
            self.get_channel(room_id, channel),
            handler,
            on_error,
        )
        await subscription.start()
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
        with _translate_errors("insert_message"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.rpush(
                    self.records_key(room_id, Channel.MESSAGES), self._encode(message)
                )
                self._queue_publish(
                    pipe, room_id, Channel.MESSAGES, ChangeKind.INSERT, message
                )
                await pipe.execute()
        return message

    async def insert_participant(self, room_id: str, username: str) -> Participant:
        participant = Participant(
            id=str(uuid4()), room_id=room_id, username=username, joined_at=utcnow()
        )
        key = self.records_key(room_id, Channel.PARTICIPANTS)

        with _translate_errors("insert_participant"):
            for _ in range(self.max_watch_retries):
                try:
                    async with self.client.pipeline(transaction=True) as pipe:
                        # 같은 방에 동시에 입장하면 hash가 바뀌어 WatchError
                        await pipe.watch(key)
                        if await pipe.hexists(key, username):
                            raise ConflictError()

                        pipe.multi()
                        pipe.hset(key, username, self._encode(participant))
                        self._queue_publish(
                            pipe,
                            room_id,
                            Channel.PARTICIPANTS,
                            ChangeKind.INSERT,
                            participant,
                        )
                        await pipe.execute()
                    return participant
                except WatchError:
                    logger.debug(f"Participant insert contended in room {room_id}")

        raise NetworkError("insert_participant failed: too many concurrent joins")

    async def delete_participant(self, room_id: str, username: str) -> None:
        await self._delete_row(room_id, Channel.PARTICIPANTS, username, Participant)

    async def upsert_typing(
        self, room_id: str, username: str, is_typing: bool, updated_at: datetime
    ) -> None:
        state = TypingState(
            room_id=room_id,
            username=username,
            is_typing=is_typing,
            updated_at=updated_at,
        )
        key = self.records_key(room_id, Channel.TYPING)
        with _translate_errors("upsert_typing"):
            existed = await self.client.hexists(key, username)
            kind = ChangeKind.UPDATE if existed else ChangeKind.INSERT
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, username, self._encode(state))
                self._queue_publish(pipe, room_id, Channel.TYPING, kind, state)
                await pipe.execute()

    async def delete_typing(self, room_id: str, username: str) -> None:
        await self._delete_row(room_id, Channel.TYPING, username, TypingState)

    async def _delete_row(
        self, room_id: str, channel: Channel, username: str, model: type[T]
    ) -> None:
        """행을 지우고 지운 행을 delete 이벤트로 알림 (없으면 아무것도 안 함)"""
        key = self.records_key(room_id, channel)
        with _translate_errors(f"delete {channel}"):
            raw = await self.client.hget(key, username)
            if raw is None:
                return
            record = self._decode(model, raw)

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hdel(key, username)
                self._queue_publish(pipe, room_id, channel, ChangeKind.DELETE, record)
                await pipe.execute()
