from datetime import datetime
from typing import Callable, Protocol

from room_sync.application.exceptions import NetworkError
from room_sync.domain.events import Channel
from room_sync.domain.models import Message, Participant, Room

PayloadHandler = Callable[[dict], None]
ErrorHandler = Callable[[NetworkError], None]


class Subscription(Protocol):
    """하나의 채널 구독 핸들"""

    @property
    def cancelled(self) -> bool: ...

    async def cancel(self) -> None:
        """
        구독 해제. 반환 전에 이미 더 이상 handler가 호출되지 않아야 한다.
        여러 번 호출해도 안전해야 한다.
        """
        ...


class BackingStore(Protocol):
    """
    방/메시지/참여자/입력 상태를 보관하는 외부 저장소 계약

    모든 호출은 실패 시 NetworkError를 발생시킨다.
    쓰기는 행 변경과 변경 알림이 함께 반영되거나 둘 다 반영되지 않아야 한다.
    """

    async def create_room(self, name: str) -> Room: ...

    async def get_room(self, room_id: str) -> Room | None: ...

    async def list_messages(self, room_id: str) -> list[Message]:
        """created_at 오름차순, 같으면 id 순"""
        ...

    async def list_participants(self, room_id: str) -> list[Participant]:
        """joined_at 오름차순"""
        ...

    async def subscribe(
        self,
        channel: Channel,
        room_id: str,
        handler: PayloadHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """
        handler는 {"kind": "insert" | "update" | "delete", "record": {...}} 를 받는다.
        반환 시점부터 발생한 변경은 모두 전달된다.
        """
        ...

    async def insert_message(
        self, room_id: str, author_username: str, content: str
    ) -> Message: ...

    async def insert_participant(self, room_id: str, username: str) -> Participant:
        """이미 같은 username이 있으면 ConflictError"""
        ...

    async def delete_participant(self, room_id: str, username: str) -> None: ...

    async def upsert_typing(
        self, room_id: str, username: str, is_typing: bool, updated_at: datetime
    ) -> None: ...

    async def delete_typing(self, room_id: str, username: str) -> None: ...
