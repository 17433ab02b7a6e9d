import asyncio
import logging
from enum import StrEnum
from typing import Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from room_sync.application.backing_store import BackingStore, Subscription
from room_sync.application.change_stream import ChangeStreamClient
from room_sync.application.exceptions import (
    InvalidInputError,
    NetworkError,
    NotFoundError,
    SessionStateError,
    ValidationError,
)
from room_sync.application.message_stream import MessageStream
from room_sync.application.presence_tracker import PresenceTracker
from room_sync.application.typing_coordinator import TypingCoordinator
from room_sync.domain.events import (
    ChangeEvent,
    ChangeKind,
    Channel,
    MessageChange,
    ParticipantChange,
    TypingChange,
)
from room_sync.domain.models import (
    JoinRequest,
    Message,
    MessageDraft,
    Participant,
    Room,
    RoomView,
)
from room_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)

ViewListener = Callable[[RoomView], None]
ErrorListener = Callable[[NetworkError], None]


class SessionState(StrEnum):
    IDLE = "idle"
    JOINING = "joining"
    LIVE = "live"
    CLOSED = "closed"


class RoomSession:
    """
    한 사용자의 한 방 참여 생명주기

    IDLE -> JOINING -> LIVE -> CLOSED. 구독 핸들과 타이머는 모두 이 객체가
    소유하고 leave()에서 한 번에 해제한다.
    """

    def __init__(
        self,
        otel_manager: OTELManager,
        store: BackingStore,
        typing_inactivity_timeout: float = 2.0,
        typing_stale_after: float = 10.0,
        typing_sweep_interval: float = 1.0,
    ):
        self.otel_manager = otel_manager
        self.store = store
        self.typing_inactivity_timeout = typing_inactivity_timeout
        self.typing_stale_after = typing_stale_after
        self.typing_sweep_interval = typing_sweep_interval

        self.change_stream = ChangeStreamClient(
            store,
            on_invalid_payload=lambda: self.otel_manager.dropped_events_counter.add(1),
        )

        # 상태
        self._state = SessionState.IDLE
        self.error: NetworkError | None = None
        self.room: Room | None = None
        self.username: str | None = None
        self.participant: Participant | None = None

        # 컴포넌트 (join 시 생성)
        self.messages = MessageStream()
        self.presence = PresenceTracker()
        self.typing: TypingCoordinator | None = None

        # 소유 리소스
        self._subscriptions: list[Subscription] = []
        self._pending_events: list[tuple[Channel, ChangeEvent]] | None = None

        self._view: RoomView | None = None
        self._view_listeners: list[ViewListener] = []
        self._error_listeners: list[ErrorListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def view(self) -> RoomView | None:
        return self._view

    def add_listener(self, listener: ViewListener) -> None:
        self._view_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def join(self, room_id: str, username: str) -> RoomView:
        """
        방 입장

        Raises:
            SessionStateError: IDLE이 아닐 때
            InvalidInputError: username / room_id 형식 오류
            NotFoundError: 방 없음
            ConflictError: 이미 사용 중인 username
            NetworkError: 스토어 호출 실패 (세션은 IDLE로 돌아가 재시도 가능)
        """
        if self._state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot join from state {self._state}")

        try:
            request = JoinRequest(room_id=room_id, username=username)
        except PydanticValidationError as e:
            raise InvalidInputError(_first_error(e)) from e

        log_extra = {"room_id": request.room_id, "username": request.username}
        self._state = SessionState.JOINING
        self.error = None

        with self.otel_manager.tracer.start_as_current_span(
            "room.join", attributes=log_extra
        ):
            try:
                await self._join(request)
            except BaseException:
                # CancelledError 포함. 어떤 실패든 참여자 행과 구독을 남기지 않는다
                await self._rollback_join()
                raise

        if self._state is SessionState.CLOSED:
            # join 도중 leave()가 호출됨
            await self._rollback_join()
            raise SessionStateError("Session closed while joining")

        self._state = SessionState.LIVE
        self.otel_manager.active_sessions_counter.add(1)
        logger.info(f"{request.username} joined room {request.room_id}", extra=log_extra)

        return self._publish()

    async def _join(self, request: JoinRequest) -> None:
        room = await self.store.get_room(request.room_id)
        if room is None:
            raise NotFoundError()
        self.room = room

        self.participant = await self.store.insert_participant(
            request.room_id, request.username
        )
        self.username = request.username

        self.typing = TypingCoordinator(
            store=self.store,
            room_id=room.id,
            local_username=request.username,
            inactivity_timeout=self.typing_inactivity_timeout,
            stale_after=self.typing_stale_after,
            sweep_interval=self.typing_sweep_interval,
            on_write=lambda _: self.otel_manager.typing_writes_counter.add(1),
        )

        # 스냅샷 이전에 구독을 열고, 그 사이 이벤트는 버퍼에 쌓았다가 재생
        self._pending_events = []
        for channel in Channel:
            subscription = await self.change_stream.open(
                channel,
                room.id,
                self._make_handler(channel),
                on_error=self._on_stream_error,
            )
            self._subscriptions.append(subscription)

        messages, participants = await asyncio.gather(
            self.store.list_messages(room.id),
            self.store.list_participants(room.id),
        )
        if self.error is not None:
            raise self.error

        self.messages.seed(messages)
        self.presence.seed(participants)
        self.typing.seed()

        pending, self._pending_events = self._pending_events, None
        for channel, event in pending:
            self._route(channel, event)

        self.messages.on_change(lambda _: self._publish())
        self.presence.on_change(lambda _: self._publish())
        self.typing.on_change(lambda _: self._publish())
        self.typing.start()

    async def _rollback_join(self) -> None:
        await self._release()

        if self.participant is not None:
            await self._best_effort(
                "participant delete",
                self.store.delete_participant(
                    self.participant.room_id, self.participant.username
                ),
            )

        self.participant = None
        self.room = None
        self.username = None
        self.typing = None
        self.messages = MessageStream()
        self.presence = PresenceTracker()
        self._pending_events = None
        if self._state is not SessionState.CLOSED:
            self._state = SessionState.IDLE

    async def send_message(self, content: str) -> Message:
        """
        메시지 전송. 상대방(그리고 자기 자신)에게는 메시지 구독으로 전달된다.

        Raises:
            ValidationError: 내용이 비었거나 1000자 초과 (네트워크 호출 없음)
            NetworkError: 쓰기 실패 (세션은 LIVE 유지)
        """
        if self._state is not SessionState.LIVE:
            raise SessionStateError(f"Cannot send from state {self._state}")

        try:
            draft = MessageDraft(content=content)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e

        with self.otel_manager.tracer.start_as_current_span(
            "room.send_message",
            attributes={
                "room_id": self.room.id,
                "username": self.username,
                "message.length": len(draft.content),
            },
        ):
            message = await self.store.insert_message(
                self.room.id, self.username, draft.content
            )

        self.otel_manager.messages_sent_counter.add(1)
        return message

    def set_typing(self) -> None:
        if self._state is not SessionState.LIVE:
            return
        self.typing.notify_local_activity()

    async def leave(self) -> None:
        """세션 종료 (여러 번 호출해도 안전)"""
        if self._state is SessionState.CLOSED:
            return

        was_live = self._state is SessionState.LIVE
        self._state = SessionState.CLOSED

        if not was_live:
            # IDLE이거나 join 진행 중. join 쪽에서 정리한다
            return

        with self.otel_manager.tracer.start_as_current_span(
            "room.leave",
            attributes={"room_id": self.room.id, "username": self.username},
        ):
            await self._release()
            await self._best_effort(
                "participant delete",
                self.store.delete_participant(self.room.id, self.username),
            )

        self.otel_manager.active_sessions_counter.add(-1)
        logger.info(
            f"{self.username} left room {self.room.id}",
            extra={"room_id": self.room.id, "username": self.username},
        )

    async def _release(self) -> None:
        """
        구독과 타이머 해제. 로컬 사용자가 입력 중이었으면 진행 중인 typing
        쓰기가 끝난 뒤 typing 행도 삭제한다
        """
        subscriptions, self._subscriptions = self._subscriptions, []
        results = await asyncio.gather(
            *(s.cancel() for s in subscriptions), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Failed to cancel subscription: {result}")

        if self.typing:
            await self.typing.close()

    async def _best_effort(self, action: str, write: Awaitable[None]) -> None:
        try:
            await write
        except NetworkError as e:
            logger.warning(
                f"Best-effort {action} failed: {e}",
                extra={"room_id": self.room.id if self.room else None},
            )

    def _make_handler(self, channel: Channel) -> Callable[[ChangeEvent], None]:
        def handle(event: ChangeEvent) -> None:
            if self._pending_events is not None:
                self._pending_events.append((channel, event))
                return
            if self._state is not SessionState.LIVE:
                return
            self._route(channel, event)

        return handle

    def _route(self, channel: Channel, event: ChangeEvent) -> None:
        match channel:
            case Channel.MESSAGES:
                self._on_message_event(event)
            case Channel.PARTICIPANTS:
                self._on_participant_event(event)
            case Channel.TYPING:
                self._on_typing_event(event)

    def _on_message_event(self, event: MessageChange) -> None:
        if event.kind is ChangeKind.INSERT:
            self.messages.apply_insert(event.record)

    def _on_participant_event(self, event: ParticipantChange) -> None:
        if event.kind is ChangeKind.INSERT:
            self.presence.apply_insert(event.record)
        elif event.kind is ChangeKind.DELETE:
            self.presence.apply_delete(event.record.id)

    def _on_typing_event(self, event: TypingChange) -> None:
        record = event.record
        self.typing.apply_event(
            record.username,
            record.is_typing,
            record.updated_at,
            deleted=event.kind is ChangeKind.DELETE,
        )

    def _on_stream_error(self, error: NetworkError) -> None:
        if self._state is SessionState.CLOSED:
            return

        # 재연결하지 않는다. 호출자가 다시 join 해야 함
        self.error = error
        logger.error(
            f"Change stream lost: {error}",
            extra={"room_id": self.room.id if self.room else None},
        )
        for listener in self._error_listeners:
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}", exc_info=True)

    def _publish(self) -> RoomView:
        self._view = RoomView(
            room=self.room,
            messages=self.messages.messages,
            participants=tuple(
                sorted(self.presence.participants, key=lambda p: (p.joined_at, p.id))
            ),
            typing_usernames=tuple(sorted(self.typing.typing_usernames)),
        )

        if self._state is SessionState.LIVE:
            for listener in self._view_listeners:
                try:
                    listener(self._view)
                except Exception as e:
                    logger.error(f"View listener failed: {e}", exc_info=True)

        return self._view


def _first_error(e: PydanticValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    return errors[0]["msg"].removeprefix("Value error, ")
