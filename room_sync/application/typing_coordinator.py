import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable

from room_sync.application.backing_store import BackingStore
from room_sync.application.exceptions import NetworkError
from room_sync.domain.models import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TypingListener = Callable[[frozenset[str]], None]


class TypingPublisher:
    """
    로컬 사용자의 입력 중 상태 발행

    idle -> active 전환 시 upsert(is_typing=True)를 한 번만 보내고,
    이후 입력은 비활성 타이머만 다시 건다. 타이머가 끝까지 돌면
    delete를 보내고 idle로 돌아간다.

    refresh_interval이 주어지면 쉬지 않고 입력하는 동안에도 그 간격마다
    upsert를 다시 보내서, 상대방의 stale sweep에 걸리지 않게 한다.
    """

    def __init__(
        self,
        store: BackingStore,
        room_id: str,
        username: str,
        inactivity_timeout: float = 2.0,
        refresh_interval: float | None = None,
        clock: Clock = utcnow,
        on_write: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.room_id = room_id
        self.username = username
        self.inactivity_timeout = inactivity_timeout
        self.refresh_interval = refresh_interval
        self.clock = clock
        self.on_write = on_write

        self._active = False
        self._closed = False
        self._timer: asyncio.Task | None = None
        self._last_start: float = 0.0  # monotonic

        # 쓰기는 발생 순서대로 직렬화 (start가 stop을 추월하지 않도록)
        self._write_lock = asyncio.Lock()
        self._write_tasks: set[asyncio.Task] = set()

    @property
    def is_active(self) -> bool:
        return self._active

    def notify_local_activity(self) -> None:
        if self._closed:
            return

        now = time.monotonic()
        if not self._active:
            self._active = True
            self._spawn_start(now)
        elif (
            self.refresh_interval is not None
            and now - self._last_start >= self.refresh_interval
        ):
            self._spawn_start(now)

        if self._timer and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._expire())

    async def _expire(self) -> None:
        await asyncio.sleep(self.inactivity_timeout)

        # 여기부터는 취소 대상이 아님
        self._timer = None
        self._active = False
        await self._write(
            "stop", lambda: self.store.delete_typing(self.room_id, self.username)
        )

    def cancel(self) -> bool:
        """타이머 해제. 해제 시점에 active였는지 반환"""
        was_active = self._active
        self._closed = True
        self._active = False

        if self._timer and not self._timer.done():
            self._timer.cancel()
        self._timer = None

        return was_active

    async def close(self) -> bool:
        """
        타이머 해제 후 진행 중인 쓰기가 끝나길 기다리고, 입력 중이었으면 행 삭제.
        해제 시점에 active였는지 반환
        """
        was_active = self.cancel()

        if self._write_tasks:
            await asyncio.gather(*self._write_tasks, return_exceptions=True)
        if was_active:
            await self._write(
                "stop", lambda: self.store.delete_typing(self.room_id, self.username)
            )

        return was_active

    def _spawn_start(self, now: float) -> None:
        self._last_start = now
        updated_at = self.clock()
        self._spawn_write(
            "start",
            lambda: self.store.upsert_typing(
                self.room_id, self.username, True, updated_at
            ),
        )

    def _spawn_write(self, action: str, write: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._write(action, write))
        self._write_tasks.add(task)
        task.add_done_callback(self._write_tasks.discard)

    async def _write(self, action: str, write: Callable[[], Awaitable[None]]) -> None:
        async with self._write_lock:
            try:
                await write()
            except NetworkError as e:
                logger.warning(
                    f"Typing {action} write failed: {e}",
                    extra={"room_id": self.room_id, "username": self.username},
                )
                return

        if self.on_write:
            self.on_write(action)


class RemoteTypingTracker:
    """다른 사용자들의 입력 중 상태 (로컬 사용자는 제외)"""

    def __init__(self, local_username: str, stale_after: float = 10.0):
        self.local_username = local_username
        self.stale_after = stale_after

        self._typing: dict[str, float] = {}  # username -> 수신 시각 (monotonic)
        self._last_applied: dict[str, datetime] = {}
        self._listeners: list[TypingListener] = []

    @property
    def typing_usernames(self) -> frozenset[str]:
        return frozenset(self._typing)

    def on_change(self, listener: TypingListener) -> None:
        self._listeners.append(listener)

    def seed(self) -> None:
        # 입력 중 상태는 스냅샷하지 않는다
        self._typing.clear()
        self._last_applied.clear()
        self._emit()

    def apply_event(
        self,
        username: str,
        is_typing: bool,
        updated_at: datetime,
        deleted: bool = False,
    ) -> bool:
        if username == self.local_username:
            return False

        last = self._last_applied.get(username)
        if last is not None and updated_at < last:
            logger.debug(f"Ignoring stale typing event for {username}")
            return False
        self._last_applied[username] = updated_at

        if is_typing and not deleted:
            is_new = username not in self._typing
            self._typing[username] = time.monotonic()
            if is_new:
                self._emit()
            return is_new

        if self._typing.pop(username, None) is None:
            return False

        self._emit()
        return True

    def sweep(self) -> list[str]:
        """stop 이벤트를 잃어버린 사용자 정리"""
        cutoff = time.monotonic() - self.stale_after
        expired = [u for u, received_at in self._typing.items() if received_at < cutoff]
        for username in expired:
            del self._typing[username]

        if expired:
            logger.info(f"Expired stale typing entries: {expired}")
            self._emit()

        return expired

    def _emit(self) -> None:
        view = self.typing_usernames
        for listener in self._listeners:
            listener(view)


class TypingCoordinator:
    """
    로컬 발행과 원격 추적을 묶고, 주기적 stale sweep을 돌린다

    로컬 발행은 stale_after의 절반마다 행을 갱신하므로, 쉬지 않고 입력하는
    상대방도 sweep에 걸리지 않는다.
    """

    def __init__(
        self,
        store: BackingStore,
        room_id: str,
        local_username: str,
        inactivity_timeout: float = 2.0,
        stale_after: float = 10.0,
        sweep_interval: float = 1.0,
        clock: Clock = utcnow,
        on_write: Callable[[str], None] | None = None,
    ):
        self.sweep_interval = sweep_interval
        self.publisher = TypingPublisher(
            store=store,
            room_id=room_id,
            username=local_username,
            inactivity_timeout=inactivity_timeout,
            refresh_interval=stale_after / 2,
            clock=clock,
            on_write=on_write,
        )
        self.remote = RemoteTypingTracker(local_username, stale_after=stale_after)
        self._sweep_task: asyncio.Task | None = None

    @property
    def typing_usernames(self) -> frozenset[str]:
        return self.remote.typing_usernames

    @property
    def is_locally_typing(self) -> bool:
        return self.publisher.is_active

    def on_change(self, listener: TypingListener) -> None:
        self.remote.on_change(listener)

    def start(self) -> None:
        if self._sweep_task:
            return
        self._sweep_task = asyncio.create_task(self._sweep_worker())

    def seed(self) -> None:
        self.remote.seed()

    def notify_local_activity(self) -> None:
        self.publisher.notify_local_activity()

    def apply_event(
        self,
        username: str,
        is_typing: bool,
        updated_at: datetime,
        deleted: bool = False,
    ) -> bool:
        return self.remote.apply_event(username, is_typing, updated_at, deleted)

    async def close(self) -> bool:
        """sweep 중단 + 로컬 발행 정리. 로컬 사용자가 입력 중이었는지 반환"""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
        self._sweep_task = None
        return await self.publisher.close()

    async def _sweep_worker(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval)
                self.remote.sweep()
        except asyncio.CancelledError:
            logger.debug("Typing sweep worker cancelled")
            raise
