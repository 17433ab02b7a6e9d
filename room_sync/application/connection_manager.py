import asyncio
import logging
import time
from collections import deque

from orjson import orjson
from starlette.websockets import WebSocket, WebSocketDisconnect

from room_sync.application.exceptions import ConnectionLimitExceeded
from room_sync.application.room_session import RoomSession
from room_sync.common.close_code import CloseCode
from room_sync.domain.models import RoomView
from room_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)


class Connection:
    """WebSocket 연결 하나와 그 연결이 소유하는 RoomSession"""

    def __init__(
        self,
        websocket: WebSocket,
        room_id: str,
        username: str,
        session: RoomSession,
        max_consecutive_failures: int = 3,
        send_timeout: float = 0.1,  # 100ms
        rate_limit_per_sec: int = 10,
    ):
        self.websocket: WebSocket = websocket
        self.room_id: str = room_id
        self.username: str = username
        self.session: RoomSession = session

        # 전송 설정
        self.max_consecutive_failures = max_consecutive_failures
        self.send_timeout = send_timeout

        # 상태
        self._close_lock = asyncio.Lock()
        self.consecutive_failures: int = 0
        self._is_closed: bool = False

        # 아직 보내지 못한 view는 최신 것 하나만 유지
        self._latest_view: RoomView | None = None
        self._view_ready = asyncio.Event()
        self._view_sender_task: asyncio.Task | None = None

        # Rate limit (클라이언트가 서버로 보내는 프레임 제한)
        self.rate_limit_per_sec = rate_limit_per_sec
        self._message_sent_times: deque[float] = deque(maxlen=rate_limit_per_sec + 1)

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def start_view_sender(self) -> None:
        if self._view_sender_task is None:
            self._view_sender_task = asyncio.create_task(self._view_sender())

    def push_view(self, view: RoomView) -> None:
        """세션 listener. 밀린 view는 덮어쓴다"""
        self._latest_view = view
        self._view_ready.set()

    async def _view_sender(self) -> None:
        try:
            while not self._is_closed:
                await self._view_ready.wait()
                self._view_ready.clear()

                view, self._latest_view = self._latest_view, None
                if view is None:
                    continue

                await self.send_json(
                    {"type": "view", "view": view.model_dump(mode="json")}
                )
        except asyncio.CancelledError:
            logger.debug(f"View sender for {self.username} cancelled")
            raise

    async def send_json(self, data: dict) -> bool:
        return await self.send(orjson.dumps(data))

    async def send(self, message: bytes) -> bool:
        """
        메시지를 WebSocket으로 전송
        """
        if self._is_closed:
            return False

        try:
            await asyncio.wait_for(
                self.websocket.send_bytes(message), timeout=self.send_timeout
            )

            self.consecutive_failures = 0
            return True

        except asyncio.TimeoutError:
            self.consecutive_failures += 1

            if self.consecutive_failures >= self.max_consecutive_failures:
                await self.close_websocket(
                    code=CloseCode.TRY_AGAIN_LATER,
                    reason=f"Connection too slow ({self.consecutive_failures} timeouts)",
                )

            return False

        except WebSocketDisconnect:
            logger.info(f"Client {self.username} disconnected during send")
            self._is_closed = True
            return False

        except Exception as e:
            logger.warning(
                f"Send failed for {self.username} in {self.room_id}: {e}",
                exc_info=True,
            )
            self.consecutive_failures += 1
            return False

    async def close_websocket(
        self,
        code: int = CloseCode.NORMAL_CLOSURE,
        reason: str | None = None,
    ):
        """연결 종료"""
        async with self._close_lock:
            if self._is_closed:
                return

            reason = reason or CloseCode.get_reason(code)

            try:
                await self.websocket.close(code=code, reason=reason)
            except Exception as e:
                logger.debug(
                    f"WebSocket close error: {e}",
                    extra={
                        "username": self.username,
                        "room_id": self.room_id,
                        "code": code,
                        "reason": reason,
                        "should_reconnect": CloseCode.should_reconnect(code),
                    },
                )

            self._is_closed = True

        task = self._view_sender_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def is_rate_limited(self) -> bool:
        now = time.monotonic()

        while self._message_sent_times and self._message_sent_times[0] <= now - 1.0:
            self._message_sent_times.popleft()

        if len(self._message_sent_times) >= self.rate_limit_per_sec:
            return True

        self._message_sent_times.append(now)
        return False


class ConnectionManager:
    def __init__(
        self,
        otel_manager: OTELManager,
        max_total_connections: int = 10_000,
        max_consecutive_failures: int = 3,
        send_timeout: float = 0.1,
        rate_limit_per_sec: int = 10,
    ):
        self.otel_manager = otel_manager
        self.max_total_connections = max_total_connections
        self.max_consecutive_failures = max_consecutive_failures
        self.send_timeout = send_timeout
        self.rate_limit_per_sec = rate_limit_per_sec

        # 방별 연결
        self._connections: dict[str, set[Connection]] = {}
        self._total_connections: int = 0

    @property
    def total_connections(self) -> int:
        return self._total_connections

    async def start(self):
        logger.info("ConnectionManager started")

    async def stop(self):
        """종료: 모든 연결을 닫고 세션을 정리"""
        connections = [
            conn for room in self._connections.values() for conn in room
        ]

        async def shutdown(conn: Connection):
            await conn.close_websocket(
                code=CloseCode.SERVICE_RESTART, reason="Server restarting"
            )
            await conn.session.leave()

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *(shutdown(conn) for conn in connections), return_exceptions=True
                ),
                timeout=5,
            )
        except asyncio.TimeoutError:
            logger.warning("Connection close timeout during shutdown")

        self._connections.clear()
        self._total_connections = 0
        logger.info("ConnectionManager stopped")

    def get_room_connections(self, room_id: str) -> set[Connection]:
        return self._connections.get(room_id, set()).copy()

    async def connect(
        self,
        room_id: str,
        username: str,
        websocket: WebSocket,
        session: RoomSession,
    ) -> Connection:
        """websocket accept 후 연결 등록 (방 입장은 아직)"""
        if self._total_connections >= self.max_total_connections:
            raise ConnectionLimitExceeded(
                code=CloseCode.TRY_AGAIN_LATER,
                message=f"Server full ({self._total_connections}/{self.max_total_connections})",
            )

        conn = Connection(
            websocket=websocket,
            room_id=room_id,
            username=username,
            session=session,
            max_consecutive_failures=self.max_consecutive_failures,
            send_timeout=self.send_timeout,
            rate_limit_per_sec=self.rate_limit_per_sec,
        )

        try:
            await websocket.accept()
        except Exception as e:
            logger.error(f"WebSocket accept failed: {e}")
            await conn.close_websocket(CloseCode.PROTOCOL_ERROR)
            raise

        self._connections.setdefault(room_id, set()).add(conn)
        self._total_connections += 1
        self.otel_manager.active_connections_counter.add(1)

        logger.info(
            f"User connected: {username} to room {room_id}",
            extra={
                "username": username,
                "room_id": room_id,
                "total_connections": self._total_connections,
            },
        )

        return conn

    async def disconnect(
        self,
        conn: Connection,
        close_code: int = CloseCode.NORMAL_CLOSURE,
    ) -> None:
        await conn.close_websocket(
            code=close_code,
            reason=CloseCode.get_reason(close_code),
        )

        room = self._connections.get(conn.room_id)
        if room is None or conn not in room:
            return

        room.discard(conn)
        self._total_connections -= 1
        self.otel_manager.active_connections_counter.add(-1)

        if not room:
            del self._connections[conn.room_id]

        logger.info(
            f"User disconnected: {conn.username} from room {conn.room_id}",
            extra={
                "username": conn.username,
                "room_id": conn.room_id,
                "total_connections": self._total_connections,
            },
        )
