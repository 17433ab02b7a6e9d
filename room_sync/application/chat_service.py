import asyncio
import logging

from pydantic import BaseModel
from starlette.websockets import WebSocket

from room_sync.application.backing_store import BackingStore
from room_sync.application.connection_manager import Connection, ConnectionManager
from room_sync.application.exceptions import (
    MessageHandleError,
    NetworkError,
    RoomSyncError,
    SessionStateError,
    ValidationError,
)
from room_sync.application.room_session import RoomSession
from room_sync.common.close_code import CloseCode
from room_sync.infrastructure.otel import OTELManager

logger = logging.getLogger(__name__)


class ChatService:
    """WebSocket 연결과 RoomSession 사이의 서비스 레이어"""

    def __init__(
        self,
        otel_manager: OTELManager,
        conn_manager: ConnectionManager,
        store: BackingStore,
        typing_inactivity_timeout: float = 2.0,
        typing_stale_after: float = 10.0,
        typing_sweep_interval: float = 1.0,
    ):
        self.otel_manager = otel_manager
        self.conn_manager = conn_manager
        self.store = store
        self.typing_inactivity_timeout = typing_inactivity_timeout
        self.typing_stale_after = typing_stale_after
        self.typing_sweep_interval = typing_sweep_interval

        self._background_tasks: set[asyncio.Task] = set()

    def create_session(self) -> RoomSession:
        return RoomSession(
            otel_manager=self.otel_manager,
            store=self.store,
            typing_inactivity_timeout=self.typing_inactivity_timeout,
            typing_stale_after=self.typing_stale_after,
            typing_sweep_interval=self.typing_sweep_interval,
        )

    async def connect(
        self, room_id: str, username: str, websocket: WebSocket
    ) -> Connection:
        """
        연결 추가 + 방 입장

        Raises:
            ConnectionLimitExceeded: 서버 연결 수 초과 (accept 전)
            RoomSyncError: 입장 실패. 에러 응답 후 연결은 이미 닫힌 상태
            그 외 예외는 INTERNAL_ERROR로 연결을 닫은 뒤 그대로 전파
        """
        session = self.create_session()
        conn = await self.conn_manager.connect(room_id, username, websocket, session)

        try:
            view = await session.join(room_id, username)
        except RoomSyncError as e:
            logger.warning(
                f"Join failed: {e.message}",
                extra={"room_id": room_id, "username": username, "code": e.code},
            )
            await self.send_error_response(conn, e.code, e.message)
            await self.conn_manager.disconnect(conn, close_code=CloseCode.for_error(e))
            raise

        except BaseException as e:
            # CancelledError 포함. 등록된 연결을 남기지 않는다
            logger.error(
                f"Join crashed: {e!r}",
                extra={"room_id": room_id, "username": username},
                exc_info=True,
            )
            await self.conn_manager.disconnect(conn, close_code=CloseCode.INTERNAL_ERROR)
            raise

        session.add_listener(conn.push_view)
        session.add_error_listener(lambda error: self._on_stream_lost(conn, error))
        conn.push_view(view)
        conn.start_view_sender()

        return conn

    async def disconnect(self, conn: Connection, close_code: int | None = None):
        """연결 제거 + 세션 종료"""
        if close_code is None:
            close_code = CloseCode.NORMAL_CLOSURE

        await self.conn_manager.disconnect(conn, close_code=close_code)
        await conn.session.leave()

    async def handle_message(self, conn: Connection, message_data: dict):
        """
        클라이언트 프레임 처리

        {"type": "message", "content": "..."} / {"type": "typing"}

        Raises:
            MessageHandleError: 검증 실패, 전송 실패, 세션 종료
        """
        frame_type = message_data.get("type")

        if frame_type == "typing":
            conn.session.set_typing()
            return

        if frame_type != "message":
            raise MessageHandleError(
                message="Unknown frame type", error_code="invalid_frame"
            )

        content = message_data.get("content")
        if not isinstance(content, str):
            raise MessageHandleError(
                message="Invalid message", error_code="invalid_message"
            )

        log_extra = {"room_id": conn.room_id, "username": conn.username}
        try:
            message = await conn.session.send_message(content)

        except ValidationError as e:
            raise MessageHandleError(message=e.message, error_code=e.code) from e

        except NetworkError as e:
            logger.error(f"Message write failed: {e}", extra=log_extra)
            raise MessageHandleError(
                message="Failed to send message",
                error_code=e.code,
                retry_after=0.5,
            ) from e

        except SessionStateError as e:
            raise MessageHandleError(
                message=e.message, error_code=e.code, should_disconnect=True
            ) from e

        await conn.send_json({"type": "ack", "message_id": message.id})

    def _on_stream_lost(self, conn: Connection, error: NetworkError) -> None:
        task = asyncio.create_task(self._close_lost_connection(conn, error))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _close_lost_connection(self, conn: Connection, error: NetworkError):
        # 재연결(다시 join)은 클라이언트 몫
        await self.send_error_response(conn, error.code, error.message, retry_after=1.0)
        await conn.close_websocket(code=CloseCode.TRY_AGAIN_LATER)

    async def send_error_response(
        self,
        conn: Connection,
        code: str,
        message: str,
        retry_after: float | None = None,
    ):
        """에러 응답"""
        try:
            error = ErrorResponse(code=code, message=message, retry_after=retry_after)
            await conn.send_json(error.model_dump())
        except Exception as e:
            logger.error(f"Failed to send error: {e}", exc_info=True)


class ErrorResponse(BaseModel):
    type: str = "error"
    code: str
    message: str
    retry_after: float | None = None
