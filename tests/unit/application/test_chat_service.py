import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from room_sync.application.chat_service import ChatService
from room_sync.application.connection_manager import ConnectionManager
from room_sync.application.exceptions import (
    MessageHandleError,
    NetworkError,
    NotFoundError,
    SessionStateError,
    ValidationError,
)
from room_sync.common.close_code import CloseCode


@pytest.fixture
def mock_session():
    session = Mock()
    session.join = AsyncMock(return_value=Mock(name="view"))
    session.send_message = AsyncMock(return_value=Mock(id="m1"))
    session.leave = AsyncMock()
    return session


@pytest.fixture
def mock_conn(mock_session):
    conn = Mock()
    conn.room_id = "room1"
    conn.username = "ana"
    conn.session = mock_session
    conn.send_json = AsyncMock(return_value=True)
    conn.close_websocket = AsyncMock()
    return conn


@pytest.fixture
def mock_conn_manager(mock_conn):
    mock = AsyncMock()
    mock.connect = AsyncMock(return_value=mock_conn)
    mock.disconnect = AsyncMock()
    return mock


@pytest.fixture
def chat_service(mock_otel_manager, mock_conn_manager, mock_session):
    """ChatService 인스턴스 (세션은 mock으로 대체)"""
    service = ChatService(
        otel_manager=mock_otel_manager,
        conn_manager=mock_conn_manager,
        store=AsyncMock(),
    )
    service.create_session = Mock(return_value=mock_session)
    return service


@pytest.mark.asyncio
class TestConnect:
    async def test_connect_success(
        self, chat_service, mock_conn_manager, mock_conn, mock_session
    ):
        """연결 후 방 입장, 첫 view 전송 시작"""
        websocket = AsyncMock()

        result = await chat_service.connect("room1", "ana", websocket)

        assert result is mock_conn
        mock_conn_manager.connect.assert_awaited_once_with(
            "room1", "ana", websocket, mock_session
        )
        mock_session.join.assert_awaited_once_with("room1", "ana")
        mock_session.add_listener.assert_called_once_with(mock_conn.push_view)
        mock_conn.push_view.assert_called_once_with(mock_session.join.return_value)
        mock_conn.start_view_sender.assert_called_once()

    async def test_join_failure_sends_error_and_closes(
        self, chat_service, mock_conn_manager, mock_conn, mock_session
    ):
        mock_session.join.side_effect = NotFoundError()

        with pytest.raises(NotFoundError):
            await chat_service.connect("room1", "ana", AsyncMock())

        error = mock_conn.send_json.call_args.args[0]
        assert error["type"] == "error"
        assert error["code"] == "room_not_found"
        mock_conn_manager.disconnect.assert_awaited_once_with(
            mock_conn, close_code=CloseCode.ROOM_NOT_FOUND
        )
        mock_conn.start_view_sender.assert_not_called()

    async def test_unexpected_join_error_releases_connection(
        self, chat_service, mock_conn_manager, mock_conn, mock_session
    ):
        mock_session.join.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await chat_service.connect("room1", "ana", AsyncMock())

        mock_conn_manager.disconnect.assert_awaited_once_with(
            mock_conn, close_code=CloseCode.INTERNAL_ERROR
        )
        mock_conn.start_view_sender.assert_not_called()

    async def test_failed_join_does_not_leak_connection_slot(
        self, mock_otel_manager, memory_store
    ):
        """스토어가 예상 밖의 에러를 내도 연결 수와 websocket이 정리된다"""
        room = await memory_store.create_room("Lounge")
        memory_store.list_messages = AsyncMock(side_effect=RuntimeError("corrupt"))
        conn_manager = ConnectionManager(otel_manager=mock_otel_manager)
        service = ChatService(
            otel_manager=mock_otel_manager,
            conn_manager=conn_manager,
            store=memory_store,
        )
        websocket = AsyncMock()

        with pytest.raises(RuntimeError):
            await service.connect(room.id, "ana", websocket)

        assert conn_manager.total_connections == 0
        websocket.close.assert_awaited_once()
        assert websocket.close.call_args.kwargs["code"] == CloseCode.INTERNAL_ERROR
        assert await memory_store.list_participants(room.id) == []

    async def test_stream_loss_closes_connection(
        self, chat_service, mock_conn, mock_session
    ):
        """구독이 끊기면 에러 전송 후 TRY_AGAIN_LATER로 종료"""
        await chat_service.connect("room1", "ana", AsyncMock())
        on_error = mock_session.add_error_listener.call_args.args[0]

        on_error(NetworkError("Subscription dropped"))
        await asyncio.sleep(0.01)

        error = mock_conn.send_json.call_args.args[0]
        assert error["code"] == "network_error"
        assert error["retry_after"] == 1.0
        mock_conn.close_websocket.assert_awaited_once_with(
            code=CloseCode.TRY_AGAIN_LATER
        )

    async def test_disconnect(
        self, chat_service, mock_conn_manager, mock_conn, mock_session
    ):
        """연결 종료 후 세션 leave"""
        await chat_service.disconnect(mock_conn)

        mock_conn_manager.disconnect.assert_awaited_once_with(
            mock_conn, close_code=CloseCode.NORMAL_CLOSURE
        )
        mock_session.leave.assert_awaited_once()


@pytest.mark.asyncio
class TestHandleMessage:
    async def test_typing_frame(self, chat_service, mock_conn, mock_session):
        await chat_service.handle_message(mock_conn, {"type": "typing"})

        mock_session.set_typing.assert_called_once()

    async def test_message_is_acked(self, chat_service, mock_conn, mock_session):
        await chat_service.handle_message(
            mock_conn, {"type": "message", "content": "hello"}
        )

        mock_session.send_message.assert_awaited_once_with("hello")
        mock_conn.send_json.assert_awaited_once_with(
            {"type": "ack", "message_id": "m1"}
        )

    @pytest.mark.parametrize(
        "frame, code",
        [
            ({"type": "shout"}, "invalid_frame"),
            ({"type": "message"}, "invalid_message"),
            ({"type": "message", "content": 42}, "invalid_message"),
        ],
    )
    async def test_malformed_frame(self, chat_service, mock_conn, frame, code):
        with pytest.raises(MessageHandleError) as exc_info:
            await chat_service.handle_message(mock_conn, frame)

        assert exc_info.value.error_code == code
        assert exc_info.value.should_disconnect is False

    async def test_validation_error(self, chat_service, mock_conn, mock_session):
        mock_session.send_message.side_effect = ValidationError("Message cannot be empty")

        with pytest.raises(MessageHandleError) as exc_info:
            await chat_service.handle_message(
                mock_conn, {"type": "message", "content": " "}
            )

        assert exc_info.value.error_code == "invalid_message"
        assert exc_info.value.message == "Message cannot be empty"
        mock_conn.send_json.assert_not_awaited()

    async def test_network_error_is_retryable(
        self, chat_service, mock_conn, mock_session
    ):
        mock_session.send_message.side_effect = NetworkError("insert_message failed")

        with pytest.raises(MessageHandleError) as exc_info:
            await chat_service.handle_message(
                mock_conn, {"type": "message", "content": "hello"}
            )

        assert exc_info.value.error_code == "network_error"
        assert exc_info.value.retry_after == 0.5
        assert exc_info.value.should_disconnect is False

    async def test_closed_session_disconnects(
        self, chat_service, mock_conn, mock_session
    ):
        mock_session.send_message.side_effect = SessionStateError("Session is closed")

        with pytest.raises(MessageHandleError) as exc_info:
            await chat_service.handle_message(
                mock_conn, {"type": "message", "content": "hello"}
            )

        assert exc_info.value.should_disconnect is True
