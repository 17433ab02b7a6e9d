import pytest
from unittest.mock import AsyncMock, MagicMock, Mock

from fastapi import FastAPI
from starlette.testclient import TestClient
from starlette.websockets import WebSocketState

from room_sync.application.chat_service import ChatService
from room_sync.application.room_service import RoomService
from room_sync.infrastructure.memory import InMemoryBackingStore
from room_sync.routers.rooms import router as rooms_router
from room_sync.routers.websocket import router as websocket_router


@pytest.fixture
def mock_chat_service():
    """ChatService mock. connect는 실제처럼 accept 후 Connection(mock)을 돌려준다"""
    service = AsyncMock(spec=ChatService)

    async def connect(room_id, username, websocket):
        await websocket.accept()
        conn = Mock()
        conn.room_id = room_id
        conn.username = username
        conn.websocket = websocket
        conn.is_rate_limited = Mock(return_value=False)
        return conn

    async def disconnect(conn, close_code=None):
        # 클라이언트가 먼저 끊은 경우는 close 하지 않음
        if conn.websocket.client_state == WebSocketState.CONNECTED:
            await conn.websocket.close(code=close_code)

    service.connect = AsyncMock(side_effect=connect)
    service.disconnect = AsyncMock(side_effect=disconnect)
    service.handle_message = AsyncMock()
    service.send_error_response = AsyncMock()
    return service


@pytest.fixture
def test_app(mock_chat_service):
    """테스트용 FastAPI 앱"""
    app = FastAPI()
    app.include_router(rooms_router)
    app.include_router(websocket_router)

    # Mock settings and state
    app.state.is_draining = False
    app.state.settings = MagicMock()
    app.state.settings.MAX_MESSAGE_SIZE = 1024

    app.state.room_service = RoomService(store=InMemoryBackingStore())
    app.state.chat_service = mock_chat_service

    return app


@pytest.fixture
def client(test_app):
    """TestClient 인스턴스"""
    with TestClient(test_app) as client:
        yield client
