import asyncio
from datetime import datetime, timedelta, UTC
from unittest.mock import MagicMock, Mock
from uuid import uuid4

import pytest
import pytest_asyncio

from room_sync.domain.models import Message, Participant, TypingState
from room_sync.infrastructure.memory import InMemoryBackingStore

BASE_TIME = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)


# 공통 Mock fixtures
@pytest.fixture
def mock_otel_manager():
    """OTEL Manager mock - 모든 테스트에서 사용"""
    mock = Mock()
    mock.tracer = Mock()
    mock.tracer.start_as_current_span = MagicMock()
    mock.active_sessions_counter = Mock()
    mock.active_connections_counter = Mock()
    mock.messages_sent_counter = Mock()
    mock.typing_writes_counter = Mock()
    mock.dropped_events_counter = Mock()
    return mock


@pytest.fixture
def memory_store():
    return InMemoryBackingStore()


@pytest.fixture
def make_message():
    def factory(
        message_id: str, minute: int = 0, room_id: str = "room1", author: str = "ana"
    ) -> Message:
        return Message(
            id=message_id,
            room_id=room_id,
            author_username=author,
            content=f"content of {message_id}",
            created_at=BASE_TIME + timedelta(minutes=minute),
        )

    return factory


@pytest.fixture
def make_participant():
    def factory(
        username: str, participant_id: str | None = None, room_id: str = "room1"
    ) -> Participant:
        return Participant(
            id=participant_id or str(uuid4()),
            room_id=room_id,
            username=username,
            joined_at=BASE_TIME,
        )

    return factory


@pytest.fixture
def make_typing():
    def factory(
        username: str, is_typing: bool = True, second: int = 0, room_id: str = "room1"
    ) -> TypingState:
        return TypingState(
            room_id=room_id,
            username=username,
            is_typing=is_typing,
            updated_at=BASE_TIME + timedelta(seconds=second),
        )

    return factory


@pytest_asyncio.fixture()
async def cleanup_tasks():
    """테스트 후 남은 태스크 정리"""
    yield

    tasks = [
        t for t in asyncio.all_tasks() if not t.done() and t is not asyncio.current_task()
    ]
    for task in tasks:
        task.cancel()

    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


@pytest.fixture
def flush_events():
    """call_soon으로 예약된 전달을 모두 처리하는 코루틴 함수"""

    async def flush():
        for _ in range(5):
            await asyncio.sleep(0)

    return flush
