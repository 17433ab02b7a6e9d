from datetime import datetime, UTC
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_MAX_LENGTH = 1000
USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 20
ROOM_NAME_MIN_LENGTH = 3
ROOM_NAME_MAX_LENGTH = 50


def utcnow() -> datetime:
    return datetime.now(UTC)


class Room(BaseModel):
    """채팅방"""

    id: str
    name: str
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class Message(BaseModel):
    """채팅 메시지 (생성 후 변경되지 않음)"""

    id: str
    room_id: str
    author_username: str
    content: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)
    created_at: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return self.created_at, self.id


class Participant(BaseModel):
    """방 참여자"""

    id: str
    room_id: str
    username: str
    joined_at: datetime

    model_config = ConfigDict(frozen=True)


class TypingState(BaseModel):
    """(room_id, username) 당 하나만 존재하는 입력 중 상태"""

    room_id: str
    username: str
    is_typing: bool
    updated_at: datetime

    model_config = ConfigDict(frozen=True)


class RoomView(BaseModel):
    """세션이 호출자에게 다시 발행하는 방 전체 상태"""

    room: Room
    messages: tuple[Message, ...] = ()
    participants: tuple[Participant, ...] = ()
    typing_usernames: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


def parse_room_id(v: str) -> str:
    """방 id는 UUID 형식 (정규화해서 반환)"""
    try:
        return str(UUID(v.strip()))
    except ValueError as e:
        raise ValueError("Invalid room id format") from e


def _strip_username(v: str) -> str:
    v = v.strip()
    if not USERNAME_MIN_LENGTH <= len(v) <= USERNAME_MAX_LENGTH:
        raise ValueError(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    return v


class JoinRequest(BaseModel):
    """방 입장 요청 검증"""

    room_id: str
    username: str

    @field_validator("room_id")
    @classmethod
    def validate_room_id(cls, v: str) -> str:
        return parse_room_id(v)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return _strip_username(v)


class MessageDraft(BaseModel):
    """전송 전 메시지 내용 검증"""

    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        if len(v) > MESSAGE_MAX_LENGTH:
            raise ValueError(f"Message exceeds {MESSAGE_MAX_LENGTH} characters")
        return v


class CreateRoomRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not ROOM_NAME_MIN_LENGTH <= len(v) <= ROOM_NAME_MAX_LENGTH:
            raise ValueError(
                f"Room name must be {ROOM_NAME_MIN_LENGTH}-{ROOM_NAME_MAX_LENGTH} characters"
            )
        return v
