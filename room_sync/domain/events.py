from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from room_sync.domain.models import Message, Participant, TypingState


class Channel(StrEnum):
    """방 단위 변경 스트림 채널"""

    MESSAGES = "messages"
    PARTICIPANTS = "participants"
    TYPING = "typing"


class ChangeKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MessageChange(BaseModel):
    kind: ChangeKind
    record: Message

    model_config = ConfigDict(frozen=True)


class ParticipantChange(BaseModel):
    kind: ChangeKind
    record: Participant

    model_config = ConfigDict(frozen=True)


class TypingChange(BaseModel):
    kind: ChangeKind
    record: TypingState

    model_config = ConfigDict(frozen=True)


ChangeEvent = MessageChange | ParticipantChange | TypingChange

# 채널 -> 이벤트 모델 (페이로드 모양이 아니라 채널로 디스패치)
CHANGE_MODELS: dict[Channel, type[BaseModel]] = {
    Channel.MESSAGES: MessageChange,
    Channel.PARTICIPANTS: ParticipantChange,
    Channel.TYPING: TypingChange,
}


def make_payload(kind: ChangeKind, record: BaseModel) -> dict:
    """백킹 스토어가 구독자에게 전달하는 원시 페이로드"""
    return {"kind": kind.value, "record": record.model_dump(mode="json")}
