from enum import IntEnum

from room_sync.application.exceptions import (
    ConflictError,
    InvalidInputError,
    NetworkError,
    NotFoundError,
    RoomSyncError,
)


class CloseCode(IntEnum):
    """
    WebSocket Close Codes

    1000-1015: RFC 6455 (https://tools.ietf.org/html/rfc6455#section-7.4.1)
    4000-4999: 애플리케이션 정의 (방 입장 실패 사유)
    """

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    ABNORMAL_CLOSURE = 1006  # (내부용)
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011
    SERVICE_RESTART = 1012
    TRY_AGAIN_LATER = 1013

    INVALID_INPUT = 4400
    ROOM_NOT_FOUND = 4404
    USERNAME_TAKEN = 4409

    @classmethod
    def get_reason(cls, code: int) -> str:
        reasons = {
            cls.NORMAL_CLOSURE: "Normal closure",
            cls.GOING_AWAY: "Server is shutting down",
            cls.PROTOCOL_ERROR: "Protocol error",
            cls.POLICY_VIOLATION: "Policy violation",
            cls.INTERNAL_ERROR: "Internal server error",
            cls.SERVICE_RESTART: "Service restarting",
            cls.TRY_AGAIN_LATER: "Try again later",
            cls.INVALID_INPUT: "Invalid username or room id",
            cls.ROOM_NOT_FOUND: "Room not found",
            cls.USERNAME_TAKEN: "Username already taken in this room",
        }
        return reasons.get(code, f"Unknown code: {code}")

    @classmethod
    def should_reconnect(cls, code: int) -> bool:
        """클라이언트가 다시 join을 시도해야 하는지 판단"""
        reconnectable_codes = {
            cls.GOING_AWAY,
            cls.SERVICE_RESTART,
            cls.TRY_AGAIN_LATER,
            cls.INTERNAL_ERROR,
            cls.ABNORMAL_CLOSURE,
        }
        return code in reconnectable_codes

    @classmethod
    def for_error(cls, error: RoomSyncError) -> "CloseCode":
        """join 실패 에러 -> close code"""
        if isinstance(error, InvalidInputError):
            return cls.INVALID_INPUT
        if isinstance(error, NotFoundError):
            return cls.ROOM_NOT_FOUND
        if isinstance(error, ConflictError):
            return cls.USERNAME_TAKEN
        if isinstance(error, NetworkError):
            return cls.TRY_AGAIN_LATER
        return cls.POLICY_VIOLATION
