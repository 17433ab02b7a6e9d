class RoomSyncError(Exception):
    """방 동기화 관련 기본 에러"""

    code: str = "room_sync_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(RoomSyncError):
    """네트워크 호출 전에 걸러지는 입력 오류 (메시지 내용 등)"""

    code = "invalid_message"


class InvalidInputError(ValidationError):
    """join 인자(username, room_id) 형식 오류"""

    code = "invalid_input"


class NotFoundError(RoomSyncError):
    code = "room_not_found"

    def __init__(self, message: str = "Room not found"):
        super().__init__(message)


class ConflictError(RoomSyncError):
    code = "username_taken"

    def __init__(self, message: str = "Username already taken in this room"):
        super().__init__(message)


class NetworkError(RoomSyncError):
    """백킹 스토어 호출 실패 또는 구독 끊김"""

    code = "network_error"


class SessionStateError(RoomSyncError):
    """현재 세션 상태에서 허용되지 않는 호출"""

    code = "invalid_session_state"


class ConnectionLimitExceeded(Exception):
    """커넥션 리미트가 넘었을 때 발생하는 에러"""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class MessageHandleError(Exception):
    """클라이언트 프레임 처리 중 발생하는 에러"""

    def __init__(
        self,
        message: str,
        error_code: str,
        should_disconnect: bool = False,
        retry_after: float | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.should_disconnect = should_disconnect
        self.retry_after = retry_after
        super().__init__(message)
