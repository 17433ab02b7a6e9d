import logging

from fastapi import APIRouter, Depends, Path, Query
from orjson import orjson
from starlette.websockets import WebSocket, WebSocketDisconnect

from room_sync.application.chat_service import ChatService
from room_sync.application.exceptions import (
    ConnectionLimitExceeded,
    MessageHandleError,
    RoomSyncError,
)
from room_sync.common.close_code import CloseCode

logger = logging.getLogger(__name__)

router = APIRouter()


def get_chat_service(websocket: WebSocket) -> ChatService:
    return websocket.app.state.chat_service


async def receive_frame(websocket: WebSocket) -> bytes:
    """텍스트/바이너리 프레임 모두 bytes로"""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", CloseCode.NORMAL_CLOSURE))

    if message.get("bytes") is not None:
        return message["bytes"]
    return (message.get("text") or "").encode("utf-8")


@router.websocket("/ws/rooms/{room_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    room_id: str = Path(..., min_length=1),
    username: str = Query(..., min_length=1),
    chat_service: ChatService = Depends(get_chat_service),
):
    if websocket.app.state.is_draining:
        await websocket.close(code=CloseCode.SERVICE_RESTART)
        return

    max_message_size = websocket.app.state.settings.MAX_MESSAGE_SIZE
    log_extra = {"room_id": room_id, "username": username}

    conn = None
    close_code = CloseCode.NORMAL_CLOSURE

    try:
        try:
            conn = await chat_service.connect(room_id, username, websocket)
        except ConnectionLimitExceeded as e:
            await websocket.close(code=e.code, reason=e.message)
            return
        except RoomSyncError:
            # 에러 응답과 close는 connect에서 처리됨
            return

        while True:
            data = await receive_frame(websocket)

            # Rate Limit
            if conn.is_rate_limited():
                await chat_service.send_error_response(
                    conn, "rate_limited", "Too many messages", retry_after=1.0
                )
                continue

            # 프레임 크기 제한
            if len(data) > max_message_size:
                await chat_service.send_error_response(
                    conn, "message_too_large", "Message too large"
                )
                continue

            # JSON 파싱
            try:
                message_data = orjson.loads(data)
            except orjson.JSONDecodeError:
                logger.warning(f"Invalid JSON from {username}", extra=log_extra)
                await chat_service.send_error_response(
                    conn, "invalid_json", "Invalid JSON"
                )
                continue

            if not isinstance(message_data, dict):
                await chat_service.send_error_response(
                    conn, "invalid_frame", "Frame must be a JSON object"
                )
                continue

            try:
                await chat_service.handle_message(conn, message_data)

            except MessageHandleError as e:
                await chat_service.send_error_response(
                    conn, e.error_code, e.message, retry_after=e.retry_after
                )
                if e.should_disconnect:
                    close_code = CloseCode.POLICY_VIOLATION
                    break

                continue

            except Exception as e:
                logger.error(
                    f"Message handling failed: {e}", extra=log_extra, exc_info=True
                )
                await chat_service.send_error_response(
                    conn, "internal_error", "Internal error"
                )
                close_code = CloseCode.INTERNAL_ERROR
                break

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {username}", extra=log_extra)
        close_code = CloseCode.NORMAL_CLOSURE

    except Exception as e:
        logger.error(f"WebSocket layer error: {e}", exc_info=True)
        close_code = CloseCode.INTERNAL_ERROR

    finally:
        if conn:
            await chat_service.disconnect(conn, close_code=close_code)
            logger.info(
                f"Connection cleaned up: {username}",
                extra={
                    **log_extra,
                    "close_code": close_code,
                    "close_reason": CloseCode.get_reason(close_code),
                    "should_reconnect": CloseCode.should_reconnect(close_code),
                },
            )
