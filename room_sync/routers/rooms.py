import logging

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel
from starlette.requests import Request

from room_sync.application.exceptions import (
    NetworkError,
    NotFoundError,
    ValidationError,
)
from room_sync.application.room_service import RoomService
from room_sync.domain.models import Room

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateRoomBody(BaseModel):
    name: str


async def get_room_service(request: Request) -> RoomService:
    return request.app.state.room_service


@router.post("/rooms", response_model=Room, status_code=201)
async def create_room(
    body: CreateRoomBody,
    room_service: RoomService = Depends(get_room_service),
):
    try:
        return await room_service.create_room(body.name)

    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)

    except NetworkError as e:
        logger.error(f"Failed to create room: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Failed to create room")


@router.get("/rooms/{room_id}", response_model=Room)
async def get_room(
    room_service: RoomService = Depends(get_room_service),
    room_id: str = Path(..., min_length=1),
):
    try:
        return await room_service.get_room(room_id)

    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    except NetworkError as e:
        logger.error(f"Failed to fetch room: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Failed to fetch room")
