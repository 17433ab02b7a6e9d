import logging

from pydantic import ValidationError as PydanticValidationError

from room_sync.application.backing_store import BackingStore
from room_sync.application.exceptions import NotFoundError, ValidationError
from room_sync.domain.models import CreateRoomRequest, Room, parse_room_id

logger = logging.getLogger(__name__)


class RoomService:
    """방 생성/조회"""

    def __init__(self, store: BackingStore):
        self.store = store

    async def create_room(self, name: str) -> Room:
        try:
            request = CreateRoomRequest(name=name)
        except PydanticValidationError as e:
            raise ValidationError("Room name must be 3-50 characters") from e

        room = await self.store.create_room(request.name)
        logger.info(f"Room created: {room.id}", extra={"room_id": room.id})
        return room

    async def get_room(self, room_id: str) -> Room:
        try:
            room_id = parse_room_id(room_id)
        except ValueError as e:
            raise NotFoundError() from e

        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFoundError()
        return room
