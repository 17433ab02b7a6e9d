import logging
from typing import Callable

from pydantic import ValidationError as PydanticValidationError

from room_sync.application.backing_store import BackingStore, ErrorHandler, Subscription
from room_sync.domain.events import CHANGE_MODELS, ChangeEvent, Channel

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], None]


class ChangeStreamClient:
    """백킹 스토어 구독을 채널별 타입 이벤트로 변환"""

    def __init__(
        self,
        store: BackingStore,
        on_invalid_payload: Callable[[], None] | None = None,
    ):
        self.store = store
        self.on_invalid_payload = on_invalid_payload

    async def open(
        self,
        channel: Channel,
        room_id: str,
        handler: EventHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        model = CHANGE_MODELS[channel]

        def dispatch(payload: dict) -> None:
            try:
                event = model.model_validate(payload)
            except PydanticValidationError as e:
                logger.warning(
                    f"Dropping malformed {channel} event: {e}",
                    extra={"room_id": room_id, "channel": str(channel)},
                )
                if self.on_invalid_payload:
                    self.on_invalid_payload()
                return

            handler(event)

        subscription = await self.store.subscribe(
            channel, room_id, dispatch, on_error=on_error
        )
        logger.debug(f"Subscribed to {channel} of room {room_id}")
        return subscription
