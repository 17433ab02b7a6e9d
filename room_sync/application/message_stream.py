from typing import Callable

from room_sync.domain.models import Message

MessagesListener = Callable[[tuple[Message, ...]], None]


class MessageStream:
    """
    방 메시지 목록 (id 기준 중복 제거)

    스냅샷은 (created_at, id) 순으로 정렬해서 넣고, 이후 들어오는 insert는
    도착 순서대로 끝에 붙인다. 이미 보여준 메시지의 위치는 바꾸지 않는다.
    """

    def __init__(self):
        self._messages: list[Message] = []
        self._ids: set[str] = set()
        self._listeners: list[MessagesListener] = []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def on_change(self, listener: MessagesListener) -> None:
        self._listeners.append(listener)

    def seed(self, initial_messages: list[Message]) -> None:
        self._messages = []
        self._ids = set()
        for message in sorted(initial_messages, key=lambda m: m.sort_key):
            if message.id in self._ids:
                continue
            self._ids.add(message.id)
            self._messages.append(message)
        self._emit()

    def apply_insert(self, message: Message) -> bool:
        """새 메시지면 추가하고 True, 중복이면 무시하고 False"""
        if message.id in self._ids:
            return False

        self._ids.add(message.id)
        self._messages.append(message)
        self._emit()
        return True

    def _emit(self) -> None:
        view = self.messages
        for listener in self._listeners:
            listener(view)
