from typing import Callable

from room_sync.domain.models import Participant

ParticipantsListener = Callable[[frozenset[Participant]], None]


class PresenceTracker:
    """현재 방 참여자 집합 (participant id 기준)"""

    def __init__(self):
        self._participants: dict[str, Participant] = {}
        self._listeners: list[ParticipantsListener] = []

    @property
    def participants(self) -> frozenset[Participant]:
        return frozenset(self._participants.values())

    @property
    def usernames(self) -> frozenset[str]:
        return frozenset(p.username for p in self._participants.values())

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self._participants

    def on_change(self, listener: ParticipantsListener) -> None:
        self._listeners.append(listener)

    def seed(self, initial_participants: list[Participant]) -> None:
        self._participants = {p.id: p for p in initial_participants}
        self._emit()

    def apply_insert(self, participant: Participant) -> bool:
        if participant.id in self._participants:
            return False

        self._participants[participant.id] = participant
        self._emit()
        return True

    def apply_delete(self, participant_id: str) -> bool:
        # 중복/순서가 뒤바뀐 delete는 무시
        if self._participants.pop(participant_id, None) is None:
            return False

        self._emit()
        return True

    def _emit(self) -> None:
        view = self.participants
        for listener in self._listeners:
            listener(view)
