"""
Meeting history service.

Counts, for every unordered pair of participants in a session, how many
past matches both of them were members of. The counts are only used as a
scoring signal; they grow append-only as matches are created.
"""
from collections import Counter
from itertools import combinations
from typing import Dict, FrozenSet, Iterable, List

from sqlalchemy.orm import Session

from models import MatchMember


class MeetingHistory:
    """Read-only view over pair meeting counts."""

    def __init__(self, counts: Dict[FrozenSet[str], int] = None):
        self._counts = Counter(counts or {})

    def count(self, participant_a: str, participant_b: str) -> int:
        if participant_a == participant_b:
            return 0
        return self._counts.get(frozenset((participant_a, participant_b)), 0)

    def have_met(self, participant_a: str, participant_b: str) -> bool:
        return self.count(participant_a, participant_b) > 0

    def record_group(self, participant_ids: Iterable[str]) -> None:
        for a, b in combinations(sorted(set(participant_ids)), 2):
            self._counts[frozenset((a, b))] += 1

    def __len__(self) -> int:
        return len(self._counts)

    @classmethod
    def from_groups(cls, groups: Iterable[Iterable[str]]) -> "MeetingHistory":
        history = cls()
        for group in groups:
            history.record_group(group)
        return history


def get_match_groups(session_id: str, db: Session) -> List[List[str]]:
    """
    Return the member list of every match in the session, one list per match.
    """
    rows = (
        db.query(MatchMember.match_id, MatchMember.participant_id)
        .filter(MatchMember.session_id == session_id)
        .order_by(MatchMember.match_id, MatchMember.position)
        .all()
    )

    groups: Dict[str, List[str]] = {}
    for match_id, participant_id in rows:
        groups.setdefault(match_id, []).append(participant_id)
    return list(groups.values())


def build_meeting_history(session_id: str, db: Session) -> MeetingHistory:
    return MeetingHistory.from_groups(get_match_groups(session_id, db))
