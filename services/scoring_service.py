"""
計分服務：配對相容度分數

純計算邏輯，不涉及狀態轉換

score(a, b) = -meeting_count(a, b) × 30 + team_bonus(a, b) + topic_bonus(a, b)

┌──────────────┬──────────────────────────────────────────────┬──────┐
│ 項目         │ 條件                                         │ 分數 │
├──────────────┼──────────────────────────────────────────────┼──────┤
│ 見面記錄     │ 之前每同組一次                               │ -30  │
│ 團隊         │ across-teams：不同團隊 / within-teams：同團隊│ +20  │
│ 主題         │ 至少有一個共同主題                           │ +10  │
└──────────────┴──────────────────────────────────────────────┴──────┘

沒見過面的組合分數最高（最不負）。
"""
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, FrozenSet, List, Optional, Sequence

from models import MatchingMode
from services.history_service import MeetingHistory

MEETING_PENALTY = 30
TEAM_BONUS = 20
TOPIC_BONUS = 10


@dataclass(frozen=True)
class Candidate:
    """配對候選人（已確認出席的 Registration 摘要）"""
    participant_id: str
    team: Optional[str] = None
    topics: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ScoringConfig:
    matching_mode: MatchingMode = MatchingMode.ACROSS_TEAMS
    teams_enabled: bool = False
    topics_enabled: bool = False


def team_bonus(a: Candidate, b: Candidate, config: ScoringConfig) -> int:
    """
    團隊加分

    - 團隊功能關閉，或任一方沒有團隊：0
    - across-teams：不同團隊 +20
    - within-teams：同團隊 +20
    """
    if not config.teams_enabled or not a.team or not b.team:
        return 0
    if config.matching_mode == MatchingMode.ACROSS_TEAMS and a.team != b.team:
        return TEAM_BONUS
    if config.matching_mode == MatchingMode.WITHIN_TEAMS and a.team == b.team:
        return TEAM_BONUS
    return 0


def topic_bonus(a: Candidate, b: Candidate, config: ScoringConfig) -> int:
    """至少一個共同主題 +10（最多 10 分，不隨共同主題數增加）"""
    if not config.topics_enabled:
        return 0
    return TOPIC_BONUS if a.topics & b.topics else 0


def pair_score(a: Candidate, b: Candidate, history: MeetingHistory, config: ScoringConfig) -> int:
    """
    計算兩個候選人的相容度分數

    範例：
        從沒見過、不同團隊（across-teams）、有共同主題 -> 0 + 20 + 10 = 30
        見過一次、同團隊（across-teams）、沒有共同主題 -> -30 + 0 + 0 = -30
    """
    meetings = history.count(a.participant_id, b.participant_id)
    return -meetings * MEETING_PENALTY + team_bonus(a, b, config) + topic_bonus(a, b, config)


class ScoreMatrix:
    """所有候選人兩兩之間的分數（完全加權圖）"""

    def __init__(self, scores: Dict[FrozenSet[str], int]):
        self._scores = scores

    def score(self, participant_a: str, participant_b: str) -> int:
        return self._scores.get(frozenset((participant_a, participant_b)), 0)

    def group_score(self, participant_ids: Sequence[str]) -> int:
        return sum(self.score(a, b) for a, b in combinations(participant_ids, 2))

    def fit(self, candidate_id: str, group: Sequence[str]) -> int:
        """candidate 加入 group 後增加的分數"""
        return sum(self.score(candidate_id, member) for member in group)


def build_score_matrix(
    candidates: List[Candidate],
    history: MeetingHistory,
    config: ScoringConfig,
) -> ScoreMatrix:
    scores = {
        frozenset((a.participant_id, b.participant_id)): pair_score(a, b, history, config)
        for a, b in combinations(candidates, 2)
    }
    return ScoreMatrix(scores)
