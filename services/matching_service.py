"""
配對服務：貪婪分組演算法

純計算邏輯，不讀寫資料庫，不做狀態轉換（由 RoundManager 負責）

把候選人視為完全加權圖（邊權 = ScoreMatrix 的分數），
每次從剩下的圖裡抽出一個大小為 group_size 的高分團：
1. 種子：分數最高的一對（同分取確認順序最早的）
2. 擴張：逐一加入與現有成員分數總和最高的候選人（同分取最早的）
3. 移除已分組的人，重複直到剩下的人不足一組

這是刻意的 greedy heuristic，不是最佳解；
同樣的輸入（候選人順序、見面記錄）永遠得到同樣的分組。
"""
import random
from dataclasses import dataclass, field
from itertools import combinations
from typing import List, Optional, Sequence, TypeVar

from services.scoring_service import Candidate, ScoreMatrix

T = TypeVar("T")


@dataclass
class GroupingResult:
    groups: List[List[Candidate]] = field(default_factory=list)
    leftover: List[Candidate] = field(default_factory=list)


def _best_seed_pair(pool: Sequence[Candidate], scores: ScoreMatrix) -> List[Candidate]:
    best_pair = None
    best_score = None
    for a, b in combinations(pool, 2):
        score = scores.score(a.participant_id, b.participant_id)
        # 嚴格大於：同分時保留較早出現的組合
        if best_score is None or score > best_score:
            best_score = score
            best_pair = [a, b]
    return best_pair


def extract_best_group(pool: Sequence[Candidate], group_size: int, scores: ScoreMatrix) -> List[Candidate]:
    """
    從 pool 抽出一組

    參數：
        pool: 尚未分組的候選人（依確認順序排列）
        group_size: 每組人數（>= 2）
        scores: 兩兩分數

    返回：
        group_size 個候選人

    異常：
        ValueError: pool 人數不足一組
    """
    if group_size < 2:
        raise ValueError(f"group_size must be >= 2, got {group_size}")
    if len(pool) < group_size:
        raise ValueError(f"Need {group_size} candidates, got {len(pool)}")

    group = _best_seed_pair(pool, scores)

    while len(group) < group_size:
        member_ids = [m.participant_id for m in group]
        best_candidate = None
        best_fit = None
        for candidate in pool:
            if candidate.participant_id in member_ids:
                continue
            fit = scores.fit(candidate.participant_id, member_ids)
            if best_fit is None or fit > best_fit:
                best_fit = fit
                best_candidate = candidate
        group.append(best_candidate)

    return group


def form_groups(
    candidates: Sequence[Candidate],
    group_size: int,
    scores: ScoreMatrix,
    max_groups: Optional[int] = None,
) -> GroupingResult:
    """
    把候選人分組

    結果：
        - floor(n / group_size) 組，每組剛好 group_size 人
          （設定 max_groups 時最多 max_groups 組）
        - 其餘的人放在 leftover，保持原本順序

    範例：
        7 人、group_size=2 -> 3 組 + 1 人 leftover
    """
    result = GroupingResult()
    pool = list(candidates)

    while len(pool) >= group_size:
        if max_groups is not None and len(result.groups) >= max_groups:
            break

        group = extract_best_group(pool, group_size, scores)
        result.groups.append(group)

        chosen = {m.participant_id for m in group}
        pool = [c for c in pool if c.participant_id not in chosen]

    result.leftover = pool
    return result


def choose_meeting_point(meeting_points: Sequence[T], rng: Optional[random.Random] = None) -> Optional[T]:
    """
    隨機選一個集合點（均勻分布）

    不同組可以分到同一個集合點（場地的集合點數量可能少於組數）
    回合沒有設定集合點時返回 None
    """
    if not meeting_points:
        return None
    return (rng or random).choice(list(meeting_points))
