from models import MatchingMode
from services.history_service import MeetingHistory
from services.scoring_service import (
    Candidate,
    ScoringConfig,
    build_score_matrix,
    pair_score,
    team_bonus,
    topic_bonus,
)

ACROSS = ScoringConfig(MatchingMode.ACROSS_TEAMS, teams_enabled=True, topics_enabled=True)
WITHIN = ScoringConfig(MatchingMode.WITHIN_TEAMS, teams_enabled=True, topics_enabled=True)


def test_team_bonus_depends_on_mode():
    red = Candidate("a", team="red")
    blue = Candidate("b", team="blue")
    red2 = Candidate("c", team="red")

    assert team_bonus(red, blue, ACROSS) == 20
    assert team_bonus(red, red2, ACROSS) == 0
    assert team_bonus(red, red2, WITHIN) == 20
    assert team_bonus(red, blue, WITHIN) == 0


def test_team_bonus_needs_teams_on_both_sides():
    assert team_bonus(Candidate("a", team="red"), Candidate("b"), ACROSS) == 0
    assert team_bonus(Candidate("a", team="red"), Candidate("b", team="blue"), ScoringConfig()) == 0


def test_topic_bonus_is_flat():
    a = Candidate("a", topics=frozenset({"ai", "music", "food"}))
    b = Candidate("b", topics=frozenset({"ai", "music"}))
    c = Candidate("c", topics=frozenset({"sports"}))

    assert topic_bonus(a, b, ACROSS) == 10
    assert topic_bonus(a, c, ACROSS) == 0
    assert topic_bonus(a, b, ScoringConfig()) == 0


def test_pair_score_combines_history_and_bonuses():
    a = Candidate("a", team="red", topics=frozenset({"ai"}))
    b = Candidate("b", team="blue", topics=frozenset({"ai"}))
    history = MeetingHistory.from_groups([["a", "b"], ["b", "a"]])

    assert pair_score(a, b, MeetingHistory(), ACROSS) == 30
    assert pair_score(a, b, history, ACROSS) == -30
    assert pair_score(a, b, history, ScoringConfig()) == -60


def test_score_matrix_is_symmetric():
    candidates = [Candidate("a"), Candidate("b"), Candidate("c")]
    history = MeetingHistory.from_groups([["a", "c"]])

    scores = build_score_matrix(candidates, history, ScoringConfig())

    assert scores.score("a", "c") == scores.score("c", "a") == -30
    assert scores.score("a", "b") == 0
    assert scores.group_score(["a", "b", "c"]) == -30
    assert scores.fit("b", ["a", "c"]) == 0


def test_meeting_history_counts_pairs():
    history = MeetingHistory.from_groups([["a", "b", "c"], ["a", "b"]])

    assert history.count("a", "b") == 2
    assert history.count("b", "a") == 2
    assert history.count("a", "c") == 1
    assert history.count("a", "a") == 0
    assert not history.have_met("c", "d")
    assert len(history) == 3
