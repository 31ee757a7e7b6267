"""
Tests for the BM / MR / GP mode rules.
"""
from types import SimpleNamespace

import pytest

from league.event_types import (
    BM_CONFIG,
    GP_CONFIG,
    MR_CONFIG,
    aggregate_player_stats,
    bm_match_result,
    driver_points,
    first_to_wins_result,
    generate_round_robin,
    get_event_type,
    gp_match_result,
    mr_match_result,
    parse_gp_put,
    parse_rounds_put,
    points_finals_result,
    score_gp_races,
    validate_battle_scores,
    validate_finals_scores,
    validate_gp_finals_points,
    validate_gp_points,
    validate_race_scores,
)


class TestMatchResults:

    def test_battle_needs_four_rounds(self):
        assert bm_match_result(3, 1)['winner'] == 1
        assert bm_match_result(1, 3)['winner'] == 2
        assert bm_match_result(2, 2)['result1'] == 'tie'
        # Five rounds is not a valid battle: scored as a tie
        assert bm_match_result(4, 1)['winner'] is None

    def test_match_race(self):
        assert mr_match_result(3, 1) == {'winner': 1, 'result1': 'win', 'result2': 'loss'}
        assert mr_match_result(1, 3)['winner'] == 2
        assert mr_match_result(2, 1)['winner'] is None
        assert mr_match_result(0, 0)['winner'] is None

    def test_grand_prix(self):
        assert gp_match_result(30, 21)['winner'] == 1
        assert gp_match_result(21, 30)['winner'] == 2
        assert gp_match_result(24, 24)['winner'] is None

    def test_finals_first_to_three(self):
        assert first_to_wins_result(3, 1) == 1
        assert first_to_wins_result(0, 3) == 2
        assert first_to_wins_result(2, 2) is None
        assert first_to_wins_result(3, 3) is None

    def test_finals_points(self):
        assert points_finals_result(30, 21) == 1
        assert points_finals_result(12, 18) == 2
        assert points_finals_result(18, 18) is None


class TestGrandPrixPoints:

    def test_driver_points(self):
        assert [driver_points(p) for p in (1, 2, 3, 4)] == [9, 6, 0, 0]

    def test_score_races(self):
        races = [
            {'course': 'MC1', 'position1': 1, 'position2': 2},
            {'course': 'DP1', 'position1': 2, 'position2': 1},
            {'course': 'GV1', 'position1': 1, 'position2': 2},
            {'course': 'BC1', 'position1': 1, 'position2': 3},
        ]
        scored, total1, total2 = score_gp_races(races)
        assert (total1, total2) == (33, 21)
        assert scored[3]['points2'] == 0
        assert scored[0]['course'] == 'MC1'


class TestParsing:

    def test_rounds_put(self):
        parsed = parse_rounds_put({'matchId': 'm1', 'score1': 3, 'score2': 1, 'rounds': ['a']})
        assert parsed == {'match_id': 'm1', 'score1': 3, 'score2': 1, 'detail': ['a']}

    def test_rounds_put_missing_fields(self):
        with pytest.raises(ValueError, match='required'):
            parse_rounds_put({'matchId': 'm1', 'score1': 3})

    def test_rounds_put_negative(self):
        with pytest.raises(ValueError):
            parse_rounds_put({'matchId': 'm1', 'score1': -1, 'score2': 1})

    def test_gp_put(self):
        races = [{'course': c, 'position1': 1, 'position2': 2} for c in ('MC1', 'DP1', 'GV1', 'BC1')]
        parsed = parse_gp_put({'matchId': 'm1', 'cup': 'Mushroom', 'races': races})
        assert parsed['score1'] == 36
        assert parsed['score2'] == 24
        assert parsed['cup'] == 'Mushroom'

    def test_gp_put_needs_four_races(self):
        with pytest.raises(ValueError):
            parse_gp_put({'matchId': 'm1', 'cup': 'Star', 'races': []})


class TestReportValidation:

    def test_battle(self):
        assert validate_battle_scores(3, 1) is None
        assert validate_battle_scores(3, 3) == 'Scores cannot be equal'
        assert 'between' in validate_battle_scores(6, 1)
        assert validate_battle_scores('3', 1) == 'Scores must be integers'

    def test_race(self):
        assert validate_race_scores(3, 1) is None
        assert validate_race_scores(3, 2) == 'A match race has 4 races'

    def test_gp(self):
        assert validate_gp_points(36, 0) is None
        assert validate_gp_points(37, 0) == 'Points must be between 0 and 36'

    def test_finals_best_of_five(self):
        assert validate_finals_scores(3, 2) is None
        assert validate_finals_scores(0, 3) is None
        assert validate_finals_scores(2, 2) == 'Match must have a winner (best of 5: first to 3)'
        assert validate_finals_scores(4, 1) == 'Scores must be between 0 and 3'
        assert validate_finals_scores(3, None) == 'Scores must be integers'

    def test_gp_finals(self):
        assert validate_gp_finals_points(27, 24) is None
        assert validate_gp_finals_points(24, 24) == 'Match must have a winner (driver points cannot be tied)'
        assert validate_gp_finals_points(40, 0) == 'Points must be between 0 and 36'

    def test_stage_validators(self):
        assert BM_CONFIG.validate_finals_report is validate_finals_scores
        assert MR_CONFIG.validate_finals_report is validate_finals_scores
        assert GP_CONFIG.validate_finals_report is validate_gp_finals_points


class TestConfig:

    def test_lookup_is_case_insensitive(self):
        assert get_event_type('BM') is BM_CONFIG
        assert get_event_type('gp') is GP_CONFIG

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            get_event_type('ta')

    def test_reported_fields(self):
        assert BM_CONFIG.reported_fields(1) == ('player1_reported_score1', 'player1_reported_score2')
        assert GP_CONFIG.reported_fields(2) == ('player2_reported_points1', 'player2_reported_points2')

    def test_setup_message(self):
        assert MR_CONFIG.setup_message == 'Match race setup complete'


class TestRoundRobin:

    def test_pairs_within_groups(self):
        players = [
            {'playerId': 'a', 'group': 'A', 'seeding': 1},
            {'playerId': 'b', 'group': 'A', 'seeding': 2},
            {'playerId': 'c', 'group': 'A', 'seeding': 3},
            {'playerId': 'd', 'group': 'B', 'seeding': 1},
            {'playerId': 'e', 'group': 'B', 'seeding': 2},
        ]
        matches = generate_round_robin(players)
        assert [m['match_number'] for m in matches] == [1, 2, 3, 4]
        assert [(m['player1_id'], m['player2_id']) for m in matches] == [
            ('a', 'b'), ('a', 'c'), ('b', 'c'), ('d', 'e'),
        ]
        assert [m['group'] for m in matches] == ['A', 'A', 'A', 'B']

    def test_seeding_order(self):
        players = [
            {'playerId': 'x', 'group': 'A', 'seeding': 2},
            {'playerId': 'y', 'group': 'A', 'seeding': 1},
        ]
        assert generate_round_robin(players)[0]['player1_id'] == 'y'


class TestAggregateStats:

    def test_rounds_stats(self):
        matches = [
            SimpleNamespace(player1_id='p1', player2_id='p2', score1=3, score2=1),
            SimpleNamespace(player1_id='p3', player2_id='p1', score1=2, score2=2),
        ]
        stats = aggregate_player_stats(BM_CONFIG, matches, 'p1')
        assert stats == {'mp': 2, 'wins': 1, 'ties': 1, 'losses': 0,
                         'win_rounds': 5, 'loss_rounds': 3, 'points': 2, 'score': 3}

    def test_points_stats(self):
        matches = [
            SimpleNamespace(player1_id='p1', player2_id='p2', points1=30, points2=12),
            SimpleNamespace(player1_id='p2', player2_id='p1', points1=24, points2=18),
        ]
        stats = aggregate_player_stats(GP_CONFIG, matches, 'p1')
        assert stats == {'mp': 2, 'wins': 1, 'ties': 0, 'losses': 1, 'points': 48, 'score': 2}
