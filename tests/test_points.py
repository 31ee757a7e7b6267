"""
Tests for league points and the overall ranking.
"""
from league.points import (
    calculate_overall_ranking,
    calculate_qualification_points,
    format_ordinal,
    get_finals_points,
    normalize_points,
    place_to_position,
)


def test_format_ordinal():
    assert [format_ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23, 101, 111)] == [
        '1st', '2nd', '3rd', '4th', '11th', '12th', '13th', '21st', '22nd', '23rd', '101st', '111th',
    ]


class TestFinalsPoints:

    def test_time_attack_table(self):
        assert get_finals_points('ta', 1) == 2000
        assert get_finals_points('ta', 5) == 800
        assert get_finals_points('ta', 24) == 90

    def test_bracket_modes_share_points(self):
        assert get_finals_points('bm', 5) == get_finals_points('bm', 6) == 750
        assert get_finals_points('gp', 7) == 550

    def test_outside_table(self):
        assert get_finals_points('mr', 25) == 0
        assert get_finals_points('mr', None) == 0
        assert get_finals_points('ta', 0) == 0

    def test_place_labels(self):
        assert place_to_position('1st') == 1
        assert place_to_position('5th-6th') == 5
        assert place_to_position('7th-8th') == 7


class TestQualificationPoints:

    def test_normalize(self):
        assert normalize_points(6, 6) == 1000
        assert normalize_points(3, 6) == 500
        assert normalize_points(4, 6) == 667
        assert normalize_points(5, 0) == 0

    def test_round_robin_of_four(self):
        records = [
            {'player_id': 'd', 'wins': 0, 'ties': 0, 'losses': 3},
            {'player_id': 'a', 'wins': 3, 'ties': 0, 'losses': 0},
            {'player_id': 'b', 'wins': 1, 'ties': 1, 'losses': 1},
            {'player_id': 'c', 'wins': 1, 'ties': 1, 'losses': 1},
        ]
        results = calculate_qualification_points(records)
        assert [r['player_id'] for r in results][:1] == ['a']
        by_player = {r['player_id']: r for r in results}
        assert by_player['a']['normalized_points'] == 1000
        assert by_player['b']['match_points'] == 3
        assert by_player['b']['normalized_points'] == 500
        assert by_player['b']['rank'] == by_player['c']['rank'] == 2
        assert by_player['d']['rank'] == 4

    def test_empty(self):
        assert calculate_qualification_points([]) == []


class TestOverallRanking:

    def test_sums_modes(self):
        players = [{'id': 'a', 'nickname': 'alpha'}, {'id': 'b', 'nickname': 'bravo'},
                   {'id': 'c', 'nickname': 'charlie'}]
        qualification = {'ta': {'a': 100}, 'bm': {'b': 500}}
        finals = {'bm': {'a': 1}, 'ta': {'b': 24}}
        rows = calculate_overall_ranking(players, qualification, finals)

        assert [r['playerId'] for r in rows] == ['a', 'b']
        assert rows[0]['totalPoints'] == 2100
        assert rows[0]['bmFinalsPoints'] == 2000
        assert rows[1]['totalPoints'] == 590
        assert rows[1]['taFinalsPoints'] == 90
        assert [r['overallRank'] for r in rows] == [1, 2]

    def test_equal_totals_share_rank(self):
        players = [{'id': 'a', 'nickname': 'alpha'}, {'id': 'b', 'nickname': 'bravo'}]
        rows = calculate_overall_ranking(players, {'gp': {'a': 300, 'b': 300}}, {})
        assert [r['overallRank'] for r in rows] == [1, 1]
        assert [r['nickname'] for r in rows] == ['alpha', 'bravo']
