"""
Tests for Time Attack times, totals, ranks and course points.
"""
import pytest

from league.time_attack import (
    COURSE_NAMES,
    COURSES,
    calculate_course_scores,
    calculate_qualification_points,
    calculate_ranks,
    calculate_total_time,
    generate_score_table,
    is_valid_time,
    ms_to_display_time,
    time_to_ms,
)


def full_times(seconds):
    """Every course driven in 1:<seconds>.000."""
    return {course: f'1:{seconds:02d}.000' for course in COURSES}


class TestCourses:

    def test_twenty_courses_in_cup_order(self):
        assert len(COURSES) == 20
        assert COURSES[:5] == ['MC1', 'DP1', 'GV1', 'BC1', 'MC2']
        assert COURSES[-1] == 'RR'
        assert COURSE_NAMES['RR'] == 'Rainbow Road'


class TestTimeConversion:

    @pytest.mark.parametrize('text, expected', [
        ('1:23.456', 83456),
        ('1:23.45', 83450),
        ('1:23.4', 83400),
        ('0:59.999', 59999),
        ('12:00.000', 720000),
    ])
    def test_time_to_ms(self, text, expected):
        assert time_to_ms(text) == expected

    @pytest.mark.parametrize('text', ['', None, '1:60.000', '123.456', '1:2.000', 'abc', 83456])
    def test_invalid_times(self, text):
        assert time_to_ms(text) is None
        assert not is_valid_time(text)

    def test_display(self):
        assert ms_to_display_time(83450) == '1:23.450'
        assert ms_to_display_time(None) == '-'


class TestTotals:

    def test_total_time(self):
        assert calculate_total_time(full_times(10)) == 20 * 70000

    def test_missing_course_gives_no_total(self):
        times = full_times(10)
        del times['RR']
        assert calculate_total_time(times) is None
        assert calculate_total_time({}) is None
        assert calculate_total_time(None) is None


class TestRanks:

    def test_qualification_by_total(self):
        entries = [
            {'id': 'slow', 'total_time': 1500000},
            {'id': 'fast', 'total_time': 1400000},
            {'id': 'none', 'total_time': None},
        ]
        assert calculate_ranks(entries, 'qualification') == {'fast': 1, 'slow': 2}

    def test_phase_active_first_then_lives(self):
        entries = [
            {'id': 'out', 'total_time': 1, 'lives': 0, 'eliminated': True, 'rank': 5},
            {'id': 'one_life', 'total_time': 100, 'lives': 1, 'eliminated': False},
            {'id': 'three_lives', 'total_time': 900, 'lives': 3, 'eliminated': False},
        ]
        assert calculate_ranks(entries, 'phase3') == {'three_lives': 1, 'one_life': 2, 'out': 3}


class TestCoursePoints:

    def test_score_table(self):
        assert generate_score_table(3) == [50.0, 25.0, 0.0]
        assert generate_score_table(1) == [50.0]
        assert generate_score_table(0) == []

    def test_ties_share_average(self):
        entries = [
            {'id': 'a', 'times': {'MC1': '1:00.000'}},
            {'id': 'b', 'times': {'MC1': '1:00.000'}},
            {'id': 'c', 'times': {'MC1': '1:05.000'}},
            {'id': 'd', 'times': {}},
        ]
        scores = calculate_course_scores(entries, 'MC1')
        assert scores == {'a': 37.5, 'b': 37.5, 'c': 0.0, 'd': 0.0}

    def test_qualification_points_floor(self):
        entries = [
            {'id': 'a', 'times': full_times(10)},
            {'id': 'b', 'times': full_times(11)},
            {'id': 'c', 'times': full_times(12)},
        ]
        points = calculate_qualification_points(entries)
        assert points['a']['qualification_points'] == 1000
        assert points['b']['qualification_points'] == 500
        assert points['c']['qualification_points'] == 0
        assert points['a']['course_scores']['RR'] == 50.0
