"""
Time Attack courses, lap times and qualification ranking.

Times are entered as "M:SS.mmm" (one or two minute digits, one to three
fraction digits) and stored per course; totals and rankings work in
milliseconds.
"""
import math
import re
from typing import Dict, List, Optional

COURSE_INFO = [
    # Mushroom Cup
    ('MC1', 'Mario Circuit 1', 'Mushroom'),
    ('DP1', 'Donut Plains 1', 'Mushroom'),
    ('GV1', 'Ghost Valley 1', 'Mushroom'),
    ('BC1', 'Bowser Castle 1', 'Mushroom'),
    ('MC2', 'Mario Circuit 2', 'Mushroom'),
    # Flower Cup
    ('CI1', 'Choco Island 1', 'Flower'),
    ('GV2', 'Ghost Valley 2', 'Flower'),
    ('DP2', 'Donut Plains 2', 'Flower'),
    ('BC2', 'Bowser Castle 2', 'Flower'),
    ('MC3', 'Mario Circuit 3', 'Flower'),
    # Star Cup
    ('KB1', 'Koopa Beach 1', 'Star'),
    ('CI2', 'Choco Island 2', 'Star'),
    ('VL1', 'Vanilla Lake 1', 'Star'),
    ('BC3', 'Bowser Castle 3', 'Star'),
    ('MC4', 'Mario Circuit 4', 'Star'),
    # Special Cup
    ('DP3', 'Donut Plains 3', 'Special'),
    ('KB2', 'Koopa Beach 2', 'Special'),
    ('GV3', 'Ghost Valley 3', 'Special'),
    ('VL2', 'Vanilla Lake 2', 'Special'),
    ('RR', 'Rainbow Road', 'Special'),
]
COURSES = [abbr for abbr, _, _ in COURSE_INFO]
COURSE_NAMES = {abbr: name for abbr, name, _ in COURSE_INFO}

# Time recorded for a player who had to retry a course: 9:59.990
RETRY_PENALTY_MS = 599990
MAX_COURSE_POINTS = 50

TIME_PATTERN = re.compile(r'^(\d{1,2}):(\d{2})\.(\d{1,3})$')

QUALIFICATION_STAGE = 'qualification'


def time_to_ms(time_str) -> Optional[int]:
    """'1:23.45' -> 83450. Returns None for empty or malformed input."""
    if not time_str or not isinstance(time_str, str):
        return None
    match = TIME_PATTERN.match(time_str.strip())
    if not match:
        return None
    minutes, seconds, fraction = match.groups()
    if int(seconds) >= 60:
        return None
    return int(minutes) * 60000 + int(seconds) * 1000 + int(fraction.ljust(3, '0'))


def ms_to_display_time(ms: Optional[int]) -> str:
    """83450 -> '1:23.450'; None -> '-'."""
    if ms is None:
        return '-'
    minutes, rest = divmod(int(ms), 60000)
    seconds, millis = divmod(rest, 1000)
    return f'{minutes}:{seconds:02d}.{millis:03d}'


def is_valid_time(time_str) -> bool:
    return time_to_ms(time_str) is not None


def calculate_total_time(times: Optional[Dict[str, str]]) -> Optional[int]:
    """Sum of all 20 course times, or None until every course has a valid time."""
    if not times:
        return None
    total = 0
    for course in COURSES:
        ms = time_to_ms(times.get(course))
        if ms is None:
            return None
        total += ms
    return total


def sort_entries(entries: List[Dict], stage: str) -> List[Dict]:
    """
    Order entries for ranking.

    Qualification keeps only entries with a total time, fastest first.
    Elimination phases list active players first (more lives first, then
    faster), then eliminated players by the position they went out at.

    Entries are dicts with 'id', 'total_time', 'lives', 'eliminated' and,
    for eliminated phase players, 'rank'.
    """
    if stage == QUALIFICATION_STAGE:
        timed = [e for e in entries if e.get('total_time') is not None]
        return sorted(timed, key=lambda e: e['total_time'])

    def key(e):
        total = e.get('total_time')
        if e.get('eliminated'):
            return (1, e.get('rank') or math.inf, 0, 0)
        return (0, -(e.get('lives') or 0), total is None, total or 0)
    return sorted(entries, key=key)


def calculate_ranks(entries: List[Dict], stage: str) -> Dict[str, int]:
    """entry id -> 1-based rank; qualification entries without a total are absent."""
    return {e['id']: i + 1 for i, e in enumerate(sort_entries(entries, stage))}


def generate_score_table(participants: int) -> List[float]:
    """Course points by finishing order: 50 for the fastest down to 0 for the slowest."""
    if participants <= 0:
        return []
    if participants == 1:
        return [float(MAX_COURSE_POINTS)]
    return [MAX_COURSE_POINTS * (participants - 1 - i) / (participants - 1) for i in range(participants)]


def calculate_course_scores(entries: List[Dict], course: str) -> Dict[str, float]:
    """
    Points every entry earns on one course.

    Entries without a valid time on the course get 0 and don't count as
    participants. Tied times share the average of the places they cover.
    """
    timed = []
    for entry in entries:
        ms = time_to_ms((entry.get('times') or {}).get(course))
        if ms is not None:
            timed.append((ms, entry['id']))
    timed.sort()
    table = generate_score_table(len(timed))

    scores = {entry['id']: 0.0 for entry in entries}
    i = 0
    while i < len(timed):
        j = i
        while j < len(timed) and timed[j][0] == timed[i][0]:
            j += 1
        shared = sum(table[i:j]) / (j - i)
        for k in range(i, j):
            scores[timed[k][1]] = shared
        i = j
    return scores


def calculate_qualification_points(entries: List[Dict]) -> Dict[str, Dict]:
    """
    Course points and qualification points for every entry.

    Returns entry id -> {'course_scores': {course: points},
    'qualification_points': floor of the sum}.
    """
    results = {entry['id']: {'course_scores': {}, 'qualification_points': 0} for entry in entries}
    if not entries:
        return results
    for course in COURSES:
        for entry_id, score in calculate_course_scores(entries, course).items():
            results[entry_id]['course_scores'][course] = score
    for result in results.values():
        result['qualification_points'] = math.floor(sum(result['course_scores'].values()))
    return results
