"""
League points.

Each player earns qualification points and finals points in every mode; the
overall ranking is the sum across Time Attack, Battle Mode, Match Race and
Grand Prix.
"""
from typing import Dict, Iterable, List, Optional

TA_FINALS_POINTS = [
    2000, 1600, 1300, 1000, 800, 700, 600, 500,
    420, 400, 380, 360, 340, 320, 300, 280,
    160, 150, 140, 130, 120, 110, 100, 90,
]

# Double elimination shares points between players knocked out in the same round.
BRACKET_FINALS_POINTS = [
    2000, 1600, 1300, 1000, 750, 750, 550, 550,
    400, 400, 400, 400, 300, 300, 300, 300,
    150, 150, 150, 150, 100, 100, 100, 100,
]

MODES = ('ta', 'bm', 'mr', 'gp')


def format_ordinal(n: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th', 23 -> '23rd'."""
    if 10 <= n % 100 <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f'{n}{suffix}'


def get_finals_points(mode: str, position: Optional[int]) -> int:
    """Points for a 1-based finals position; outside the table earns 0."""
    table = TA_FINALS_POINTS if mode == 'ta' else BRACKET_FINALS_POINTS
    if not position or position < 1 or position > len(table):
        return 0
    return table[position - 1]


def place_to_position(place: str) -> int:
    """Best position of a placement label: '5th-6th' -> 5, '1st' -> 1."""
    return int(''.join(ch for ch in place.split('-')[0] if ch.isdigit()))


def calculate_match_points(wins: int, ties: int) -> int:
    return 2 * wins + ties


def normalize_points(match_points: int, max_match_points: int) -> int:
    if max_match_points <= 0:
        return 0
    return round(1000 * match_points / max_match_points)


def calculate_qualification_points(records: List[Dict]) -> List[Dict]:
    """
    Normalised qualification points for one mode.

    Args:
        records: [{'player_id', 'wins', 'ties', 'losses'}] for every player
            of the round robin

    Returns list of {'player_id', 'match_points', 'normalized_points', 'rank'}
    sorted best first; equal normalised points share a rank.
    """
    if not records:
        return []
    max_points = 2 * (len(records) - 1)
    results = []
    for r in records:
        match_points = calculate_match_points(r['wins'], r['ties'])
        results.append({
            'player_id': r['player_id'],
            'match_points': match_points,
            'normalized_points': normalize_points(match_points, max_points),
            'rank': 0,
        })
    results.sort(key=lambda r: (-r['normalized_points'], -r['match_points']))

    previous = None
    rank = 0
    for i, result in enumerate(results):
        if result['normalized_points'] != previous:
            rank = i + 1
            previous = result['normalized_points']
        result['rank'] = rank
    return results


def calculate_overall_ranking(players: Iterable[Dict], qualification: Dict[str, Dict[str, int]],
                              finals_positions: Dict[str, Dict[str, int]]) -> List[Dict]:
    """
    Combine every mode into one league table.

    Args:
        players: [{'id', 'nickname', ...}]
        qualification: mode -> {player_id: qualification points}
        finals_positions: mode -> {player_id: finals position}

    Returns rows sorted by total points with shared ranks for equal totals.
    Players with no points at all are left out.
    """
    rows = []
    for player in players:
        row = {'playerId': player['id'], 'nickname': player.get('nickname'), 'totalPoints': 0}
        for mode in MODES:
            qual = qualification.get(mode, {}).get(player['id'], 0)
            finals = get_finals_points(mode, finals_positions.get(mode, {}).get(player['id']))
            row[f'{mode}QualificationPoints'] = qual
            row[f'{mode}FinalsPoints'] = finals
            row['totalPoints'] += qual + finals
        if row['totalPoints'] > 0:
            rows.append(row)

    rows.sort(key=lambda r: (-r['totalPoints'], r['nickname'] or ''))
    previous = None
    rank = 0
    for i, row in enumerate(rows):
        if row['totalPoints'] != previous:
            rank = i + 1
            previous = row['totalPoints']
        row['overallRank'] = rank
    return rows
