"""
Game mode configuration for the head-to-head modes.

Battle Mode (BM), Match Race (MR) and Grand Prix (GP) share one qualification
and finals flow; each mode plugs in how a match result is decided, how a
player's standing is aggregated and how its rows are ordered.
"""
from dataclasses import dataclass, field
from itertools import combinations
from typing import Callable, Dict, List, Optional, Tuple

from .models import (
    BMMatch, BMQualification, GPMatch, GPQualification, MRMatch, MRQualification,
)

WIN, LOSS, TIE = 'win', 'loss', 'tie'

BM_ROUNDS_PER_MATCH = 4
MIN_BATTLE_SCORE = 0
MAX_BATTLE_SCORE = 5
GP_RACES_PER_CUP = 4
FINALS_TARGET_WINS = 3

SMK_CHARACTERS = ('Mario', 'Luigi', 'Peach', 'Toad', 'Yoshi', 'DK Jr.', 'Bowser', 'Koopa')

CUPS = ('Mushroom', 'Flower', 'Star', 'Special')


def _result(winner: Optional[int]) -> Dict:
    if winner == 1:
        return {'winner': 1, 'result1': WIN, 'result2': LOSS}
    if winner == 2:
        return {'winner': 2, 'result1': LOSS, 'result2': WIN}
    return {'winner': None, 'result1': TIE, 'result2': TIE}


def bm_match_result(score1: int, score2: int) -> Dict:
    """A battle is 4 rounds: 3+ wins, 2-2 ties, any other total is a tie."""
    if score1 + score2 != BM_ROUNDS_PER_MATCH:
        return _result(None)
    if score1 >= 3:
        return _result(1)
    if score2 >= 3:
        return _result(2)
    return _result(None)


def mr_match_result(score1: int, score2: int) -> Dict:
    """Match race: 3+ races wins, everything else (0-0 included) ties."""
    if score1 + score2 == 0:
        return _result(None)
    if score1 >= 3:
        return _result(1)
    if score2 >= 3:
        return _result(2)
    return _result(None)


def gp_match_result(points1: int, points2: int) -> Dict:
    """Grand prix: more driver points wins."""
    if points1 > points2:
        return _result(1)
    if points2 > points1:
        return _result(2)
    return _result(None)


def driver_points(position: int) -> int:
    """Driver points for one race: 1st 9, 2nd 6, otherwise 0."""
    if position == 1:
        return 9
    if position == 2:
        return 6
    return 0


def score_gp_races(races: List[Dict]) -> Tuple[List[Dict], int, int]:
    """
    Add driver points to each race of a cup.

    Returns (races with points1/points2, total1, total2).
    """
    scored = []
    total1 = total2 = 0
    for race in races:
        points1 = driver_points(int(race['position1']))
        points2 = driver_points(int(race['position2']))
        total1 += points1
        total2 += points2
        scored.append({**race, 'points1': points1, 'points2': points2})
    return scored, total1, total2


def _rounds_stats(matches, player_id: str, match_result: Callable) -> Dict:
    stats = {'mp': 0, 'wins': 0, 'ties': 0, 'losses': 0, 'win_rounds': 0, 'loss_rounds': 0}
    for m in matches:
        is_player1 = m.player1_id == player_id
        own, other = (m.score1, m.score2) if is_player1 else (m.score2, m.score1)
        stats['mp'] += 1
        stats['win_rounds'] += own
        stats['loss_rounds'] += other
        _count_result(stats, match_result(own, other)['result1'])
    stats['points'] = stats['win_rounds'] - stats['loss_rounds']
    stats['score'] = stats['wins'] * 2 + stats['ties']
    return stats


def _points_stats(matches, player_id: str, match_result: Callable) -> Dict:
    stats = {'mp': 0, 'wins': 0, 'ties': 0, 'losses': 0, 'points': 0}
    for m in matches:
        is_player1 = m.player1_id == player_id
        own, other = (m.points1, m.points2) if is_player1 else (m.points2, m.points1)
        stats['mp'] += 1
        stats['points'] += own
        _count_result(stats, match_result(own, other)['result1'])
    stats['score'] = stats['wins'] * 2 + stats['ties']
    return stats


def _count_result(stats: Dict, result: str):
    if result == WIN:
        stats['wins'] += 1
    elif result == LOSS:
        stats['losses'] += 1
    else:
        stats['ties'] += 1


def parse_rounds_put(body: Dict) -> Dict:
    """Validate an admin qualification update for BM/MR."""
    match_id = body.get('matchId')
    score1, score2 = body.get('score1'), body.get('score2')
    if not match_id or score1 is None or score2 is None:
        raise ValueError('matchId, score1, and score2 are required')
    score1, score2 = _non_negative_int(score1), _non_negative_int(score2)
    return {'match_id': match_id, 'score1': score1, 'score2': score2, 'detail': body.get('rounds')}


def parse_gp_put(body: Dict) -> Dict:
    """Validate an admin qualification update for GP: a cup and 4 races."""
    match_id, cup, races = body.get('matchId'), body.get('cup'), body.get('races')
    if not match_id or not cup or not isinstance(races, list) or len(races) != GP_RACES_PER_CUP:
        raise ValueError('matchId, cup, and 4 races are required')
    for race in races:
        if not isinstance(race, dict) or 'position1' not in race or 'position2' not in race:
            raise ValueError('Each race needs course, position1 and position2')
        _non_negative_int(race['position1'])
        _non_negative_int(race['position2'])
    scored, points1, points2 = score_gp_races(races)
    return {'match_id': match_id, 'score1': points1, 'score2': points2, 'detail': scored, 'cup': cup}


def _non_negative_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError('Scores must be non-negative integers')
    return value


def validate_battle_scores(score1, score2) -> Optional[str]:
    """Check a participant-reported battle score. Returns an error or None."""
    for value in (score1, score2):
        if isinstance(value, bool) or not isinstance(value, int):
            return 'Scores must be integers'
        if value < MIN_BATTLE_SCORE or value > MAX_BATTLE_SCORE:
            return f'Scores must be between {MIN_BATTLE_SCORE} and {MAX_BATTLE_SCORE}'
    if score1 == score2:
        return 'Scores cannot be equal'
    return None


def validate_race_scores(score1, score2) -> Optional[str]:
    """Check a participant-reported match race score (races won out of 4)."""
    for value in (score1, score2):
        if isinstance(value, bool) or not isinstance(value, int):
            return 'Scores must be integers'
        if value < 0 or value > 4:
            return 'Scores must be between 0 and 4'
    if score1 + score2 > 4:
        return 'A match race has 4 races'
    return None


def validate_gp_points(points1, points2) -> Optional[str]:
    """Check participant-reported cup totals (4 races, at most 9 points each)."""
    limit = GP_RACES_PER_CUP * driver_points(1)
    for value in (points1, points2):
        if isinstance(value, bool) or not isinstance(value, int):
            return 'Points must be integers'
        if value < 0 or value > limit:
            return f'Points must be between 0 and {limit}'
    return None


def first_to_wins_result(score1: int, score2: int, target: int = FINALS_TARGET_WINS) -> Optional[int]:
    """Winner (1 or 2) of a best-of-(2*target-1) finals match, or None."""
    if score1 >= target and score2 < target:
        return 1
    if score2 >= target and score1 < target:
        return 2
    return None


def points_finals_result(points1: int, points2: int) -> Optional[int]:
    if points1 == points2:
        return None
    return 1 if points1 > points2 else 2


def validate_finals_scores(score1, score2) -> Optional[str]:
    """Check a reported best-of-5 finals result: one side on 3 wins, the other below."""
    for value in (score1, score2):
        if isinstance(value, bool) or not isinstance(value, int):
            return 'Scores must be integers'
        if value < 0 or value > FINALS_TARGET_WINS:
            return f'Scores must be between 0 and {FINALS_TARGET_WINS}'
    if first_to_wins_result(score1, score2) is None:
        return 'Match must have a winner (best of 5: first to 3)'
    return None


def validate_gp_finals_points(points1, points2) -> Optional[str]:
    error = validate_gp_points(points1, points2)
    if error:
        return error
    if points_finals_result(points1, points2) is None:
        return 'Match must have a winner (driver points cannot be tied)'
    return None


@dataclass
class EventTypeConfig:
    code: str
    label: str
    match_model: type
    qualification_model: type
    score_fields: Tuple[str, str]
    detail_field: str
    reported_prefix: str
    match_result: Callable[[int, int], Dict]
    aggregate_stats: Callable
    parse_put: Callable[[Dict], Dict]
    validate_report: Callable
    validate_finals_report: Callable
    finals_result: Callable[[int, int], Optional[int]]
    finals_error: str
    finals_style: str
    audit_action: str
    ordering: List[Tuple[str, bool]] = field(default_factory=list)
    export_columns: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def setup_message(self) -> str:
        return f'{self.label} setup complete'

    def qualification_order_by(self):
        """SQLAlchemy order_by clauses; (column, descending) pairs."""
        model = self.qualification_model
        clauses = []
        for column, descending in self.ordering:
            attr = getattr(model, column)
            clauses.append(attr.desc() if descending else attr.asc())
        return clauses

    def scores_of(self, match) -> Tuple[int, int]:
        return getattr(match, self.score_fields[0]), getattr(match, self.score_fields[1])

    def reported_fields(self, side: int) -> Tuple[str, str]:
        """Column names holding what player ``side`` reported."""
        return (f'player{side}_reported_{self.reported_prefix}1',
                f'player{side}_reported_{self.reported_prefix}2')


ROUNDS_EXPORT_COLUMNS = [
    ('Group', 'group'), ('Seeding', 'seeding'), ('MP', 'mp'), ('W', 'wins'), ('T', 'ties'),
    ('L', 'losses'), ('Won Rounds', 'win_rounds'), ('Lost Rounds', 'loss_rounds'),
    ('Points', 'points'), ('Score', 'score'),
]

BM_CONFIG = EventTypeConfig(
    code='bm',
    label='Battle mode',
    match_model=BMMatch,
    qualification_model=BMQualification,
    score_fields=('score1', 'score2'),
    detail_field='rounds',
    reported_prefix='score',
    match_result=bm_match_result,
    aggregate_stats=_rounds_stats,
    parse_put=parse_rounds_put,
    validate_report=validate_battle_scores,
    validate_finals_report=validate_finals_scores,
    finals_result=first_to_wins_result,
    finals_error='Match must have a winner (best of 5: first to 3)',
    finals_style='grouped',
    audit_action='CREATE_BM_MATCH',
    ordering=[('group', False), ('score', True), ('points', True)],
    export_columns=ROUNDS_EXPORT_COLUMNS,
)

MR_CONFIG = EventTypeConfig(
    code='mr',
    label='Match race',
    match_model=MRMatch,
    qualification_model=MRQualification,
    score_fields=('score1', 'score2'),
    detail_field='rounds',
    reported_prefix='score',
    match_result=mr_match_result,
    aggregate_stats=_rounds_stats,
    parse_put=parse_rounds_put,
    validate_report=validate_race_scores,
    validate_finals_report=validate_finals_scores,
    finals_result=first_to_wins_result,
    finals_error='Match must have a winner (best of 5: first to 3)',
    finals_style='simple',
    audit_action='CREATE_MR_MATCH',
    ordering=[('group', False), ('score', True), ('points', True)],
    export_columns=ROUNDS_EXPORT_COLUMNS,
)

GP_CONFIG = EventTypeConfig(
    code='gp',
    label='Grand prix',
    match_model=GPMatch,
    qualification_model=GPQualification,
    score_fields=('points1', 'points2'),
    detail_field='races',
    reported_prefix='points',
    match_result=gp_match_result,
    aggregate_stats=_points_stats,
    parse_put=parse_gp_put,
    validate_report=validate_gp_points,
    validate_finals_report=validate_gp_finals_points,
    finals_result=points_finals_result,
    finals_error='Match must have a winner (driver points cannot be tied)',
    finals_style='paginated',
    audit_action='CREATE_GP_MATCH',
    ordering=[('score', True), ('points', True)],
    export_columns=[
        ('Group', 'group'), ('Seeding', 'seeding'), ('MP', 'mp'), ('W', 'wins'), ('T', 'ties'),
        ('L', 'losses'), ('Driver Points', 'points'), ('Score', 'score'),
    ],
)

EVENT_TYPES = {c.code: c for c in (BM_CONFIG, MR_CONFIG, GP_CONFIG)}


def get_event_type(code: str) -> EventTypeConfig:
    try:
        return EVENT_TYPES[code.lower()]
    except KeyError:
        raise ValueError(f'Unknown event type: {code}') from None


def aggregate_player_stats(config: EventTypeConfig, matches, player_id: str) -> Dict:
    """Standing of one player from their completed qualification matches."""
    return config.aggregate_stats(matches, player_id, config.match_result)


def generate_round_robin(players: List[Dict]) -> List[Dict]:
    """
    Pair every player with every other player of the same group once.

    Args:
        players: list of {'playerId', 'group', 'seeding'?} dicts

    Returns list of {'match_number', 'player1_id', 'player2_id', 'group'}
    with match numbers running on across groups (groups in sorted order).
    """
    groups: Dict[str, List[Dict]] = {}
    for p in players:
        groups.setdefault(str(p['group']), []).append(p)

    matches = []
    match_number = 1
    for group in sorted(groups):
        members = sorted(groups[group], key=lambda p: (p.get('seeding') is None, p.get('seeding') or 0))
        for p1, p2 in combinations(members, 2):
            matches.append({
                'match_number': match_number,
                'player1_id': p1['playerId'],
                'player2_id': p2['playerId'],
                'group': group,
            })
            match_number += 1
    return matches
