"""
Time Attack finals: three elimination phases.

- Phase 1: qualification ranks 17-24 race course by course; the slowest
  player of each course is out until 4 remain.
- Phase 2: the 4 phase 1 survivors join ranks 13-16; same rule down to 4.
- Phase 3: the 4 phase 2 survivors join ranks 1-12 with 3 lives each. On
  every course the slower half loses a life and a player with no lives left
  is out. Lives go back to 3 when 8, 4 or 2 players remain. The last player
  standing wins.

Each phase is played as numbered rounds; a round picks a course not yet
played in the current cycle of 20 and is closed by submitting everyone's time.
"""
import logging
import math
import random
from typing import Dict, List, Optional
from sqlalchemy import func, select

from .audit_log import AUDIT_ACTIONS, create_audit_log
from .models import TTEntry, TTPhaseRound, db, utcnow
from .soft_delete import with_deleted
from .time_attack import (
    COURSES, QUALIFICATION_STAGE, RETRY_PENALTY_MS, calculate_qualification_points,
    calculate_ranks, calculate_total_time,
)

logger = logging.getLogger(__name__)

PHASES = ('phase1', 'phase2', 'phase3')

PHASE_CONFIG = {
    'phase1': {
        'qual_rank_start': 17,
        'qual_rank_end': 24,
        'previous_phase': None,
        'survivors_needed': 4,
        'has_lives': False,
        # Players who skip this phase and still finish above its knockouts
        'position_offset': 16,
    },
    'phase2': {
        'qual_rank_start': 13,
        'qual_rank_end': 16,
        'previous_phase': 'phase1',
        'survivors_needed': 4,
        'has_lives': False,
        'position_offset': 12,
    },
    'phase3': {
        'qual_rank_start': 1,
        'qual_rank_end': 12,
        'previous_phase': 'phase2',
        'survivors_needed': 1,
        'has_lives': True,
        'initial_lives': 3,
        'life_reset_thresholds': (8, 4, 2),
        'position_offset': 0,
    },
}


class PhaseError(ValueError):
    """A phase operation that the current tournament state does not allow."""


def _config(phase: str) -> Dict:
    if phase not in PHASE_CONFIG:
        raise PhaseError(f'Invalid phase: {phase}. Must be one of: {", ".join(PHASES)}')
    return PHASE_CONFIG[phase]


def _entries(tournament_id: str, stage: str, active_only: bool = False) -> List[TTEntry]:
    stmt = select(TTEntry).where(TTEntry.tournament_id == tournament_id, TTEntry.stage == stage)
    if active_only:
        stmt = stmt.where(TTEntry.eliminated.is_(False))
    return list(db.session.execute(stmt.order_by(TTEntry.total_time)).scalars())


def _audit(context: Optional[Dict], action: str, target_id: str, target_type: str, details: Dict):
    context = context or {}
    create_audit_log(
        action,
        user_id=context.get('user_id'),
        ip_address=context.get('ip_address'),
        user_agent=context.get('user_agent'),
        target_id=target_id,
        target_type=target_type,
        details=details,
    )


def recalculate_ranks(tournament_id: str, stage: str = QUALIFICATION_STAGE):
    """Refresh total time, rank and (for qualification) points of a stage."""
    entries = _entries(tournament_id, stage)
    for entry in entries:
        entry.total_time = calculate_total_time(entry.times)
    rows = [{'id': e.id, 'total_time': e.total_time, 'lives': e.lives,
             'eliminated': e.eliminated, 'rank': e.rank, 'times': e.times} for e in entries]
    ranks = calculate_ranks(rows, stage)
    points = calculate_qualification_points(rows) if stage == QUALIFICATION_STAGE else {}
    # Phase entries keep their rank: the qualification rank they joined with,
    # or the finishing position once eliminated.
    if stage == QUALIFICATION_STAGE:
        for entry in entries:
            entry.rank = ranks.get(entry.id)
            entry.qualification_points = points[entry.id]['qualification_points']
    db.session.commit()


def _qualifiers(tournament_id: str, rank_start: int, rank_end: int) -> List[TTEntry]:
    stmt = (
        select(TTEntry)
        .where(
            TTEntry.tournament_id == tournament_id,
            TTEntry.stage == QUALIFICATION_STAGE,
            TTEntry.rank >= rank_start,
            TTEntry.rank <= rank_end,
        )
        .order_by(TTEntry.rank)
    )
    return list(db.session.execute(stmt).scalars())


def is_phase_complete(tournament_id: str, phase: str) -> bool:
    config = _config(phase)
    entries = _entries(tournament_id, phase)
    if not entries:
        return False
    active = [e for e in entries if not e.eliminated]
    return len(active) <= config['survivors_needed']


def promote_to_phase(tournament_id: str, phase: str, context: Optional[Dict] = None) -> Dict:
    """
    Create the entries of a phase from the previous phase's survivors and the
    qualification ranks that join at this phase.

    Entries without a total time are skipped and reported by nickname;
    players already in the phase are left alone.

    Returns {'entries': [...], 'skipped': [...], 'message': str}.
    """
    config = _config(phase)
    sources: List[TTEntry] = []
    previous = config['previous_phase']
    if previous and _entries(tournament_id, previous):
        if not is_phase_complete(tournament_id, previous):
            raise PhaseError(f'{previous} is not finished yet')
        sources.extend(_entries(tournament_id, previous, active_only=True))
    sources.extend(_qualifiers(tournament_id, config['qual_rank_start'], config['qual_rank_end']))
    if not sources:
        raise PhaseError(f'No players available for {phase}')

    lives = config['initial_lives'] if config['has_lives'] else 0
    created, skipped = [], []
    for source in sources:
        nickname = source.player.nickname if source.player else source.player_id
        if source.total_time is None:
            skipped.append(nickname)
            continue

        existing = db.session.execute(with_deleted(select(TTEntry).where(
            TTEntry.tournament_id == tournament_id,
            TTEntry.player_id == source.player_id,
            TTEntry.stage == phase,
        ))).scalar_one_or_none()
        if existing is not None and existing.deleted_at is None:
            continue
        if existing is not None:
            entry = existing
            entry.deleted_at = None
        else:
            entry = TTEntry(tournament_id=tournament_id, player_id=source.player_id, stage=phase)
            db.session.add(entry)
        entry.lives = lives
        entry.eliminated = False
        entry.times = dict(source.times or {})
        entry.total_time = source.total_time
        entry.rank = source.rank
        db.session.flush()
        created.append(entry)

    db.session.commit()
    for entry in created:
        _audit(context, AUDIT_ACTIONS.CREATE_TA_ENTRY, entry.id, 'TTEntry', {
            'tournamentId': tournament_id,
            'playerId': entry.player_id,
            'promotedTo': phase,
            'initialLives': lives,
        })
    _audit(context, AUDIT_ACTIONS.PROMOTE_PHASE, tournament_id, 'Tournament',
           {'phase': phase, 'promoted': len(created), 'skipped': skipped})

    message = f'Promoted {len(created)} players to {phase}'
    if config['has_lives']:
        message += f' with {lives} lives'
    logger.info(f'{message} (tournament {tournament_id})')
    return {'entries': created, 'skipped': skipped, 'message': message}


def get_played_courses(tournament_id: str, phase: str) -> List[str]:
    stmt = (
        select(TTPhaseRound.course)
        .where(TTPhaseRound.tournament_id == tournament_id, TTPhaseRound.phase == phase)
        .order_by(TTPhaseRound.round_number)
    )
    return list(db.session.execute(stmt).scalars())


def get_available_courses(played_courses: List[str]) -> List[str]:
    """Courses not yet played in the current cycle of 20."""
    cycle_start = (len(played_courses) // len(COURSES)) * len(COURSES)
    played = set(played_courses[cycle_start:])
    return [c for c in COURSES if c not in played]


def _get_round(tournament_id: str, phase: str, round_number: int) -> TTPhaseRound:
    stmt = select(TTPhaseRound).where(
        TTPhaseRound.tournament_id == tournament_id,
        TTPhaseRound.phase == phase,
        TTPhaseRound.round_number == round_number,
    )
    phase_round = db.session.execute(stmt).scalar_one_or_none()
    if phase_round is None:
        raise LookupError(f'Round {round_number} of {phase} not found')
    return phase_round


def start_round(tournament_id: str, phase: str, rng: Optional[random.Random] = None) -> TTPhaseRound:
    """Open the next round of a phase on a random unplayed course."""
    _config(phase)
    if not _entries(tournament_id, phase):
        raise PhaseError(f'No players have been promoted to {phase}')
    if is_phase_complete(tournament_id, phase):
        raise PhaseError(f'{phase} is already complete')

    open_round = db.session.execute(select(TTPhaseRound).where(
        TTPhaseRound.tournament_id == tournament_id,
        TTPhaseRound.phase == phase,
        TTPhaseRound.submitted_at.is_(None),
    )).scalar_one_or_none()
    if open_round is not None:
        raise PhaseError(f'Round {open_round.round_number} of {phase} has not been submitted')

    available = get_available_courses(get_played_courses(tournament_id, phase))
    course = (rng or random).choice(available)
    last = db.session.execute(select(func.max(TTPhaseRound.round_number)).where(
        TTPhaseRound.tournament_id == tournament_id, TTPhaseRound.phase == phase,
    )).scalar()
    phase_round = TTPhaseRound(tournament_id=tournament_id, phase=phase,
                               round_number=(last or 0) + 1, course=course)
    db.session.add(phase_round)
    db.session.commit()
    logger.info(f'Started {phase} round {phase_round.round_number} on {course} (tournament {tournament_id})')
    return phase_round


def cancel_round(tournament_id: str, phase: str, round_number: int):
    """Drop an unsubmitted round so its course becomes available again."""
    _config(phase)
    phase_round = _get_round(tournament_id, phase, round_number)
    if phase_round.submitted_at is not None:
        raise PhaseError(f'Round {round_number} of {phase} has already been submitted')
    db.session.delete(phase_round)
    db.session.commit()


def _normalize_results(results: List[Dict], active: List[TTEntry]) -> List[Dict]:
    active_ids = {e.player_id for e in active}
    normalized = []
    seen = set()
    for result in results:
        player_id = result.get('playerId')
        if player_id not in active_ids:
            raise PhaseError(f'Player {player_id} is not active in this phase')
        if player_id in seen:
            raise PhaseError(f'Duplicate result for player {player_id}')
        seen.add(player_id)
        is_retry = bool(result.get('isRetry'))
        time_ms = result.get('timeMs')
        if is_retry:
            time_ms = RETRY_PENALTY_MS
        if isinstance(time_ms, bool) or not isinstance(time_ms, (int, float)):
            raise PhaseError('timeMs must be a number')
        if time_ms < 0 or time_ms > RETRY_PENALTY_MS:
            raise PhaseError(f'timeMs must be between 0 and {RETRY_PENALTY_MS}')
        normalized.append({'playerId': player_id, 'timeMs': int(time_ms), 'isRetry': is_retry})
    missing = active_ids - seen
    if missing:
        raise PhaseError(f'Missing results for {len(missing)} active player(s)')
    return normalized


def select_knockout(results: List[Dict]) -> Dict:
    """
    Phase 1/2 rule: the single slowest time is eliminated.

    Returns {'eliminated': [player ids], 'tie_break_required': bool}. When
    the slowest time is shared nobody goes out and the course must be replayed.
    """
    slowest = max(r['timeMs'] for r in results)
    at_slowest = [r['playerId'] for r in results if r['timeMs'] == slowest]
    if len(at_slowest) > 1:
        return {'eliminated': [], 'tie_break_required': True}
    return {'eliminated': at_slowest, 'tie_break_required': False}


def select_life_losers(results: List[Dict]) -> List[str]:
    """
    Phase 3 rule: the slower half (floor(n/2)) loses a life.

    Anyone tied with the slowest safe time is safe as well, so a tie at the
    cut line can only shrink the group that loses a life.
    """
    ordered = sorted(results, key=lambda r: r['timeMs'])
    safe_count = math.ceil(len(ordered) / 2)
    if safe_count >= len(ordered):
        return []
    cut_time = ordered[safe_count - 1]['timeMs']
    return [r['playerId'] for r in ordered[safe_count:] if r['timeMs'] > cut_time]


def _assign_positions(eliminated: List[TTEntry], times: Dict[str, int], remaining: int, offset: int):
    # Faster players among those going out together finish higher.
    for i, entry in enumerate(sorted(eliminated, key=lambda e: times[e.player_id])):
        entry.rank = offset + remaining + i + 1


def submit_results(tournament_id: str, phase: str, round_number: int, results: List[Dict],
                   context: Optional[Dict] = None) -> Dict:
    """
    Close a round with every active player's time and apply the phase rule.

    Returns {'round', 'eliminated', 'livesReset', 'tieBreakRequired',
    'remaining', 'winner'}.
    """
    config = _config(phase)
    phase_round = _get_round(tournament_id, phase, round_number)
    if phase_round.submitted_at is not None:
        raise PhaseError(f'Round {round_number} of {phase} has already been submitted')

    active = _entries(tournament_id, phase, active_only=True)
    normalized = _normalize_results(results, active)
    times = {r['playerId']: r['timeMs'] for r in normalized}
    by_player = {e.player_id: e for e in active}

    eliminated: List[TTEntry] = []
    tie_break = False
    lives_reset = False

    if not config['has_lives']:
        if len(active) > config['survivors_needed']:
            decision = select_knockout(normalized)
            tie_break = decision['tie_break_required']
            eliminated = [by_player[pid] for pid in decision['eliminated']]
            for entry in eliminated:
                entry.eliminated = True
    else:
        for player_id in select_life_losers(normalized):
            entry = by_player[player_id]
            entry.lives = max(0, entry.lives - 1)
            if entry.lives == 0:
                entry.eliminated = True
                eliminated.append(entry)

    remaining = [e for e in active if not e.eliminated]
    _assign_positions(eliminated, times, len(remaining), config['position_offset'])

    if config['has_lives'] and eliminated and len(remaining) in config['life_reset_thresholds']:
        for entry in remaining:
            entry.lives = config['initial_lives']
        lives_reset = True

    winner = None
    if config['has_lives'] and len(remaining) == 1:
        winner = remaining[0]
        winner.rank = 1

    phase_round.results = normalized
    phase_round.eliminated_ids = [e.player_id for e in eliminated]
    phase_round.lives_reset = lives_reset
    phase_round.tie_break_required = tie_break
    phase_round.submitted_at = utcnow()
    db.session.commit()

    _audit(context, AUDIT_ACTIONS.SUBMIT_PHASE_RESULTS, phase_round.id, 'TTPhaseRound', {
        'tournamentId': tournament_id,
        'phase': phase,
        'roundNumber': round_number,
        'course': phase_round.course,
        'eliminated': phase_round.eliminated_ids,
        'livesReset': lives_reset,
        'tieBreakRequired': tie_break,
    })
    return {
        'round': phase_round,
        'eliminated': eliminated,
        'livesReset': lives_reset,
        'tieBreakRequired': tie_break,
        'remaining': len(remaining),
        'winner': winner,
    }


def get_phase_status(tournament_id: str) -> Dict:
    """Summary of the three phases and which one is being played."""
    status = {}
    current = None
    for phase in PHASES:
        config = PHASE_CONFIG[phase]
        entries = _entries(tournament_id, phase)
        active = [e for e in entries if not e.eliminated]
        rounds = db.session.execute(select(func.count()).select_from(TTPhaseRound).where(
            TTPhaseRound.tournament_id == tournament_id,
            TTPhaseRound.phase == phase,
            TTPhaseRound.submitted_at.is_not(None),
        )).scalar_one()
        complete = bool(entries) and len(active) <= config['survivors_needed']
        status[phase] = {
            'totalPlayers': len(entries),
            'activePlayers': len(active),
            'eliminatedPlayers': len(entries) - len(active),
            'roundsPlayed': rounds,
            'started': bool(entries),
            'complete': complete,
        }
        if phase == 'phase3':
            winner = active[0] if complete and len(active) == 1 else None
            status[phase]['winner'] = winner.player.summary() if winner and winner.player else None
        if entries and not complete:
            current = phase
    if current is None and status['phase3']['complete']:
        current = 'completed'
    status['currentPhase'] = current
    return status


def get_finals_positions(tournament_id: str) -> Dict[str, int]:
    """player id -> overall Time Attack finals position from the phase results."""
    positions = {}
    for phase in PHASES:
        for entry in _entries(tournament_id, phase):
            if entry.eliminated and entry.rank:
                positions[entry.player_id] = entry.rank
    winner_status = get_phase_status(tournament_id)['phase3']
    if winner_status.get('winner'):
        positions[winner_status['winner']['id']] = 1
    return positions
