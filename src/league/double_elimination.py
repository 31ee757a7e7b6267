"""
Double elimination finals bracket for 8 players.

In double elimination:
- Players must lose twice to be eliminated
- Winners Bracket: players that haven't lost yet
- Losers Bracket: players that have lost once
- Grand Final: Winners bracket champion vs Losers bracket champion
- Bracket Reset: if the losers bracket champion wins the Grand Final, both
  players have one loss and a final match decides the champion

The bracket is a fixed table of 15 slots. Every slot knows where its winner
and loser go next, so advancing a result is a lookup plus two writes.
Matches are plain dicts keyed by match number:
    {'match_number', 'round', 'player1_id', 'player2_id', 'completed',
     'winner_id', 'loser_id'}
"""
from typing import Dict, List, Optional, Tuple

BRACKET_SIZE = 8
TOTAL_MATCHES = 15
GRAND_FINAL = 14
GRAND_FINAL_RESET = 15

ROUND_LABELS = {
    'winners_qf': 'Winners Quarter Final',
    'winners_sf': 'Winners Semi Final',
    'winners_final': 'Winners Final',
    'losers_r1': 'Losers Round 1',
    'losers_r2': 'Losers Round 2',
    'losers_sf': 'Losers Semi Final',
    'losers_final': 'Losers Final',
    'grand_final': 'Grand Final',
    'grand_final_reset': 'Grand Final Reset',
}

WINNERS_ROUNDS = ('winners_qf', 'winners_sf', 'winners_final')
LOSERS_ROUNDS = ('losers_r1', 'losers_r2', 'losers_sf', 'losers_final')
GRAND_FINAL_ROUNDS = ('grand_final', 'grand_final_reset')

# match_number -> (round, winner target, loser target)
# A target is (match_number, slot) where slot 1 is player1 and 2 is player2.
# Losers of the winners semis cross to the other half of the losers bracket
# so nobody replays their quarter-final opponent straight away.
BRACKET_TABLE = {
    1: ('winners_qf', (5, 1), (8, 1)),
    2: ('winners_qf', (5, 2), (8, 2)),
    3: ('winners_qf', (6, 1), (9, 1)),
    4: ('winners_qf', (6, 2), (9, 2)),
    5: ('winners_sf', (7, 1), (11, 1)),
    6: ('winners_sf', (7, 2), (10, 1)),
    7: ('winners_final', (14, 1), (13, 1)),
    8: ('losers_r1', (10, 2), None),
    9: ('losers_r1', (11, 2), None),
    10: ('losers_r2', (12, 1), None),
    11: ('losers_r2', (12, 2), None),
    12: ('losers_sf', (13, 2), None),
    13: ('losers_final', (14, 2), None),
    14: ('grand_final', None, None),
    15: ('grand_final_reset', None, None),
}

# Final placement of a player eliminated in each round.
ELIMINATION_PLACES = {
    'losers_r1': '7th-8th',
    'losers_r2': '5th-6th',
    'losers_sf': '4th',
    'losers_final': '3rd',
}


def get_round_label(round_key: str) -> str:
    """Human readable name for a round key; unknown keys are returned as-is."""
    return ROUND_LABELS.get(round_key, round_key)


def get_bracket_side(round_key: str) -> str:
    """Which part of the bracket a round belongs to."""
    if round_key in WINNERS_ROUNDS:
        return 'winners'
    if round_key in LOSERS_ROUNDS:
        return 'losers'
    if round_key in GRAND_FINAL_ROUNDS:
        return 'grand_final'
    raise ValueError(f'Unknown round: {round_key}')


def bracket_seed_order(bracket_size: int) -> List[int]:
    """
    Generate the standard tournament seed order.
    This ensures that if all higher seeds win, they meet in the proper rounds.

    For 8 players: [1, 8, 4, 5, 2, 7, 3, 6]
    This gives matchups: 1v8, 4v5, 2v7, 3v6
    Winners: 1v4 side, 2v3 side
    """
    if bracket_size < 2 or bracket_size & (bracket_size - 1):
        raise ValueError(f'Bracket size must be a power of two, got {bracket_size}')
    order = [1, 2]
    while len(order) < bracket_size:
        size = len(order) * 2
        order = [seed for s in order for seed in (s, size + 1 - s)]
    return order


def get_next_match_info(match_number: int) -> Dict:
    """
    Where the winner and loser of a slot go.

    Returns dict with:
    - 'round': round key of the slot
    - 'winner_goes_to' / 'winner_position': target slot and player slot (1 or 2)
    - 'loser_goes_to' / 'loser_position': same for the loser, None when the
      loser is eliminated
    """
    if match_number not in BRACKET_TABLE:
        raise ValueError(f'Match number must be between 1 and {TOTAL_MATCHES}, got {match_number}')
    round_key, winner_target, loser_target = BRACKET_TABLE[match_number]
    return {
        'round': round_key,
        'winner_goes_to': winner_target[0] if winner_target else None,
        'winner_position': winner_target[1] if winner_target else None,
        'loser_goes_to': loser_target[0] if loser_target else None,
        'loser_position': loser_target[1] if loser_target else None,
    }


def generate_bracket_structure(seeded_player_ids: List[str]) -> List[Dict]:
    """
    Build the 15 bracket slots from players ordered by seed.

    Args:
        seeded_player_ids: exactly 8 player ids, seed 1 first

    Returns list of match dicts ordered by match number. Only the winners
    quarter finals have players; every other slot is filled by advancement.
    """
    if len(seeded_player_ids) != BRACKET_SIZE:
        raise ValueError(f'Double elimination needs exactly {BRACKET_SIZE} players, got {len(seeded_player_ids)}')
    if len(set(seeded_player_ids)) != BRACKET_SIZE:
        raise ValueError('Seeded players must be distinct')

    order = bracket_seed_order(BRACKET_SIZE)
    matches = []
    for match_number in range(1, TOTAL_MATCHES + 1):
        info = get_next_match_info(match_number)
        match = {
            'match_number': match_number,
            'round': info['round'],
            'round_label': get_round_label(info['round']),
            'bracket': get_bracket_side(info['round']),
            'player1_id': None,
            'player2_id': None,
            'player1_seed': None,
            'player2_seed': None,
            'winner_goes_to': info['winner_goes_to'],
            'loser_goes_to': info['loser_goes_to'],
            'completed': False,
        }
        if info['round'] == 'winners_qf':
            seed1 = order[(match_number - 1) * 2]
            seed2 = order[(match_number - 1) * 2 + 1]
            match['player1_seed'] = seed1
            match['player2_seed'] = seed2
            match['player1_id'] = seeded_player_ids[seed1 - 1]
            match['player2_id'] = seeded_player_ids[seed2 - 1]
        matches.append(match)
    return matches


def _downstream(match_number: int) -> List[int]:
    info = get_next_match_info(match_number)
    targets = [t for t in (info['winner_goes_to'], info['loser_goes_to']) if t]
    if match_number == GRAND_FINAL:
        targets.append(GRAND_FINAL_RESET)
    return targets


def _place(matches: Dict[int, Dict], target: int, position: int, player_id: Optional[str]) -> Tuple[int, Dict]:
    key = 'player1_id' if position == 1 else 'player2_id'
    matches[target][key] = player_id
    return target, {key: player_id}


def advance_match(matches: Dict[int, Dict], match_number: int, winner_id: str,
                  loser_id: str) -> Tuple[Dict[int, Dict], Dict]:
    """
    Record the result of one slot and move both players on.

    Args:
        matches: match number -> match dict, updated in place
        match_number: slot that was just decided
        winner_id / loser_id: the two players of that slot

    Returns (updates, outcome):
    - updates: match number -> changed fields, for the caller to persist
    - outcome: {'is_complete', 'champion', 'needs_reset'}

    Raises ValueError if the players don't belong to the slot, and
    RuntimeError if a slot fed by this one has already been played (the
    result can no longer be corrected without unwinding the bracket).
    """
    match = matches[match_number]
    players = {match.get('player1_id'), match.get('player2_id')}
    if None in players:
        raise ValueError(f'Match {match_number} does not have both players yet')
    if {winner_id, loser_id} != players:
        raise ValueError(f'Winner and loser must be the players of match {match_number}')

    for target in _downstream(match_number):
        if matches[target].get('completed'):
            raise RuntimeError(
                f'Match {target} has already been played; match {match_number} can no longer change'
            )

    updates = {match_number: {'completed': True, 'winner_id': winner_id, 'loser_id': loser_id}}
    match.update(updates[match_number])
    outcome = {'is_complete': False, 'champion': None, 'needs_reset': False}

    if match_number == GRAND_FINAL:
        reset = matches[GRAND_FINAL_RESET]
        if winner_id == match['player2_id']:
            # Losers bracket champion handed out the first loss: play again.
            reset['player1_id'], reset['player2_id'] = winner_id, loser_id
            outcome['needs_reset'] = True
        else:
            reset['player1_id'], reset['player2_id'] = None, None
            outcome['is_complete'] = True
            outcome['champion'] = winner_id
        updates[GRAND_FINAL_RESET] = {'player1_id': reset['player1_id'], 'player2_id': reset['player2_id']}
        return updates, outcome

    if match_number == GRAND_FINAL_RESET:
        outcome['is_complete'] = True
        outcome['champion'] = winner_id
        return updates, outcome

    info = get_next_match_info(match_number)
    target, fields = _place(matches, info['winner_goes_to'], info['winner_position'], winner_id)
    updates.setdefault(target, {}).update(fields)
    if info['loser_goes_to']:
        target, fields = _place(matches, info['loser_goes_to'], info['loser_position'], loser_id)
        updates.setdefault(target, {}).update(fields)
    return updates, outcome


def group_bracket(matches: List[Dict], number_key: str = 'match_number') -> Dict[str, List[Dict]]:
    """Split slots into winners / losers / grandFinal lists by match number."""
    grouped = {'winners': [], 'losers': [], 'grandFinal': []}
    for match in sorted(matches, key=lambda m: m[number_key]):
        side = get_bracket_side(match['round'])
        grouped['grandFinal' if side == 'grand_final' else side].append(match)
    return grouped


def calculate_final_standings(matches: List[Dict]) -> List[Dict]:
    """
    Placements decided so far.

    Returns list of {'place', 'player_id'} for eliminated players and, once
    the bracket is complete, the champion and runner-up.
    """
    by_number = {m['match_number']: m for m in matches}
    standings = []
    for number in sorted(by_number, reverse=True):
        match = by_number[number]
        if not match.get('completed'):
            continue
        place = ELIMINATION_PLACES.get(match['round'])
        if place:
            standings.append({'place': place, 'player_id': match.get('loser_id')})

    final = by_number.get(GRAND_FINAL)
    reset = by_number.get(GRAND_FINAL_RESET)
    decider = None
    if reset and reset.get('completed'):
        decider = reset
    elif final and final.get('completed') and final.get('winner_id') == final.get('player1_id'):
        decider = final
    if decider:
        standings = [
            {'place': '1st', 'player_id': decider['winner_id']},
            {'place': '2nd', 'player_id': decider['loser_id']},
        ] + standings
    return standings
