"""
Flask web application for the kart league scoreboard.
"""
import os
import logging
from datetime import datetime, timezone
from functools import wraps
import click
from filelock import FileLock
from flask import Flask, Response, jsonify, request, session
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from league.audit_log import AUDIT_ACTIONS, create_audit_log
from league.cache import create_standings_cache
from league.config import get_or_create_secret_key, load_config
from league.double_elimination import (
    BRACKET_SIZE, advance_match, calculate_final_standings, generate_bracket_structure,
    get_bracket_side, get_next_match_info, get_round_label, group_bracket,
)
from league.errors import (
    ApiError, authentication_error, authorization_error, create_safe_error, error_response,
    handle_database_error, not_found_error, rate_limit_error, sanitize_error, success_response,
    validation_error,
)
from league.event_types import EVENT_TYPES, SMK_CHARACTERS, aggregate_player_stats, generate_round_robin
from league.export import (
    CSV_MIMETYPE, XLSX_MIMETYPE, build_filename, matches_section, qualification_section,
    time_attack_section, to_csv, to_xlsx,
)
from league.models import (
    FINALS, QUALIFICATION, MatchCharacterUsage, Player, ScoreEntryLog, Tournament, TTEntry,
    TTPhaseRound, User, db, isoformat, utcnow,
)
from league.optimistic_locking import OptimisticLockError, update_match_score, update_tt_entry, update_with_retry
from league.pagination import build_meta, get_pagination_params, paginate
from league.points import calculate_overall_ranking, calculate_qualification_points, place_to_position
from league.rate_limit import create_rate_limiter, get_client_identifier, get_user_agent
from league.security import (
    generate_secure_password, hash_password, sanitize_input, sanitize_string, verify_password,
)
from league.soft_delete import find_by_id, is_deleted, restore, soft_delete, with_deleted
from league.ta_phases import (
    PHASES, PhaseError, cancel_round, get_finals_positions, get_phase_status, promote_to_phase,
    recalculate_ranks, start_round, submit_results,
)
from league.time_attack import COURSES, QUALIFICATION_STAGE, is_valid_time, ms_to_display_time
from league.tokens import (
    MISSING_TOKEN, SUCCESS, TOURNAMENT_NOT_FOUND, VALIDATION_MESSAGES, check_tournament_token,
    extend_token_expiry, generate_tournament_token, get_token_expiry, get_token_time_remaining,
    is_token_valid, validate_expiry_hours,
)

app = Flask(__name__)

CONFIG = load_config()
DATA_DIR = CONFIG['DATA_DIR']

app.secret_key = get_or_create_secret_key(CONFIG)
app.config['SQLALCHEMY_DATABASE_URI'] = CONFIG['DATABASE_URL']
app.logger.setLevel(CONFIG['LOG_LEVEL'])
logging.getLogger('league').setLevel(CONFIG['LOG_LEVEL'])

db.init_app(app)

rate_limiter = create_rate_limiter(CONFIG)
standings_cache = create_standings_cache(CONFIG)
STATS_SINCE = utcnow()

TOURNAMENT_STATUSES = ('draft', 'active', 'completed')
TA_STAGES = (QUALIFICATION_STAGE,) + PHASES
TA_CACHE_STAGE = 'ta'


def init_db():
    """Create missing tables. File databases are guarded so only one worker creates them."""
    with app.app_context():
        if CONFIG['DATABASE_URL'].startswith('sqlite:///'):
            os.makedirs(DATA_DIR, exist_ok=True)
            with FileLock(os.path.join(DATA_DIR, '.db.lock'), timeout=10):
                db.create_all()
        else:
            db.create_all()


init_db()


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def admin_required(f):
    """Reject the request unless an admin is logged in."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return authentication_error()
        if session.get('role') != 'admin':
            return authorization_error('Admin access required')
        return f(*args, **kwargs)
    return decorated_function


def login_required(f):
    """Require a logged-in user account (admin or member)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return authentication_error()
        return f(*args, **kwargs)
    return decorated_function


def is_admin() -> bool:
    return session.get('role') == 'admin'


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ApiError('Request body must be a JSON object', 400, 'VALIDATION_ERROR')
    return data


def _request_context() -> dict:
    return {
        'user_id': session.get('user_id') or session.get('player_id'),
        'ip_address': get_client_identifier(request),
        'user_agent': get_user_agent(request),
    }


def audit(action: str, target_id=None, target_type=None, details=None):
    create_audit_log(action, target_id=target_id, target_type=target_type, details=details,
                     **_request_context())


def _check_rate_limit(limit_type: str):
    """A 429 response when the client is over ``limit_type``, else None."""
    result = rate_limiter.check_type(limit_type, get_client_identifier(request))
    if not result.success:
        app.logger.warning(f'Rate limit {limit_type} exceeded by {get_client_identifier(request)}')
        return rate_limit_error(result.retry_after)
    return None


def _get_tournament(tournament_id: str) -> Tournament:
    tournament = find_by_id(Tournament, tournament_id)
    if tournament is None:
        raise ApiError('Tournament not found', 404, 'NOT_FOUND')
    return tournament


def _request_token(body=None):
    return (request.args.get('token')
            or request.headers.get('X-Tournament-Token')
            or (body or {}).get('token'))


def _validate_token(tournament_id: str, token) -> str:
    """Check a participant token against a tournament and audit the attempt."""
    tournament = find_by_id(Tournament, tournament_id)
    result = check_tournament_token(tournament, token)
    audit(AUDIT_ACTIONS.TOKEN_VALIDATION, tournament_id, 'Tournament', {'result': result})
    if result != SUCCESS:
        app.logger.info(f'Token validation for tournament {tournament_id} failed: {result}')
    return result


def _non_negative_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ApiError(f'{name} must be a non-negative integer', 400, 'VALIDATION_ERROR', {'field': name})
    return value


def _parse_date(value) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ApiError('date is required', 400, 'VALIDATION_ERROR', {'field': 'date'})
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise ApiError('date must be an ISO 8601 date', 400, 'VALIDATION_ERROR', {'field': 'date'}) from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _reuse_or_create(model, values: dict, **keys):
    """The row identified by ``keys``, deleted or not, reset to ``values``; created if missing."""
    row = db.session.execute(with_deleted(select(model).filter_by(**keys))).scalar_one_or_none()
    if row is None:
        row = model(**keys)
        db.session.add(row)
    row.deleted_at = None
    for key, value in values.items():
        setattr(row, key, value)
    return row


def _soft_delete_where(model, *where):
    db.session.execute(
        update(model).where(model.deleted_at.is_(None), *where).values(deleted_at=utcnow()),
        execution_options={'synchronize_session': 'fetch'},
    )


def _file_response(content, mimetype: str, filename: str) -> Response:
    response = Response(content, mimetype=mimetype)
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


def _standings_response(tournament_id: str, stage: str, build):
    """Paginated standings from the cache, answering 304 when the client's ETag matches."""
    entry = standings_cache.get_fresh(tournament_id, stage)
    if entry is None:
        entry = standings_cache.set(tournament_id, stage, build())

    if request.headers.get('If-None-Match', '').strip('"') == entry['etag']:
        response = Response(status=304)
        response.set_etag(entry['etag'])
        return response

    page, limit, offset = get_pagination_params(request.args.get('page'), request.args.get('limit'))
    rows = entry['data']
    response = jsonify({
        'success': True,
        'data': rows[offset:offset + limit],
        'meta': build_meta(len(rows), page, limit),
        'lastUpdated': datetime.fromtimestamp(entry['last_updated'], timezone.utc).isoformat(),
    })
    response.set_etag(entry['etag'])
    return response


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(ApiError)
def handle_api_error(error):
    db.session.rollback()
    return error.to_response()


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        if request.path.startswith('/api/'):
            return error_response(error.description, error.code, error.name.upper().replace(' ', '_'))
        return error
    db.session.rollback()
    app.logger.exception(f'Unhandled error on {request.method} {request.path}: {sanitize_error(error)}')
    safe = create_safe_error(error, 'An unexpected error occurred', debug=app.debug)
    return error_response(safe['message'], 500, safe['code'], {'timestamp': safe['timestamp']})


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@app.cli.command('create-admin')
@click.option('--username', help='Username for the admin account')
@click.option('--password', help='Password for the admin account')
def create_admin(username, password):
    """Create an admin account, or promote an existing user to admin."""
    if not username:
        username = click.prompt('Admin username', default='admin')
    if not password:
        password = click.prompt('Password', hide_input=True, confirmation_prompt=True)
    username = username.lower().strip()
    user = db.session.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None:
        user = User(username=username, password_hash=hash_password(password), role='admin')
        db.session.add(user)
        click.echo(f'Admin {username} created.')
    else:
        user.password_hash = hash_password(password)
        user.role = 'admin'
        click.echo(f'User {username} updated to admin.')
    db.session.commit()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@app.route('/api/auth/login', methods=['POST'])
def api_login():
    """Log an admin or member account in."""
    limited = _check_rate_limit('general')
    if limited:
        return limited
    data = _json_body()
    username = str(data.get('username') or '').lower().strip()
    password = data.get('password') or ''
    if not username or not password:
        return validation_error('Username and password are required')

    user = db.session.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None or not verify_password(password, user.password_hash):
        audit(AUDIT_ACTIONS.LOGIN_FAILURE, details={'username': username})
        app.logger.info(f'Failed login for {username}')
        return authentication_error('Invalid username or password')

    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role
    player = db.session.execute(select(Player).where(Player.user_id == user.id)).scalar_one_or_none()
    if player is not None:
        session['player_id'] = player.id
    audit(AUDIT_ACTIONS.LOGIN_SUCCESS, user.id, 'User')
    return success_response(user.to_dict(), 'Logged in')


@app.route('/api/auth/player-login', methods=['POST'])
def api_player_login():
    """Log a player in with nickname and the password handed out at registration."""
    limited = _check_rate_limit('general')
    if limited:
        return limited
    data = _json_body()
    nickname = str(data.get('nickname') or '').strip()
    password = data.get('password') or ''
    if not nickname or not password:
        return validation_error('Nickname and password are required')

    player = db.session.execute(select(Player).where(Player.nickname == nickname)).scalar_one_or_none()
    if player is None or not verify_password(password, player.password):
        audit(AUDIT_ACTIONS.LOGIN_FAILURE, details={'nickname': nickname, 'type': 'player'})
        return authentication_error('Invalid nickname or password')

    session.clear()
    session['player_id'] = player.id
    session['nickname'] = player.nickname
    session['role'] = 'player'
    audit(AUDIT_ACTIONS.LOGIN_SUCCESS, player.id, 'Player')
    return success_response(player.summary(), 'Logged in')


@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    session.clear()
    return success_response(None, 'Logged out')


@app.route('/api/auth/session-status', methods=['GET'])
def api_session_status():
    if 'user_id' not in session and 'player_id' not in session:
        return jsonify({'success': True, 'authenticated': False, 'user': None})
    return jsonify({
        'success': True,
        'authenticated': True,
        'user': {
            'id': session.get('user_id'),
            'username': session.get('username'),
            'role': session.get('role'),
            'playerId': session.get('player_id'),
            'nickname': session.get('nickname'),
        },
    })


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------

def _get_player(player_id: str, include_deleted: bool = False) -> Player:
    player = find_by_id(Player, player_id, include_deleted=include_deleted)
    if player is None:
        raise ApiError('Player not found', 404, 'NOT_FOUND')
    return player


def _nickname_taken(nickname: str, exclude_id=None) -> bool:
    stmt = with_deleted(select(Player.id).where(Player.nickname == nickname))
    if exclude_id:
        stmt = stmt.where(Player.id != exclude_id)
    return db.session.execute(stmt).first() is not None


@app.route('/api/players', methods=['GET'])
def api_list_players():
    include_deleted = request.args.get('includeDeleted') == 'true'
    if include_deleted and not is_admin():
        return authorization_error('Admin access required')
    result = paginate(Player, order_by=(Player.nickname,), page=request.args.get('page'),
                      limit=request.args.get('limit'), include_deleted=include_deleted)
    return jsonify({'success': True, **result})


@app.route('/api/players', methods=['POST'])
@admin_required
def api_create_player():
    """Register a player. The generated password is only returned here."""
    data = _json_body()
    name = sanitize_string(str(data.get('name') or ''))
    nickname = sanitize_string(str(data.get('nickname') or ''))
    if not name or not nickname:
        return validation_error('Name and nickname are required')
    if _nickname_taken(nickname):
        return error_response('A player with this nickname already exists', 409, 'CONFLICT')

    password = generate_secure_password()
    country = data.get('country')
    player = Player(
        name=name,
        nickname=nickname,
        country=sanitize_string(str(country)) if country else None,
        password=hash_password(password),
    )
    db.session.add(player)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        return handle_database_error(e, 'create player')
    audit(AUDIT_ACTIONS.CREATE_PLAYER, player.id, 'Player', {'nickname': nickname})
    app.logger.info(f'Created player {nickname}')
    return success_response({'player': player.to_dict(), 'temporaryPassword': password},
                            'Player created', 201)


@app.route('/api/players/<player_id>', methods=['GET'])
def api_get_player(player_id):
    return success_response(_get_player(player_id).to_dict())


@app.route('/api/players/<player_id>', methods=['PUT'])
@admin_required
def api_update_player(player_id):
    player = _get_player(player_id)
    data = _json_body()
    changes = {}
    for field in ('name', 'nickname', 'country'):
        if field in data:
            value = data[field]
            changes[field] = sanitize_string(str(value)) if value else None
    if 'name' in changes and not changes['name']:
        return validation_error('Name cannot be empty', 'name')
    if 'nickname' in changes:
        if not changes['nickname']:
            return validation_error('Nickname cannot be empty', 'nickname')
        if _nickname_taken(changes['nickname'], exclude_id=player.id):
            return error_response('A player with this nickname already exists', 409, 'CONFLICT')
    for field, value in changes.items():
        setattr(player, field, value)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        return handle_database_error(e, 'update player')
    audit(AUDIT_ACTIONS.UPDATE_PLAYER, player.id, 'Player', changes)
    return success_response(player.to_dict())


@app.route('/api/players/<player_id>', methods=['DELETE'])
@admin_required
def api_delete_player(player_id):
    player = _get_player(player_id)
    soft_delete(player)
    audit(AUDIT_ACTIONS.DELETE_PLAYER, player.id, 'Player', {'nickname': player.nickname})
    return success_response(None, 'Player deleted')


@app.route('/api/players/<player_id>/restore', methods=['POST'])
@admin_required
def api_restore_player(player_id):
    player = _get_player(player_id, include_deleted=True)
    if not is_deleted(player):
        return validation_error('Player is not deleted')
    restore(player)
    audit(AUDIT_ACTIONS.RESTORE_PLAYER, player.id, 'Player', {'nickname': player.nickname})
    return success_response(player.to_dict(), 'Player restored')


@app.route('/api/players/<player_id>/link', methods=['POST'])
@login_required
def api_link_player(player_id):
    """Link the logged-in account to a player profile."""
    player = _get_player(player_id)
    user_id = session['user_id']
    if player.user_id and player.user_id != user_id:
        return error_response('Player is already linked to another account', 409, 'CONFLICT')
    linked = db.session.execute(
        select(Player).where(Player.user_id == user_id, Player.id != player.id)
    ).scalar_one_or_none()
    if linked is not None:
        return error_response('Your account is already linked to another player', 409, 'CONFLICT')
    player.user_id = user_id
    db.session.commit()
    session['player_id'] = player.id
    audit(AUDIT_ACTIONS.UPDATE_PLAYER, player.id, 'Player', {'linkedUserId': user_id})
    return success_response(player.to_dict(), 'Player linked')


@app.route('/api/players/<player_id>/character-stats', methods=['GET'])
def api_character_stats(player_id):
    """How often a player picked each character in reported matches."""
    player = _get_player(player_id)
    rows = db.session.execute(
        select(MatchCharacterUsage.character, func.count())
        .where(MatchCharacterUsage.player_id == player.id)
        .group_by(MatchCharacterUsage.character)
        .order_by(func.count().desc(), MatchCharacterUsage.character)
    ).all()
    total = sum(count for _, count in rows)
    stats = [{
        'character': character,
        'matchCount': count,
        'percentage': round(100 * count / total, 1) if total else 0,
    } for character, count in rows]
    return success_response({
        'playerId': player.id,
        'nickname': player.nickname,
        'totalMatches': total,
        'characterStats': stats,
        'mostUsedCharacter': stats[0]['character'] if stats else None,
    })


# ---------------------------------------------------------------------------
# Tournaments
# ---------------------------------------------------------------------------

@app.route('/api/tournaments', methods=['GET'])
def api_list_tournaments():
    include_deleted = request.args.get('includeDeleted') == 'true'
    if include_deleted and not is_admin():
        return authorization_error('Admin access required')
    result = paginate(Tournament, order_by=(Tournament.date.desc(),), page=request.args.get('page'),
                      limit=request.args.get('limit'), include_deleted=include_deleted)
    return jsonify({'success': True, **result})


@app.route('/api/tournaments', methods=['POST'])
@admin_required
def api_create_tournament():
    data = _json_body()
    name = sanitize_string(str(data.get('name') or ''))
    if not name:
        return validation_error('Name is required', 'name')
    tournament = Tournament(name=name, date=_parse_date(data.get('date')), frozen_stages=[])
    status = data.get('status', 'draft')
    if status not in TOURNAMENT_STATUSES:
        return validation_error(f'Status must be one of: {", ".join(TOURNAMENT_STATUSES)}', 'status')
    tournament.status = status
    db.session.add(tournament)
    db.session.commit()
    audit(AUDIT_ACTIONS.CREATE_TOURNAMENT, tournament.id, 'Tournament', {'name': name})
    app.logger.info(f'Created tournament {name} ({tournament.id})')
    return success_response(tournament.to_dict(include_token=True), 'Tournament created', 201)


@app.route('/api/tournaments/<tournament_id>', methods=['GET'])
def api_get_tournament(tournament_id):
    return success_response(_get_tournament(tournament_id).to_dict(include_token=is_admin()))


@app.route('/api/tournaments/<tournament_id>', methods=['PUT'])
@admin_required
def api_update_tournament(tournament_id):
    tournament = _get_tournament(tournament_id)
    data = _json_body()
    changes = {}
    if 'name' in data:
        name = sanitize_string(str(data.get('name') or ''))
        if not name:
            return validation_error('Name cannot be empty', 'name')
        tournament.name = changes['name'] = name
    if 'date' in data:
        tournament.date = _parse_date(data['date'])
        changes['date'] = isoformat(tournament.date)
    if 'status' in data:
        if data['status'] not in TOURNAMENT_STATUSES:
            return validation_error(f'Status must be one of: {", ".join(TOURNAMENT_STATUSES)}', 'status')
        tournament.status = changes['status'] = data['status']
    db.session.commit()
    audit(AUDIT_ACTIONS.UPDATE_TOURNAMENT, tournament.id, 'Tournament', changes)
    return success_response(tournament.to_dict(include_token=True))


@app.route('/api/tournaments/<tournament_id>', methods=['DELETE'])
@admin_required
def api_delete_tournament(tournament_id):
    tournament = _get_tournament(tournament_id)
    soft_delete(tournament)
    standings_cache.invalidate(tournament.id)
    audit(AUDIT_ACTIONS.DELETE_TOURNAMENT, tournament.id, 'Tournament', {'name': tournament.name})
    return success_response(None, 'Tournament deleted')


@app.route('/api/tournaments/<tournament_id>/restore', methods=['POST'])
@admin_required
def api_restore_tournament(tournament_id):
    tournament = find_by_id(Tournament, tournament_id, include_deleted=True)
    if tournament is None:
        return not_found_error('Tournament')
    if not is_deleted(tournament):
        return validation_error('Tournament is not deleted')
    restore(tournament)
    audit(AUDIT_ACTIONS.RESTORE_TOURNAMENT, tournament.id, 'Tournament', {'name': tournament.name})
    return success_response(tournament.to_dict(include_token=True), 'Tournament restored')


# ---------------------------------------------------------------------------
# Tournament tokens
# ---------------------------------------------------------------------------

def _token_status(tournament: Tournament) -> dict:
    return {
        'token': tournament.token,
        'tokenExpiresAt': isoformat(tournament.token_expires_at),
        'isActive': is_token_valid(tournament.token, tournament.token_expires_at),
        'timeRemaining': get_token_time_remaining(tournament.token_expires_at),
    }


def _expiry_hours(data: dict) -> int:
    try:
        return validate_expiry_hours(data.get('expiresInHours', CONFIG['TOKEN_DEFAULT_HOURS']))
    except ValueError as e:
        raise ApiError(str(e), 400, 'VALIDATION_ERROR', {'field': 'expiresInHours'}) from None


@app.route('/api/tournaments/<tournament_id>/token', methods=['GET'])
@admin_required
def api_token_status(tournament_id):
    return success_response(_token_status(_get_tournament(tournament_id)))


@app.route('/api/tournaments/<tournament_id>/token', methods=['POST'])
@admin_required
def api_regenerate_token(tournament_id):
    tournament = _get_tournament(tournament_id)
    hours = _expiry_hours(_json_body())
    tournament.token = generate_tournament_token()
    tournament.token_expires_at = get_token_expiry(hours)
    db.session.commit()
    audit(AUDIT_ACTIONS.REGENERATE_TOKEN, tournament.id, 'Tournament', {'expiresInHours': hours})
    return success_response(_token_status(tournament), 'Token regenerated')


@app.route('/api/tournaments/<tournament_id>/token/extend', methods=['POST'])
@admin_required
def api_extend_token(tournament_id):
    tournament = _get_tournament(tournament_id)
    if not tournament.token:
        return validation_error('Tournament has no active token')
    hours = _expiry_hours(_json_body())
    tournament.token_expires_at = extend_token_expiry(tournament.token_expires_at, hours)
    db.session.commit()
    audit(AUDIT_ACTIONS.EXTEND_TOKEN, tournament.id, 'Tournament', {'extendedByHours': hours})
    return success_response(_token_status(tournament), f'Token extended by {hours} hours')


@app.route('/api/tournaments/<tournament_id>/token', methods=['DELETE'])
@admin_required
def api_invalidate_token(tournament_id):
    tournament = _get_tournament(tournament_id)
    tournament.token = None
    tournament.token_expires_at = None
    db.session.commit()
    audit(AUDIT_ACTIONS.INVALIDATE_TOKEN, tournament.id, 'Tournament')
    return success_response(None, 'Token invalidated')


@app.route('/api/tournaments/<tournament_id>/token/validate', methods=['POST'])
def api_validate_token(tournament_id):
    limited = _check_rate_limit('tokenValidation')
    if limited:
        return limited
    result = _validate_token(tournament_id, _request_token(_json_body()))
    if result == TOURNAMENT_NOT_FOUND:
        return not_found_error('Tournament')
    if result != SUCCESS:
        return error_response(VALIDATION_MESSAGES[result], 401, result)
    tournament = find_by_id(Tournament, tournament_id)
    return success_response({
        'valid': True,
        'tournamentId': tournament.id,
        'tournamentName': tournament.name,
        'tokenExpiresAt': isoformat(tournament.token_expires_at),
        'timeRemaining': get_token_time_remaining(tournament.token_expires_at),
    })


@app.route('/api/tournaments/<tournament_id>/score-entry-logs', methods=['GET'])
@admin_required
def api_score_entry_logs(tournament_id):
    _get_tournament(tournament_id)
    where = [ScoreEntryLog.tournament_id == tournament_id]
    if request.args.get('matchId'):
        where.append(ScoreEntryLog.match_id == request.args['matchId'])
    if request.args.get('matchType'):
        where.append(ScoreEntryLog.match_type == request.args['matchType'].lower())
    result = paginate(ScoreEntryLog, where=where, order_by=(ScoreEntryLog.timestamp.desc(),),
                      page=request.args.get('page'), limit=request.args.get('limit'))
    return jsonify({'success': True, **result})


# ---------------------------------------------------------------------------
# BM / MR / GP
# ---------------------------------------------------------------------------

def _blank_match_values(config) -> dict:
    values = {
        config.score_fields[0]: 0,
        config.score_fields[1]: 0,
        config.detail_field: None,
        'completed': False,
        'round': None,
        'tv_number': None,
        'player1_side': 1,
        'player2_side': 2,
    }
    for side in (1, 2):
        for field in config.reported_fields(side):
            values[field] = None
    if hasattr(config.match_model, 'cup'):
        values['cup'] = None
    return values


def _qualifications(config, tournament_id: str, order_by=None):
    model = config.qualification_model
    stmt = select(model).where(model.tournament_id == tournament_id)
    stmt = stmt.order_by(*(order_by if order_by is not None else config.qualification_order_by()))
    return list(db.session.execute(stmt).scalars())


def _stage_matches(config, tournament_id: str, stage: str):
    model = config.match_model
    stmt = (select(model)
            .where(model.tournament_id == tournament_id, model.stage == stage)
            .order_by(model.match_number))
    return list(db.session.execute(stmt).scalars())


def _load_match(config, tournament_id: str, match_id: str, stage=None, refresh: bool = False):
    model = config.match_model
    stmt = select(model).where(model.id == match_id, model.tournament_id == tournament_id)
    if stage:
        stmt = stmt.where(model.stage == stage)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    match = db.session.execute(stmt).scalar_one_or_none()
    if match is None:
        raise ApiError('Match not found', 404, 'NOT_FOUND')
    return match


def _recalculate_player_stats(config, tournament_id: str, player_id):
    """Rebuild one player's qualification row from their completed matches."""
    if not player_id:
        return
    model = config.match_model
    matches = db.session.execute(select(model).where(
        model.tournament_id == tournament_id,
        model.stage == QUALIFICATION,
        model.completed.is_(True),
        or_(model.player1_id == player_id, model.player2_id == player_id),
    )).scalars().all()
    stats = aggregate_player_stats(config, matches, player_id)
    qual_model = config.qualification_model
    qualification = db.session.execute(select(qual_model).where(
        qual_model.tournament_id == tournament_id, qual_model.player_id == player_id,
    )).scalar_one_or_none()
    if qualification is not None:
        for key, value in stats.items():
            setattr(qualification, key, value)


def _bracket_state(config, matches) -> dict:
    """Finals rows as the dicts the bracket logic works on, keyed by match number."""
    state = {}
    for m in matches:
        row = {
            'match_number': m.match_number,
            'round': m.round,
            'player1_id': m.player1_id,
            'player2_id': m.player2_id,
            'completed': m.completed,
            'winner_id': None,
            'loser_id': None,
        }
        if m.completed:
            winner = config.finals_result(*config.scores_of(m))
            if winner == 1:
                row['winner_id'], row['loser_id'] = m.player1_id, m.player2_id
            elif winner == 2:
                row['winner_id'], row['loser_id'] = m.player2_id, m.player1_id
        state[m.match_number] = row
    return state


def _complete_finals_match(config, tournament_id: str, match, score1: int, score2: int, detail=None):
    """Score a finals slot and move both players through the bracket."""
    winner_side = config.finals_result(score1, score2)
    if winner_side is None:
        raise ApiError(config.finals_error, 400, 'VALIDATION_ERROR')
    if winner_side == 1:
        winner_id, loser_id = match.player1_id, match.player2_id
    else:
        winner_id, loser_id = match.player2_id, match.player1_id

    finals = _stage_matches(config, tournament_id, FINALS)
    by_number = {m.match_number: m for m in finals}
    try:
        updates, outcome = advance_match(_bracket_state(config, finals), match.match_number, winner_id, loser_id)
    except RuntimeError as e:
        raise ApiError(str(e), 409, 'CONFLICT') from None
    except ValueError as e:
        raise ApiError(str(e), 400, 'VALIDATION_ERROR') from None

    setattr(match, config.score_fields[0], score1)
    setattr(match, config.score_fields[1], score2)
    if detail is not None:
        setattr(match, config.detail_field, detail)
    match.completed = True
    for number, fields in updates.items():
        target = by_number.get(number)
        if target is None or number == match.match_number:
            continue
        for key in ('player1_id', 'player2_id'):
            if key in fields:
                setattr(target, key, fields[key])
    return {'winnerId': winner_id, 'loserId': loser_id,
            'isComplete': outcome['is_complete'], 'champion': outcome['champion'],
            'needsReset': outcome['needs_reset']}


def _finals_row(m) -> dict:
    row = m.to_dict()
    info = get_next_match_info(m.match_number)
    row.update({
        'roundLabel': get_round_label(m.round),
        'bracket': get_bracket_side(m.round),
        'winnerGoesTo': info['winner_goes_to'],
        'loserGoesTo': info['loser_goes_to'],
    })
    return row


def _finals_standings(config, finals) -> list:
    players = {}
    for m in finals:
        for p in (m.player1, m.player2):
            if p is not None:
                players[p.id] = p.summary()
    return [{'place': s['place'], 'playerId': s['player_id'], 'player': players.get(s['player_id'])}
            for s in calculate_final_standings(list(_bracket_state(config, finals).values()))]


def _champion(standings: list):
    return next((s['playerId'] for s in standings if s['place'] == '1st'), None)


def _mode_finals_positions(config, tournament_id: str) -> dict:
    finals = _stage_matches(config, tournament_id, FINALS)
    standings = calculate_final_standings(list(_bracket_state(config, finals).values()))
    return {s['player_id']: place_to_position(s['place']) for s in standings if s['player_id']}


def register_event_routes(config):
    """Register the qualification, match, report, standings, finals and export routes of one mode."""
    code = config.code
    base = f'/api/tournaments/<tournament_id>/{code}'
    match_model = config.match_model
    qual_model = config.qualification_model
    field1, field2 = config.score_fields

    def get_qualification(tournament_id):
        _get_tournament(tournament_id)
        return success_response({
            'qualifications': [q.to_dict() for q in _qualifications(config, tournament_id)],
            'matches': [m.to_dict() for m in _stage_matches(config, tournament_id, QUALIFICATION)],
        })

    @admin_required
    def setup_qualification(tournament_id):
        """Replace the groups with the posted players and pair everyone in a round robin."""
        _get_tournament(tournament_id)
        players = _json_body().get('players')
        if not isinstance(players, list) or not players:
            return validation_error('Players array is required', 'players')
        seen = set()
        for p in players:
            if not isinstance(p, dict) or not p.get('playerId') or not p.get('group'):
                return validation_error('Each player needs playerId and group', 'players')
            if p['playerId'] in seen:
                return validation_error(f'Player {p["playerId"]} is listed twice', 'players')
            seen.add(p['playerId'])
            if find_by_id(Player, p['playerId']) is None:
                return validation_error(f'Player {p["playerId"]} not found', 'players')

        _soft_delete_where(qual_model, qual_model.tournament_id == tournament_id)
        _soft_delete_where(match_model, match_model.tournament_id == tournament_id,
                           match_model.stage == QUALIFICATION)
        for p in players:
            values = {'group': str(p['group']), 'seeding': p.get('seeding'), 'mp': 0, 'wins': 0,
                      'ties': 0, 'losses': 0, 'points': 0, 'score': 0}
            if hasattr(qual_model, 'win_rounds'):
                values.update(win_rounds=0, loss_rounds=0)
            _reuse_or_create(qual_model, values, tournament_id=tournament_id, player_id=p['playerId'])

        pairings = generate_round_robin(players)
        for pairing in pairings:
            values = _blank_match_values(config)
            values.update(player1_id=pairing['player1_id'], player2_id=pairing['player2_id'])
            _reuse_or_create(match_model, values, tournament_id=tournament_id,
                             match_number=pairing['match_number'], stage=QUALIFICATION)
        db.session.commit()
        standings_cache.invalidate(tournament_id, code)
        audit(config.audit_action, tournament_id, 'Tournament',
              {'mode': code, 'players': len(players), 'matches': len(pairings)})
        app.logger.info(f'{config.setup_message} for tournament {tournament_id}: '
                        f'{len(players)} players, {len(pairings)} matches')
        return success_response({
            'qualifications': [q.to_dict() for q in _qualifications(config, tournament_id)],
            'matches': [m.to_dict() for m in _stage_matches(config, tournament_id, QUALIFICATION)],
        }, config.setup_message, 201)

    @admin_required
    def update_qualification_match(tournament_id):
        _get_tournament(tournament_id)
        try:
            parsed = config.parse_put(_json_body())
        except ValueError as e:
            return validation_error(str(e))

        def _apply():
            match = _load_match(config, tournament_id, parsed['match_id'], QUALIFICATION, refresh=True)
            setattr(match, field1, parsed['score1'])
            setattr(match, field2, parsed['score2'])
            setattr(match, config.detail_field, parsed['detail'])
            if 'cup' in parsed:
                match.cup = parsed['cup']
            match.completed = True
            db.session.flush()
            _recalculate_player_stats(config, tournament_id, match.player1_id)
            _recalculate_player_stats(config, tournament_id, match.player2_id)
            return match

        match = update_with_retry(_apply)
        standings_cache.invalidate(tournament_id, code)
        audit(getattr(AUDIT_ACTIONS, f'UPDATE_{code.upper()}_MATCH'), match.id, match_model.__name__,
              {field1: parsed['score1'], field2: parsed['score2']})
        return success_response({'match': match.to_dict(),
                                 'result': config.match_result(parsed['score1'], parsed['score2'])})

    def poll_matches(tournament_id):
        """Qualification matches for participants holding the tournament token."""
        limited = _check_rate_limit('polling')
        if limited:
            return limited
        result = _validate_token(tournament_id, _request_token())
        if result == MISSING_TOKEN:
            return authentication_error('Token required')
        if result == TOURNAMENT_NOT_FOUND:
            return not_found_error('Tournament')
        if result != SUCCESS:
            return authentication_error('Invalid or expired token')
        page = paginate(match_model,
                        where=(match_model.tournament_id == tournament_id, match_model.stage == QUALIFICATION),
                        order_by=(match_model.match_number,),
                        page=request.args.get('page'), limit=request.args.get('limit'))
        return jsonify({'success': True, **page})

    def get_match(tournament_id, match_id):
        return success_response(_load_match(config, tournament_id, match_id).to_dict())

    @admin_required
    def update_match(tournament_id, match_id):
        """Admin score correction guarded by the version the client last saw."""
        data = _json_body()
        if data.get(field1) is None or data.get(field2) is None:
            return validation_error(f'{field1} and {field2} are required')
        score1 = _non_negative_int(data[field1], field1)
        score2 = _non_negative_int(data[field2], field2)
        version = data.get('version')
        if version is None:
            return validation_error('version is required', 'version')
        if isinstance(version, bool) or not isinstance(version, int):
            return validation_error('version must be a number', 'version')

        match = _load_match(config, tournament_id, match_id)
        if match.stage == FINALS:
            return _correct_finals_match(tournament_id, match.id, version, score1, score2,
                                         data.get(config.detail_field))
        try:
            match = update_match_score(match_model, match.id, version, score1, score2,
                                       completed=bool(data.get('completed', True)),
                                       detail=data.get(config.detail_field),
                                       score_fields=config.score_fields,
                                       detail_field=config.detail_field)
        except OptimisticLockError as e:
            return error_response(e.message, 409, 'VERSION_CONFLICT', {'currentVersion': e.current_version})
        except LookupError:
            return not_found_error('Match')

        if match.stage == QUALIFICATION:
            _recalculate_player_stats(config, tournament_id, match.player1_id)
            _recalculate_player_stats(config, tournament_id, match.player2_id)
            db.session.commit()
            standings_cache.invalidate(tournament_id, code)
        audit(getattr(AUDIT_ACTIONS, f'UPDATE_{code.upper()}_MATCH'), match.id, match_model.__name__,
              {field1: score1, field2: score2, 'version': match.version})
        return success_response(match.to_dict())

    def _correct_finals_match(tournament_id, match_id, version, score1, score2, detail):
        # A finals score also decides who sits in the later slots.
        def _apply():
            match = _load_match(config, tournament_id, match_id, FINALS, refresh=True)
            if match.version != version:
                raise OptimisticLockError(f'{match_model.__name__} was modified by another request', match.version)
            if not match.player1_id or not match.player2_id:
                raise ApiError('Match does not have both players yet', 400, 'VALIDATION_ERROR')
            return match, _complete_finals_match(config, tournament_id, match, score1, score2, detail)

        try:
            match, advancement = update_with_retry(_apply)
        except OptimisticLockError as e:
            return error_response(e.message, 409, 'VERSION_CONFLICT', {'currentVersion': e.current_version})
        audit(getattr(AUDIT_ACTIONS, f'UPDATE_{code.upper()}_MATCH'), match.id, match_model.__name__,
              {field1: score1, field2: score2, 'version': match.version, 'stage': FINALS})
        return success_response({'match': _finals_row(match), **advancement})

    def report_score(tournament_id, match_id):
        """A participant reports the result of their own match; both sides must agree."""
        limited = _check_rate_limit('scoreInput')
        if limited:
            return limited
        data = sanitize_input(_json_body())
        _get_tournament(tournament_id)
        match = _load_match(config, tournament_id, match_id)

        reporting = data.get('reportingPlayer')
        if isinstance(reporting, bool) or reporting not in (1, 2):
            return validation_error('reportingPlayer must be 1 or 2', 'reportingPlayer')
        side_player_id = match.player1_id if reporting == 1 else match.player2_id

        token = _request_token(data)
        authorized = is_admin() or (side_player_id and session.get('player_id') == side_player_id)
        if not authorized and token:
            authorized = _validate_token(tournament_id, token) == SUCCESS
        if not authorized:
            audit(AUDIT_ACTIONS.UNAUTHORIZED_ACCESS, match.id, match_model.__name__,
                  {'reportingPlayer': reporting, 'mode': code})
            return authentication_error('Valid tournament token or player login required')

        value1, value2 = data.get(field1), data.get(field2)
        validate = config.validate_finals_report if match.stage == FINALS else config.validate_report
        error = validate(value1, value2)
        if error:
            return validation_error(error)
        character = data.get('character')
        if character and character not in SMK_CHARACTERS:
            return validation_error(f'Character must be one of: {", ".join(SMK_CHARACTERS)}', 'character')
        if match.completed:
            return validation_error('Match already completed')

        context = _request_context()
        mine = config.reported_fields(reporting)
        theirs = config.reported_fields(3 - reporting)

        def _apply():
            m = _load_match(config, tournament_id, match_id, refresh=True)
            db.session.add(ScoreEntryLog(
                tournament_id=tournament_id, match_id=m.id, match_type=code, player_id=side_player_id,
                reported_data={'reportingPlayer': reporting, field1: value1, field2: value2,
                               'character': character},
                ip_address=context['ip_address'], user_agent=context['user_agent'],
            ))
            if character and side_player_id:
                db.session.add(MatchCharacterUsage(match_id=m.id, match_type=code,
                                                   player_id=side_player_id, character=character))
            setattr(m, mine[0], value1)
            setattr(m, mine[1], value2)
            other = (getattr(m, theirs[0]), getattr(m, theirs[1]))
            if None in other:
                return m, 'waiting', None
            if other != (value1, value2):
                return m, 'mismatch', None
            if m.stage == FINALS:
                return m, 'confirmed', _complete_finals_match(config, tournament_id, m, value1, value2)
            setattr(m, field1, value1)
            setattr(m, field2, value2)
            m.completed = True
            db.session.flush()
            _recalculate_player_stats(config, tournament_id, m.player1_id)
            _recalculate_player_stats(config, tournament_id, m.player2_id)
            return m, 'confirmed', None

        match, status, advancement = update_with_retry(_apply)
        audit(AUDIT_ACTIONS.REPORT_SCORE, match.id, match_model.__name__,
              {'mode': code, 'reportingPlayer': reporting, field1: value1, field2: value2, 'status': status})

        if status == 'confirmed':
            standings_cache.invalidate(tournament_id, code)
            message = 'Scores confirmed and match completed'
        elif status == 'mismatch':
            app.logger.info(f'Score mismatch on {code} match {match.id}')
            message = 'Score mismatch detected. Awaiting admin review.'
        else:
            message = f'Score reported. Waiting for player {3 - reporting} to confirm.'
        body = {'match': match.to_dict(), 'status': status,
                'waitingFor': 3 - reporting if status == 'waiting' else None}
        if advancement:
            body.update(advancement)
        return success_response(body, message)

    @admin_required
    def get_standings(tournament_id):
        _get_tournament(tournament_id)

        def _build():
            rows = []
            for i, q in enumerate(_qualifications(config, tournament_id), start=1):
                row = q.to_dict()
                row['position'] = i
                rows.append(row)
            return rows

        return _standings_response(tournament_id, code, _build)

    def get_finals(tournament_id):
        _get_tournament(tournament_id)
        finals = _stage_matches(config, tournament_id, FINALS)
        standings = _finals_standings(config, finals)
        body = {'style': config.finals_style, 'standings': standings,
                'isComplete': _champion(standings) is not None, 'champion': _champion(standings)}
        if config.finals_style == 'grouped':
            body.update(group_bracket([_finals_row(m) for m in finals], number_key='matchNumber'))
        elif config.finals_style == 'paginated':
            page = paginate(match_model,
                            where=(match_model.tournament_id == tournament_id, match_model.stage == FINALS),
                            order_by=(match_model.match_number,), serialize=_finals_row,
                            page=request.args.get('page'), limit=request.args.get('limit'))
            body.update(matches=page['data'], meta=page['meta'])
        else:
            body['matches'] = [_finals_row(m) for m in finals]
        return success_response(body)

    @admin_required
    def create_finals(tournament_id):
        """Seed the top 8 of qualification into a fresh double elimination bracket."""
        _get_tournament(tournament_id)
        top_n = _json_body().get('topN', BRACKET_SIZE)
        if top_n != BRACKET_SIZE:
            return validation_error('Currently only 8-player brackets are supported', 'topN')
        seeding_order = [qual_model.score.desc(), qual_model.points.desc()]
        if hasattr(qual_model, 'win_rounds'):
            seeding_order.append(qual_model.win_rounds.desc())
        qualified = _qualifications(config, tournament_id, order_by=seeding_order)[:top_n]
        if len(qualified) < top_n:
            return validation_error(f'Not enough players qualified. Need {top_n}, found {len(qualified)}')

        structure = generate_bracket_structure([q.player_id for q in qualified])
        _soft_delete_where(match_model, match_model.tournament_id == tournament_id, match_model.stage == FINALS)
        for slot in structure:
            values = _blank_match_values(config)
            values.update(round=slot['round'], player1_id=slot['player1_id'], player2_id=slot['player2_id'])
            _reuse_or_create(match_model, values, tournament_id=tournament_id,
                             match_number=slot['match_number'], stage=FINALS)
        db.session.commit()
        audit(AUDIT_ACTIONS.CREATE_BRACKET, tournament_id, 'Tournament',
              {'mode': code, 'seeds': [q.player_id for q in qualified]})
        app.logger.info(f'Created {code} finals bracket for tournament {tournament_id}')
        return success_response({
            'matches': [_finals_row(m) for m in _stage_matches(config, tournament_id, FINALS)],
            'seededPlayers': [{'seed': i, 'playerId': q.player_id,
                               'player': q.player.summary() if q.player else None}
                              for i, q in enumerate(qualified, start=1)],
        }, 'Finals bracket created', 201)

    @admin_required
    def update_finals_match(tournament_id):
        data = _json_body()
        match_id = data.get('matchId')
        if not match_id or data.get(field1) is None or data.get(field2) is None:
            return validation_error(f'matchId, {field1}, and {field2} are required')
        score1 = _non_negative_int(data[field1], field1)
        score2 = _non_negative_int(data[field2], field2)

        def _apply():
            match = _load_match(config, tournament_id, match_id, FINALS, refresh=True)
            if not match.player1_id or not match.player2_id:
                raise ApiError('Match does not have both players yet', 400, 'VALIDATION_ERROR')
            return match, _complete_finals_match(config, tournament_id, match, score1, score2,
                                                 data.get(config.detail_field))

        match, advancement = update_with_retry(_apply)
        audit(getattr(AUDIT_ACTIONS, f'UPDATE_{code.upper()}_MATCH'), match.id, match_model.__name__,
              {field1: score1, field2: score2, 'stage': FINALS})
        if advancement['isComplete']:
            app.logger.info(f'{config.label} finals of {tournament_id} won by {advancement["champion"]}')
        return success_response({'match': _finals_row(match), **advancement})

    def get_finals_bracket(tournament_id):
        _get_tournament(tournament_id)
        finals = _stage_matches(config, tournament_id, FINALS)
        standings = _finals_standings(config, finals)
        rows = [_finals_row(m) for m in finals]
        return success_response({
            'matches': rows,
            'bracket': group_bracket(rows, number_key='matchNumber') if rows else None,
            'standings': standings,
            'isComplete': _champion(standings) is not None,
            'champion': _champion(standings),
        })

    @admin_required
    def export_mode(tournament_id):
        tournament = _get_tournament(tournament_id)
        sections = [
            qualification_section(config, _qualifications(config, tournament_id)),
            matches_section(config, _stage_matches(config, tournament_id, QUALIFICATION)
                            + _stage_matches(config, tournament_id, FINALS)),
        ]
        if request.args.get('format') == 'xlsx':
            return _file_response(to_xlsx(sections), XLSX_MIMETYPE,
                                  build_filename(tournament.name, code, 'xlsx'))
        return _file_response(to_csv(sections), CSV_MIMETYPE, build_filename(tournament.name, code, 'csv'))

    app.add_url_rule(base, f'{code}_qualification', get_qualification, methods=['GET'])
    app.add_url_rule(base, f'{code}_setup', setup_qualification, methods=['POST'])
    app.add_url_rule(base, f'{code}_update_qualification', update_qualification_match, methods=['PUT'])
    app.add_url_rule(f'{base}/matches', f'{code}_poll_matches', poll_matches, methods=['GET'])
    app.add_url_rule(f'{base}/match/<match_id>', f'{code}_get_match', get_match, methods=['GET'])
    app.add_url_rule(f'{base}/match/<match_id>', f'{code}_update_match', update_match, methods=['PUT'])
    app.add_url_rule(f'{base}/match/<match_id>/report', f'{code}_report', report_score, methods=['POST'])
    app.add_url_rule(f'{base}/standings', f'{code}_standings', get_standings, methods=['GET'])
    app.add_url_rule(f'{base}/finals', f'{code}_finals', get_finals, methods=['GET'])
    app.add_url_rule(f'{base}/finals', f'{code}_create_finals', create_finals, methods=['POST'])
    app.add_url_rule(f'{base}/finals', f'{code}_update_finals', update_finals_match, methods=['PUT'])
    app.add_url_rule(f'{base}/finals/bracket', f'{code}_finals_bracket', get_finals_bracket, methods=['GET'])
    app.add_url_rule(f'{base}/export', f'{code}_export', export_mode, methods=['GET'])


for _event_type in EVENT_TYPES.values():
    register_event_routes(_event_type)


# ---------------------------------------------------------------------------
# Time Attack
# ---------------------------------------------------------------------------

def _ta_entries(tournament_id: str, stage: str):
    stmt = (select(TTEntry)
            .where(TTEntry.tournament_id == tournament_id, TTEntry.stage == stage)
            .order_by(TTEntry.rank.is_(None), TTEntry.rank, TTEntry.created_at))
    return list(db.session.execute(stmt).scalars())


def _ta_row(entry: TTEntry) -> dict:
    row = entry.to_dict()
    row['totalTimeDisplay'] = ms_to_display_time(entry.total_time)
    return row


def _stage_arg(value) -> str:
    stage = value or QUALIFICATION_STAGE
    if stage not in TA_STAGES:
        raise ApiError(f'Stage must be one of: {", ".join(TA_STAGES)}', 400, 'VALIDATION_ERROR', {'field': 'stage'})
    return stage


@app.route('/api/tournaments/<tournament_id>/ta', methods=['GET'])
def api_ta_entries(tournament_id):
    tournament = _get_tournament(tournament_id)
    stage = _stage_arg(request.args.get('stage'))
    return success_response({
        'stage': stage,
        'entries': [_ta_row(e) for e in _ta_entries(tournament_id, stage)],
        'courses': COURSES,
        'frozen': stage in (tournament.frozen_stages or []),
    })


@app.route('/api/tournaments/<tournament_id>/ta', methods=['POST'])
@admin_required
def api_ta_add_players(tournament_id):
    """Add players to Time Attack qualification."""
    limited = _check_rate_limit('scoreInput')
    if limited:
        return limited
    _get_tournament(tournament_id)
    data = _json_body()
    player_ids = data.get('playerIds') or ([data['playerId']] if data.get('playerId') else [])
    if not isinstance(player_ids, list) or not player_ids:
        return validation_error('playerId or playerIds is required', 'playerIds')

    created = []
    for player_id in player_ids:
        if find_by_id(Player, player_id) is None:
            return validation_error(f'Player {player_id} not found', 'playerIds')
        existing = db.session.execute(with_deleted(select(TTEntry).where(
            TTEntry.tournament_id == tournament_id,
            TTEntry.player_id == player_id,
            TTEntry.stage == QUALIFICATION_STAGE,
        ))).scalar_one_or_none()
        if existing is not None and not is_deleted(existing):
            continue
        entry = _reuse_or_create(TTEntry, {'lives': 3, 'eliminated': False, 'times': {}, 'total_time': None,
                                           'rank': None, 'qualification_points': None},
                                 tournament_id=tournament_id, player_id=player_id, stage=QUALIFICATION_STAGE)
        created.append(entry)
    db.session.commit()
    recalculate_ranks(tournament_id, QUALIFICATION_STAGE)
    standings_cache.invalidate(tournament_id, TA_CACHE_STAGE)
    for entry in created:
        audit(AUDIT_ACTIONS.CREATE_TA_ENTRY, entry.id, 'TTEntry', {'playerId': entry.player_id})
    return success_response({'entries': [_ta_row(e) for e in created]},
                            f'Added {len(created)} players', 201)


@app.route('/api/tournaments/<tournament_id>/ta', methods=['PUT'])
@admin_required
def api_ta_update_times(tournament_id):
    """Update one course time or a whole times dict of an entry."""
    tournament = _get_tournament(tournament_id)
    data = _json_body()
    entry = find_by_id(TTEntry, data.get('entryId'))
    if entry is None or entry.tournament_id != tournament_id:
        return not_found_error('Entry')
    if entry.stage in (tournament.frozen_stages or []):
        return error_response(f'Stage {entry.stage} is frozen', 409, 'STAGE_FROZEN')

    times = dict(entry.times or {})
    if 'times' in data:
        if not isinstance(data['times'], dict):
            return validation_error('times must be an object', 'times')
        updates = data['times']
    elif data.get('course'):
        updates = {data['course']: data.get('time')}
    else:
        return validation_error('course and time, or times, are required')
    for course, value in updates.items():
        if course not in COURSES:
            return validation_error(f'Unknown course: {course}', 'course')
        if value in (None, ''):
            times.pop(course, None)
        elif not is_valid_time(value):
            return validation_error(f'Invalid time for {course}: use M:SS.mmm', 'time')
        else:
            times[course] = value.strip()

    version = data.get('version', entry.version)
    if isinstance(version, bool) or not isinstance(version, int):
        return validation_error('version must be a number', 'version')
    try:
        entry = update_tt_entry(entry.id, version, {'times': times})
    except OptimisticLockError as e:
        return error_response(e.message, 409, 'VERSION_CONFLICT', {'currentVersion': e.current_version})
    except LookupError:
        return not_found_error('Entry')

    recalculate_ranks(tournament_id, entry.stage)
    standings_cache.invalidate(tournament_id, TA_CACHE_STAGE)
    audit(AUDIT_ACTIONS.UPDATE_TA_ENTRY, entry.id, 'TTEntry', {'times': updates})
    return success_response(_ta_row(entry))


@app.route('/api/tournaments/<tournament_id>/ta', methods=['DELETE'])
@admin_required
def api_ta_delete_entry(tournament_id):
    _get_tournament(tournament_id)
    entry = find_by_id(TTEntry, request.args.get('entryId'))
    if entry is None or entry.tournament_id != tournament_id:
        return not_found_error('Entry')
    soft_delete(entry)
    recalculate_ranks(tournament_id, entry.stage)
    standings_cache.invalidate(tournament_id, TA_CACHE_STAGE)
    audit(AUDIT_ACTIONS.DELETE_TA_ENTRY, entry.id, 'TTEntry', {'playerId': entry.player_id})
    return success_response(None, 'Entry deleted')


@app.route('/api/tournaments/<tournament_id>/ta/standings', methods=['GET'])
@admin_required
def api_ta_standings(tournament_id):
    _get_tournament(tournament_id)
    return _standings_response(
        tournament_id, TA_CACHE_STAGE,
        lambda: [_ta_row(e) for e in _ta_entries(tournament_id, QUALIFICATION_STAGE) if e.rank is not None],
    )


@app.route('/api/tournaments/<tournament_id>/ta/export', methods=['GET'])
@admin_required
def api_ta_export(tournament_id):
    tournament = _get_tournament(tournament_id)
    sections = [time_attack_section(_ta_entries(tournament_id, stage), title=stage.upper())
                for stage in TA_STAGES]
    sections = [s for s in sections if s[2]] or sections[:1]
    if request.args.get('format') == 'xlsx':
        return _file_response(to_xlsx(sections), XLSX_MIMETYPE, build_filename(tournament.name, 'ta', 'xlsx'))
    return _file_response(to_csv(sections), CSV_MIMETYPE, build_filename(tournament.name, 'ta', 'csv'))


@app.route('/api/tournaments/<tournament_id>/ta/freeze', methods=['POST'])
@admin_required
def api_ta_freeze(tournament_id):
    """Freeze or unfreeze time edits on a stage; toggles when 'frozen' is omitted."""
    tournament = _get_tournament(tournament_id)
    data = _json_body()
    stage = _stage_arg(data.get('stage'))
    frozen = list(tournament.frozen_stages or [])
    freeze = data.get('frozen', stage not in frozen)
    if freeze and stage not in frozen:
        frozen.append(stage)
    elif not freeze and stage in frozen:
        frozen.remove(stage)
    tournament.frozen_stages = frozen
    db.session.commit()
    audit(AUDIT_ACTIONS.UPDATE_TOURNAMENT, tournament.id, 'Tournament', {'frozenStages': frozen})
    return success_response({'frozenStages': frozen, 'stage': stage, 'frozen': stage in frozen})


@app.route('/api/tournaments/<tournament_id>/ta/phases', methods=['GET'])
def api_ta_phases(tournament_id):
    _get_tournament(tournament_id)
    body = {'status': get_phase_status(tournament_id)}
    phase = request.args.get('phase')
    if phase:
        if phase not in PHASES:
            return validation_error(f'Invalid phase: {phase}. Must be one of: {", ".join(PHASES)}', 'phase')
        rounds = db.session.execute(
            select(TTPhaseRound)
            .where(TTPhaseRound.tournament_id == tournament_id, TTPhaseRound.phase == phase)
            .order_by(TTPhaseRound.round_number)
        ).scalars()
        body['entries'] = [_ta_row(e) for e in _ta_entries(tournament_id, phase)]
        body['rounds'] = [r.to_dict() for r in rounds]
    return success_response(body)


@app.route('/api/tournaments/<tournament_id>/ta/phases', methods=['POST'])
@admin_required
def api_ta_phase_action(tournament_id):
    """Run a phase action: promote_phase1/2/3, start_round, cancel_round or submit_results."""
    _get_tournament(tournament_id)
    data = _json_body()
    action = data.get('action')
    context = _request_context()
    try:
        if action in ('promote_phase1', 'promote_phase2', 'promote_phase3'):
            result = promote_to_phase(tournament_id, action.replace('promote_', ''), context)
            return success_response({'entries': [_ta_row(e) for e in result['entries']],
                                     'skipped': result['skipped']}, result['message'], 201)
        if action == 'start_round':
            phase_round = start_round(tournament_id, data.get('phase'))
            return success_response(phase_round.to_dict(), f'Round {phase_round.round_number} started', 201)
        if action == 'cancel_round':
            cancel_round(tournament_id, data.get('phase'), data.get('roundNumber'))
            return success_response(None, 'Round cancelled')
        if action == 'submit_results':
            results = data.get('results')
            if not isinstance(results, list) or not results:
                return validation_error('results array is required', 'results')
            outcome = submit_results(tournament_id, data.get('phase'), data.get('roundNumber'), results, context)
            return success_response({
                'round': outcome['round'].to_dict(),
                'eliminated': [_ta_row(e) for e in outcome['eliminated']],
                'livesReset': outcome['livesReset'],
                'tieBreakRequired': outcome['tieBreakRequired'],
                'remaining': outcome['remaining'],
                'winner': _ta_row(outcome['winner']) if outcome['winner'] else None,
            })
    except PhaseError as e:
        return validation_error(str(e))
    except LookupError as e:
        return error_response(str(e), 404, 'NOT_FOUND')
    return validation_error(f'Unknown action: {action}', 'action')


# ---------------------------------------------------------------------------
# Tournament-wide results
# ---------------------------------------------------------------------------

def _overall_ranking(tournament_id: str) -> list:
    qualification = {'ta': {}}
    finals_positions = {'ta': get_finals_positions(tournament_id)}
    player_ids = set(finals_positions['ta'])
    for entry in _ta_entries(tournament_id, QUALIFICATION_STAGE):
        qualification['ta'][entry.player_id] = entry.qualification_points or 0
        player_ids.add(entry.player_id)

    for code, config in EVENT_TYPES.items():
        groups = {}
        for q in _qualifications(config, tournament_id):
            groups.setdefault(q.group, []).append(
                {'player_id': q.player_id, 'wins': q.wins, 'ties': q.ties, 'losses': q.losses})
        qualification[code] = {}
        for records in groups.values():
            for row in calculate_qualification_points(records):
                qualification[code][row['player_id']] = row['normalized_points']
        finals_positions[code] = _mode_finals_positions(config, tournament_id)
        player_ids.update(qualification[code])
        player_ids.update(finals_positions[code])

    players = []
    for player_id in player_ids:
        player = find_by_id(Player, player_id)
        if player is not None:
            players.append({'id': player.id, 'nickname': player.nickname})
    return calculate_overall_ranking(players, qualification, finals_positions)


@app.route('/api/tournaments/<tournament_id>/overall-ranking', methods=['GET'])
def api_overall_ranking(tournament_id):
    _get_tournament(tournament_id)
    return success_response(_overall_ranking(tournament_id))


@app.route('/api/tournaments/<tournament_id>/export', methods=['GET'])
@admin_required
def api_export_tournament(tournament_id):
    """Every mode of a tournament as one workbook, a sheet per section."""
    tournament = _get_tournament(tournament_id)
    sections = [
        time_attack_section(_ta_entries(tournament_id, QUALIFICATION_STAGE), title='TA Qualification'),
        time_attack_section([e for phase in PHASES for e in _ta_entries(tournament_id, phase)],
                            title='TA Finals'),
    ]
    for code, config in EVENT_TYPES.items():
        label = code.upper()
        sections.append(qualification_section(config, _qualifications(config, tournament_id),
                                              title=f'{label} Qualification'))
        sections.append(matches_section(config, _stage_matches(config, tournament_id, QUALIFICATION),
                                        title=f'{label} Matches'))
        sections.append(matches_section(config, _stage_matches(config, tournament_id, FINALS),
                                        title=f'{label} Finals'))
    ranking = _overall_ranking(tournament_id)
    sections.append((
        'Overall Ranking',
        ['Rank', 'Nickname', 'TA', 'BM', 'MR', 'GP', 'Total'],
        [[r['overallRank'], r['nickname'],
          r['taQualificationPoints'] + r['taFinalsPoints'],
          r['bmQualificationPoints'] + r['bmFinalsPoints'],
          r['mrQualificationPoints'] + r['mrFinalsPoints'],
          r['gpQualificationPoints'] + r['gpFinalsPoints'],
          r['totalPoints']] for r in ranking],
    ))
    return _file_response(to_xlsx(sections), XLSX_MIMETYPE, build_filename(tournament.name, 'all', 'xlsx'))


POLLING_VOLUME_WARNING = 1000
ACTIVE_CLIENTS_WARNING = 40
BLOCKED_RATE_WARNING = 5.0


@app.route('/api/monitor/polling-stats', methods=['GET'])
@login_required
def api_polling_stats():
    """Request and rate limit counters of the participant-facing endpoints."""
    limited = _check_rate_limit('polling')
    if limited:
        return limited
    stats = {name: rate_limiter.get_stats(name) for name in ('scoreInput', 'polling', 'tokenValidation')}
    polling = stats['polling']

    warnings = []
    if polling['total'] > POLLING_VOLUME_WARNING:
        warnings.append('High request volume detected - consider increasing polling intervals')
    if polling['activeClients'] > ACTIVE_CLIENTS_WARNING:
        warnings.append('High number of active connections - monitor server resources')
    if any(s['rate'] > BLOCKED_RATE_WARNING for s in stats.values()):
        warnings.append('Many requests are being rate limited - check client polling intervals')
    for warning in warnings:
        app.logger.warning(f'Polling stats: {warning}')

    return success_response({
        'totalRequests': polling['total'],
        'activeConnections': polling['activeClients'],
        'rateLimitStats': stats,
        'timePeriod': {'start': isoformat(STATS_SINCE), 'end': isoformat(utcnow())},
        'warnings': warnings,
    })


@app.route('/api/health', methods=['GET'])
def api_health():
    try:
        db.session.execute(select(1))
    except SQLAlchemyError as e:
        return handle_database_error(e, 'check database')
    return jsonify({'success': True, 'status': 'ok', 'time': isoformat(utcnow())})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
