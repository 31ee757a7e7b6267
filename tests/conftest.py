"""
Shared pytest fixtures for the league scoreboard tests.

Running tests:
    pytest tests/                  - full suite
    pytest tests/ -m "not slow"   - skip the full bracket and phase runs
"""
import os
import sys
import tempfile
from datetime import datetime

import pytest
from sqlalchemy import select

# Configure before the app module is imported: it reads the environment at import.
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ.setdefault('LEAGUE_DATA_DIR', tempfile.mkdtemp(prefix='league-test-'))
os.environ.pop('REDIS_URL', None)

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from app import app as flask_app, rate_limiter, standings_cache
from league.event_types import EVENT_TYPES
from league.models import Player, Tournament, User, db
from league.security import hash_password
from league.tokens import generate_tournament_token, get_token_expiry

PLAYER_PASSWORD = 'race-day-42'


@pytest.fixture
def app():
    """The Flask app on a fresh in-memory database."""
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
        db.create_all()
    rate_limiter.clear()
    standings_cache.clear()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    """Anonymous test client."""
    yield app.test_client()


@pytest.fixture
def admin_id(app):
    with app.app_context():
        user = User(username='admin', password_hash=hash_password('admin-pass'), role='admin')
        db.session.add(user)
        db.session.commit()
        return user.id


@pytest.fixture
def admin_client(app, admin_id):
    """Test client logged in as an admin."""
    c = app.test_client()
    with c.session_transaction() as sess:
        sess['user_id'] = admin_id
        sess['username'] = 'admin'
        sess['role'] = 'admin'
    yield c


def create_players(count, prefix='racer', password=None):
    """Insert ``count`` players and return their ids in creation order."""
    with flask_app.app_context():
        players = [
            Player(
                name=f'{prefix.title()} {i}',
                nickname=f'{prefix}{i}',
                password=hash_password(password) if password else None,
            )
            for i in range(1, count + 1)
        ]
        db.session.add_all(players)
        db.session.commit()
        return [p.id for p in players]


def create_tournament(name='Spring Cup', token=True, hours=24):
    with flask_app.app_context():
        tournament = Tournament(name=name, date=datetime(2026, 4, 1), frozen_stages=[])
        if token:
            tournament.token = generate_tournament_token()
            tournament.token_expires_at = get_token_expiry(hours)
        db.session.add(tournament)
        db.session.commit()
        return {'id': tournament.id, 'token': tournament.token}


@pytest.fixture
def players(app):
    """Eight players, racer1..racer8."""
    return create_players(8)


@pytest.fixture
def tournament(app):
    """A tournament with a valid participant token."""
    return create_tournament()


def player_client(app, player_id):
    """A test client whose session belongs to a logged-in player."""
    c = app.test_client()
    with c.session_transaction() as sess:
        sess['player_id'] = player_id
        sess['role'] = 'player'
    return c


def setup_group(client, tournament_id, player_ids, mode='bm', group='A'):
    """Run qualification setup for one group through the API."""
    body = {'players': [{'playerId': pid, 'group': group, 'seeding': i}
                        for i, pid in enumerate(player_ids, start=1)]}
    response = client.post(f'/api/tournaments/{tournament_id}/{mode}', json=body)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['data']


def qualify(app, tournament_id, player_ids, mode='bm'):
    """Give the players descending qualification scores so the finals seeding is fixed."""
    model = EVENT_TYPES[mode].qualification_model
    with app.app_context():
        for i, player_id in enumerate(player_ids):
            row = db.session.execute(select(model).where(
                model.tournament_id == tournament_id, model.player_id == player_id,
            )).scalar_one()
            row.score = 20 - i
        db.session.commit()


def create_finals(app, client, tournament_id, player_ids, mode='bm'):
    """Qualify eight players and create the finals; returns the slots by match number."""
    setup_group(client, tournament_id, player_ids, mode=mode)
    qualify(app, tournament_id, player_ids, mode)
    response = client.post(f'/api/tournaments/{tournament_id}/{mode}/finals', json={})
    assert response.status_code == 201, response.get_json()
    return {m['matchNumber']: m for m in response.get_json()['data']['matches']}
