"""
Tests for tournament tokens: helpers and the token routes.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from conftest import create_tournament
from league.tokens import (
    EXPIRED,
    INVALID,
    INVALID_FORMAT,
    MISSING_TOKEN,
    NO_TOKEN,
    SUCCESS,
    TOURNAMENT_NOT_FOUND,
    check_tournament_token,
    extend_token_expiry,
    generate_tournament_token,
    get_token_expiry,
    get_token_time_remaining,
    is_token_valid,
    is_valid_token_format,
    validate_expiry_hours,
)

NOW = datetime(2026, 4, 1, 12, 0)
VALID = 'a' * 32


class TestTokenHelpers:

    def test_generated_format(self):
        token = generate_tournament_token()
        assert len(token) == 32
        assert is_valid_token_format(token)
        assert generate_tournament_token() != token

    def test_format(self):
        assert is_valid_token_format('ABCDEF0123456789abcdef0123456789')
        assert not is_valid_token_format('g' * 32)
        assert not is_valid_token_format('a' * 31)
        assert not is_valid_token_format(None)

    def test_validity_window(self):
        assert is_token_valid(VALID, NOW + timedelta(minutes=1), now=NOW)
        assert not is_token_valid(VALID, NOW, now=NOW)
        assert not is_token_valid(VALID, None, now=NOW)

    def test_expiry_and_extension(self):
        assert get_token_expiry(24, now=NOW) == NOW + timedelta(hours=24)
        future = NOW + timedelta(hours=2)
        assert extend_token_expiry(future, 3, now=NOW) == NOW + timedelta(hours=5)
        past = NOW - timedelta(hours=2)
        assert extend_token_expiry(past, 3, now=NOW) == NOW + timedelta(hours=3)

    def test_time_remaining(self):
        assert get_token_time_remaining(NOW + timedelta(hours=2, minutes=30), now=NOW) == '2h 30m remaining'
        assert get_token_time_remaining(NOW + timedelta(hours=50), now=NOW) == '2d 2h remaining'
        assert get_token_time_remaining(NOW - timedelta(seconds=1), now=NOW) == 'Expired'
        assert get_token_time_remaining(None) == 'No expiry set'

    @pytest.mark.parametrize('value', [0, 169, 'soon', True, None])
    def test_expiry_hours_rejected(self, value):
        with pytest.raises(ValueError):
            validate_expiry_hours(value)

    def test_expiry_hours_accepted(self):
        assert validate_expiry_hours('12') == 12
        assert validate_expiry_hours(168) == 168

    def test_check_tournament_token(self):
        tournament = SimpleNamespace(token=VALID, token_expires_at=NOW + timedelta(hours=1))
        assert check_tournament_token(tournament, VALID, now=NOW) == SUCCESS
        assert check_tournament_token(tournament, VALID.upper(), now=NOW) == SUCCESS
        assert check_tournament_token(tournament, None, now=NOW) == MISSING_TOKEN
        assert check_tournament_token(tournament, 'short', now=NOW) == INVALID_FORMAT
        assert check_tournament_token(None, VALID, now=NOW) == TOURNAMENT_NOT_FOUND
        assert check_tournament_token(tournament, 'b' * 32, now=NOW) == INVALID
        assert check_tournament_token(SimpleNamespace(token=None), VALID, now=NOW) == NO_TOKEN
        assert check_tournament_token(tournament, VALID, now=NOW + timedelta(hours=2)) == EXPIRED


class TestTokenRoutes:

    def test_validate_success(self, client, tournament):
        response = client.post(f'/api/tournaments/{tournament["id"]}/token/validate',
                               json={'token': tournament['token']})
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['valid'] is True
        assert data['tournamentName'] == 'Spring Cup'
        assert data['timeRemaining'].endswith('remaining')

    def test_validate_header_token(self, client, tournament):
        response = client.post(f'/api/tournaments/{tournament["id"]}/token/validate',
                               headers={'X-Tournament-Token': tournament['token']})
        assert response.status_code == 200

    def test_validate_failures(self, client, tournament):
        url = f'/api/tournaments/{tournament["id"]}/token/validate'
        response = client.post(url, json={})
        assert response.status_code == 401
        assert response.get_json()['code'] == MISSING_TOKEN

        response = client.post(url, json={'token': 'c' * 32})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid token'

        response = client.post('/api/tournaments/nope/token/validate', json={'token': 'c' * 32})
        assert response.status_code == 404

    def test_expired_token(self, app, client):
        tournament = create_tournament(hours=-1)
        response = client.post(f'/api/tournaments/{tournament["id"]}/token/validate',
                               json={'token': tournament['token']})
        assert response.status_code == 401
        assert response.get_json()['code'] == EXPIRED

    def test_validation_is_rate_limited(self, client, tournament):
        url = f'/api/tournaments/{tournament["id"]}/token/validate'
        for _ in range(10):
            client.post(url, json={'token': 'c' * 32})
        response = client.post(url, json={'token': tournament['token']})
        assert response.status_code == 429
        assert response.headers['Retry-After']

    def test_token_admin_only(self, client, tournament):
        response = client.get(f'/api/tournaments/{tournament["id"]}/token')
        assert response.status_code == 401

    def test_regenerate(self, admin_client, tournament):
        url = f'/api/tournaments/{tournament["id"]}/token'
        response = admin_client.post(url, json={'expiresInHours': 48})
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['token'] != tournament['token']
        assert data['isActive'] is True
        assert data['timeRemaining'].startswith('1d 23h') or data['timeRemaining'].startswith('2d')

        status = admin_client.get(url).get_json()['data']
        assert status['token'] == data['token']

    def test_regenerate_rejects_bad_hours(self, admin_client, tournament):
        response = admin_client.post(f'/api/tournaments/{tournament["id"]}/token', json={'expiresInHours': 500})
        assert response.status_code == 400
        assert response.get_json()['details'] == {'field': 'expiresInHours'}

    def test_extend(self, admin_client, tournament):
        url = f'/api/tournaments/{tournament["id"]}/token'
        before = admin_client.get(url).get_json()['data']['tokenExpiresAt']
        response = admin_client.post(f'{url}/extend', json={'expiresInHours': 2})
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Token extended by 2 hours'
        after = response.get_json()['data']['tokenExpiresAt']
        assert datetime.fromisoformat(after) - datetime.fromisoformat(before) == timedelta(hours=2)

    def test_invalidate(self, admin_client, client, tournament):
        url = f'/api/tournaments/{tournament["id"]}/token'
        assert admin_client.delete(url).status_code == 200
        assert admin_client.get(url).get_json()['data']['isActive'] is False
        assert admin_client.post(f'{url}/extend', json={}).status_code == 400

        response = client.post(f'{url}/validate', json={'token': tournament['token']})
        assert response.status_code == 401
        assert response.get_json()['code'] == NO_TOKEN
