"""
Tests for password handling, input sanitization and error message scrubbing.
"""
from flask import Flask

from league.errors import (
    ApiError,
    create_safe_error,
    error_response,
    sanitize_error,
    success_response,
    validation_error,
)
from league.security import (
    PASSWORD_CHARSET,
    generate_secure_password,
    hash_password,
    sanitize_input,
    sanitize_string,
    verify_password,
)


class TestPasswords:

    def test_generated_password(self):
        password = generate_secure_password()
        assert len(password) == 12
        assert all(ch in PASSWORD_CHARSET for ch in password)
        assert generate_secure_password(20) != generate_secure_password(20)

    def test_hash_and_verify(self):
        hashed = hash_password('hunter22')
        assert hashed != 'hunter22'
        assert verify_password('hunter22', hashed)
        assert not verify_password('hunter23', hashed)

    def test_malformed_hash_never_matches(self):
        assert not verify_password('hunter22', 'not-a-hash')
        assert not verify_password('hunter22', None)
        assert not verify_password('', hash_password('x'))


class TestSanitize:

    def test_string_escaped_and_trimmed(self):
        assert sanitize_string('  <b>Cup</b> ') == '&lt;b&gt;Cup&lt;/b&gt;'

    def test_nested_input(self):
        data = {'name': '<script>', 'scores': [1, '<i>'], 'meta': {'ok': True}}
        assert sanitize_input(data) == {
            'name': '&lt;script&gt;',
            'scores': [1, '&lt;i&gt;'],
            'meta': {'ok': True},
        }


class TestErrorScrubbing:

    def test_connection_string_redacted(self):
        message = sanitize_error(Exception('could not connect to postgresql://admin:pw@db:5432/league'))
        assert 'pw@' not in message
        assert '[REDACTED]' in message

    def test_personal_data_redacted(self):
        message = sanitize_error('lookup failed for racer@example.com from 10.0.0.12')
        assert '[EMAIL_REDACTED]' in message
        assert '[IP_REDACTED]' in message

    def test_non_string(self):
        assert sanitize_error(42) == 'An unexpected error occurred'

    def test_safe_error_hides_details(self):
        safe = create_safe_error(ValueError('password=abc'), 'Something went wrong')
        assert safe['message'] == 'Something went wrong'
        assert safe['code'] == 'INTERNAL_ERROR'
        assert 'details' not in safe
        debug = create_safe_error(ValueError('password=abc'), 'Something went wrong', debug=True)
        assert 'abc' not in debug['details']


class TestResponses:

    def test_shapes(self):
        app = Flask(__name__)
        with app.app_context():
            response, status = error_response('Nope', 404, 'NOT_FOUND', {'id': 'x'})
            assert status == 404
            assert response.get_json() == {'success': False, 'error': 'Nope', 'code': 'NOT_FOUND',
                                           'details': {'id': 'x'}}

            response, status = success_response({'a': 1}, 'Done', 201)
            assert status == 201
            assert response.get_json() == {'success': True, 'data': {'a': 1}, 'message': 'Done'}

            response, status = validation_error('Bad name', 'name')
            assert status == 400
            assert response.get_json()['details'] == {'field': 'name'}

    def test_api_error_response(self):
        app = Flask(__name__)
        with app.app_context():
            response = ApiError('Slow down', 429, 'RATE_LIMIT_EXCEEDED', headers={'Retry-After': '5'}).to_response()
            assert response.status_code == 429
            assert response.headers['Retry-After'] == '5'
            assert response.get_json()['code'] == 'RATE_LIMIT_EXCEEDED'
