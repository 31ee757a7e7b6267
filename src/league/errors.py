"""
Error responses and error message sanitization.

API errors share one JSON shape:
    {'success': False, 'error': <message>, 'code': <CODE>?, 'details': {...}?}
and successes:
    {'success': True, 'data': ..., 'message': ...?}

Messages built from exceptions go through sanitize_error() first so
credentials, connection strings and personal data never reach a client.
"""
import logging
import re
from typing import Dict, Optional
from flask import jsonify
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import NoResultFound

from .models import utcnow

logger = logging.getLogger(__name__)

SENSITIVE_PATTERNS = [
    re.compile(r'DATABASE_URL\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'(?:postgres|postgresql|mysql|mongodb|redis|sqlite)(?:\+\w+)?://\S+', re.IGNORECASE),
    re.compile(r'password\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'secret\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'token\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'key\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'auth\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'database\s*[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'connection\s*[=:]\s*\S+', re.IGNORECASE),
]
EMAIL_PATTERN = re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}')
IP_PATTERN = re.compile(r'(?:\d{1,3}\.){3}\d{1,3}|(?:[0-9a-fA-F]{1,4}:){2,7}[0-9a-fA-F]{1,4}|::1')
FILE_PATH_PATTERN = re.compile(r'(?:/[\w.-]+){2,}(?:\.\w+)?')
QUERY_PATTERN = re.compile(r'(?:SELECT|INSERT|UPDATE|DELETE|CREATE|DROP|ALTER)\s+.{0,200}', re.IGNORECASE)

GENERIC_ERROR = 'An unexpected error occurred'


class ApiError(Exception):
    """An error that maps directly onto an HTTP error response."""

    def __init__(self, message: str, status: int = 400, code: Optional[str] = None,
                 details: Optional[Dict] = None, headers: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details
        self.headers = headers or {}

    def to_response(self):
        response = jsonify(error_body(self.message, self.code, self.details))
        response.status_code = self.status
        for name, value in self.headers.items():
            response.headers[name] = value
        return response


def sanitize_error(error) -> str:
    """Strip secrets and personal data out of an error message."""
    if isinstance(error, BaseException):
        message = str(error)
    elif isinstance(error, str):
        message = error
    else:
        return GENERIC_ERROR

    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub('[REDACTED]', message)
    message = EMAIL_PATTERN.sub('[EMAIL_REDACTED]', message)
    message = IP_PATTERN.sub('[IP_REDACTED]', message)
    message = FILE_PATH_PATTERN.sub('[PATH_REDACTED]', message)
    message = QUERY_PATTERN.sub('[QUERY_REDACTED]', message)
    return message


def create_safe_error(error, user_message: str, debug: bool = False) -> Dict:
    """Error payload safe to return to a client.

    The sanitized exception text is only attached in debug mode.
    """
    safe = {
        'message': user_message,
        'code': getattr(error, 'code', None) or 'INTERNAL_ERROR',
        'timestamp': utcnow().isoformat(),
    }
    if debug:
        safe['details'] = sanitize_error(error)
    return safe


def sanitize_database_error(error) -> str:
    """Map database exceptions to messages a client may see."""
    if isinstance(error, IntegrityError):
        text = str(error.orig).lower()
        if 'unique' in text or 'duplicate' in text:
            return 'A record with this value already exists'
        if 'foreign key' in text:
            return 'Related record not found'
        return 'Database constraint violated'
    if isinstance(error, NoResultFound):
        return 'Record not found'
    if isinstance(error, OperationalError):
        return 'Database temporarily unavailable'
    return sanitize_error(error)


def error_body(message: str, code: Optional[str] = None, details: Optional[Dict] = None) -> Dict:
    body = {'success': False, 'error': message}
    if code:
        body['code'] = code
    if details:
        body['details'] = details
    return body


def error_response(message: str, status: int = 500, code: Optional[str] = None,
                   details: Optional[Dict] = None):
    return jsonify(error_body(message, code, details)), status


def success_response(data=None, message: Optional[str] = None, status: int = 200):
    body = {'success': True, 'data': data}
    if message:
        body['message'] = message
    return jsonify(body), status


def validation_error(message: str, field: Optional[str] = None):
    return error_response(message, 400, 'VALIDATION_ERROR', {'field': field} if field else None)


def authentication_error(message: str = 'Authentication required'):
    return error_response(message, 401, 'AUTHENTICATION_ERROR')


def authorization_error(message: str = 'Forbidden'):
    return error_response(message, 403, 'AUTHORIZATION_ERROR')


def not_found_error(resource: str = 'Resource'):
    return error_response(f'{resource} not found', 404, 'NOT_FOUND')


def rate_limit_error(retry_after: int):
    response, status = error_response('Too many requests. Please try again later.', 429,
                                      'RATE_LIMIT_EXCEEDED', {'retryAfter': retry_after})
    response.headers['Retry-After'] = str(retry_after)
    return response, status


def handle_database_error(error, operation: str):
    """Log a database failure and turn it into a JSON error response."""
    logger.error(f'Database error during {operation}: {sanitize_error(error)}')
    message = sanitize_database_error(error)
    if isinstance(error, IntegrityError):
        if message == 'A record with this value already exists':
            return error_response(message, 409, 'CONFLICT')
        return error_response(message, 400, 'CONSTRAINT_VIOLATION')
    if isinstance(error, NoResultFound):
        return error_response(message, 404, 'NOT_FOUND')
    if isinstance(error, OperationalError):
        return error_response(message, 503, 'DATABASE_UNAVAILABLE')
    return error_response(f'Failed to {operation}', 500, 'DATABASE_ERROR')
