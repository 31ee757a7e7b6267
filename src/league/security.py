"""
Password handling and input sanitization.
"""
import logging
import secrets
import string
from markupsafe import escape
from werkzeug.security import check_password_hash, generate_password_hash

logger = logging.getLogger(__name__)

PASSWORD_CHARSET = string.ascii_letters + string.digits + '!@#$%^&*'
DEFAULT_PASSWORD_LENGTH = 12


def generate_secure_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    if length < 1:
        raise ValueError('Password length must be positive')
    return ''.join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against its hash. Malformed hashes never match."""
    if not password or not password_hash:
        return False
    try:
        return check_password_hash(password_hash, password)
    except (ValueError, TypeError) as e:
        logger.warning(f'Password verification failed: {e}')
        return False


def sanitize_string(value: str) -> str:
    """HTML-escape a string so it can't inject markup when echoed back."""
    return str(escape(value.strip()))


def sanitize_input(data):
    """Recursively escape every string in a JSON-like structure."""
    if isinstance(data, str):
        return sanitize_string(data)
    if isinstance(data, list):
        return [sanitize_input(item) for item in data]
    if isinstance(data, dict):
        return {key: sanitize_input(value) for key, value in data.items()}
    return data
