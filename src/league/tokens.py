"""
Tournament access tokens.

A token lets participants report scores without an account. It is 32 hex
characters with an expiry; admins can regenerate, extend or invalidate it.
"""
import hmac
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from .models import utcnow

TOKEN_PATTERN = re.compile(r'^[a-f0-9]{32}$', re.IGNORECASE)
DEFAULT_EXPIRY_HOURS = 24
MIN_EXPIRY_HOURS = 1
MAX_EXPIRY_HOURS = 168

# Validation result codes
SUCCESS = 'SUCCESS'
MISSING_TOKEN = 'MISSING_TOKEN'
INVALID_FORMAT = 'INVALID_FORMAT'
TOURNAMENT_NOT_FOUND = 'TOURNAMENT_NOT_FOUND'
NO_TOKEN = 'NO_TOKEN'
INVALID = 'INVALID'
EXPIRED = 'EXPIRED'

VALIDATION_MESSAGES = {
    MISSING_TOKEN: 'Token required',
    INVALID_FORMAT: 'Invalid token format',
    TOURNAMENT_NOT_FOUND: 'Tournament not found',
    NO_TOKEN: 'Tournament has no active token',
    INVALID: 'Invalid token',
    EXPIRED: 'Token expired',
}


def generate_tournament_token() -> str:
    return secrets.token_hex(16)


def is_valid_token_format(token) -> bool:
    return isinstance(token, str) and bool(TOKEN_PATTERN.match(token))


def is_token_valid(token, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """A token is usable when well formed and not past its expiry."""
    if not is_valid_token_format(token) or expires_at is None:
        return False
    return expires_at > (now or utcnow())


def get_token_expiry(hours: int = DEFAULT_EXPIRY_HOURS, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(hours=hours)


def extend_token_expiry(current_expiry: Optional[datetime], hours: int,
                        now: Optional[datetime] = None) -> datetime:
    """Extend from the current expiry while it is still in the future, else from now."""
    now = now or utcnow()
    base = current_expiry if current_expiry and current_expiry > now else now
    return base + timedelta(hours=hours)


def get_token_time_remaining(expires_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if expires_at is None:
        return 'No expiry set'
    remaining = expires_at - (now or utcnow())
    if remaining.total_seconds() <= 0:
        return 'Expired'
    total_minutes = int(remaining.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 24:
        days, hours = divmod(hours, 24)
        return f'{days}d {hours}h remaining'
    return f'{hours}h {minutes}m remaining'


def validate_expiry_hours(hours) -> int:
    """Parse a requested validity period; raises ValueError outside 1..168."""
    if isinstance(hours, bool):
        raise ValueError('Expiry hours must be a number')
    try:
        hours = int(hours)
    except (TypeError, ValueError):
        raise ValueError('Expiry hours must be a number') from None
    if hours < MIN_EXPIRY_HOURS or hours > MAX_EXPIRY_HOURS:
        raise ValueError(f'Expiry hours must be between {MIN_EXPIRY_HOURS} and {MAX_EXPIRY_HOURS}')
    return hours


def check_tournament_token(tournament, token, now: Optional[datetime] = None) -> str:
    """
    Compare a presented token against a tournament.

    Returns one of the validation result codes; SUCCESS means access is
    granted. ``tournament`` may be None when the id did not resolve.
    """
    if not token:
        return MISSING_TOKEN
    if not is_valid_token_format(token):
        return INVALID_FORMAT
    if tournament is None:
        return TOURNAMENT_NOT_FOUND
    if not tournament.token:
        return NO_TOKEN
    if not hmac.compare_digest(tournament.token.lower(), token.lower()):
        return INVALID
    if not is_token_valid(tournament.token, tournament.token_expires_at, now):
        return EXPIRED
    return SUCCESS
