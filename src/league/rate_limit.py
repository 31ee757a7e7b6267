"""
Fixed-window rate limiting.

Structure: {identifier: (count, reset_at)} where reset_at is a unix
timestamp. The in-memory limiter serves one process; with REDIS_URL
configured the windows live in Redis and are shared by every worker.
Allowed and blocked requests are counted per limit type for monitoring.
"""
import logging
import math
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

MAX_STORE_SIZE = 10000

# type -> (limit, window seconds)
RATE_LIMITS = {
    'scoreInput': (20, 60),
    'polling': (12, 60),
    'tokenValidation': (10, 60),
    'general': (10, 60),
}


class RateLimitResult(NamedTuple):
    success: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int


class RateLimiter:
    def __init__(self, limits: Optional[Dict] = None, clock: Callable[[], float] = time.time,
                 max_store_size: int = MAX_STORE_SIZE):
        self.limits = dict(RATE_LIMITS)
        for name, value in (limits or {}).items():
            limit, window = value
            self.limits[name] = (int(limit), int(window))
        self.clock = clock
        self.max_store_size = max_store_size
        self._store: Dict[str, tuple] = {}
        self._stats: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, limit: int, window: int) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            if len(self._store) >= self.max_store_size:
                self._cleanup(now)
            count, reset_at = self._store.get(identifier, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window
            if count >= limit:
                retry_after = max(1, math.ceil(reset_at - now))
                return RateLimitResult(False, limit, 0, reset_at, retry_after)
            count += 1
            self._store[identifier] = (count, reset_at)
            return RateLimitResult(True, limit, limit - count, reset_at, 0)

    def check_type(self, limit_type: str, identifier: str) -> RateLimitResult:
        """Check ``identifier`` against a named limit such as 'scoreInput'."""
        if limit_type not in self.limits:
            raise ValueError(f'Unknown rate limit type: {limit_type}')
        limit, window = self.limits[limit_type]
        result = self.check(f'{limit_type}:{identifier}', limit, window)
        self._record(limit_type, result.success)
        return result

    def _record(self, limit_type: str, allowed: bool):
        with self._lock:
            counts = self._stats.setdefault(limit_type, {'allowed': 0, 'blocked': 0})
            counts['allowed' if allowed else 'blocked'] += 1

    def _counts(self, limit_type: str) -> Tuple[int, int]:
        with self._lock:
            counts = self._stats.get(limit_type, {})
            return counts.get('allowed', 0), counts.get('blocked', 0)

    def active_clients(self, limit_type: str) -> int:
        """Clients with an open window for ``limit_type``."""
        now = self.clock()
        prefix = f'{limit_type}:'
        with self._lock:
            return sum(1 for key, (_, reset_at) in self._store.items()
                       if key.startswith(prefix) and reset_at > now)

    def get_stats(self, limit_type: str) -> Dict:
        """Request counts for one limit type since start-up or the last clear()."""
        allowed, blocked = self._counts(limit_type)
        total = allowed + blocked
        return {
            'total': total,
            'allowed': allowed,
            'blocked': blocked,
            'rate': round(blocked * 100 / total, 1) if total else 0.0,
            'activeClients': self.active_clients(limit_type),
        }

    def _cleanup(self, now: float):
        expired = [key for key, (_, reset_at) in self._store.items() if reset_at <= now]
        for key in expired:
            del self._store[key]
        # Still full of live windows: drop the ones closest to resetting.
        if len(self._store) >= self.max_store_size:
            overflow = len(self._store) - self.max_store_size + 1
            for key, _ in sorted(self._store.items(), key=lambda item: item[1][1])[:overflow]:
                del self._store[key]

    def clear(self):
        with self._lock:
            self._store.clear()
            self._stats.clear()

    def __len__(self):
        return len(self._store)


class RedisRateLimiter(RateLimiter):
    """
    Fixed windows kept in Redis under "rate_limit:<type>:<client>".

    The first request of a window sets the key's expiry, so Redis drops
    finished windows itself. The client must be created with
    decode_responses=True. When Redis is unreachable the request is let
    through and the error logged.
    """

    KEY_PREFIX = 'rate_limit:'
    STATS_PREFIX = 'rate_limit_stats:'

    def __init__(self, client, limits: Optional[Dict] = None, clock: Callable[[], float] = time.time):
        super().__init__(limits=limits, clock=clock)
        self.client = client

    def check(self, identifier: str, limit: int, window: int) -> RateLimitResult:
        key = f'{self.KEY_PREFIX}{identifier}'
        now = self.clock()
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = pipe.execute()
            if ttl < 0:
                self.client.expire(key, window)
                ttl = window
        except redis.RedisError as e:
            logger.error(f'Rate limit check failed for {identifier}, allowing request: {e}')
            return RateLimitResult(True, limit, limit - 1, now + window, 0)
        reset_at = now + ttl
        if count > limit:
            return RateLimitResult(False, limit, 0, reset_at, max(1, ttl))
        return RateLimitResult(True, limit, limit - count, reset_at, 0)

    def _record(self, limit_type: str, allowed: bool):
        try:
            self.client.hincrby(f'{self.STATS_PREFIX}{limit_type}', 'allowed' if allowed else 'blocked', 1)
        except redis.RedisError as e:
            logger.error(f'Rate limit stats update failed for {limit_type}: {e}')

    def _counts(self, limit_type: str) -> Tuple[int, int]:
        counts = self.client.hgetall(f'{self.STATS_PREFIX}{limit_type}')
        return int(counts.get('allowed', 0)), int(counts.get('blocked', 0))

    def active_clients(self, limit_type: str) -> int:
        return sum(1 for _ in self.client.scan_iter(match=f'{self.KEY_PREFIX}{limit_type}:*'))

    def _keys(self, prefix: str):
        return list(self.client.scan_iter(match=f'{prefix}*'))

    def clear(self):
        keys = self._keys(self.KEY_PREFIX) + self._keys(self.STATS_PREFIX)
        if keys:
            self.client.delete(*keys)

    def __len__(self):
        return len(self._keys(self.KEY_PREFIX))


def create_rate_limiter(config: Dict) -> RateLimiter:
    """The Redis limiter when REDIS_URL is configured, else the in-memory one."""
    url = config.get('REDIS_URL')
    if url:
        logger.info('Rate limit windows stored in Redis')
        return RedisRateLimiter(redis.from_url(url, decode_responses=True), limits=config.get('RATE_LIMITS'))
    return RateLimiter(limits=config.get('RATE_LIMITS'))


def get_client_identifier(request) -> str:
    """Client IP, preferring proxy headers."""
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    for header in ('X-Real-IP', 'CF-Connecting-IP'):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return 'unknown'


def get_user_agent(request) -> str:
    return request.headers.get('User-Agent') or 'unknown'
