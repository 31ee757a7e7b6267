"""
Standings cache.

Standings are cached per tournament and stage under "<tournamentId>:<stage>"
with an ETag so polling clients can revalidate cheaply. Entries go stale
after the TTL; writes to matches invalidate them explicitly.

The default cache lives in the process. With REDIS_URL configured the
entries are kept in Redis instead so every worker sees the same standings.
"""
import hashlib
import json
import logging
import threading
import time
from typing import Callable, Dict, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


def create_cache_key(namespace: str, *parts) -> str:
    """Namespaced key: create_cache_key('standings', 't1', 'bm') -> 'cache:standings:t1:bm'."""
    return ':'.join(['cache', namespace] + [str(p) for p in parts])


def generate_etag(data) -> str:
    """Stable digest of JSON-serialisable data."""
    payload = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:16]


class StandingsCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(tournament_id: str, stage: str) -> str:
        return f'{tournament_id}:{stage}'

    def get(self, tournament_id: str, stage: str) -> Optional[Dict]:
        """The cached entry {'data', 'etag', 'last_updated'} or None."""
        with self._lock:
            return self._entries.get(self.key(tournament_id, stage))

    def set(self, tournament_id: str, stage: str, data, etag: Optional[str] = None) -> Dict:
        entry = {
            'data': data,
            'etag': etag or generate_etag(data),
            'last_updated': self.clock(),
        }
        with self._lock:
            self._entries[self.key(tournament_id, stage)] = entry
        return entry

    def is_expired(self, entry: Dict) -> bool:
        return self.clock() - entry['last_updated'] > self.ttl_seconds

    def get_fresh(self, tournament_id: str, stage: str) -> Optional[Dict]:
        """Like get() but stale entries count as missing."""
        entry = self.get(tournament_id, stage)
        if entry is None or self.is_expired(entry):
            return None
        return entry

    def invalidate(self, tournament_id: str, stage: Optional[str] = None):
        """Drop one stage of a tournament, or every stage when stage is None."""
        with self._lock:
            if stage:
                self._entries.pop(self.key(tournament_id, stage), None)
            else:
                prefix = f'{tournament_id}:'
                for key in [k for k in self._entries if k.startswith(prefix)]:
                    del self._entries[key]
        logger.debug(f'Invalidated standings cache for {tournament_id} ({stage or "all stages"})')

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


class RedisStandingsCache(StandingsCache):
    """
    Standings cache shared through Redis.

    Keys are create_cache_key('standings', tournamentId, stage) and expire in
    Redis after the TTL. The client must be created with decode_responses=True.
    A Redis error is logged and treated as a miss, so standings are rebuilt
    from the database instead of failing the request.
    """

    def __init__(self, client, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self.client = client

    @staticmethod
    def key(tournament_id: str, stage: str) -> str:
        return create_cache_key('standings', tournament_id, stage)

    def _keys(self, pattern: str):
        return list(self.client.scan_iter(match=pattern))

    def get(self, tournament_id: str, stage: str) -> Optional[Dict]:
        try:
            raw = self.client.get(self.key(tournament_id, stage))
        except redis.RedisError as e:
            logger.error(f'Standings cache read failed for {tournament_id}:{stage}: {e}')
            return None
        return json.loads(raw) if raw else None

    def set(self, tournament_id: str, stage: str, data, etag: Optional[str] = None) -> Dict:
        entry = {
            'data': data,
            'etag': etag or generate_etag(data),
            'last_updated': self.clock(),
        }
        try:
            self.client.set(self.key(tournament_id, stage), json.dumps(entry, default=str),
                            ex=max(1, int(self.ttl_seconds)))
        except redis.RedisError as e:
            logger.error(f'Standings cache write failed for {tournament_id}:{stage}: {e}')
        return entry

    def invalidate(self, tournament_id: str, stage: Optional[str] = None):
        try:
            if stage:
                self.client.delete(self.key(tournament_id, stage))
            else:
                keys = self._keys(create_cache_key('standings', tournament_id, '*'))
                if keys:
                    self.client.delete(*keys)
        except redis.RedisError as e:
            logger.error(f'Standings cache invalidation failed for {tournament_id}: {e}')
            return
        logger.debug(f'Invalidated standings cache for {tournament_id} ({stage or "all stages"})')

    def clear(self):
        keys = self._keys(create_cache_key('standings', '*'))
        if keys:
            self.client.delete(*keys)

    def __len__(self):
        return len(self._keys(create_cache_key('standings', '*')))


def create_standings_cache(config: Dict) -> StandingsCache:
    """The Redis cache when REDIS_URL is configured, else the in-process one."""
    ttl = int(config.get('CACHE_TTL_SECONDS', DEFAULT_TTL_SECONDS))
    url = config.get('REDIS_URL')
    if url:
        logger.info('Standings cache stored in Redis')
        return RedisStandingsCache(redis.from_url(url, decode_responses=True), ttl_seconds=ttl)
    return StandingsCache(ttl_seconds=ttl)
