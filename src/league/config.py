"""
Application configuration.

Values come from an optional YAML file (path in LEAGUE_CONFIG) overlaid by
environment variables. Environment always wins so deployments can override
single keys without editing the file.
"""
import os
import yaml
from typing import Dict, Optional
from filelock import FileLock

BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEFAULTS = {
    'DATA_DIR': os.path.join(BASE_DIR, 'data'),
    'LOG_LEVEL': 'INFO',
    'TOKEN_DEFAULT_HOURS': 24,
    'CACHE_TTL_SECONDS': 300,
    'RATE_LIMITS': {},
}

# Environment variable -> config key
ENV_KEYS = {
    'LEAGUE_DATA_DIR': 'DATA_DIR',
    'DATABASE_URL': 'DATABASE_URL',
    'SECRET_KEY': 'SECRET_KEY',
    'LOG_LEVEL': 'LOG_LEVEL',
    'TOKEN_DEFAULT_HOURS': 'TOKEN_DEFAULT_HOURS',
    'CACHE_TTL_SECONDS': 'CACHE_TTL_SECONDS',
    'REDIS_URL': 'REDIS_URL',
}

INT_KEYS = {'TOKEN_DEFAULT_HOURS', 'CACHE_TTL_SECONDS'}


def load_config_file(path: Optional[str]) -> Dict:
    """Load a YAML config file. Missing path or empty file gives {}."""
    if not path or not os.path.exists(path):
        return {}
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f'Config file {path} must contain a mapping')
    return {str(k).upper(): v for k, v in data.items()}


def load_config(environ: Optional[Dict[str, str]] = None) -> Dict:
    """Build the effective configuration from defaults, file and environment."""
    environ = os.environ if environ is None else environ
    config = dict(DEFAULTS)
    config.update(load_config_file(environ.get('LEAGUE_CONFIG')))

    for env_name, key in ENV_KEYS.items():
        value = environ.get(env_name)
        if value:
            config[key] = value

    for key in INT_KEYS:
        config[key] = int(config[key])
    config['LOG_LEVEL'] = str(config['LOG_LEVEL']).upper()

    if not config.get('DATABASE_URL'):
        config['DATABASE_URL'] = 'sqlite:///' + os.path.join(config['DATA_DIR'], 'league.db')
    return config


def get_or_create_secret_key(config: Dict) -> bytes:
    """Get SECRET_KEY from config, or generate and persist it in the data dir."""
    key = config.get('SECRET_KEY')
    if key:
        return key.encode() if isinstance(key, str) else key
    data_dir = config['DATA_DIR']
    os.makedirs(data_dir, exist_ok=True)
    key_file = os.path.join(data_dir, '.secret_key')
    # Several workers may start at once; only one of them writes the key.
    with FileLock(os.path.join(data_dir, '.lock'), timeout=10):
        if os.path.exists(key_file):
            with open(key_file, 'rb') as f:
                return f.read()
        key = os.urandom(24)
        with open(key_file, 'wb') as f:
            f.write(key)
        return key
