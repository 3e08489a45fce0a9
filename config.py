"""Environment-driven settings for the results engine."""

import os

from dotenv import load_dotenv

load_dotenv()


def env_flag(name, default='0'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


def env_int(name, default, minimum=1):
    """Parse an integer setting, falling back to the default on bad input."""
    try:
        value = int(os.environ.get(name, default))
    except (TypeError, ValueError):
        value = int(default)
    return max(minimum, value)


def get_database_url():
    url = os.environ.get('DATABASE_URL', '').strip()
    if not url.startswith(('postgres://', 'postgresql://')):
        raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
    return url


ALLOW_INSECURE_DEFAULTS = env_flag('ALLOW_INSECURE_DEFAULTS')
RUN_STARTUP_DDL = env_flag('RUN_STARTUP_DDL', '1')

LOG_FILE = os.environ.get('LOG_FILE', 'app.log').strip() or 'app.log'
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO'

DB_CONNECT_TIMEOUT = env_int('DB_CONNECT_TIMEOUT', 10)
DB_READ_TIMEOUT_MS = env_int('DB_READ_TIMEOUT_MS', 15000, minimum=100)

# Rows per write transaction.
SCORE_SAVE_CHUNK_SIZE = env_int('SCORE_SAVE_CHUNK_SIZE', 20)
SCORE_LIST_MAX_ROWS = env_int('SCORE_LIST_MAX_ROWS', 2000)

RESULTS_WARMUP_ENABLED = env_flag('RESULTS_WARMUP_ENABLED', '1')
RESULTS_WARMUP_MAX_CALLS = env_int('RESULTS_WARMUP_MAX_CALLS', 4)
RESULTS_WARMUP_TIMEOUT_MS = env_int('RESULTS_WARMUP_TIMEOUT_MS', 2000, minimum=100)
