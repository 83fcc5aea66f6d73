"""
Configuration module for the Adaptive Places Sync engine.
-------------------------------------------

This module defines all of the tunable parameters, file paths, and environment-driven settings
used by the adaptive search and sync run. Values are read once at import time; a `.env` file in
the working directory is honoured through python-dotenv.
"""

import os
from pathlib import Path
from typing import Dict, Any

from dotenv import load_dotenv

from .models import Region

load_dotenv()


def _env_flag(name: str, default: str = '0') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


# Base paths
DATA_DIR = Path(os.getenv('SYNC_DATA_DIR', 'data'))
LOGS_DIR = Path(os.getenv('SYNC_LOGS_DIR', 'logs'))

SHOPS_CSV = Path(os.getenv('SHOPS_CSV', str(DATA_DIR / 'coffee_shops.csv')))
HISTORY_DB = Path(os.getenv('HISTORY_DB', str(DATA_DIR / 'sync_history.sqlite3')))

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_TO_FILE = _env_flag('LOG_TO_FILE', '1')

# API configuration
API_KEY = os.getenv('GOOGLE_PLACES_API_KEY')
PLACES_ENDPOINT = os.getenv('PLACES_ENDPOINT', 'https://places.googleapis.com/v1/places:searchNearby')
PLACE_TYPES = [t.strip() for t in os.getenv('PLACE_TYPES', 'cafe').split(',') if t.strip()]
REQUEST_TIMEOUT = float(os.getenv('REQUEST_TIMEOUT', 15))
MAX_SEARCH_RADIUS = 50000  # searchNearby hard limit, in meters

# Search parameters
PLACES_RESULT_CAP = int(os.getenv('PLACES_RESULT_CAP', 20))  # searchNearby returns at most 20 places
MAX_SUBDIVISION_DEPTH = int(os.getenv('MAX_SUBDIVISION_DEPTH', 4))
RATE_LIMIT_SECONDS = float(os.getenv('RATE_LIMIT_SECONDS', 1.0))
DEFAULT_MAX_API_CALLS = int(os.getenv('DEFAULT_MAX_API_CALLS', 50))
MAX_API_CALLS_LIMIT = int(os.getenv('MAX_API_CALLS_LIMIT', 2000))

# Retry policy for transient search failures
SEARCH_MAX_ATTEMPTS = int(os.getenv('SEARCH_MAX_ATTEMPTS', 3))
SEARCH_BACKOFF_BASE = float(os.getenv('SEARCH_BACKOFF_BASE', 1.0))
SEARCH_BACKOFF_MAX = float(os.getenv('SEARCH_BACKOFF_MAX', 8.0))

# Persistence
UPSERT_BATCH_SIZE = int(os.getenv('UPSERT_BATCH_SIZE', 50))
MARK_STALE_AFTER_SYNC = _env_flag('MARK_STALE_AFTER_SYNC')

# Progress
PROGRESS_BUFFER_SIZE = int(os.getenv('PROGRESS_BUFFER_SIZE', 200))
PROGRESS_SLOW_HANDLER_SECONDS = float(os.getenv('PROGRESS_SLOW_HANDLER_SECONDS', 0.25))

# Chains removed after the raw count is taken
DEFAULT_EXCLUDED_CHAINS = [
    "starbucks",
    "dunkin",
    "peet's coffee",
    "tim hortons",
    "caribou coffee",
    "costa coffee",
    "mcdonald's",
    "mccafe",
    "7-eleven",
    "krispy kreme",
    "shipley",
]
EXCLUDED_CHAINS = [
    c.strip().lower()
    for c in os.getenv('EXCLUDED_CHAINS', ','.join(DEFAULT_EXCLUDED_CHAINS)).split(',')
    if c.strip()
]

# Regions
TEST_REGION = Region(name="houston-downtown", north=29.78, south=29.74, east=-95.35, west=-95.39)
HOUSTON_REGION = Region(name="houston", north=30.05, south=29.45, east=-94.95, west=-95.85)

REGIONS = {
    'test': TEST_REGION,
    'production': HOUSTON_REGION,
}

# Grid layout per mode as (columns, rows)
GRID_SHAPES = {
    'test': (2, 3),
    'production': (8, 9),
}

MODES = tuple(GRID_SHAPES)


def get_config() -> Dict[str, Any]:
    """
    Get the current configuration as a dictionary.
    Useful for logging and debugging. The API key is never included.
    """
    return {
        'paths': {
            'data_dir': str(DATA_DIR),
            'logs_dir': str(LOGS_DIR),
            'shops_csv': str(SHOPS_CSV),
            'history_db': str(HISTORY_DB),
        },
        'api': {
            'endpoint': PLACES_ENDPOINT,
            'place_types': PLACE_TYPES,
            'request_timeout': REQUEST_TIMEOUT,
            'api_key_configured': bool(API_KEY),
        },
        'search': {
            'result_cap': PLACES_RESULT_CAP,
            'max_subdivision_depth': MAX_SUBDIVISION_DEPTH,
            'rate_limit_seconds': RATE_LIMIT_SECONDS,
            'default_max_api_calls': DEFAULT_MAX_API_CALLS,
            'max_api_calls_limit': MAX_API_CALLS_LIMIT,
            'max_attempts': SEARCH_MAX_ATTEMPTS,
            'backoff_base': SEARCH_BACKOFF_BASE,
            'backoff_max': SEARCH_BACKOFF_MAX,
        },
        'processing': {
            'upsert_batch_size': UPSERT_BATCH_SIZE,
            'mark_stale_after_sync': MARK_STALE_AFTER_SYNC,
            'progress_buffer_size': PROGRESS_BUFFER_SIZE,
            'excluded_chains': len(EXCLUDED_CHAINS),
        },
    }
