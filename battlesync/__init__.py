"""
Incremental battle log and rating sync for the Buckler portal.

Fetches a player's ranked battle log page by page until already-stored
matches are reached, backfills past act ratings, and keeps a short-lived
cache of opponent summaries.
"""

from .config import SyncConfig, load_config, UNATTENDED, INTERACTIVE
from .engine import SyncEngine, SyncReport
from .fetcher import (
    RateLimitedFetcher,
    StaticCredentials,
    StorageStateCredentials,
    FetchError,
    FetchTimeout,
    FetchNetworkError,
    AuthenticationLost,
)
from .models import KnownKeys, MatchRecord, Outcome, RatingPoint, Summary, SyncStatus
from .store import SyncStore

__all__ = [
    'SyncConfig',
    'load_config',
    'UNATTENDED',
    'INTERACTIVE',
    'SyncEngine',
    'SyncReport',
    'RateLimitedFetcher',
    'StaticCredentials',
    'StorageStateCredentials',
    'FetchError',
    'FetchTimeout',
    'FetchNetworkError',
    'AuthenticationLost',
    'KnownKeys',
    'MatchRecord',
    'Outcome',
    'RatingPoint',
    'Summary',
    'SyncStatus',
    'SyncStore',
]
