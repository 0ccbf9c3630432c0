# battlesync/config.py

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple


BUCKLER_BASE = "https://www.streetfighter.com/6/buckler"
ENV_PREFIX = "BATTLESYNC_"


@dataclass(frozen=True)
class PacingProfile:
    """Delays and deadlines that make the traffic look like a person browsing."""

    name: str
    page_delay_ms: Tuple[int, int]
    season_delay_ms: Tuple[int, int]
    season_timeout_ms: int


UNATTENDED = PacingProfile(
    name="unattended",
    page_delay_ms=(500, 1500),
    season_delay_ms=(50, 50),
    season_timeout_ms=2000,
)

INTERACTIVE = PacingProfile(
    name="interactive",
    page_delay_ms=(1500, 3000),
    season_delay_ms=(1500, 3000),
    season_timeout_ms=5000,
)

PACING_PROFILES = {p.name: p for p in (UNATTENDED, INTERACTIVE)}


@dataclass(frozen=True)
class SyncConfig:
    max_pages: int = 10
    max_records_cap: int = 100
    consecutive_known_threshold: int = 3
    season_ids: Tuple[int, ...] = tuple(range(12))
    batch_wave_size: int = 5
    batch_cooldown_ms: int = 2000
    summary_cache_ttl_ms: int = 30 * 60 * 1000

    base_url: str = BUCKLER_BASE
    login_marker: str = "auth/login"
    page_timeout_ms: int = 8000
    landing_timeout_ms: int = 5000
    identity_api_timeout_ms: int = 3000

    db_path: str = "data/battlesync.db"
    storage_state_path: str = "data/storageState.json"
    force_full: bool = False
    pacing: PacingProfile = field(default=UNATTENDED)

    def with_pacing(self, name: str) -> "SyncConfig":
        return replace(self, pacing=_pacing_by_name(name))


def _pacing_by_name(name: str) -> PacingProfile:
    try:
        return PACING_PROFILES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown pacing profile '{name}' (expected one of: {', '.join(sorted(PACING_PROFILES))})"
        )


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name, "").strip()
    return value or None


def _env_int(name: str) -> Optional[int]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got '{raw}'")


def _env_bool(name: str) -> Optional[bool]:
    raw = _env(name)
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes", "on")


def _parse_season_range(raw: str) -> Tuple[int, ...]:
    """Accept '0..11', '0-11' or a comma list like '0,1,2'."""
    text = raw.strip()
    for sep in ("..", "-"):
        if sep in text and "," not in text:
            low, high = text.split(sep, 1)
            try:
                start, end = int(low), int(high)
            except ValueError:
                break
            if end < start:
                raise ValueError(f"{ENV_PREFIX}SEASON_ID_RANGE is empty: '{raw}'")
            return tuple(range(start, end + 1))
    try:
        return tuple(sorted({int(part) for part in text.split(",") if part.strip()}))
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}SEASON_ID_RANGE is not a valid range: '{raw}'")


def load_config(base: Optional[SyncConfig] = None) -> SyncConfig:
    """Return a config with BATTLESYNC_* environment overrides applied."""
    config = base or SyncConfig()
    overrides = {}

    int_options = {
        "MAX_PAGES": "max_pages",
        "MAX_RECORDS_CAP": "max_records_cap",
        "CONSECUTIVE_KNOWN_THRESHOLD": "consecutive_known_threshold",
        "BATCH_WAVE_SIZE": "batch_wave_size",
        "BATCH_COOLDOWN_MS": "batch_cooldown_ms",
        "SUMMARY_CACHE_TTL_MS": "summary_cache_ttl_ms",
        "PAGE_TIMEOUT_MS": "page_timeout_ms",
        "LANDING_TIMEOUT_MS": "landing_timeout_ms",
        "IDENTITY_API_TIMEOUT_MS": "identity_api_timeout_ms",
    }
    for env_name, attr in int_options.items():
        value = _env_int(env_name)
        if value is not None:
            overrides[attr] = value

    for env_name, attr in (
        ("BASE_URL", "base_url"),
        ("LOGIN_MARKER", "login_marker"),
        ("DB_PATH", "db_path"),
        ("STORAGE_STATE_PATH", "storage_state_path"),
    ):
        value = _env(env_name)
        if value is not None:
            overrides[attr] = value

    season_range = _env("SEASON_ID_RANGE")
    if season_range is not None:
        overrides["season_ids"] = _parse_season_range(season_range)

    force_full = _env_bool("FORCE_FULL")
    if force_full is not None:
        overrides["force_full"] = force_full

    pacing = _env("PACING")
    if pacing is not None:
        overrides["pacing"] = _pacing_by_name(pacing)

    return replace(config, **overrides) if overrides else config


def target_sids_from_env() -> list[str]:
    raw = _env("TARGET_SIDS") or ""
    return list(dict.fromkeys(s.strip() for s in raw.split(",") if s.strip()))
