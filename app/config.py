"""
Runtime settings. Values come from the environment (a local .env is loaded
first) and are read as module attributes so tests can monkeypatch them.
"""

import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _hours(name: str, default: float) -> timedelta:
    return timedelta(hours=float(os.getenv(name, default)))


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


RESPONSE_WINDOW = _hours("RESPONSE_WINDOW_HOURS", 2)
REQUEST_RETENTION = _hours("REQUEST_RETENTION_HOURS", 7 * 24)
OFFER_FOLLOW_UP_DELAY = _hours("OFFER_FOLLOW_UP_HOURS", 24)

SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", True)
SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", 300))

# "all" deletes every request past retention; "exempt_assigned" spares
# requests that still have donors assigned.
EXPIRY_POLICY = os.getenv("EXPIRY_POLICY", "all")

NEARBY_RADIUS_KM = float(os.getenv("NEARBY_RADIUS_KM", 50))
RECENT_RADIUS_KM = float(os.getenv("RECENT_RADIUS_KM", 20))
DONOR_RADIUS_KM = float(os.getenv("DONOR_RADIUS_KM", 20))

SERVER_BASE = os.getenv("SERVER_BASE", "http://localhost:8000")
GEOCODER_URL = os.getenv(
    "GEOCODER_URL", "https://nominatim.openstreetmap.org/search"
)
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "bloodline-backend")
GEOCODING_ENABLED = _flag("GEOCODING_ENABLED", True)
# Shared secret for the geocode backfill endpoint; unset disables it.
GEOCODER_SECRET = os.getenv("GEOCODER_SECRET")
GEOCODE_BACKFILL_DELAY_SECONDS = float(os.getenv("GEOCODE_BACKFILL_DELAY_SECONDS", 1.2))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
