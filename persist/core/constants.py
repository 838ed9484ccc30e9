"""
System-Wide Constants for Persist

All protocol timings and wire-format keys centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000
MINUTE_S: Final[int] = 60

# =============================================================================
# LOCKING PROTOCOL
# =============================================================================
# A lock not refreshed for this long is presumed abandoned (owner crashed)
DEAD_LOCK_DURATION_S: Final[int] = 30 * MINUTE_S

# Waits between load attempts while another server holds the lock.
# Attempts past the end of the schedule reuse the last entry.
LOAD_RETRY_DELAYS_S: Final[tuple[int, ...]] = (6, 8, 10, 12, 24, 30)

# =============================================================================
# AUTOSAVE
# =============================================================================
DEFAULT_AUTOSAVE_SECONDS: Final[float] = 30.0

# =============================================================================
# RECORD WIRE FORMAT
# =============================================================================
RECORD_DATA_KEY: Final[str] = "d"
RECORD_LAST_UPDATE_TIME_KEY: Final[str] = "t"
RECORD_RELEASE_REQUEST_KEY: Final[str] = "r"
RECORD_LOCK_KEY: Final[str] = "l"

# =============================================================================
# STORAGE
# =============================================================================
REDIS_KEY_PREFIX: Final[str] = "persist"
REDIS_MAX_WATCH_RETRIES: Final[int] = 16
COMPRESSION_THRESHOLD_BYTES: Final[int] = 4 * 1024
