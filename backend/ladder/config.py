import os

def _canon_prefix(val):
    """
    Normalize API prefix to always be exactly like '/api':
      - defaults to '/api' when unset/empty
      - ensures a single leading slash
      - removes any trailing slash (except for root)
    """
    val = (val or "/api").strip()
    if not val.startswith("/"):
        val = "/" + val
    if len(val) > 1 and val.endswith("/"):
        val = val[:-1]
    return val


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


API_PREFIX = _canon_prefix(os.getenv("API_PREFIX"))

# Starting rating and zeroed counters for a player without history.
DEFAULT_RATING = _env_float("LADDER_DEFAULT_RATING", 1500.0)

# (exclusive upper bound on matches played, K) pairs, checked in order.
K_FACTOR_TIERS: tuple[tuple[int, float], ...] = ((10, 40.0), (40, 32.0))
K_FACTOR_FLOOR = 24.0

SINGLES = "singles"
DOUBLES = "doubles"
# Rated doubles pairs; fed by the same matches as the doubles family.
DOUBLES_TEAM = "doubles_team"
MATCH_MODES = (SINGLES, DOUBLES)
RATING_FAMILIES = (SINGLES, DOUBLES, DOUBLES_TEAM)
FAMILY_PATTERN = "^(singles|doubles|doubles_team)$"
PLAYERS_PER_MODE = {SINGLES: 2, DOUBLES: 4}
EDITABLE_MODES = {SINGLES}

RECALC_LOCK_TTL_SECONDS = _env_float("RECALC_LOCK_TTL_SECONDS", 600.0)
SUMMARY_CACHE_TTL_SECONDS = _env_float("SUMMARY_CACHE_TTL_SECONDS", 300.0)
