"""Rating services: the pure formula and replay plus their persistence."""

from .validation import ValidationError, validate_participants, validate_score_pair
from .rating import RatingState, default_state, delta, k_factor, match_deltas
from .replay import ReplayMatch, ReplayResult, replay
from .snapshots import session_baseline, snapshot_before, write_snapshot
from .teams import normalize_pair, team_key
from .recalculation import apply_match, edit_match, record_result
from .reports import rank_movements, session_summary

__all__ = [
    "validate_participants",
    "validate_score_pair",
    "ValidationError",
    "RatingState",
    "default_state",
    "delta",
    "k_factor",
    "match_deltas",
    "ReplayMatch",
    "ReplayResult",
    "replay",
    "session_baseline",
    "snapshot_before",
    "write_snapshot",
    "normalize_pair",
    "team_key",
    "apply_match",
    "edit_match",
    "record_result",
    "rank_movements",
    "session_summary",
]
