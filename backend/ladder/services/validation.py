from typing import Any, List, Optional, Sequence

from ..config import MATCH_MODES, PLAYERS_PER_MODE


class ValidationError(Exception):
    """Raised when a submitted score or participant list is invalid."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


def _mode_label(mode: str) -> str:
    return mode.replace("_", " ").title() or "Match"


def validate_mode(mode: Any) -> str:
    if mode not in MATCH_MODES:
        formatted = ", ".join(MATCH_MODES)
        raise ValidationError(f"Match mode must be one of: {formatted}.")
    return mode


def validate_participants(mode: str, player_ids: Any) -> List[str]:
    """Validate the participant list of a match and return it normalized.

    Rules:
    - ``mode`` must be a known match mode
    - exactly 2 players for singles, 4 for doubles (two per side)
    - every id is a non-empty string and no player appears twice
    """

    validate_mode(mode)
    if not isinstance(player_ids, Sequence) or isinstance(player_ids, (str, bytes)):
        raise ValidationError("Participants must be provided as a list of player ids.")

    expected = PLAYERS_PER_MODE[mode]
    if len(player_ids) != expected:
        raise ValidationError(
            f"{_mode_label(mode)} matches require exactly {expected} players."
        )

    normalized: List[str] = []
    for index, raw in enumerate(player_ids, start=1):
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"Participant #{index} must be a player id.")
        normalized.append(raw.strip())

    if len(set(normalized)) != len(normalized):
        raise ValidationError("A player cannot appear twice in the same match.")
    return normalized


def validate_score_pair(
    team1_score: Any,
    team2_score: Any,
    *,
    max_value: Optional[int] = 1000,
) -> tuple[int, int]:
    """Validate a recorded score pair.

    Both values must be integers >= 0 (booleans are rejected) and, when
    ``max_value`` is set, not above it. Equal scores are a draw.
    """

    normalized: List[int] = []
    for label, raw in (("team1Score", team1_score), ("team2Score", team2_score)):
        # Reject booleans explicitly (bool is a subclass of int in Python)
        if isinstance(raw, bool):
            raise ValidationError(f"{label} must be an integer (not a boolean).")
        if isinstance(raw, float) and not raw.is_integer():
            raise ValidationError(f"{label} must be an integer.")
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be an integer.")
        if value < 0:
            raise ValidationError(f"{label} must be >= 0.")
        if max_value is not None and value > max_value:
            raise ValidationError(f"{label} must be <= {max_value}.")
        normalized.append(value)

    return normalized[0], normalized[1]
