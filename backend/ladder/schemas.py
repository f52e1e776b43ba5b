from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator


class ScoreIn(BaseModel):
    team1_score: int = Field(alias="team1Score", ge=0)
    team2_score: int = Field(alias="team2Score", ge=0)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class MatchEditIn(ScoreIn):
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("reason", mode="before")
    @classmethod
    def _strip_reason(cls, value):
        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeError("reason must be a string")
        trimmed = value.strip()
        return trimmed or None


class RatingCountersOut(BaseModel):
    rating: float
    matches_played: int = Field(alias="matchesPlayed")
    wins: int
    losses: int
    draws: int
    sets_won: int = Field(alias="setsWon")
    sets_lost: int = Field(alias="setsLost")

    model_config = ConfigDict(populate_by_name=True)


class RatingStateOut(RatingCountersOut):
    player_id: str = Field(alias="playerId")


class TeamRatingStateOut(RatingCountersOut):
    team_id: str = Field(alias="teamId")


class RecalculationOut(BaseModel):
    session_id: str = Field(alias="sessionId")
    match_id: str = Field(alias="matchId")
    mode: str
    replayed_match_ids: List[str] = Field(alias="replayedMatchIds")
    players: List[RatingStateOut]
    teams: List[TeamRatingStateOut] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class PlayerDeltaOut(BaseModel):
    player_id: str = Field(alias="playerId")
    name: Optional[str] = None
    rating_before: float = Field(alias="ratingBefore")
    rating_after: float = Field(alias="ratingAfter")
    delta: float

    model_config = ConfigDict(populate_by_name=True)


class SessionSummaryOut(BaseModel):
    session_id: str = Field(alias="sessionId")
    mode: str
    best_player: Optional[PlayerDeltaOut] = Field(default=None, alias="bestPlayer")
    worst_player: Optional[PlayerDeltaOut] = Field(default=None, alias="worstPlayer")
    players: List[PlayerDeltaOut]

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardEntryOut(BaseModel):
    rank: int
    player_id: str = Field(alias="playerId")
    player_name: str = Field(alias="playerName")
    # the pair members for doubles_team, otherwise the player itself
    player_ids: List[str] = Field(default_factory=list, alias="playerIds")
    rating: float
    matches_played: int = Field(alias="matchesPlayed")
    wins: int
    losses: int
    draws: int
    rank_movement: int = Field(alias="rankMovement")

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardOut(BaseModel):
    mode: str
    leaders: List[LeaderboardEntryOut]
    total: int


class RatingHistoryEntryOut(BaseModel):
    match_id: str = Field(alias="matchId")
    session_id: str = Field(alias="sessionId")
    round_number: int = Field(alias="roundNumber")
    match_order: int = Field(alias="matchOrder")
    rating_before: float = Field(alias="ratingBefore")
    rating_after: float = Field(alias="ratingAfter")
    delta: float
    k_factor: float = Field(alias="kFactor")

    model_config = ConfigDict(populate_by_name=True)


class SessionLockOut(BaseModel):
    session_id: str = Field(alias="sessionId")
    recalc_status: str = Field(alias="recalcStatus")
    recalc_finished_at: Optional[datetime] = Field(default=None, alias="recalcFinishedAt")

    model_config = ConfigDict(populate_by_name=True)

