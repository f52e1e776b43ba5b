from fastapi import HTTPException
from pydantic import BaseModel
from typing import Optional


class ProblemDetail(BaseModel):
    """RFC 7807 compliant error response."""

    type: str = "about:blank"
    title: str
    detail: Optional[str] = None
    status: int
    instance: Optional[str] = None
    code: str


class DomainException(Exception):
    """Base class for domain-specific exceptions."""

    def __init__(
        self,
        status_code: int,
        title: str,
        *,
        code: str,
        detail: str | None = None,
        type_: str = "about:blank",
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type = type_
        self.code = code


class SessionNotFound(DomainException):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Session not found",
            detail=f"session '{session_id}' not found",
            code="session_not_found",
        )


class MatchNotFound(DomainException):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            status_code=404,
            title="Match not found",
            detail=f"match '{match_id}' not found",
            code="match_not_found",
        )


class UnsupportedMatchMode(DomainException):
    def __init__(self, match_id: str, mode: str) -> None:
        super().__init__(
            status_code=422,
            title="Unsupported match mode",
            detail=f"match '{match_id}' has mode '{mode}' which cannot be recalculated",
            code="match_mode_unsupported",
        )


class MalformedParticipants(DomainException):
    def __init__(self, match_id: str, detail: str) -> None:
        super().__init__(
            status_code=422,
            title="Malformed participants",
            detail=f"match '{match_id}': {detail}",
            code="match_participants_invalid",
        )


class MatchNotCompleted(DomainException):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Match not completed",
            detail=f"match '{match_id}' has no recorded result",
            code="match_not_completed",
        )


class MatchAlreadyApplied(DomainException):
    def __init__(self, match_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Match already applied",
            detail=f"ratings for match '{match_id}' were already applied; edit it instead",
            code="match_already_applied",
        )


class EditSuperseded(DomainException):
    def __init__(self, match_id: str, later_session_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Edit superseded",
            detail=(
                f"match '{match_id}' belongs to a session followed by completed "
                f"matches in session '{later_session_id}'"
            ),
            code="match_edit_superseded",
        )


class ResultSuperseded(DomainException):
    """A result would land before matches already applied in a later session."""

    def __init__(self, match_id: str, later_session_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Result superseded",
            detail=(
                f"match '{match_id}' cannot be applied after completed matches in "
                f"later session '{later_session_id}'"
            ),
            code="match_result_superseded",
        )


class RecalculationInProgress(DomainException):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=409,
            title="Recalculation in progress",
            detail=f"session '{session_id}' is being recalculated; retry shortly",
            code="recalculation_in_progress",
        )


class ReplayConsistencyError(DomainException):
    """A replay input violated an internal invariant; the operation is aborted."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            status_code=500,
            title="Recalculation failed",
            detail=detail,
            code="replay_consistency_error",
        )


class PartialRecalculationError(DomainException):
    """Snapshots were invalidated but the replayed range was not persisted."""

    def __init__(self, session_id: str, match_id: str) -> None:
        super().__init__(
            status_code=500,
            title="Recalculation failed",
            detail=(
                "recalculation failed, no changes were made to ratings before the "
                f"edited match; re-run the edit of match '{match_id}' in session "
                f"'{session_id}'"
            ),
            code="recalculation_needs_rerun",
        )
        self.session_id = session_id
        self.match_id = match_id


def http_problem(
    status_code: int,
    detail: str,
    code: str,
    *,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """Create an HTTPException with an attached problem code."""

    exc = HTTPException(status_code=status_code, detail=detail, headers=headers)
    setattr(exc, "code", code)
    return exc
