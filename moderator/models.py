"""
Enums and pydantic models for the comment moderation core.

CommentState is the typed set of moderation flags a caller may write
onto a comment; merge_state combines two of them with a fixed override
order.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from moderator.errors import NotFoundError, ValidationError


# =============================================================================
# Enums
# =============================================================================


class AcceptanceState(str, Enum):
    """Verdict axis of a comment, independent of highlighting."""
    PENDING = "pending"      # Never decided, deferred or reset
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @classmethod
    def from_flag(cls, flag: Optional[bool]) -> "AcceptanceState":
        """Read the nullable `is_accepted` column."""
        if flag is None:
            return cls.PENDING
        return cls.ACCEPTED if flag else cls.REJECTED

    def as_flag(self) -> Optional[bool]:
        """Value stored in the nullable `is_accepted` column."""
        if self is AcceptanceState.PENDING:
            return None
        return self is AcceptanceState.ACCEPTED


class DecisionStatus(str, Enum):
    """Verdict recorded in the decision ledger."""
    ACCEPT = "Accept"
    REJECT = "Reject"
    DEFER = "Defer"
    HIGHLIGHT = "Highlight"


class DecisionSource(str, Enum):
    """Kind of actor that produced a decision."""
    USER = "User"
    MACHINE = "Machine"


class UserGroup(str, Enum):
    """Groups an acting identity can belong to."""
    ADMIN = "admin"
    GENERAL = "general"
    MODERATOR = "moderator"
    SERVICE = "service"      # Automated scorers and pipelines


SOURCE_BY_GROUP = {
    UserGroup.ADMIN: DecisionSource.USER,
    UserGroup.GENERAL: DecisionSource.USER,
    UserGroup.MODERATOR: DecisionSource.USER,
    UserGroup.SERVICE: DecisionSource.MACHINE,
}


def source_for_actor(actor: Any) -> DecisionSource:
    """Map an acting identity onto the decision source it records as."""
    if actor is None:
        raise NotFoundError("Actor not found")
    try:
        group = UserGroup(actor.group)
    except ValueError:
        raise ValidationError(f"Unknown actor group: {actor.group!r}") from None
    return SOURCE_BY_GROUP[group]


# =============================================================================
# Comment State
# =============================================================================


class CommentState(BaseModel):
    """
    Partial set of moderation flags for a comment.

    Only fields that were explicitly given count as part of the state;
    accepts snake_case names or their camelCase aliases. `is_accepted`
    also takes the legacy nullable boolean (None means pending).
    """

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    is_accepted: AcceptanceState = AcceptanceState.PENDING
    is_deferred: bool = False
    is_highlighted: bool = False
    is_batch_resolved: bool = False

    @field_validator("is_accepted", mode="before")
    @classmethod
    def coerce_flag(cls, v):
        """Accept True/False/None for the verdict axis."""
        if v is None or isinstance(v, bool):
            return AcceptanceState.from_flag(v)
        return v

    def fields(self) -> dict:
        """Explicitly provided fields, keyed by attribute name."""
        return self.model_dump(exclude_unset=True)


StateInput = Union[CommentState, Mapping[str, Any]]


def to_comment_state(value: StateInput) -> CommentState:
    """Validate a mapping into a CommentState."""
    if isinstance(value, CommentState):
        return value
    if not isinstance(value, Mapping):
        raise ValidationError(f"Comment state must be a mapping, got {type(value).__name__}")
    try:
        return CommentState.model_validate(dict(value))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid comment state: {e}") from e


def merge_state(state: StateInput, data: Optional[StateInput] = None) -> CommentState:
    """
    Merge optional `data` with `state`.

    `state` always wins on a field present in both; fields absent from
    both stay unset.
    """
    merged = {}
    if data is not None:
        merged.update(to_comment_state(data).fields())
    merged.update(to_comment_state(state).fields())
    return CommentState(**merged)


# =============================================================================
# Response Models
# =============================================================================


class DecisionResponse(BaseModel):
    """A single ledger entry."""

    id: int
    comment_id: int
    user_id: Optional[int] = None
    source: DecisionSource
    status: DecisionStatus
    is_current_decision: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DecisionHistoryResponse(BaseModel):
    """Full decision history for a comment."""

    comment_id: int
    current: Optional[DecisionResponse] = None
    decisions: List[DecisionResponse]


class ScorerStatus(BaseModel):
    """Completion state of one scorer for a comment."""

    user_id: int
    requests: int
    done: bool


class ScoringStatusResponse(BaseModel):
    """Whether scoring of a comment has finished."""

    comment_id: int
    is_done_scoring: bool
    scorers: List[ScorerStatus]
