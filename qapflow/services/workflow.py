"""
QAP workflow state machine.

Pure transition function: no database, no Flask, no clock. Given the
current (level, status, plant) of a QAP and an event, ``apply_transition``
returns the next state, the field updates to persist and the timeline
entries to append. ``QAPWorkflowService`` commits that output atomically.

State table:

    level  status           next
    1      submitted        SendForReview          → 2 level-2
    1      submitted        QAPEdited              → 1 submitted (timeline only)
    2      level-2          ReviewSubmitted(2)     → 3 level-3, or 4 level-4
                                                     for fast-track plants,
                                                     once required ⊆ satisfied
    3      level-3          ReviewSubmitted(3)     → 4 level-4
    4      level-4          ReviewSubmitted(4)     → 5 final-comments
    5      final-comments   FinalCommentsSubmitted → 5 level-5
    5      level-5          PlantHeadDecision      → 5 approved | rejected
    5      approved/rejected (terminal)

Role and plant gating belong to the caller; this module only enforces state
preconditions (PreconditionError) and event shape (ValidationError).
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from qapflow.core.exceptions import PreconditionError, ValidationError
from qapflow.models.qap import (
    TERMINAL_STATUSES,
    Plant,
    QAPStatus,
    Role,
)

SYSTEM_USER = "system"

REVIEW_LEVELS = (2, 3, 4)

_REVIEW_STATUS = {
    2: QAPStatus.LEVEL_2,
    3: QAPStatus.LEVEL_3,
    4: QAPStatus.LEVEL_4,
}


# ── State & output ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkflowState:
    level: int
    status: QAPStatus
    plant: Plant

    @classmethod
    def of(cls, qap) -> "WorkflowState":
        return cls(level=qap.current_level, status=qap.status, plant=qap.plant)


@dataclass(frozen=True)
class TimelineDraft:
    """A timeline entry to append.

    ``on_advance`` entries describe the level change itself and are only
    written when the conditional level update wins.
    """
    level: int
    action: str
    user: str
    on_advance: bool = False


@dataclass(frozen=True)
class Transition:
    from_level: int
    from_status: QAPStatus
    level: int
    status: QAPStatus
    timeline: tuple[TimelineDraft, ...] = ()
    updates: Mapping = field(default_factory=dict, hash=False, compare=False)
    pending_roles: frozenset[Role] = frozenset()

    @property
    def advances(self) -> bool:
        return (self.level, self.status) != (self.from_level, self.from_status)


# ── Events ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SendForReview:
    user: str


@dataclass(frozen=True)
class QAPEdited:
    """The submitter changed a QAP still at level 1; ``fields`` names what changed."""
    user: str
    fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewSubmitted:
    """A reviewer acknowledged ``level``.

    ``required`` / ``satisfied`` are only consulted at level 2 and must be
    computed after the reviewer's own response has been recorded.
    """
    level: int
    role: Role
    user: str
    required: frozenset[Role] = frozenset()
    satisfied: frozenset[Role] = frozenset()


@dataclass(frozen=True)
class FinalCommentsSubmitted:
    user: str
    comments: str
    at: datetime
    attachment_name: str | None = None
    attachment_url: str | None = None


@dataclass(frozen=True)
class PlantHeadDecision:
    user: str
    approved: bool
    at: datetime
    feedback: str | None = None


# ── Transition function ──────────────────────────────────────────────────────


def _expect(state: WorkflowState, level: int, status: QAPStatus, action: str) -> None:
    if (state.level, state.status) != (level, status):
        raise PreconditionError(
            f"Cannot {action}: QAP is at level {state.level} ({state.status.value})",
            details={
                "current_level": state.level,
                "status": state.status.value,
                "expected_level": level,
                "expected_status": status.value,
            },
        )


def _move(state: WorkflowState, level: int, status: QAPStatus, *timeline, updates=None,
          pending_roles=frozenset()) -> Transition:
    return Transition(
        from_level=state.level,
        from_status=state.status,
        level=level,
        status=status,
        timeline=tuple(timeline),
        updates=dict(updates or {}),
        pending_roles=frozenset(pending_roles),
    )


def _review(state: WorkflowState, event: ReviewSubmitted, fast_track_plants) -> Transition:
    level = event.level
    _expect(state, level, _REVIEW_STATUS[level], f"submit a level {level} response")
    reviewed = TimelineDraft(level, f"Level {level} reviewed by {event.user}", event.user)

    if level == 2:
        missing = event.required - event.satisfied
        if missing:
            return _move(state, state.level, state.status, reviewed, pending_roles=missing)
        if state.plant in fast_track_plants:
            return _move(
                state, 4, QAPStatus.LEVEL_4, reviewed,
                TimelineDraft(2, "Level 2 completed, skipped Level 3, sent to Level 4",
                              SYSTEM_USER, on_advance=True),
            )
        return _move(
            state, 3, QAPStatus.LEVEL_3, reviewed,
            TimelineDraft(2, "Level 2 completed, sent to Level 3", SYSTEM_USER, on_advance=True),
        )

    if level == 3:
        return _move(
            state, 4, QAPStatus.LEVEL_4, reviewed,
            TimelineDraft(3, "Level 3 completed, sent to Level 4", SYSTEM_USER, on_advance=True),
        )

    return _move(
        state, 5, QAPStatus.FINAL_COMMENTS, reviewed,
        TimelineDraft(4, "Level 4 completed, sent back to Requestor for Final Comments",
                      SYSTEM_USER, on_advance=True),
    )


def apply_transition(state: WorkflowState, event, fast_track_plants=frozenset()) -> Transition:
    """Compute the outcome of ``event`` against ``state``.

    Args:
        state: Current (level, status, plant) of the QAP.
        event: One of SendForReview, QAPEdited, ReviewSubmitted, FinalCommentsSubmitted,
            PlantHeadDecision.
        fast_track_plants: Plants whose level-2 completion skips level 3.

    Returns:
        Transition describing the new state, field updates and timeline drafts.

    Raises:
        PreconditionError: terminal QAP, or event not allowed in this state.
        ValidationError: malformed event (level outside 2-4, unknown event).
    """
    if state.status in TERMINAL_STATUSES:
        raise PreconditionError(
            f"QAP is {state.status.value}; no further transitions are accepted",
            details={"current_level": state.level, "status": state.status.value},
        )

    match event:
        case SendForReview(user=user):
            _expect(state, 1, QAPStatus.SUBMITTED, "send for review")
            return _move(
                state, 2, QAPStatus.LEVEL_2,
                TimelineDraft(1, "Submitted for Level 2 review", user, on_advance=True),
            )

        case QAPEdited(user=user, fields=fields):
            _expect(state, 1, QAPStatus.SUBMITTED, "edit the QAP")
            action = f"QAP edited by {user}"
            if fields:
                action += f" ({', '.join(fields)})"
            return _move(state, state.level, state.status, TimelineDraft(1, action, user))

        case ReviewSubmitted(level=level) if level not in REVIEW_LEVELS:
            raise ValidationError(
                "level must be one of 2, 3, 4",
                details={"level": level},
            )

        case ReviewSubmitted():
            return _review(state, event, frozenset(fast_track_plants))

        case FinalCommentsSubmitted(user=user, comments=comments, at=at):
            _expect(state, 5, QAPStatus.FINAL_COMMENTS, "submit final comments")
            return _move(
                state, 5, QAPStatus.LEVEL_5,
                TimelineDraft(5, "Sent to Plant Head for Approval", user, on_advance=True),
                updates={
                    "final_comments": comments,
                    "final_comments_by": user,
                    "final_comments_at": at,
                    "final_attachment_name": event.attachment_name,
                    "final_attachment_url": event.attachment_url,
                },
            )

        case PlantHeadDecision(user=user, approved=approved, at=at):
            _expect(state, 5, QAPStatus.LEVEL_5, "record a plant-head decision")
            if approved:
                status, action = QAPStatus.APPROVED, "Plant-head approved QAP"
            else:
                status, action = QAPStatus.REJECTED, "Plant-head rejected QAP"
            return _move(
                state, 5, status,
                TimelineDraft(5, action, user, on_advance=True),
                updates={"approver": user, "approved_at": at, "feedback": event.feedback},
            )

        case _:
            raise ValidationError(f"Unsupported workflow event: {type(event).__name__}")
