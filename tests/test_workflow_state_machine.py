"""
Pure state-machine tests for ``apply_transition`` (no database).

States:
    1 submitted → 2 level-2 → 3 level-3 → 4 level-4 → 5 final-comments
    → 5 level-5 → 5 approved | rejected
    Fast-track plants go 2 → 4 directly.

For every event:
    - valid source state yields the expected target and timeline drafts
    - any other state raises PreconditionError
    - terminal states reject everything
    - every produced (level, status) pair is in VALID_STATES
"""

from datetime import datetime, timezone

import pytest

from qapflow.core.exceptions import PreconditionError, ValidationError
from qapflow.models.qap import VALID_STATES, Plant, QAPStatus, Role
from qapflow.services.workflow import (
    SYSTEM_USER,
    FinalCommentsSubmitted,
    PlantHeadDecision,
    QAPEdited,
    ReviewSubmitted,
    SendForReview,
    WorkflowState,
    apply_transition,
)

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
FAST = frozenset({Plant.P2})

ALL_STATES = sorted(VALID_STATES, key=lambda s: (s[0], s[1].value))


def state(level, status, plant=Plant.P4):
    return WorkflowState(level=level, status=status, plant=plant)


def review(level, role=Role.HEAD, user="hari", required=frozenset(), satisfied=frozenset()):
    return ReviewSubmitted(level=level, role=role, user=user,
                           required=frozenset(required), satisfied=frozenset(satisfied))


# ═════════════════════════════════════════════════════════════════════════
# SEND FOR REVIEW / LEVEL 1 EDIT
# ═════════════════════════════════════════════════════════════════════════

class TestSendForReview:
    def test_submitted_to_level_2(self):
        t = apply_transition(state(1, QAPStatus.SUBMITTED), SendForReview(user="riya"), FAST)
        assert (t.level, t.status) == (2, QAPStatus.LEVEL_2)
        assert t.advances
        assert [d.action for d in t.timeline] == ["Submitted for Level 2 review"]
        assert t.timeline[0].user == "riya"

    def test_not_from_level_2(self):
        with pytest.raises(PreconditionError):
            apply_transition(state(2, QAPStatus.LEVEL_2), SendForReview(user="riya"), FAST)


class TestEdit:
    def test_edit_stays_at_level_1(self):
        t = apply_transition(
            state(1, QAPStatus.SUBMITTED),
            QAPEdited(user="riya", fields=("project_name", "mqp_items")),
            FAST,
        )
        assert (t.level, t.status) == (1, QAPStatus.SUBMITTED)
        assert not t.advances
        assert [(d.level, d.action) for d in t.timeline] == [
            (1, "QAP edited by riya (project_name, mqp_items)"),
        ]
        assert not t.timeline[0].on_advance

    @pytest.mark.parametrize("level,status", [
        (2, QAPStatus.LEVEL_2),
        (4, QAPStatus.LEVEL_4),
        (5, QAPStatus.FINAL_COMMENTS),
    ])
    def test_not_after_send(self, level, status):
        with pytest.raises(PreconditionError):
            apply_transition(state(level, status), QAPEdited(user="riya"), FAST)


# ═════════════════════════════════════════════════════════════════════════
# LEVEL 2 GATING & ROUTING
# ═════════════════════════════════════════════════════════════════════════

class TestLevel2:
    def test_partial_progress_stays_at_level_2(self):
        t = apply_transition(
            state(2, QAPStatus.LEVEL_2),
            review(2, Role.QUALITY, "qa", required={Role.QUALITY, Role.TECHNICAL},
                   satisfied={Role.QUALITY}),
            FAST,
        )
        assert (t.level, t.status) == (2, QAPStatus.LEVEL_2)
        assert not t.advances
        assert t.pending_roles == {Role.TECHNICAL}
        assert [d.action for d in t.timeline] == ["Level 2 reviewed by qa"]

    def test_complete_goes_to_level_3(self):
        t = apply_transition(
            state(2, QAPStatus.LEVEL_2, Plant.P4),
            review(2, Role.TECHNICAL, "tech", required={Role.QUALITY, Role.TECHNICAL},
                   satisfied={Role.QUALITY, Role.TECHNICAL}),
            FAST,
        )
        assert (t.level, t.status) == (3, QAPStatus.LEVEL_3)
        system = t.timeline[-1]
        assert system.action == "Level 2 completed, sent to Level 3"
        assert system.user == SYSTEM_USER
        assert system.level == 2
        assert system.on_advance

    def test_fast_track_skips_level_3(self):
        t = apply_transition(
            state(2, QAPStatus.LEVEL_2, Plant.P2),
            review(2, Role.TECHNICAL, "tech", required={Role.TECHNICAL},
                   satisfied={Role.TECHNICAL}),
            FAST,
        )
        assert (t.level, t.status) == (4, QAPStatus.LEVEL_4)
        assert t.timeline[-1].action == "Level 2 completed, skipped Level 3, sent to Level 4"

    def test_fast_track_set_is_configuration(self):
        t = apply_transition(
            state(2, QAPStatus.LEVEL_2, Plant.P2),
            review(2, Role.TECHNICAL, required={Role.TECHNICAL}, satisfied={Role.TECHNICAL}),
            frozenset({Plant.P6}),
        )
        assert t.level == 3

    def test_empty_required_is_vacuously_satisfied(self):
        t = apply_transition(state(2, QAPStatus.LEVEL_2), review(2, Role.PRODUCTION), FAST)
        assert t.level == 3

    def test_extra_satisfied_roles_do_not_matter(self):
        t = apply_transition(
            state(2, QAPStatus.LEVEL_2),
            review(2, required={Role.QUALITY}, satisfied={Role.QUALITY, Role.HEAD}),
            FAST,
        )
        assert t.level == 3


# ═════════════════════════════════════════════════════════════════════════
# LEVELS 3 & 4
# ═════════════════════════════════════════════════════════════════════════

class TestLevels3And4:
    def test_level_3_to_level_4(self):
        t = apply_transition(state(3, QAPStatus.LEVEL_3), review(3), FAST)
        assert (t.level, t.status) == (4, QAPStatus.LEVEL_4)
        assert [d.action for d in t.timeline] == [
            "Level 3 reviewed by hari",
            "Level 3 completed, sent to Level 4",
        ]

    def test_level_4_to_final_comments(self):
        t = apply_transition(state(4, QAPStatus.LEVEL_4), review(4, Role.TECHNICAL_HEAD, "th"), FAST)
        assert (t.level, t.status) == (5, QAPStatus.FINAL_COMMENTS)
        assert t.timeline[-1].action == "Level 4 completed, sent back to Requestor for Final Comments"

    @pytest.mark.parametrize("level,current", [
        (3, state(2, QAPStatus.LEVEL_2)),
        (2, state(3, QAPStatus.LEVEL_3)),
        (4, state(3, QAPStatus.LEVEL_3)),
        (4, state(5, QAPStatus.FINAL_COMMENTS)),
    ])
    def test_level_must_match_current(self, level, current):
        with pytest.raises(PreconditionError):
            apply_transition(current, review(level), FAST)

    @pytest.mark.parametrize("level", [1, 5, 0, 6])
    def test_level_outside_review_range(self, level):
        with pytest.raises(ValidationError):
            apply_transition(state(2, QAPStatus.LEVEL_2), review(level), FAST)


# ═════════════════════════════════════════════════════════════════════════
# FINAL COMMENTS & DECISION
# ═════════════════════════════════════════════════════════════════════════

class TestFinalStages:
    def test_final_comments_to_level_5(self):
        t = apply_transition(
            state(5, QAPStatus.FINAL_COMMENTS),
            FinalCommentsSubmitted(user="riya", comments="ok", at=NOW,
                                   attachment_name="deviation.pdf"),
            FAST,
        )
        assert (t.level, t.status) == (5, QAPStatus.LEVEL_5)
        assert t.updates["final_comments"] == "ok"
        assert t.updates["final_comments_by"] == "riya"
        assert t.updates["final_comments_at"] == NOW
        assert t.updates["final_attachment_name"] == "deviation.pdf"
        assert t.timeline[0].action == "Sent to Plant Head for Approval"
        assert t.timeline[0].level == 5

    def test_final_comments_only_from_final_comments(self):
        with pytest.raises(PreconditionError):
            apply_transition(
                state(4, QAPStatus.LEVEL_4),
                FinalCommentsSubmitted(user="riya", comments="ok", at=NOW),
                FAST,
            )

    def test_approve(self):
        t = apply_transition(
            state(5, QAPStatus.LEVEL_5),
            PlantHeadDecision(user="pat", approved=True, at=NOW, feedback="Good"),
            FAST,
        )
        assert t.status == QAPStatus.APPROVED
        assert t.updates == {"approver": "pat", "approved_at": NOW, "feedback": "Good"}
        assert t.timeline[0].action == "Plant-head approved QAP"

    def test_reject(self):
        t = apply_transition(
            state(5, QAPStatus.LEVEL_5),
            PlantHeadDecision(user="pat", approved=False, at=NOW, feedback="incomplete docs"),
            FAST,
        )
        assert t.status == QAPStatus.REJECTED
        assert t.updates["feedback"] == "incomplete docs"
        assert t.timeline[0].action == "Plant-head rejected QAP"

    def test_decision_requires_level_5(self):
        with pytest.raises(PreconditionError):
            apply_transition(
                state(5, QAPStatus.FINAL_COMMENTS),
                PlantHeadDecision(user="pat", approved=True, at=NOW),
                FAST,
            )


# ═════════════════════════════════════════════════════════════════════════
# TERMINAL IMMUTABILITY & STATE-TABLE CLOSURE
# ═════════════════════════════════════════════════════════════════════════

EVENTS = [
    SendForReview(user="riya"),
    review(2), review(3), review(4),
    FinalCommentsSubmitted(user="riya", comments="x", at=NOW),
    PlantHeadDecision(user="pat", approved=True, at=NOW),
    PlantHeadDecision(user="pat", approved=False, at=NOW, feedback="no"),
    QAPEdited(user="riya", fields=("customer_name",)),
]


class TestClosure:
    @pytest.mark.parametrize("terminal", [QAPStatus.APPROVED, QAPStatus.REJECTED])
    @pytest.mark.parametrize("event", EVENTS, ids=lambda e: type(e).__name__)
    def test_terminal_rejects_everything(self, terminal, event):
        with pytest.raises(PreconditionError):
            apply_transition(state(5, terminal), event, FAST)

    @pytest.mark.parametrize("plant", [Plant.P2, Plant.P4])
    def test_outputs_stay_in_state_table(self, plant):
        for level, status in ALL_STATES:
            for event in EVENTS:
                try:
                    t = apply_transition(state(level, status, plant), event, FAST)
                except PreconditionError:
                    continue
                assert (t.level, t.status) in VALID_STATES

    def test_unknown_event(self):
        with pytest.raises(ValidationError):
            apply_transition(state(2, QAPStatus.LEVEL_2), object(), FAST)
