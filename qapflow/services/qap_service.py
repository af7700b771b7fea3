"""
QAP Workflow Service — transactional application layer over the state machine.

Each public method is one unit of work:

    1. validate input and caller (role, identity, plant)
    2. load the QAP under a row lock
    3. write any response row
    4. ask ``apply_transition`` for the outcome
    5. conditionally advance the level and append timeline entries
    6. commit (or roll back everything)

The repository is injected; the fast-track plant set and the clock are
plain constructor arguments so tests can substitute them.

Usage:
    service = QAPWorkflowService(QAPRepository(db.session),
                                 fast_track_plants={Plant.P2})
    outcome = service.submit_response(caller, qap_id, level=2,
                                      comments={"3": "ok with deviation"})
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from qapflow.core.exceptions import (
    AuthorizationError,
    PreconditionError,
    ValidationError,
)
from qapflow.models.qap import (
    ITEM_MODELS,
    QAP,
    REVIEWER_ROLES,
    Match,
    Plant,
    QAPStatus,
    Role,
    SpecKind,
)
from qapflow.services.eligibility import item_requires_role, parse_review_by, required_roles
from qapflow.services.workflow import (
    REVIEW_LEVELS,
    FinalCommentsSubmitted,
    PlantHeadDecision,
    QAPEdited,
    ReviewSubmitted,
    SendForReview,
    TimelineDraft,
    Transition,
    WorkflowState,
    apply_transition,
)
from qapflow.utils.helpers import (
    optional_str,
    parse_bool,
    parse_enum,
    parse_int,
    parse_uuid,
    required_str,
)

logger = logging.getLogger(__name__)

_CREATOR_ROLES = frozenset({Role.REQUESTOR, Role.ADMIN})
_FINAL_COMMENT_ROLES = frozenset({Role.REQUESTOR, Role.ADMIN})
_DECISION_ROLES = frozenset({Role.PLANT_HEAD, Role.ADMIN})

# payload key → (model attribute, column length or None for Text), per checklist kind
_ITEM_FIELDS = {
    SpecKind.MQP: {
        "sub_criteria": ("sub_criteria", 255),
        "component_operation": ("component_operation", 255),
        "characteristics": ("characteristics", 255),
        "class": ("item_class", 50),
        "type_of_check": ("type_of_check", 100),
        "sampling": ("sampling", 100),
        "specification": ("specification", None),
        "customer_specification": ("customer_specification", None),
    },
    SpecKind.VISUAL: {
        "sub_criteria": ("sub_criteria", 255),
        "defect": ("defect", 255),
        "defect_class": ("defect_class", 50),
        "description": ("description", None),
        "criteria_limits": ("criteria_limits", None),
        "customer_specification": ("customer_specification", None),
    },
}

# master fields an edit may change: payload key → parser
_MASTER_PARSERS = {
    "customer_name": lambda v: optional_str(v, "customer_name", 255),
    "project_name": lambda v: optional_str(v, "project_name", 255),
    "project_code": lambda v: optional_str(v, "project_code", 100),
    "order_quantity": lambda v: parse_int(v, "order_quantity", minimum=1),
    "product_type": lambda v: optional_str(v, "product_type", 100),
    "plant": lambda v: parse_enum(Plant, v, "plant"),
    "sales_request_id": lambda v: parse_uuid(v, "sales_request_id"),
}


@dataclass(frozen=True)
class TransitionOutcome:
    qap: QAP
    transition: Transition
    advanced: bool


def _utcnow():
    return datetime.now(timezone.utc)


def _blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_match(value, field):
    if _blank(value):
        return None
    return parse_enum(Match, value, field)


def _build_items(kind: SpecKind, raw_items, previous_review_by=None) -> list:
    """Validated checklist rows for one partition.

    ``previous_review_by`` (sno → roles) fills ``review_by`` for rows that
    omit the key, so an edit keeps earlier reviewer assignments.
    """
    previous_review_by = previous_review_by or {}
    if raw_items is None:
        return []
    field = f"{kind.value}_items"
    if not isinstance(raw_items, list):
        raise ValidationError(f"{field} must be a list", details={field: "expected list"})

    model = ITEM_MODELS[kind]
    items = []
    seen = set()
    for position, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(
                f"{field}[{position - 1}] must be an object",
                details={field: position - 1},
            )
        sno = parse_int(raw.get("sno", position), f"{field}.sno", minimum=1)
        if sno in seen:
            raise ValidationError(
                f"Duplicate sno {sno} in {field}",
                details={field: f"sno {sno} repeated"},
            )
        seen.add(sno)
        attrs = {
            attr: optional_str(raw.get(key), f"{field}.{key}", max_length)
            for key, (attr, max_length) in _ITEM_FIELDS[kind].items()
        }
        if "review_by" not in raw and sno in previous_review_by:
            review_by = previous_review_by[sno]
        else:
            review_by = parse_review_by(raw.get("review_by"))
        items.append(model(
            sno=sno,
            match=_parse_match(raw.get("match"), f"{field}.match"),
            review_by=review_by,
            **attrs,
        ))
    return items


class QAPWorkflowService:
    """Workflow engine entry point. One instance per request."""

    def __init__(self, repository, fast_track_plants=frozenset(), clock=None):
        self.repo = repository
        self.fast_track_plants = frozenset(Plant(p) for p in fast_track_plants)
        self._clock = clock or _utcnow

    def _now(self):
        return self._clock()

    # ── Gating helpers ───────────────────────────────────────────────────

    @staticmethod
    def _require_role(caller, allowed, action):
        if caller.role not in allowed:
            raise AuthorizationError(
                f"Role '{caller.role.value}' may not {action}",
                details={"role": caller.role.value,
                         "allowed": sorted(r.value for r in allowed)},
            )

    @staticmethod
    def _require_plant(caller, qap, action):
        if caller.role == Role.ADMIN:
            return
        if qap.plant not in caller.plants:
            raise AuthorizationError(
                f"User '{caller.username}' is not assigned to plant {qap.plant.value} "
                f"and may not {action}",
                details={"plant": qap.plant.value,
                         "caller_plants": sorted(p.value for p in caller.plants)},
            )

    @staticmethod
    def _require_submitter(caller, qap, action):
        if caller.role == Role.REQUESTOR and caller.username != qap.submitted_by:
            raise AuthorizationError(
                f"Only the submitting requestor may {action}",
                details={"submitted_by": qap.submitted_by},
            )

    def _commit_transition(self, qap, transition, now, *, strict):
        """Persist ``transition``: conditional level update plus timeline.

        With ``strict`` a lost race on the level update is a PreconditionError
        (the caller's whole unit of work rolls back). Without it, only the
        advance-describing timeline entries are dropped.
        """
        qap_id = qap.id
        won = False
        if transition.advances:
            won = self.repo.advance(qap, transition, now)
            if not won and strict:
                raise PreconditionError(
                    "QAP was moved by another request; reload and retry",
                    details={"expected_level": transition.from_level,
                             "expected_status": transition.from_status.value},
                )
        else:
            self.repo.touch(qap, now)
        drafts = [d for d in transition.timeline if won or not d.on_advance]
        self.repo.append_timeline(qap_id, drafts, now)
        if won:
            logger.info(
                "QAP %s moved L%s/%s → L%s/%s",
                qap_id, transition.from_level, transition.from_status.value,
                transition.level, transition.status.value,
                extra={"qap_id": qap_id, "event_type": "qap_transition"},
            )
        return won

    # ── Create / send ────────────────────────────────────────────────────

    def create_qap(self, caller, payload: dict, *, default_items=None) -> QAP:
        """Create a QAP at level 1, optionally sending it straight to level 2.

        ``default_items`` (mqp_items / visual_items drafts from the spec
        catalog) are used for a partition the payload leaves out.
        """
        self._require_role(caller, _CREATOR_ROLES, "create a QAP")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        default_items = default_items or {}

        sales_request_id = payload.get("sales_request_id")
        qap = QAP(
            customer_name=required_str(payload, "customer_name", 255),
            project_name=required_str(payload, "project_name", 255),
            project_code=optional_str(payload.get("project_code"), "project_code", 100),
            order_quantity=parse_int(payload.get("order_quantity"), "order_quantity", minimum=1),
            product_type=required_str(payload, "product_type", 100),
            plant=parse_enum(Plant, payload.get("plant"), "plant"),
            sales_request_id=(
                parse_uuid(sales_request_id, "sales_request_id") if sales_request_id else None
            ),
            status=QAPStatus.SUBMITTED,
            current_level=1,
            submitted_by=caller.username,
        )
        qap.mqp_items = _build_items(
            SpecKind.MQP, payload.get("mqp_items", default_items.get("mqp_items")),
        )
        qap.visual_items = _build_items(
            SpecKind.VISUAL, payload.get("visual_items", default_items.get("visual_items")),
        )
        send = parse_bool(payload.get("send_for_review"), "send_for_review")

        now = self._now()
        qap.submitted_at = now
        qap.created_at = now
        qap.last_modified_at = now
        with self.repo.unit_of_work():
            self.repo.add(qap)
            self.repo.append_timeline(
                qap.id, [TimelineDraft(1, f"QAP submitted by {caller.username}", caller.username)], now,
            )
            if send:
                transition = apply_transition(
                    WorkflowState.of(qap), SendForReview(user=caller.username), self.fast_track_plants,
                )
                self._commit_transition(qap, transition, now, strict=True)
            qap_id = qap.id

        logger.info(
            "QAP %s created by %s (plant=%s, items=%d+%d, sent=%s)",
            qap_id, caller.username, qap.plant.value,
            len(qap.mqp_items), len(qap.visual_items), send,
            extra={"qap_id": qap_id, "event_type": "qap_created"},
        )
        return qap

    def send_for_review(self, caller, qap_id) -> TransitionOutcome:
        self._require_role(caller, _CREATOR_ROLES, "send a QAP for review")
        now = self._now()
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self._require_submitter(caller, qap, "send this QAP for review")
            transition = apply_transition(
                WorkflowState.of(qap), SendForReview(user=caller.username), self.fast_track_plants,
            )
            advanced = self._commit_transition(qap, transition, now, strict=True)
        return TransitionOutcome(qap, transition, advanced)

    def update_qap(self, caller, qap_id, payload: dict) -> QAP:
        """Edit a QAP that has not been sent for review yet.

        Master fields change only when present and non-blank. ``mqp_items`` /
        ``visual_items`` replace the whole partition when present; rows that
        omit ``review_by`` keep the value previously stored for their sno.
        A request that changes nothing leaves no history or timeline entry.
        """
        self._require_role(caller, _CREATOR_ROLES, "edit a QAP")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        master = {
            key: parse(payload[key])
            for key, parse in _MASTER_PARSERS.items()
            if not _blank(payload.get(key))
        }
        partitions = [kind for kind in SpecKind if payload.get(f"{kind.value}_items") is not None]
        if not master and not partitions:
            raise ValidationError(
                "No editable fields in request body",
                details={"fields": [*_MASTER_PARSERS, "mqp_items", "visual_items"]},
            )

        now = self._now()
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self._require_submitter(caller, qap, "edit this QAP")
            # state check before any write
            apply_transition(
                WorkflowState.of(qap), QAPEdited(user=caller.username), self.fast_track_plants,
            )

            changed = [key for key, value in master.items() if getattr(qap, key) != value]
            for key in changed:
                setattr(qap, key, master[key])
            for kind in partitions:
                attr = f"{kind.value}_items"
                current = getattr(qap, attr)
                items = _build_items(
                    kind, payload[attr], {item.sno: item.review_by for item in current},
                )
                if [i.to_dict() for i in items] != [i.to_dict() for i in current]:
                    self.repo.replace_items(qap, attr, items)
                    changed.append(attr)

            if changed:
                qap.edited_by = caller.username
                qap.edited_at = now
                qap.edit_history = [
                    *(qap.edit_history or []),
                    {"by": caller.username, "at": now.isoformat(), "fields": changed},
                ]
                transition = apply_transition(
                    WorkflowState.of(qap),
                    QAPEdited(user=caller.username, fields=tuple(changed)),
                    self.fast_track_plants,
                )
                self._commit_transition(qap, transition, now, strict=True)

        if changed:
            logger.info(
                "QAP %s edited by %s (%s)", qap_id, caller.username, ", ".join(changed),
                extra={"qap_id": qap_id, "event_type": "qap_edited"},
            )
        return qap

    # ── Level 2-4 responses ──────────────────────────────────────────────

    def submit_response(self, caller, qap_id, level, comments=None) -> TransitionOutcome:
        """Record ``caller``'s acknowledgement at ``level`` and advance if complete."""
        level = parse_int(level, "level")
        if level not in REVIEW_LEVELS:
            raise ValidationError("level must be one of 2, 3, 4", details={"level": level})
        if comments is None:
            comments = {}
        if not isinstance(comments, dict):
            raise ValidationError(
                "comments must be a JSON object",
                details={"comments": type(comments).__name__},
            )
        self._require_role(caller, REVIEWER_ROLES, "submit a review response")

        now = self._now()
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self._require_plant(caller, qap, "review this QAP")
            state = WorkflowState.of(qap)

            self.repo.upsert_response(
                qap.id, level, caller.role,
                username=caller.username, comments=comments, at=now,
            )
            if level == 2:
                required = required_roles(qap.items)
                satisfied = self.repo.acknowledged_roles(qap.id, 2)
            else:
                required = satisfied = frozenset()

            transition = apply_transition(
                state,
                ReviewSubmitted(level=level, role=caller.role, user=caller.username,
                                required=required, satisfied=satisfied),
                self.fast_track_plants,
            )
            advanced = self._commit_transition(qap, transition, now, strict=False)

        if transition.pending_roles:
            logger.info(
                "QAP %s level 2 awaiting %s",
                qap_id, ", ".join(sorted(r.value for r in transition.pending_roles)),
                extra={"qap_id": qap_id, "event_type": "qap_level2_pending"},
            )
        return TransitionOutcome(qap, transition, advanced)

    # ── Final comments & plant-head decision ─────────────────────────────

    def submit_final_comments(self, caller, qap_id, comments, *, attachment_name=None,
                              attachment_url=None) -> TransitionOutcome:
        if not isinstance(comments, str) or not comments.strip():
            raise ValidationError("comments is required", details={"comments": "required"})
        attachment_name = optional_str(attachment_name, "attachment_name", 255)
        attachment_url = optional_str(attachment_url, "attachment_url", 1024)
        self._require_role(caller, _FINAL_COMMENT_ROLES, "submit final comments")

        now = self._now()
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self._require_submitter(caller, qap, "submit final comments")
            transition = apply_transition(
                WorkflowState.of(qap),
                FinalCommentsSubmitted(
                    user=caller.username, comments=comments, at=now,
                    attachment_name=attachment_name, attachment_url=attachment_url,
                ),
                self.fast_track_plants,
            )
            advanced = self._commit_transition(qap, transition, now, strict=True)
        return TransitionOutcome(qap, transition, advanced)

    def decide(self, caller, qap_id, *, approved, feedback=None) -> TransitionOutcome:
        """Plant-head approval (``approved=True``) or rejection (reason required)."""
        feedback = optional_str(feedback, "feedback")
        if not approved and feedback is None:
            raise ValidationError("reason is required to reject a QAP", details={"reason": "required"})
        action = "approve QAPs" if approved else "reject QAPs"
        self._require_role(caller, _DECISION_ROLES, action)

        now = self._now()
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self._require_plant(caller, qap, action)
            transition = apply_transition(
                WorkflowState.of(qap),
                PlantHeadDecision(user=caller.username, approved=approved, at=now, feedback=feedback),
                self.fast_track_plants,
            )
            advanced = self._commit_transition(qap, transition, now, strict=True)
        return TransitionOutcome(qap, transition, advanced)

    def approve(self, caller, qap_id, feedback=None) -> TransitionOutcome:
        return self.decide(caller, qap_id, approved=True, feedback=feedback)

    def reject(self, caller, qap_id, reason) -> TransitionOutcome:
        return self.decide(caller, qap_id, approved=False, feedback=reason)

    # ── Reads ────────────────────────────────────────────────────────────

    def get_qap(self, qap_id) -> QAP:
        return self.repo.require(qap_id)

    def list_qaps(self, *, status=None, plant=None):
        """Unexecuted newest-first query for pagination."""
        status = parse_enum(QAPStatus, status, "status") if status else None
        plant = parse_enum(Plant, plant, "plant") if plant else None
        return self.repo.query(status=status, plant=plant)

    def list_for_review(self, caller) -> list[tuple[QAP, bool]]:
        """Level-2 QAPs in the caller's plants with a mismatch the caller's role must review.

        Returns (qap, already_responded) pairs.
        """
        results = []
        for qap in self.repo.list_at_level(2, caller.plants):
            if not any(item_requires_role(item, caller.role) for item in qap.items):
                continue
            resp = self.repo.get_response(qap.id, 2, caller.role)
            results.append((qap, bool(resp is not None and resp.acknowledged)))
        return results

    # ── Admin ────────────────────────────────────────────────────────────

    def delete_qap(self, caller, qap_id) -> None:
        self._require_role(caller, frozenset({Role.ADMIN}), "delete QAPs")
        with self.repo.unit_of_work():
            qap = self.repo.require(qap_id, for_update=True)
            self.repo.delete(qap)
        logger.warning(
            "QAP %s deleted by %s", qap_id, caller.username,
            extra={"qap_id": qap_id, "event_type": "qap_deleted"},
        )
