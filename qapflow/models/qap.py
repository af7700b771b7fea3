"""
QAP aggregate — master record, checklist items, level responses, timeline.

Tables:
    qaps                  — aggregate root (one row per quality assurance plan)
    qap_mqp_items         — process-specification checklist (PK qap_id + sno)
    qap_visual_items      — visual / EL defect checklist (PK qap_id + sno)
    qap_level_responses   — one row per (qap_id, level, role); re-submission overwrites
    qap_timeline_entries  — append-only audit trail, ordered by id

Workflow states (current_level, status):
    1 submitted | 2 level-2 | 3 level-3 | 4 level-4
    5 final-comments | 5 level-5 | 5 approved | 5 rejected

Child rows are owned by the QAP: deleting the aggregate cascades to items,
responses and timeline entries both in the ORM and via ON DELETE CASCADE.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.orm import declared_attr
from sqlalchemy.types import String, TypeDecorator

from qapflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Enumerations ─────────────────────────────────────────────────────────────


class Role(str, Enum):
    """Closed set of workflow roles shared with the identity provider."""
    REQUESTOR = "requestor"
    PRODUCTION = "production"
    QUALITY = "quality"
    TECHNICAL = "technical"
    HEAD = "head"
    TECHNICAL_HEAD = "technical-head"
    PLANT_HEAD = "plant-head"
    ADMIN = "admin"


class Plant(str, Enum):
    """Manufacturing site codes."""
    P2 = "p2"
    P4 = "p4"
    P5 = "p5"
    P6 = "p6"


class QAPStatus(str, Enum):
    SUBMITTED = "submitted"
    LEVEL_2 = "level-2"
    LEVEL_3 = "level-3"
    LEVEL_4 = "level-4"
    FINAL_COMMENTS = "final-comments"
    LEVEL_5 = "level-5"
    APPROVED = "approved"
    REJECTED = "rejected"


class Match(str, Enum):
    """Whether the customer requirement equals the standard specification."""
    YES = "yes"
    NO = "no"


class SpecKind(str, Enum):
    MQP = "mqp"
    VISUAL = "visual"


REVIEWER_ROLES = frozenset({
    Role.PRODUCTION,
    Role.QUALITY,
    Role.TECHNICAL,
    Role.HEAD,
    Role.TECHNICAL_HEAD,
})

TERMINAL_STATUSES = frozenset({QAPStatus.APPROVED, QAPStatus.REJECTED})

# Every (current_level, status) pair a QAP may be observed in.
VALID_STATES = frozenset({
    (1, QAPStatus.SUBMITTED),
    (2, QAPStatus.LEVEL_2),
    (3, QAPStatus.LEVEL_3),
    (4, QAPStatus.LEVEL_4),
    (5, QAPStatus.FINAL_COMMENTS),
    (5, QAPStatus.LEVEL_5),
    (5, QAPStatus.APPROVED),
    (5, QAPStatus.REJECTED),
})


def _enum_column(enum_cls, length=20):
    """String-backed enum column storing the member *value* (e.g. 'level-2')."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


class RoleSet(TypeDecorator):
    """frozenset[Role] in Python, comma-joined role names in the database.

    Tokens are trimmed; blank tokens are dropped. Parsing is strict and
    case-sensitive, so input validation must happen before a value is bound.
    """

    impl = String(255)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return ""
        return ",".join(sorted(Role(r).value for r in value))

    def process_result_value(self, value, dialect):
        if not value:
            return frozenset()
        return frozenset(Role(tok.strip()) for tok in value.split(",") if tok.strip())


# ═════════════════════════════════════════════════════════════════════════════
# QAP aggregate root
# ═════════════════════════════════════════════════════════════════════════════


class QAP(db.Model):
    """
    Quality assurance plan under review.

    Business rules:
    - (current_level, status) is always one of VALID_STATES.
    - Levels only move forward; approved/rejected are terminal.
    - final_* fields are written once, at the final-comments transition.
    - approver/approved_at/feedback are written once, at the plant-head decision.
    - master fields and items are editable only at level 1 (submitted).
    """

    __tablename__ = "qaps"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    customer_name = db.Column(db.String(255), nullable=False)
    project_name = db.Column(db.String(255), nullable=False)
    project_code = db.Column(db.String(100), nullable=True)
    order_quantity = db.Column(db.Integer, nullable=False)
    product_type = db.Column(db.String(100), nullable=False)
    plant = db.Column(_enum_column(Plant, length=10), nullable=False)
    sales_request_id = db.Column(
        db.String(36),
        nullable=True,
        comment="Reference to the originating sales request (external module)",
    )

    status = db.Column(_enum_column(QAPStatus), nullable=False, default=QAPStatus.SUBMITTED)
    current_level = db.Column(db.Integer, nullable=False, default=1)

    submitted_by = db.Column(db.String(100), nullable=False)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # Level-1 edits by the submitter, oldest first: [{"by", "at", "fields"}]
    edited_by = db.Column(db.String(100), nullable=True)
    edited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    edit_history = db.Column(db.JSON, nullable=False, default=list)

    # Final comments (requestor, after level 4)
    final_comments = db.Column(db.Text, nullable=True)
    final_comments_by = db.Column(db.String(100), nullable=True)
    final_comments_at = db.Column(db.DateTime(timezone=True), nullable=True)
    final_attachment_name = db.Column(db.String(255), nullable=True)
    final_attachment_url = db.Column(db.String(1024), nullable=True)

    # Plant-head decision
    approver = db.Column(db.String(100), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    feedback = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    last_modified_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    mqp_items = db.relationship(
        "MQPItem", backref="qap", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="MQPItem.sno",
    )
    visual_items = db.relationship(
        "VisualItem", backref="qap", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="VisualItem.sno",
    )
    responses = db.relationship(
        "LevelResponse", backref="qap", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="LevelResponse.level",
    )
    timeline = db.relationship(
        "TimelineEntry", backref="qap", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="TimelineEntry.id",
    )

    __table_args__ = (
        db.Index("ix_qap_level_plant", "current_level", "plant"),
        db.Index("ix_qap_status", "status"),
        db.CheckConstraint("order_quantity > 0", name="ck_qap_order_quantity_positive"),
        db.CheckConstraint("current_level BETWEEN 1 AND 5", name="ck_qap_current_level_range"),
    )

    @property
    def items(self):
        """Both checklist partitions, MQP first."""
        return [*self.mqp_items, *self.visual_items]

    def to_dict(self, include_items=True):
        result = {
            "id": self.id,
            "customer_name": self.customer_name,
            "project_name": self.project_name,
            "project_code": self.project_code,
            "order_quantity": self.order_quantity,
            "product_type": self.product_type,
            "plant": self.plant.value if self.plant else None,
            "sales_request_id": self.sales_request_id,
            "status": self.status.value if self.status else None,
            "current_level": self.current_level,
            "submitted_by": self.submitted_by,
            "submitted_at": _iso(self.submitted_at),
            "edited_by": self.edited_by,
            "edited_at": _iso(self.edited_at),
            "edit_history": list(self.edit_history or []),
            "final_comments": self.final_comments,
            "final_comments_by": self.final_comments_by,
            "final_comments_at": _iso(self.final_comments_at),
            "final_attachment_name": self.final_attachment_name,
            "final_attachment_url": self.final_attachment_url,
            "approver": self.approver,
            "approved_at": _iso(self.approved_at),
            "feedback": self.feedback,
            "created_at": _iso(self.created_at),
            "last_modified_at": _iso(self.last_modified_at),
        }
        if include_items:
            result["mqp_items"] = [i.to_dict() for i in self.mqp_items]
            result["visual_items"] = [i.to_dict() for i in self.visual_items]
        return result

    def __repr__(self):
        return f"<QAP {self.id} {self.customer_name!r} L{self.current_level}/{self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# Checklist items
# ═════════════════════════════════════════════════════════════════════════════


class _ChecklistItem:
    """Columns shared by both checklist partitions."""

    kind: SpecKind

    @declared_attr
    def qap_id(cls):
        return db.Column(
            db.String(36),
            db.ForeignKey("qaps.id", ondelete="CASCADE"),
            primary_key=True,
        )

    sno = db.Column(db.Integer, primary_key=True, autoincrement=False)
    sub_criteria = db.Column(db.String(255), nullable=True)
    match = db.Column(_enum_column(Match, length=5), nullable=True)
    customer_specification = db.Column(db.Text, nullable=True)
    review_by = db.Column(RoleSet, nullable=False, default=frozenset)

    def _common_dict(self):
        return {
            "kind": self.kind.value,
            "sno": self.sno,
            "sub_criteria": self.sub_criteria,
            "match": self.match.value if self.match else None,
            "customer_specification": self.customer_specification,
            "review_by": sorted(r.value for r in (self.review_by or ())),
        }


class MQPItem(_ChecklistItem, db.Model):
    """Manufacturing quality plan (process) checkpoint."""

    __tablename__ = "qap_mqp_items"
    kind = SpecKind.MQP

    component_operation = db.Column(db.String(255), nullable=True)
    characteristics = db.Column(db.String(255), nullable=True)
    item_class = db.Column("class", db.String(50), nullable=True)
    type_of_check = db.Column(db.String(100), nullable=True)
    sampling = db.Column(db.String(100), nullable=True)
    specification = db.Column(db.Text, nullable=True)

    def to_dict(self):
        d = self._common_dict()
        d.update({
            "component_operation": self.component_operation,
            "characteristics": self.characteristics,
            "class": self.item_class,
            "type_of_check": self.type_of_check,
            "sampling": self.sampling,
            "specification": self.specification,
        })
        return d


class VisualItem(_ChecklistItem, db.Model):
    """Visual or electroluminescence (EL) defect checkpoint."""

    __tablename__ = "qap_visual_items"
    kind = SpecKind.VISUAL

    defect = db.Column(db.String(255), nullable=True)
    defect_class = db.Column(db.String(50), nullable=True)
    description = db.Column(db.Text, nullable=True)
    criteria_limits = db.Column(db.Text, nullable=True)

    def to_dict(self):
        d = self._common_dict()
        d.update({
            "defect": self.defect,
            "defect_class": self.defect_class,
            "description": self.description,
            "criteria_limits": self.criteria_limits,
        })
        return d


ITEM_MODELS = {SpecKind.MQP: MQPItem, SpecKind.VISUAL: VisualItem}


# ═════════════════════════════════════════════════════════════════════════════
# Level responses & timeline
# ═════════════════════════════════════════════════════════════════════════════


class LevelResponse(db.Model):
    """A reviewer role's acknowledgement at one level. Latest write wins."""

    __tablename__ = "qap_level_responses"

    qap_id = db.Column(
        db.String(36), db.ForeignKey("qaps.id", ondelete="CASCADE"), primary_key=True,
    )
    level = db.Column(db.Integer, primary_key=True, autoincrement=False)
    role = db.Column(_enum_column(Role), primary_key=True)
    username = db.Column(db.String(100), nullable=False)
    acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    comments = db.Column(db.JSON, nullable=False, default=dict)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "username": self.username,
            "acknowledged": bool(self.acknowledged),
            "comments": self.comments or {},
            "responded_at": _iso(self.responded_at),
        }


class TimelineEntry(db.Model):
    """One immutable audit record. Never updated after insert."""

    __tablename__ = "qap_timeline_entries"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    qap_id = db.Column(
        db.String(36), db.ForeignKey("qaps.id", ondelete="CASCADE"), nullable=False,
    )
    level = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(255), nullable=False)
    user = db.Column("actor", db.String(100), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.Index("ix_timeline_qap_id", "qap_id", "id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "action": self.action,
            "user": self.user,
            "timestamp": _iso(self.timestamp),
        }
