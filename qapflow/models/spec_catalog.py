"""
Specification catalog — standard inspection checkpoints.

One row per checkpoint. ``criteria`` partitions the catalog:
    MQP     → process checklist (becomes MQPItem on a QAP)
    Visual  → visual defect checklist (becomes VisualItem)
    EL      → electroluminescence defect checklist (becomes VisualItem)

The catalog is reference data: the workflow engine only reads it.
"""

from datetime import datetime, timezone

from qapflow.models import db

CRITERIA_MQP = "MQP"
CRITERIA_VISUAL = "Visual"
CRITERIA_EL = "EL"


class SpecTemplate(db.Model):
    """A standard checkpoint copied into every new QAP's checklist."""

    __tablename__ = "spec_templates"

    id = db.Column(db.Integer, primary_key=True)
    sno = db.Column(db.Integer, nullable=False)
    criteria = db.Column(db.String(20), nullable=False, comment="MQP | Visual | EL")
    sub_criteria = db.Column(db.String(100), nullable=False)
    component_operation = db.Column(db.String(120), nullable=True)
    characteristics = db.Column(db.String(300), nullable=True)
    defect = db.Column(db.String(200), nullable=True)
    item_class = db.Column("class", db.String(20), nullable=False, default="Major")
    type_of_check = db.Column(db.String(200), nullable=True)
    sampling = db.Column(db.String(200), nullable=True)
    specification = db.Column(db.Text, nullable=True)
    defect_class = db.Column(db.String(50), nullable=True)
    description = db.Column(db.Text, nullable=True)
    criteria_limits = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("criteria", "sno", name="uq_spec_template_criteria_sno"),
        db.Index("ix_spec_template_criteria_sub", "criteria", "sub_criteria"),
    )

    @property
    def is_mqp(self):
        return self.criteria == CRITERIA_MQP

    def to_dict(self):
        return {
            "id": self.id,
            "sno": self.sno,
            "criteria": self.criteria,
            "sub_criteria": self.sub_criteria,
            "component_operation": self.component_operation,
            "characteristics": self.characteristics,
            "defect": self.defect,
            "class": self.item_class,
            "type_of_check": self.type_of_check,
            "sampling": self.sampling,
            "specification": self.specification,
            "defect_class": self.defect_class,
            "description": self.description,
            "criteria_limits": self.criteria_limits,
        }

    def __repr__(self):
        return f"<SpecTemplate {self.criteria}#{self.sno} {self.sub_criteria!r}>"
