"""
Specification catalog service — listing, seeding, QAP checklist drafts.

Transaction policy: ``seed_default_catalog`` flushes, never commits.
The caller (CLI command) is responsible for ``db.session.commit()``.
"""

import logging

from qapflow.core.exceptions import ValidationError
from qapflow.models import db
from qapflow.models.spec_catalog import (
    CRITERIA_EL,
    CRITERIA_MQP,
    CRITERIA_VISUAL,
    SpecTemplate,
)

logger = logging.getLogger(__name__)

# ?criteria= filter value → stored criteria labels
CRITERIA_FILTERS = {
    "mqp": (CRITERIA_MQP,),
    "visual": (CRITERIA_VISUAL, CRITERIA_EL),
}


def list_catalog(criteria=None, session=None):
    """Catalog rows ordered by sno, optionally restricted to ``mqp`` or ``visual``."""
    session = session or db.session
    q = session.query(SpecTemplate)
    if criteria:
        key = str(criteria).strip().lower()
        if key not in CRITERIA_FILTERS:
            raise ValidationError(
                "criteria must be one of: mqp, visual",
                details={"criteria": criteria},
            )
        q = q.filter(SpecTemplate.criteria.in_(CRITERIA_FILTERS[key]))
    return q.order_by(SpecTemplate.sno, SpecTemplate.criteria, SpecTemplate.sub_criteria).all()


def build_initial_items(session=None) -> dict:
    """Turn the catalog into unreviewed checklist drafts for a new QAP.

    Returns ``{"mqp_items": [...], "visual_items": [...]}`` in the same
    shape the create-QAP payload accepts; ``match`` is unset and
    ``review_by`` empty. Visual and EL rows share one sequence.
    """
    mqp_items, visual_items = [], []
    for row in list_catalog(session=session):
        if row.is_mqp:
            mqp_items.append({
                "sno": len(mqp_items) + 1,
                "sub_criteria": row.sub_criteria,
                "component_operation": row.component_operation,
                "characteristics": row.characteristics,
                "class": row.item_class,
                "type_of_check": row.type_of_check,
                "sampling": row.sampling,
                "specification": row.specification,
                "match": None,
                "review_by": [],
            })
        else:
            visual_items.append({
                "sno": len(visual_items) + 1,
                "sub_criteria": row.sub_criteria,
                "defect": row.defect,
                "defect_class": row.defect_class,
                "description": row.description,
                "criteria_limits": row.criteria_limits,
                "match": None,
                "review_by": [],
            })
    return {"mqp_items": mqp_items, "visual_items": visual_items}


def seed_default_catalog(session=None):
    """
    Insert the bundled default checkpoints.
    Safe to run multiple times — skips existing (criteria, sno) pairs.

    Returns the number of rows created.
    """
    session = session or db.session
    created = 0
    for row in _get_default_catalog():
        exists = (
            session.query(SpecTemplate)
            .filter_by(criteria=row["criteria"], sno=row["sno"])
            .first()
        )
        if not exists:
            session.add(SpecTemplate(**row))
            created += 1

    if created > 0:
        session.flush()
        logger.info("Seeded %d spec catalog rows", created)
    return created


def _get_default_catalog() -> list[dict]:
    """Standard crystalline-silicon module checkpoints (MQP, Visual, EL)."""
    mqp = [
        ("Raw material", "Cell", "Visual / electrical", "Major",
         "Incoming inspection", "AQL 0.65, Level II",
         "Efficiency bin per datasheet; no chips > 1 mm, no cracks"),
        ("Raw material", "Glass", "Thickness & transmittance", "Major",
         "Incoming inspection", "5 sheets per lot",
         "3.2 mm ± 0.2 mm; solar transmittance ≥ 91.5 %"),
        ("Raw material", "EVA / POE encapsulant", "Gel content", "Critical",
         "Lab test", "1 sample per lot", "Gel content 75–90 % after lamination"),
        ("Raw material", "Backsheet", "Peel strength", "Major",
         "Lab test", "1 sample per lot", "≥ 40 N/cm to encapsulant"),
        ("In-process", "Stringer", "Ribbon peel strength", "Critical",
         "Peel test", "Per shift, 2 strings", "≥ 1 N/mm average"),
        ("In-process", "Layup", "String spacing", "Minor",
         "Measurement", "Per shift, 5 modules", "2.0 mm ± 0.5 mm"),
        ("In-process", "Laminator", "Lamination profile", "Critical",
         "Process audit", "Per recipe change", "Temperature / time per validated recipe"),
        ("In-process", "Framing", "Frame corner gap", "Minor",
         "Measurement", "Per shift, 5 modules", "≤ 0.5 mm"),
        ("Final", "Sun simulator", "Pmax", "Critical",
         "IV test", "100 %", "0 to +5 W positive tolerance"),
        ("Final", "Hi-pot", "Insulation resistance", "Critical",
         "Electrical safety", "100 %", "≥ 40 MΩ·m² at 1000 V DC"),
    ]
    visual = [
        (CRITERIA_VISUAL, "Glass", "Scratch", "Minor",
         "Surface scratch on front glass", "Length ≤ 10 mm, max 2 per module"),
        (CRITERIA_VISUAL, "Cell", "Chip", "Major",
         "Edge chip on cell", "Depth ≤ 0.5 mm, length ≤ 3 mm, max 2 per module"),
        (CRITERIA_VISUAL, "Encapsulant", "Bubble", "Major",
         "Air bubble in laminate", "Not allowed over cell or connecting ribbon"),
        (CRITERIA_VISUAL, "Backsheet", "Wrinkle", "Minor",
         "Wrinkle or dent on backsheet", "Not allowed if depth > 1 mm"),
        (CRITERIA_VISUAL, "Junction box", "Adhesion", "Critical",
         "Junction box fixing", "No gaps in adhesive bead"),
        (CRITERIA_EL, "Cell", "Micro crack", "Critical",
         "Crack visible in EL image", "Not allowed if isolating > 5 % cell area"),
        (CRITERIA_EL, "Cell", "Dark cell", "Major",
         "Cell darker than neighbours in EL image", "Not allowed"),
        (CRITERIA_EL, "Cell", "Finger interruption", "Minor",
         "Broken finger lines", "≤ 3 per cell, ≤ 10 per module"),
    ]

    rows = []
    for sno, (sub, op, chars, cls, check, sampling, spec) in enumerate(mqp, start=1):
        rows.append({
            "sno": sno,
            "criteria": CRITERIA_MQP,
            "sub_criteria": sub,
            "component_operation": op,
            "characteristics": chars,
            "item_class": cls,
            "type_of_check": check,
            "sampling": sampling,
            "specification": spec,
        })
    for sno, (criteria, sub, defect, defect_class, desc, limits) in enumerate(visual, start=1):
        rows.append({
            "sno": sno,
            "criteria": criteria,
            "sub_criteria": sub,
            "defect": defect,
            "item_class": defect_class,
            "defect_class": defect_class,
            "description": desc,
            "criteria_limits": limits,
        })
    return rows
