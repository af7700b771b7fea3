"""
QAP Workflow Blueprint.

Routes (prefix /api/v1):
  POST   /qaps                       – create QAP (optionally send to level 2)
  GET    /qaps                       – list QAPs (?status=&plant=&limit=&offset=)
  GET    /qaps/for-review            – level-2 QAPs awaiting the caller's role
  GET    /qaps/<id>                  – full aggregate (items, responses, timeline)
  PUT    /qaps/<id>                  – edit master fields / items while at level 1
  GET    /qaps/<id>/timeline         – ordered audit trail
  POST   /qaps/<id>/send             – level 1 → level 2
  POST   /qaps/<id>/responses        – reviewer acknowledgement at level 2/3/4
  POST   /qaps/<id>/final-comments   – requestor final comments → level-5
  POST   /qaps/<id>/approve          – plant-head approval (terminal)
  POST   /qaps/<id>/reject           – plant-head rejection (terminal)
  POST   /qaps/<id>/share            – email a link to the QAP
  DELETE /qaps/<id>                  – admin delete (cascades)

Caller identity comes from ``g.caller`` (see qapflow.auth); role, plant and
state gating happen in QAPWorkflowService.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from qapflow.auth import current_caller
from qapflow.blueprints import paginate_query, register_error_handlers
from qapflow.core.exceptions import ValidationError
from qapflow.models import db
from qapflow.services.email_service import STATUS_FAILED, EmailService
from qapflow.services.qap_repository import QAPRepository
from qapflow.services.qap_service import QAPWorkflowService
from qapflow.services.spec_catalog_service import build_initial_items
from qapflow.services.timeline import nest_responses, ordered_timeline, qap_view
from qapflow.utils.errors import E, api_error
from qapflow.utils.helpers import parse_uuid

logger = logging.getLogger(__name__)

qap_bp = Blueprint("qap", __name__, url_prefix="/api/v1")
register_error_handlers(qap_bp)


# ── helpers ──────────────────────────────────────────────────────────────

def _service():
    return QAPWorkflowService(
        QAPRepository(db.session),
        fast_track_plants=current_app.config.get("FAST_TRACK_PLANTS", frozenset()),
    )


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _outcome_body(outcome, message):
    qap = outcome.qap
    body = {
        "message": message,
        "id": qap.id,
        "current_level": qap.current_level,
        "status": qap.status.value,
        "advanced": outcome.advanced,
    }
    if outcome.transition.pending_roles:
        body["pending_roles"] = sorted(r.value for r in outcome.transition.pending_roles)
    return body


# ═════════════════════════════════════════════════════════════════════════════
# CREATE / LIST / READ
# ═════════════════════════════════════════════════════════════════════════════

@qap_bp.route("/qaps", methods=["POST"])
def create_qap():
    """Create a QAP at level 1 (or level 2 with ``send_for_review: true``).

    Body: customer_name, project_name, order_quantity, product_type, plant,
          project_code?, sales_request_id?, mqp_items?, visual_items?,
          use_catalog_defaults?, send_for_review?
    """
    caller = current_caller()
    data = _json_body()
    defaults = build_initial_items() if data.get("use_catalog_defaults") else None
    qap = _service().create_qap(caller, data, default_items=defaults)
    return jsonify(qap_view(qap)), 201


@qap_bp.route("/qaps", methods=["GET"])
def list_qaps():
    """List QAPs newest first. Query: status, plant, limit, offset."""
    current_caller()
    query = _service().list_qaps(
        status=request.args.get("status") or None,
        plant=request.args.get("plant") or None,
    )
    items, total = paginate_query(query)
    return jsonify({
        "items": [
            {**q.to_dict(include_items=True), "level_responses": nest_responses(q.responses)}
            for q in items
        ],
        "total": total,
    }), 200


@qap_bp.route("/qaps/for-review", methods=["GET"])
def list_for_review():
    """Level-2 QAPs in the caller's plants with a mismatch their role reviews."""
    caller = current_caller()
    results = _service().list_for_review(caller)
    return jsonify([
        {**qap_view(qap), "already_responded": responded}
        for qap, responded in results
    ]), 200


@qap_bp.route("/qaps/<qap_id>", methods=["GET"])
def get_qap(qap_id):
    current_caller()
    qap = _service().get_qap(parse_uuid(qap_id))
    return jsonify(qap_view(qap)), 200


@qap_bp.route("/qaps/<qap_id>", methods=["PUT"])
def update_qap(qap_id):
    """Edit a QAP still at level 1 (submitter or admin).

    Body: any of customer_name, project_name, project_code, order_quantity,
          product_type, plant, sales_request_id, mqp_items, visual_items.
    Blank master fields are ignored; item lists replace the stored partition.
    """
    caller = current_caller()
    qap = _service().update_qap(caller, parse_uuid(qap_id), _json_body())
    return jsonify(qap_view(qap)), 200


@qap_bp.route("/qaps/<qap_id>/timeline", methods=["GET"])
def get_timeline(qap_id):
    current_caller()
    qap = _service().get_qap(parse_uuid(qap_id))
    return jsonify({
        "id": qap.id,
        "timeline": ordered_timeline(qap.timeline),
        "level_responses": nest_responses(qap.responses),
    }), 200


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@qap_bp.route("/qaps/<qap_id>/send", methods=["POST"])
def send_for_review(qap_id):
    caller = current_caller()
    outcome = _service().send_for_review(caller, parse_uuid(qap_id))
    return jsonify(_outcome_body(outcome, "Sent for Level 2 review")), 200


@qap_bp.route("/qaps/<qap_id>/responses", methods=["POST"])
def submit_response(qap_id):
    """Record the caller's acknowledgement.

    Body: { level: 2|3|4, comments?: {<sno or key>: <any>} }
    """
    caller = current_caller()
    data = _json_body()
    if "level" not in data:
        return api_error(E.VALIDATION_REQUIRED, "level is required")
    outcome = _service().submit_response(
        caller, parse_uuid(qap_id), data["level"], data.get("comments"),
    )
    return jsonify(_outcome_body(outcome, "Response recorded")), 200


@qap_bp.route("/qaps/<qap_id>/final-comments", methods=["POST"])
def submit_final_comments(qap_id):
    """Body: { comments: str, attachment_name?: str, attachment_url?: str }"""
    caller = current_caller()
    data = _json_body()
    outcome = _service().submit_final_comments(
        caller, parse_uuid(qap_id), data.get("comments"),
        attachment_name=data.get("attachment_name"),
        attachment_url=data.get("attachment_url"),
    )
    return jsonify(_outcome_body(outcome, "Sent to Plant Head for Approval")), 200


@qap_bp.route("/qaps/<qap_id>/approve", methods=["POST"])
def approve_qap(qap_id):
    """Body: { feedback?: str }"""
    caller = current_caller()
    data = _json_body()
    outcome = _service().approve(caller, parse_uuid(qap_id), data.get("feedback"))
    return jsonify(_outcome_body(outcome, "QAP approved")), 200


@qap_bp.route("/qaps/<qap_id>/reject", methods=["POST"])
def reject_qap(qap_id):
    """Body: { reason: str }"""
    caller = current_caller()
    data = _json_body()
    outcome = _service().reject(caller, parse_uuid(qap_id), data.get("reason"))
    return jsonify(_outcome_body(outcome, "QAP rejected")), 200


# ═════════════════════════════════════════════════════════════════════════════
# SHARE / DELETE
# ═════════════════════════════════════════════════════════════════════════════

@qap_bp.route("/qaps/<qap_id>/share", methods=["POST"])
def share_qap(qap_id):
    """Body: { to: email }"""
    caller = current_caller()
    data = _json_body()
    qap = _service().get_qap(parse_uuid(qap_id))
    result = EmailService.share_qap(qap, data.get("to"), caller.username)
    if result["status"] == STATUS_FAILED:
        return api_error(E.DELIVERY_FAILED, "Email failed", details={"to": result["to"]})
    return jsonify({"message": "Shared via email", **result}), 200


@qap_bp.route("/qaps/<qap_id>", methods=["DELETE"])
def delete_qap(qap_id):
    caller = current_caller()
    _service().delete_qap(caller, parse_uuid(qap_id))
    return jsonify({"message": "QAP deleted"}), 200
