"""
Specification catalog blueprint (read-only).

Routes (prefix /api/v1):
  GET /spec-catalog                 – all checkpoints ordered by sno
  GET /spec-catalog?criteria=mqp    – MQP checkpoints
  GET /spec-catalog?criteria=visual – Visual + EL checkpoints
  GET /spec-catalog/initial-items   – unreviewed checklist drafts for a new QAP
"""

from flask import Blueprint, jsonify, request

from qapflow.auth import current_caller
from qapflow.blueprints import register_error_handlers
from qapflow.services.spec_catalog_service import build_initial_items, list_catalog

spec_catalog_bp = Blueprint("spec_catalog", __name__, url_prefix="/api/v1")
register_error_handlers(spec_catalog_bp)


@spec_catalog_bp.route("/spec-catalog", methods=["GET"])
def get_catalog():
    current_caller()
    rows = list_catalog(request.args.get("criteria") or None)
    return jsonify([r.to_dict() for r in rows]), 200


@spec_catalog_bp.route("/spec-catalog/initial-items", methods=["GET"])
def get_initial_items():
    current_caller()
    return jsonify(build_initial_items()), 200
