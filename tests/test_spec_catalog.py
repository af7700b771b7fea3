"""
Spec catalog: seeding, listing, initial checklist drafts.

Covers:
  - seed_default_catalog is idempotent
  - GET /spec-catalog with and without ?criteria=
  - GET /spec-catalog/initial-items
  - POST /qaps with use_catalog_defaults
"""

import pytest

from qapflow.core.exceptions import ValidationError
from qapflow.models import db
from qapflow.models.spec_catalog import SpecTemplate
from qapflow.services.spec_catalog_service import (
    build_initial_items,
    list_catalog,
    seed_default_catalog,
)

HDR_REQ = {"X-User": "riya", "X-Role": "requestor", "X-Plant": "p4"}


@pytest.fixture()
def seeded():
    count = seed_default_catalog()
    db.session.commit()
    return count


class TestSeed:
    def test_seed_counts(self, seeded):
        assert seeded == 18
        assert db.session.query(SpecTemplate).filter_by(criteria="MQP").count() == 10
        assert db.session.query(SpecTemplate).filter_by(criteria="Visual").count() == 5
        assert db.session.query(SpecTemplate).filter_by(criteria="EL").count() == 3

    def test_seed_is_idempotent(self, seeded):
        assert seed_default_catalog() == 0
        assert db.session.query(SpecTemplate).count() == seeded


class TestListing:
    def test_filter_mqp(self, seeded):
        rows = list_catalog("mqp")
        assert {r.criteria for r in rows} == {"MQP"}
        assert [r.sno for r in rows] == list(range(1, 11))

    def test_filter_visual_includes_el(self, seeded):
        rows = list_catalog("Visual")
        assert {r.criteria for r in rows} == {"Visual", "EL"}
        assert len(rows) == 8

    def test_unknown_criteria(self, seeded):
        with pytest.raises(ValidationError):
            list_catalog("thermal")

    def test_endpoint(self, client, seeded):
        res = client.get("/api/v1/spec-catalog?criteria=mqp", headers=HDR_REQ)
        assert res.status_code == 200
        data = res.get_json()
        assert len(data) == 10
        assert data[0]["class"] == "Major"
        assert data[0]["sub_criteria"] == "Raw material"
        assert data[0]["component_operation"] == "Cell"

    def test_endpoint_bad_criteria(self, client, seeded):
        res = client.get("/api/v1/spec-catalog?criteria=thermal", headers=HDR_REQ)
        assert res.status_code == 400

    def test_endpoint_requires_caller(self, client, seeded):
        assert client.get("/api/v1/spec-catalog").status_code == 401


class TestInitialItems:
    def test_drafts_are_unreviewed(self, seeded):
        drafts = build_initial_items()
        assert len(drafts["mqp_items"]) == 10
        assert len(drafts["visual_items"]) == 8
        assert [d["sno"] for d in drafts["visual_items"]] == list(range(1, 9))
        assert all(d["match"] is None and d["review_by"] == [] for d in drafts["mqp_items"])

    def test_empty_catalog(self):
        assert build_initial_items() == {"mqp_items": [], "visual_items": []}

    def test_endpoint(self, client, seeded):
        data = client.get("/api/v1/spec-catalog/initial-items", headers=HDR_REQ).get_json()
        assert data["mqp_items"][8]["characteristics"] == "Pmax"

    def test_create_qap_from_catalog(self, client, seeded):
        body = {
            "customer_name": "Northwind Solar",
            "project_name": "Ground mount 20 MW",
            "order_quantity": 36000,
            "product_type": "Mono PERC 550 Wp",
            "plant": "p4",
            "use_catalog_defaults": True,
            "send_for_review": True,
        }
        res = client.post("/api/v1/qaps", json=body, headers=HDR_REQ)
        assert res.status_code == 201
        data = res.get_json()
        assert len(data["mqp_items"]) == 10
        assert len(data["visual_items"]) == 8
        assert data["mqp_items"][0]["class"] == "Major"
        assert data["mqp_items"][0]["match"] is None

    def test_explicit_items_win_over_catalog(self, client, seeded):
        body = {
            "customer_name": "Northwind Solar",
            "project_name": "Ground mount 20 MW",
            "order_quantity": 36000,
            "product_type": "Mono PERC 550 Wp",
            "plant": "p4",
            "use_catalog_defaults": True,
            "mqp_items": [{"sno": 1, "match": "no", "review_by": "quality"}],
        }
        data = client.post("/api/v1/qaps", json=body, headers=HDR_REQ).get_json()
        assert len(data["mqp_items"]) == 1
        assert len(data["visual_items"]) == 8
