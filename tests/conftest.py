"""
Shared pytest fixtures for the QAP Workflow Service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - as_user: build X-User / X-Role / X-Plant identity headers
    - create_qap: factory that creates a QAP through the API
    - drive_to: factory that walks a QAP forward to a given status
"""

import pytest

from qapflow import create_app
from qapflow.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity helpers ─────────────────────────────────────────────────────


def identity(user, role, plants="p2,p4,p5,p6"):
    """Header-based caller identity (accepted while API_AUTH_ENABLED=false)."""
    return {"X-User": user, "X-Role": role, "X-Plant": plants}


@pytest.fixture()
def as_user():
    return identity


REQUESTOR = identity("riya", "requestor")
ADMIN = identity("root", "admin", "")


# ── Convenience fixtures ─────────────────────────────────────────────────


def qap_payload(plant="p4", mqp_items=None, visual_items=None, **overrides):
    """Minimal valid create-QAP body with one mismatched MQP item."""
    body = {
        "customer_name": "Sunrise Renewables",
        "project_name": "Rooftop 5 MW",
        "project_code": "SR-0042",
        "order_quantity": 9000,
        "product_type": "TOPCon 580 Wp",
        "plant": plant,
        "mqp_items": mqp_items if mqp_items is not None else [
            {"sno": 1, "sub_criteria": "Cell", "match": "no",
             "review_by": "technical", "customer_specification": "Bin ≥ 24.6 %"},
            {"sno": 2, "sub_criteria": "Glass", "match": "yes", "review_by": "head"},
        ],
        "visual_items": visual_items if visual_items is not None else [],
    }
    body.update(overrides)
    return body


@pytest.fixture()
def create_qap(client):
    """Create a QAP via the API and return its JSON (sent to level 2 by default)."""

    def _create(plant="p4", send=True, headers=None, **kwargs):
        body = qap_payload(plant=plant, send_for_review=send, **kwargs)
        res = client.post("/api/v1/qaps", json=body, headers=headers or REQUESTOR)
        assert res.status_code == 201, res.get_json()
        return res.get_json()

    return _create


@pytest.fixture()
def drive_to(client):
    """Walk an existing level-2 QAP forward until it reaches ``status``.

    Supported targets: level-3, level-4, final-comments, level-5.
    Assumes the QAP's only required level-2 role is ``technical``.
    """

    def _respond(qap_id, level, role):
        res = client.post(
            f"/api/v1/qaps/{qap_id}/responses",
            json={"level": level, "comments": {"1": f"{role} ok"}},
            headers=identity(f"{role}-user", role),
        )
        assert res.status_code == 200, res.get_json()
        return res.get_json()

    def _drive(qap_id, status):
        state = client.get(f"/api/v1/qaps/{qap_id}", headers=REQUESTOR).get_json()
        while state["status"] != status:
            match state["status"]:
                case "level-2":
                    _respond(qap_id, 2, "technical")
                case "level-3":
                    _respond(qap_id, 3, "head")
                case "level-4":
                    _respond(qap_id, 4, "technical-head")
                case "final-comments":
                    res = client.post(
                        f"/api/v1/qaps/{qap_id}/final-comments",
                        json={"comments": "All deviations accepted"},
                        headers=REQUESTOR,
                    )
                    assert res.status_code == 200, res.get_json()
                case other:
                    raise AssertionError(f"cannot drive past {other}")
            state = client.get(f"/api/v1/qaps/{qap_id}", headers=REQUESTOR).get_json()
        return state

    return _drive
