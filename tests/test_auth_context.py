"""
Caller identity: JWT bearer tokens and the development header fallback.

Covers:
  - valid HS256 token with role + plant claims
  - expired / tampered / claim-less tokens → 401
  - X-User headers ignored once API_AUTH_ENABLED=true
  - health endpoints need no caller
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from qapflow.auth import caller_from_claims, parse_plants
from qapflow.core.exceptions import AuthenticationError
from qapflow.models.qap import Plant, Role

SECRET = "test-jwt-secret"


def _token(secret=SECRET, expires_in=timedelta(minutes=15), **claims):
    payload = {"sub": "riya", "role": "requestor", "plant": "p4,p5"}
    payload.update(claims)
    payload["exp"] = datetime.now(timezone.utc) + expires_in
    return jwt.encode(payload, secret, algorithm="HS256")


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestClaims:
    def test_plant_list_or_csv(self):
        assert parse_plants("P4, p5") == {Plant.P4, Plant.P5}
        assert parse_plants(["p2", "p9"]) == {Plant.P2}
        assert parse_plants(None) == frozenset()

    def test_caller_from_claims(self):
        caller = caller_from_claims({"username": "anand", "role": "plant-head", "plant": ["p4"]})
        assert caller.username == "anand"
        assert caller.role == Role.PLANT_HEAD
        assert caller.plants == {Plant.P4}

    @pytest.mark.parametrize("claims", [
        {"role": "quality"},
        {"sub": "x"},
        {"sub": "x", "role": "auditor"},
    ])
    def test_incomplete_claims(self, claims):
        with pytest.raises(AuthenticationError):
            caller_from_claims(claims)


class TestBearerTokens:
    def test_valid_token(self, client):
        res = client.post(
            "/api/v1/qaps",
            json={"customer_name": "C", "project_name": "P", "order_quantity": 1,
                  "product_type": "T", "plant": "p4"},
            headers=_bearer(_token()),
        )
        assert res.status_code == 201
        assert res.get_json()["submitted_by"] == "riya"

    def test_expired_token(self, client):
        res = client.get("/api/v1/qaps", headers=_bearer(_token(expires_in=timedelta(minutes=-5))))
        assert res.status_code == 401
        assert res.get_json()["error"] == "Token expired"

    def test_wrong_signature(self, client):
        res = client.get("/api/v1/qaps", headers=_bearer(_token(secret="other-secret")))
        assert res.status_code == 401
        assert res.get_json()["error"] == "Invalid token"

    def test_token_without_role(self, client):
        res = client.get("/api/v1/qaps", headers=_bearer(_token(role=None)))
        assert res.status_code == 401

    def test_token_wins_over_headers(self, client):
        headers = {**_bearer(_token(role="quality", sub="qa-1")),
                   "X-User": "root", "X-Role": "admin"}
        res = client.post("/api/v1/qaps", json={}, headers=headers)
        assert res.status_code == 403


class TestAuthEnabled:
    def test_headers_ignored(self, client, monkeypatch):
        monkeypatch.setenv("API_AUTH_ENABLED", "true")
        res = client.get("/api/v1/qaps", headers={"X-User": "riya", "X-Role": "requestor"})
        assert res.status_code == 401

    def test_token_still_accepted(self, client, monkeypatch):
        monkeypatch.setenv("API_AUTH_ENABLED", "true")
        assert client.get("/api/v1/qaps", headers=_bearer(_token())).status_code == 200

    @pytest.mark.parametrize("path", ["/api/v1/health", "/api/v1/health/ready", "/api/v1/health/live"])
    def test_health_is_public(self, client, monkeypatch, path):
        monkeypatch.setenv("API_AUTH_ENABLED", "true")
        res = client.get(path)
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_live_reports_fast_track_plants(self, client):
        data = client.get("/api/v1/health/live").get_json()
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["app"]["fast_track_plants"] == ["p2"]
