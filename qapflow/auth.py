"""
QAP Workflow Service
Caller identity resolution.

Every /api/v1/* request (except health) resolves a ``Caller`` into ``g.caller``:

    1. Authorization: Bearer <JWT>   — HS256, signed with JWT_SECRET_KEY
       claims: sub | username, role, plant ("p2,p4" or ["p2", "p4"])
    2. X-User / X-Role / X-Plant headers — only when API_AUTH_ENABLED is false
       (development and tests)

Token issuing belongs to the identity provider; this module only verifies.
Role gating itself is enforced in the workflow service, not here.

Configuration (env vars / app config):
    API_AUTH_ENABLED  — "false" to accept the X-* headers
    JWT_SECRET_KEY    — falls back to SECRET_KEY
"""

import logging
import os
from dataclasses import dataclass, field

import jwt as pyjwt
from flask import current_app, g, request

from qapflow.core.exceptions import AuthenticationError
from qapflow.models.qap import Plant, Role

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Paths that never require a caller
AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
)


@dataclass(frozen=True)
class Caller:
    """Authenticated principal as seen by the workflow engine."""
    username: str
    role: Role
    plants: frozenset[Plant] = field(default_factory=frozenset)


def _is_auth_enabled() -> bool:
    """Check whether token authentication is mandatory (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in (
        "false", "0", "no", "off",
    )


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def parse_plants(raw) -> frozenset[Plant]:
    """Comma list or list of plant codes → set of Plant. Unknown codes are dropped."""
    if not raw:
        return frozenset()
    tokens = raw.split(",") if isinstance(raw, str) else list(raw)
    plants = set()
    for tok in tokens:
        code = str(tok).strip().lower()
        if not code:
            continue
        try:
            plants.add(Plant(code))
        except ValueError:
            logger.warning("Ignoring unknown plant code %r in caller identity", code)
    return frozenset(plants)


def _parse_role(raw) -> Role:
    try:
        return Role(str(raw).strip())
    except ValueError as exc:
        raise AuthenticationError(f"Unknown role {raw!r}") from exc


def caller_from_claims(payload: dict) -> Caller:
    username = payload.get("username") or payload.get("sub")
    if not username:
        raise AuthenticationError("Token has no subject")
    if not payload.get("role"):
        raise AuthenticationError("Token has no role claim")
    return Caller(
        username=str(username),
        role=_parse_role(payload["role"]),
        plants=parse_plants(payload.get("plant")),
    )


def _caller_from_headers():
    username = request.headers.get("X-User", "").strip()
    role = request.headers.get("X-Role", "").strip()
    if not username or not role:
        return None
    return Caller(
        username=username,
        role=_parse_role(role),
        plants=parse_plants(request.headers.get("X-Plant", "")),
    )


def init_auth(app):
    """Register the before_request hook that resolves ``g.caller``."""

    @app.before_request
    def _resolve_caller():
        g.caller = None
        g.auth_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in AUTH_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            try:
                payload = pyjwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
                g.caller = caller_from_claims(payload)
            except pyjwt.ExpiredSignatureError:
                g.auth_error = "Token expired"
            except pyjwt.InvalidTokenError:
                g.auth_error = "Invalid token"
            except AuthenticationError as exc:
                g.auth_error = str(exc)
            return

        if not _is_auth_enabled():
            try:
                g.caller = _caller_from_headers()
            except AuthenticationError as exc:
                g.auth_error = str(exc)


def current_caller() -> Caller:
    """Return the resolved caller or raise AuthenticationError (→ 401)."""
    caller = getattr(g, "caller", None)
    if caller is None:
        raise AuthenticationError(getattr(g, "auth_error", None) or "Authentication required")
    return caller
