"""
Required-role computation for level-2 gating.

Pure functions, no database access:

    parse_review_by("quality, technical")        → {Role.QUALITY, Role.TECHNICAL}
    required_roles(qap.items)                    → roles that must acknowledge level 2

Role tokens are matched exactly after trimming (no case-folding), so the
stored identifiers and the Role enumeration must agree byte for byte.
"""

from collections.abc import Iterable, Mapping

from qapflow.core.exceptions import ValidationError
from qapflow.models.qap import Match, Role

_ROLE_BY_VALUE = {r.value: r for r in Role}


def parse_review_by(raw) -> frozenset[Role]:
    """Normalise a ``reviewBy`` value into a set of roles.

    Accepts None, a comma-separated string, or any iterable of role names /
    Role members. Blank and duplicate tokens are tolerated.

    Raises:
        ValidationError: if any token is not a known role name.
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        tokens = raw.split(",")
    elif isinstance(raw, Iterable):
        tokens = list(raw)
    else:
        raise ValidationError(
            "review_by must be a comma-separated string or a list of roles",
            details={"review_by": repr(raw)},
        )

    roles = set()
    unknown = []
    for tok in tokens:
        if isinstance(tok, Role):
            roles.add(tok)
            continue
        if not isinstance(tok, str):
            unknown.append(repr(tok))
            continue
        name = tok.strip()
        if not name:
            continue
        role = _ROLE_BY_VALUE.get(name)
        if role is None:
            unknown.append(name)
        else:
            roles.add(role)

    if unknown:
        raise ValidationError(
            f"Unknown role(s) in review_by: {', '.join(unknown)}",
            details={"review_by": unknown},
        )
    return frozenset(roles)


def _field(item, name):
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def required_roles(items: Iterable) -> frozenset[Role]:
    """Union of ``review_by`` over every item whose match is ``"no"``.

    ``items`` may mix both checklist kinds and may be model instances or
    plain mappings with ``match`` / ``review_by`` keys. An empty result means
    level 2 is vacuously satisfied.
    """
    required: set[Role] = set()
    for item in items:
        if _field(item, "match") != Match.NO:
            continue
        required |= parse_review_by(_field(item, "review_by"))
    return frozenset(required)


def item_requires_role(item, role: Role) -> bool:
    """True when ``item`` is a mismatch that ``role`` must acknowledge."""
    return _field(item, "match") == Match.NO and role in parse_review_by(_field(item, "review_by"))
