"""
Read-side projections over a QAP's responses and timeline.

No side effects; every function takes already-loaded rows and returns plain
dicts / lists ready for ``jsonify``.
"""

import json
import logging

logger = logging.getLogger(__name__)


def ordered_timeline(entries) -> list[dict]:
    """Timeline entries in insertion order (by id)."""
    return [e.to_dict() for e in sorted(entries, key=lambda e: e.id)]


def nest_responses(responses) -> dict:
    """Reshape response rows as ``level → role → {username, acknowledged, comments, responded_at}``."""
    nested: dict[int, dict] = {}
    for r in responses:
        nested.setdefault(r.level, {})[r.role.value] = r.to_dict()
    return nested


def level2_comment_feed(responses) -> list[dict]:
    """Flat list of level-2 comments across roles, oldest first.

    This is what head reviewers see at level 3 to read back the level-2
    discussion without walking the nested structure.
    """
    feed = [
        {
            "role": r.role.value,
            "by": r.username,
            "at": r.responded_at,
            "responses": r.comments or {},
        }
        for r in responses
        if r.level == 2
    ]
    feed.sort(key=lambda f: (f["at"] is None, f["at"]))
    for f in feed:
        f["at"] = f["at"].isoformat() if f["at"] else None
    return feed


def final_comments_per_item(final_comments: str | None) -> dict:
    """Per-item final comments when the requestor submitted a JSON object, else ``{}``."""
    if not final_comments or not final_comments.strip().startswith("{"):
        return {}
    try:
        parsed = json.loads(final_comments)
    except ValueError:
        logger.warning("final_comments looks like JSON but does not parse; ignoring per-item view")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def qap_view(qap, responses=None, timeline=None) -> dict:
    """Full aggregate: master fields, both checklists, responses and timeline."""
    responses = qap.responses if responses is None else responses
    timeline = qap.timeline if timeline is None else timeline
    data = qap.to_dict(include_items=True)
    data["level_responses"] = nest_responses(responses)
    data["level2_comment_feed"] = level2_comment_feed(responses)
    data["final_comments_per_item"] = final_comments_per_item(qap.final_comments)
    data["timeline"] = ordered_timeline(timeline)
    return data
