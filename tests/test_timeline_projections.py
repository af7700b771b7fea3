"""Read-side projections: timeline ordering, nested responses, level-2 feed."""

from datetime import datetime, timedelta, timezone

from qapflow.models.qap import LevelResponse, Role, TimelineEntry
from qapflow.services.timeline import (
    final_comments_per_item,
    level2_comment_feed,
    nest_responses,
    ordered_timeline,
)

T0 = datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc)


def _response(level, role, user, minutes, comments=None):
    return LevelResponse(
        qap_id="q", level=level, role=role, username=user, acknowledged=True,
        comments=comments or {}, responded_at=T0 + timedelta(minutes=minutes),
    )


def test_timeline_sorted_by_id():
    entries = [
        TimelineEntry(id=3, level=2, action="c", user="x", timestamp=T0),
        TimelineEntry(id=1, level=1, action="a", user="x", timestamp=T0),
        TimelineEntry(id=2, level=1, action="b", user="x", timestamp=T0),
    ]
    assert [e["action"] for e in ordered_timeline(entries)] == ["a", "b", "c"]


def test_nest_responses_by_level_and_role():
    nested = nest_responses([
        _response(2, Role.QUALITY, "qa", 0, {"1": "ok"}),
        _response(2, Role.TECHNICAL, "tech", 5),
        _response(3, Role.HEAD, "hod", 9),
    ])
    assert set(nested) == {2, 3}
    assert nested[2]["quality"]["comments"] == {"1": "ok"}
    assert nested[2]["quality"]["username"] == "qa"
    assert nested[3]["head"]["acknowledged"] is True


def test_level2_feed_is_oldest_first_and_level_2_only():
    feed = level2_comment_feed([
        _response(2, Role.TECHNICAL, "tech", 30, {"1": "late"}),
        _response(3, Role.HEAD, "hod", 40),
        _response(2, Role.QUALITY, "qa", 10, {"1": "early"}),
    ])
    assert [(f["role"], f["by"]) for f in feed] == [("quality", "qa"), ("technical", "tech")]
    assert feed[0]["responses"] == {"1": "early"}
    assert feed[0]["at"] == (T0 + timedelta(minutes=10)).isoformat()


def test_final_comments_per_item():
    assert final_comments_per_item('{"mqp:2": "agreed"}') == {"mqp:2": "agreed"}
    assert final_comments_per_item("plain text") == {}
    assert final_comments_per_item("{broken") == {}
    assert final_comments_per_item(None) == {}
