"""
QAP record store — persistence adapter around a SQLAlchemy session.

The repository is constructed per request with an explicit session and
injected into QAPWorkflowService; nothing in the workflow layer touches
``db.session`` directly.

Transaction policy: repository methods flush, never commit. The only
commit point is ``unit_of_work()``, which commits on success and rolls back
on any exception (database errors are re-raised as StorageError).
"""

import logging
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from qapflow.core.exceptions import NotFoundError, StorageError
from qapflow.models.qap import QAP, LevelResponse, TimelineEntry

logger = logging.getLogger(__name__)


class QAPRepository:
    def __init__(self, session):
        self.session = session

    # ── Unit of work ─────────────────────────────────────────────────────

    @contextmanager
    def unit_of_work(self):
        """Commit everything written inside the block, or nothing.

        Usage::

            with repo.unit_of_work():
                repo.upsert_response(...)
                repo.append_timeline(...)
        """
        try:
            yield self
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("QAP unit of work failed, transaction rolled back")
            raise StorageError("Database error while saving QAP") from exc
        except Exception:
            self.session.rollback()
            raise

    # ── Aggregate ────────────────────────────────────────────────────────

    def get(self, qap_id, *, for_update=False):
        q = self.session.query(QAP).filter(QAP.id == qap_id)
        if for_update:
            q = q.with_for_update()
        return q.first()

    def require(self, qap_id, *, for_update=False):
        qap = self.get(qap_id, for_update=for_update)
        if qap is None:
            raise NotFoundError(resource="QAP", resource_id=qap_id)
        return qap

    def add(self, qap):
        self.session.add(qap)
        self.session.flush()
        return qap

    def delete(self, qap):
        self.session.delete(qap)
        self.session.flush()

    def query(self, *, status=None, plant=None):
        """Newest-first QAP query, optionally filtered. Returned unexecuted for pagination."""
        q = self.session.query(QAP)
        if status is not None:
            q = q.filter(QAP.status == status)
        if plant is not None:
            q = q.filter(QAP.plant == plant)
        return q.order_by(QAP.created_at.desc(), QAP.id)

    def list_at_level(self, level, plants):
        if not plants:
            return []
        return (
            self.session.query(QAP)
            .filter(QAP.current_level == level, QAP.plant.in_(list(plants)))
            .order_by(QAP.submitted_at.desc(), QAP.id)
            .all()
        )

    def advance(self, qap, transition, at):
        """Move ``qap`` to ``transition``'s state if it is still in the source state.

        Conditional UPDATE guarded by (current_level, status). Returns False
        when another request already moved the QAP, in which case nothing
        is written.
        """
        values = dict(transition.updates)
        values.update(
            current_level=transition.level,
            status=transition.status,
            last_modified_at=at,
        )
        stmt = (
            update(QAP)
            .where(
                QAP.id == qap.id,
                QAP.current_level == transition.from_level,
                QAP.status == transition.from_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.expire(qap)
        return result.rowcount == 1

    def replace_items(self, qap, attr, items):
        """Swap one checklist partition (``mqp_items`` / ``visual_items``).

        The old rows are flushed out first because the new ones reuse their
        (qap_id, sno) keys.
        """
        setattr(qap, attr, [])
        self.session.flush()
        setattr(qap, attr, items)
        self.session.flush()

    def touch(self, qap, at):
        qap.last_modified_at = at
        self.session.flush()

    # ── Level responses ──────────────────────────────────────────────────

    def get_response(self, qap_id, level, role):
        return self.session.get(LevelResponse, (qap_id, level, role))

    def upsert_response(self, qap_id, level, role, *, username, comments, at):
        """Insert or overwrite the single response for (qap_id, level, role)."""
        resp = self.get_response(qap_id, level, role)
        if resp is None:
            resp = LevelResponse(qap_id=qap_id, level=level, role=role)
            self.session.add(resp)
        resp.username = username
        resp.acknowledged = True
        resp.comments = comments
        resp.responded_at = at
        self.session.flush()
        return resp

    def acknowledged_roles(self, qap_id, level):
        rows = (
            self.session.query(LevelResponse.role)
            .filter(
                LevelResponse.qap_id == qap_id,
                LevelResponse.level == level,
                LevelResponse.acknowledged.is_(True),
            )
            .all()
        )
        return frozenset(r[0] for r in rows)

    # ── Timeline ─────────────────────────────────────────────────────────

    def append_timeline(self, qap_id, drafts, at):
        entries = []
        for draft in drafts:
            entry = TimelineEntry(
                qap_id=qap_id,
                level=draft.level,
                action=draft.action,
                user=draft.user,
                timestamp=at,
            )
            self.session.add(entry)
            # flush per entry so ids follow append order
            self.session.flush()
            entries.append(entry)
        return entries

    def timeline_for(self, qap_id):
        return (
            self.session.query(TimelineEntry)
            .filter(TimelineEntry.qap_id == qap_id)
            .order_by(TimelineEntry.id)
            .all()
        )
