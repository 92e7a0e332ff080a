import json
import logging
import math
from datetime import timedelta
from typing import Optional

from .models import db, AuditLog, User, utcnow

logger = logging.getLogger(__name__)


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    SOFT_DELETE = "SOFT_DELETE"
    RESTORE = "RESTORE"
    UPDATE_STATUS = "UPDATE_STATUS"


class EntityType:
    TOURNAMENT = "tournament"
    COMPETITOR = "competitor"
    USER = "user"


def _serialize(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _page(query, page: int, limit: int) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = query.count()
    logs = query.order_by(AuditLog.changed_at.desc(), AuditLog.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    actor_ids = {log.changed_by for log in logs}
    actors = {u.id: u for u in User.query.filter(User.id.in_(actor_ids)).all()} if actor_ids else {}

    return {
        'data': [log.to_dict(actors.get(log.changed_by)) for log in logs],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': math.ceil(total / limit) if total else 0,
            'has_next': page * limit < total,
            'has_prev': page > 1,
        }
    }


class AuditRecorder:
    """
    Append-only trail of state changes.

    record() runs after the primary mutation has committed and commits on its
    own, so a failed write can neither fail nor roll back that mutation.
    """

    def record(
        self,
        entity_type: str,
        entity_id,
        action: str,
        old_value=None,
        new_value=None,
        changed_by: int = None
    ) -> None:
        try:
            entry = AuditLog(
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                old_value=_serialize(old_value),
                new_value=_serialize(new_value),
                changed_by=changed_by,
                changed_at=utcnow()
            )
            db.session.add(entry)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.warning(f"Failed to write audit entry {action} {entity_type}:{entity_id}: {e}")

    def query(
        self,
        entity_type: str = None,
        entity_id=None,
        page: int = 1,
        limit: int = 20
    ) -> dict:
        """Audit entries, newest first, optionally scoped to one entity."""
        query = AuditLog.query
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(AuditLog.entity_id == str(entity_id))
        return _page(query, page, limit)

    def user_activity(self, user_id: int, page: int = 1, limit: int = 20) -> dict:
        return _page(AuditLog.query.filter(AuditLog.changed_by == user_id), page, limit)

    def recent(self, limit: int = 10) -> list:
        logs = AuditLog.query.order_by(AuditLog.changed_at.desc(), AuditLog.id.desc()).limit(limit).all()
        return [log.to_dict() for log in logs]

    def cleanup(self, days_to_keep: int = 90) -> int:
        """Purge entries older than the retention horizon; returns rows removed."""
        cutoff = utcnow() - timedelta(days=days_to_keep)
        removed = AuditLog.query.filter(AuditLog.changed_at < cutoff).delete(synchronize_session=False)
        db.session.commit()
        logger.info(f"Purged {removed} audit entries older than {days_to_keep} days")
        return removed
