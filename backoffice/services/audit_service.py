import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Fire-and-forget audit trail.

    Rows are written inside the caller's transaction so they commit with the
    change they describe; a failing insert is logged and never breaks the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        tenant_id: str,
        user_id: str,
        action: str,
        object_table: str,
        object_id: str,
        data: dict | None = None,
    ) -> None:
        entry = AuditLog(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            object_table=object_table,
            object_id=object_id,
            data=json.dumps(data or {}, default=str),
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning("Audit record %s for %s/%s dropped: %s", action, object_table, object_id, e)

    def list_for_object(self, tenant_id: str, object_table: str, object_id: str) -> list[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(
                AuditLog.tenant_id == tenant_id,
                AuditLog.object_table == object_table,
                AuditLog.object_id == object_id,
            )
            .order_by(AuditLog.created_at)
            .all()
        )
