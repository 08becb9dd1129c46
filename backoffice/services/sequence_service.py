import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.errors import ConflictError
from backoffice.models.sequence import SequenceCounter
from backoffice.services.repository import require_tenant

logger = logging.getLogger(__name__)

TRANSFER_PREFIX = "IT"
BULK_TRANSFER_PREFIX = "BT"


class SequenceGenerator:
    """Hands out ``{PREFIX}-{YYYYMMDD}-{timeSuffix}-{counter}`` numbers.

    The counter row for (tenant, prefix, day) is bumped with one conditional
    UPDATE inside the caller's transaction, so the row lock taken there keeps
    concurrent callers from ever reading the same value. The counter alone
    guarantees uniqueness; the time suffix only makes numbers easier to tell
    apart at a glance.
    """

    def __init__(self, db: Session, max_retries: int | None = None):
        self.db = db
        self.max_retries = max_retries or settings.SEQUENCE_MAX_RETRIES

    def next(self, tenant_id: str, prefix: str, now: datetime | None = None) -> str:
        require_tenant(tenant_id)
        now = now or datetime.now(timezone.utc)
        day = now.strftime("%Y%m%d")
        counter = self._increment(tenant_id, prefix, day)
        time_suffix = str(int(now.timestamp() * 1000))[-4:]
        return f"{prefix}-{day}-{time_suffix}-{counter:03d}"

    def _increment(self, tenant_id: str, prefix: str, day: str) -> int:
        for attempt in range(self.max_retries):
            result = self.db.execute(
                update(SequenceCounter)
                .where(
                    SequenceCounter.tenant_id == tenant_id,
                    SequenceCounter.prefix == prefix,
                    SequenceCounter.day == day,
                )
                .values(value=SequenceCounter.value + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return (
                    self.db.query(SequenceCounter.value)
                    .filter(
                        SequenceCounter.tenant_id == tenant_id,
                        SequenceCounter.prefix == prefix,
                        SequenceCounter.day == day,
                    )
                    .scalar()
                )

            # First number of the day: another caller may insert the row first
            try:
                with self.db.begin_nested():
                    self.db.add(SequenceCounter(tenant_id=tenant_id, prefix=prefix, day=day, value=1))
                return 1
            except IntegrityError:
                logger.info("Sequence row %s/%s/%s created concurrently, retry %d", tenant_id, prefix, day, attempt + 1)

        raise ConflictError(f"Could not allocate a {prefix} number, please retry")
