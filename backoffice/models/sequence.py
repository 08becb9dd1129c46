import uuid

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base
from backoffice.models.common import TenantScopedMixin


class SequenceCounter(TenantScopedMixin, Base):
    """Last number handed out for one (tenant, prefix, day)."""

    __tablename__ = "sequence_counters"
    __table_args__ = (UniqueConstraint("tenant_id", "prefix", "day", name="uq_sequence_tenant_prefix_day"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    prefix: Mapped[str] = mapped_column(String, nullable=False)
    day: Mapped[str] = mapped_column(String(8), nullable=False)  # YYYYMMDD
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
