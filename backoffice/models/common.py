from enum import Enum as PyEnum

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column


class RecordStatus(str, PyEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


def enum_column(enum_cls: type[PyEnum], default):
    """Enum column persisted by value, the way the API spells it."""
    return mapped_column(
        Enum(enum_cls, values_callable=lambda x: [e.value for e in x], native_enum=False, length=32),
        default=default,
        nullable=False,
    )


class ArchivableMixin:
    """Soft delete as an explicit status; read through ``repository.scoped``."""

    status: Mapped[RecordStatus] = enum_column(RecordStatus, RecordStatus.ACTIVE)


class TenantScopedMixin:
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
