import json
import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base
from backoffice.models.common import TenantScopedMixin


class User(TenantScopedMixin, Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String, default="")
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    # Role names as JSON, e.g. '["Manager","admin"]'
    roles_json: Mapped[str] = mapped_column("roles", Text, default="[]")
    active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def roles(self) -> list[str]:
        return json.loads(self.roles_json) if self.roles_json else []

    @roles.setter
    def roles(self, value: list[str]) -> None:
        self.roles_json = json.dumps(list(value))

    def has_any_role(self, *names: str) -> bool:
        wanted = {n.lower() for n in names}
        return any(r.lower() in wanted for r in self.roles)
