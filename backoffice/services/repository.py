"""Tenant-scoped read helpers shared by the services."""

from sqlalchemy.orm import Query, Session

from backoffice.errors import NotFoundError, ValidationError
from backoffice.models.catalog import Product, Store
from backoffice.models.common import ArchivableMixin, RecordStatus
from backoffice.models.user import User


def require_tenant(tenant_id: str | None) -> str:
    if not tenant_id:
        raise ValidationError("Tenant context is required")
    return tenant_id


def scoped(db: Session, model, tenant_id: str | None, include_archived: bool = False) -> Query:
    """Query ``model`` within one tenant, hiding archived rows by default."""
    q = db.query(model).filter(model.tenant_id == require_tenant(tenant_id))
    if issubclass(model, ArchivableMixin) and not include_archived:
        q = q.filter(model.status == RecordStatus.ACTIVE)
    return q


def get_scoped(db: Session, model, tenant_id: str | None, obj_id: str, label: str):
    obj = scoped(db, model, tenant_id).filter(model.id == obj_id).first()
    if not obj:
        raise NotFoundError(f"{label} {obj_id} not found")
    return obj


def get_store(db: Session, tenant_id: str, store_id: str) -> Store:
    return get_scoped(db, Store, tenant_id, store_id, "Store")


def get_product(db: Session, tenant_id: str, product_id: str) -> Product:
    return get_scoped(db, Product, tenant_id, product_id, "Product")


def find_products(db: Session, tenant_id: str, product_ids: list[str]) -> dict[str, Product]:
    products = scoped(db, Product, tenant_id).filter(Product.id.in_(set(product_ids))).all()
    return {p.id: p for p in products}


def find_eligible_approvers(db: Session, tenant_id: str, role_names: list[str]) -> list[str]:
    """Ids of active tenant users holding at least one of ``role_names``."""
    if not role_names:
        return []
    users = (
        db.query(User)
        .filter(User.tenant_id == require_tenant(tenant_id), User.active == True)  # noqa: E712
        .order_by(User.id)
        .all()
    )
    return [u.id for u in users if u.has_any_role(*role_names)]


def find_active_users(db: Session, tenant_id: str, user_ids: list[str]) -> list[str]:
    if not user_ids:
        return []
    rows = (
        db.query(User.id)
        .filter(
            User.tenant_id == require_tenant(tenant_id),
            User.id.in_(set(user_ids)),
            User.active == True,  # noqa: E712
        )
        .all()
    )
    return sorted(r[0] for r in rows)
