"""Error taxonomy shared by services and the HTTP layer.

Each error carries a stable machine-readable ``kind`` and the HTTP status it
maps to, so handlers never inspect message text.
"""


class ServiceError(Exception):
    kind = "system_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(ServiceError):
    """Malformed or missing input."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(ServiceError):
    """Unknown id, or an id outside the caller's tenant."""

    kind = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    """Insufficient stock, duplicate numbers or stale state."""

    kind = "conflict"
    status_code = 409


class InvalidTransitionError(ServiceError):
    kind = "invalid_transition"
    status_code = 400

    def __init__(self, entity: str, current: str, action: str):
        super().__init__(f"Cannot {action} {entity} in '{current}' status")
        self.entity = entity
        self.current = current
        self.action = action


class AuthenticationError(ServiceError):
    kind = "unauthenticated"
    status_code = 401


class AuthorizationError(ServiceError):
    kind = "forbidden"
    status_code = 403


class InternalError(ServiceError):
    """Storage or transaction failure."""

    kind = "system_error"
    status_code = 500
