import enum

from .errors import Forbidden


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    WORKER = "worker"
    ADMIN = "admin"
    SYSTEM = "system"


def require_role(actor, allowed_roles: list[Role]):
    if actor.role not in set(allowed_roles):
        raise Forbidden("Access forbidden for this role")
