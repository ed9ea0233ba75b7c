"""
Identity and Capability Module

Who is calling, and what they may do. The current identity lives in a
context variable so that each thread or task handling a request sees only
its own caller.
"""

import contextvars
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .audit import AuditTrail, AuditEventType
from .errors import NotAuthenticatedError, PermissionDeniedError
from .logging_config import get_logger, log_action


class Role(Enum):
    """Caller roles"""
    USER = "user"
    ADMIN = "admin"


class Permission(Enum):
    """Capabilities checked by the calling handlers"""
    TRANSFER_FUNDS = "transfer_funds"
    VIEW_OWN_ACCOUNT = "view_own_account"
    ADJUST_BALANCE = "adjust_balance"
    OPEN_ACCOUNT = "open_account"
    VIEW_ANY_ACCOUNT = "view_any_account"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.USER: frozenset({
        Permission.TRANSFER_FUNDS,
        Permission.VIEW_OWN_ACCOUNT,
    }),
    Role.ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Identity:
    """Authenticated caller"""
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def has_permission(self, permission: Permission) -> bool:
        """Check if the caller's role grants a permission"""
        return permission in ROLE_PERMISSIONS[self.role]


class IdentityProvider(ABC):
    """Source of the current caller"""

    @abstractmethod
    def current_user(self) -> Optional[Identity]:
        """Identity of the caller, or None when unauthenticated"""
        pass


_current_identity = contextvars.ContextVar('current_identity', default=None)


class ContextIdentityProvider(IdentityProvider):
    """Identity provider backed by a context variable"""

    def current_user(self) -> Optional[Identity]:
        return _current_identity.get()

    def set_current_user(self, identity: Optional[Identity]) -> None:
        _current_identity.set(identity)

    @contextmanager
    def authenticated_as(self, identity: Identity):
        """Context manager for acting as a caller"""
        token = _current_identity.set(identity)
        try:
            yield identity
        finally:
            _current_identity.reset(token)


_logger = get_logger("bank_ledger.identity")


def require_permission(
    provider: IdentityProvider,
    permission: Permission,
    audit_trail: Optional[AuditTrail] = None
) -> Identity:
    """
    Resolve the caller and check a capability

    Args:
        provider: Identity source
        permission: Capability the caller needs
        audit_trail: Refusals are recorded here when given

    Returns:
        The authenticated Identity

    Raises:
        NotAuthenticatedError: If there is no current caller
        PermissionDeniedError: If the caller's role lacks the permission
    """
    identity = provider.current_user()
    if identity is None:
        _deny(None, permission, "not_authenticated", audit_trail)
        raise NotAuthenticatedError("Not authenticated")

    if not identity.has_permission(permission):
        _deny(identity, permission, "permission_denied", audit_trail)
        raise PermissionDeniedError("Unauthorized")

    return identity


def _deny(
    identity: Optional[Identity],
    permission: Permission,
    reason: str,
    audit_trail: Optional[AuditTrail]
) -> None:
    user_id = identity.user_id if identity else None
    log_action(
        _logger, "warning", f"Authorization denied: {permission.value}",
        user_id=user_id, action=permission.value, extra={"reason": reason}
    )
    if audit_trail is not None:
        audit_trail.log_event(
            event_type=AuditEventType.AUTHORIZATION_DENIED,
            entity_type="permission",
            entity_id=permission.value,
            user_id=user_id,
            metadata={
                "reason": reason,
                "role": identity.role.value if identity else None
            }
        )
