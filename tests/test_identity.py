"""
Tests for caller identity and capability checks
"""

import pytest
import threading

from bank_ledger.storage import InMemoryStorage
from bank_ledger.audit import AuditTrail, AuditEventType
from bank_ledger.identity import (
    Identity, Role, Permission, ContextIdentityProvider, require_permission
)
from bank_ledger.errors import NotAuthenticatedError, PermissionDeniedError, AuthorizationError


class TestIdentity:
    """Test role permissions"""

    def test_user_permissions(self):
        user = Identity("user-1")
        assert user.role == Role.USER
        assert user.has_permission(Permission.TRANSFER_FUNDS)
        assert user.has_permission(Permission.VIEW_OWN_ACCOUNT)
        assert not user.has_permission(Permission.ADJUST_BALANCE)
        assert not user.has_permission(Permission.VIEW_ANY_ACCOUNT)
        assert not user.is_admin

    def test_admin_has_every_permission(self):
        admin = Identity("admin-1", Role.ADMIN)
        assert admin.is_admin
        for permission in Permission:
            assert admin.has_permission(permission)


class TestContextIdentityProvider:
    """Test context-scoped caller identity"""

    def setup_method(self):
        self.provider = ContextIdentityProvider()

    def test_unauthenticated_by_default(self):
        assert self.provider.current_user() is None

    def test_authenticated_as_restores_previous(self):
        alice = Identity("alice")
        admin = Identity("admin", Role.ADMIN)

        with self.provider.authenticated_as(alice):
            assert self.provider.current_user() == alice
            with self.provider.authenticated_as(admin):
                assert self.provider.current_user() == admin
            assert self.provider.current_user() == alice

        assert self.provider.current_user() is None

    def test_identity_not_shared_between_threads(self):
        seen = []

        with self.provider.authenticated_as(Identity("alice")):
            thread = threading.Thread(target=lambda: seen.append(self.provider.current_user()))
            thread.start()
            thread.join()

        assert seen == [None]


class TestRequirePermission:
    """Test the central capability check"""

    def setup_method(self):
        self.provider = ContextIdentityProvider()
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_returns_identity_when_allowed(self):
        alice = Identity("alice")
        with self.provider.authenticated_as(alice):
            assert require_permission(self.provider, Permission.TRANSFER_FUNDS) == alice

    def test_not_authenticated(self):
        with pytest.raises(NotAuthenticatedError, match="Not authenticated"):
            require_permission(self.provider, Permission.VIEW_OWN_ACCOUNT)

    def test_permission_denied(self):
        with self.provider.authenticated_as(Identity("alice")):
            with pytest.raises(PermissionDeniedError, match="Unauthorized"):
                require_permission(self.provider, Permission.ADJUST_BALANCE)

    def test_errors_share_base_class(self):
        with pytest.raises(AuthorizationError):
            require_permission(self.provider, Permission.OPEN_ACCOUNT)

    def test_denials_are_audited(self):
        with self.provider.authenticated_as(Identity("alice")):
            with pytest.raises(PermissionDeniedError):
                require_permission(self.provider, Permission.ADJUST_BALANCE, self.audit_trail)

        events = self.audit_trail.get_events_by_type(AuditEventType.AUTHORIZATION_DENIED)
        assert len(events) == 1
        assert events[0].user_id == "alice"
        assert events[0].entity_id == "adjust_balance"
        assert events[0].metadata == {"reason": "permission_denied", "role": "user"}
