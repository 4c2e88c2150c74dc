# File: src/qrpark/application/auth.py
"""
Explicit authentication context

Operations that act on behalf of an operator receive an AuthContext built
by a PrincipalResolver. Whether a demo fallback exists is a property of
the resolver chosen at startup, never of global state.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from ..domain.models import AuthenticationRequiredError, PermissionDeniedError


class Role(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    DRIVER = "driver"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role
    is_demo: bool = False


@dataclass(frozen=True)
class AuthContext:
    principal: Optional[Principal] = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    def require_role(self, *roles: Role) -> Principal:
        """Return the principal if it holds one of the roles"""
        if self.principal is None:
            raise AuthenticationRequiredError("Authentication required")
        if roles and self.principal.role not in roles:
            raise PermissionDeniedError(
                f"Role {self.principal.role.value} may not perform this operation"
            )
        return self.principal

    def require_operator(self) -> Principal:
        return self.require_role(Role.ADMIN, Role.OWNER)


class PrincipalResolver(ABC):
    """Turns whatever the transport authenticated into an AuthContext"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def resolve(self, principal: Optional[Principal]) -> AuthContext:
        pass


class StrictPrincipalResolver(PrincipalResolver):
    """Production resolver: unauthenticated callers stay unauthenticated"""

    def resolve(self, principal: Optional[Principal]) -> AuthContext:
        return AuthContext(principal)


class DemoPrincipalResolver(PrincipalResolver):
    """Demo resolver: unauthenticated callers act as a fixed demo admin"""

    def __init__(self, demo_admin_id: str = "demo-admin"):
        super().__init__()
        self.demo_principal = Principal(user_id=demo_admin_id, role=Role.ADMIN, is_demo=True)

    def resolve(self, principal: Optional[Principal]) -> AuthContext:
        if principal is None:
            self.logger.debug(f"No principal supplied, acting as {self.demo_principal.user_id}")
            return AuthContext(self.demo_principal)
        return AuthContext(principal)


def create_principal_resolver(auth_mode: str, demo_admin_id: str = "demo-admin") -> PrincipalResolver:
    if auth_mode == "demo":
        return DemoPrincipalResolver(demo_admin_id)
    if auth_mode == "strict":
        return StrictPrincipalResolver()
    raise ValueError(f"Unknown auth mode: {auth_mode}")
