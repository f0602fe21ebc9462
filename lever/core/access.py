"""
Capability tables for mutating entry points.

Each component owns an AccessControl holding explicit allow-sets keyed by
caller identity. Mutators call require() first; nothing is trusted
ambiently. Denials raise AuthorizationError and are logged as security
events.
"""

import threading
from typing import Iterable

from ..config.constants import ROLE_OWNER
from ..utils.logger import get_logger
from .errors import AuthorizationError


class AccessControl:
    """
    Role -> set of caller identities.

    The owner may grant and revoke any role. The owner identity is itself
    a member of ROLE_OWNER.
    """

    def __init__(self, component: str, owner: str, grants: dict[str, Iterable[str]] | None = None):
        self.component = component
        self.logger = get_logger()
        self._lock = threading.Lock()
        self._allow: dict[str, set[str]] = {ROLE_OWNER: {owner}}
        for role, callers in (grants or {}).items():
            self._allow.setdefault(role, set()).update(callers)

    def is_allowed(self, caller: str, role: str) -> bool:
        with self._lock:
            return caller in self._allow.get(role, ())

    def require(self, caller: str, role: str, action: str = "") -> None:
        """
        Raise AuthorizationError unless caller holds role.

        Args:
            caller: Caller identity
            role: Required role
            action: Operation name for the security log
        """
        if self.is_allowed(caller, role):
            return
        self.logger.security(
            "DENIED",
            caller,
            component=self.component,
            role=role,
            action=action or "-",
        )
        raise AuthorizationError(
            f"{caller} is not authorized as {role} on {self.component}",
            caller=caller,
            role=role,
            action=action,
        )

    def grant(self, admin: str, role: str, caller: str) -> None:
        """Add caller to role (owner only)."""
        self.require(admin, ROLE_OWNER, f"grant:{role}")
        with self._lock:
            self._allow.setdefault(role, set()).add(caller)
        self.logger.security("GRANTED", caller, component=self.component, role=role, by=admin)

    def revoke(self, admin: str, role: str, caller: str) -> None:
        """Remove caller from role (owner only)."""
        self.require(admin, ROLE_OWNER, f"revoke:{role}")
        with self._lock:
            self._allow.get(role, set()).discard(caller)
        self.logger.security("REVOKED", caller, component=self.component, role=role, by=admin)

    def roles(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._allow)

    def members(self, role: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._allow.get(role, ()))
