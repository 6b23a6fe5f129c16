"""
Access scope passed explicitly into core operations.

The host's authorization gate computes one AccessScope per request (or per
batch job) and hands it to every core call that filters or gates on the
actor. Nothing in the core reads ambient auth state.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable
from uuid import UUID

from core.errors import PermissionDeniedError

WILDCARD = "*"


@dataclass(frozen=True)
class AccessScope:
    """
    Capability object for one approved actor.

    Attributes:
        actor_id: Identity the gate approved (None for system jobs)
        permissions: "resource:action" strings; "*" grants everything
        customer_ids: Visible customers, or None for unrestricted
    """

    actor_id: UUID | None = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    customer_ids: FrozenSet[UUID] | None = None

    @classmethod
    def system(cls) -> "AccessScope":
        """Unrestricted scope for scheduled jobs and maintenance tasks."""
        return cls(actor_id=None, permissions=frozenset({WILDCARD}), customer_ids=None)

    @classmethod
    def for_actor(
        cls,
        actor_id: UUID,
        permissions: Iterable[str],
        customer_ids: Iterable[UUID] | None = None,
    ) -> "AccessScope":
        return cls(
            actor_id=actor_id,
            permissions=frozenset(permissions),
            customer_ids=None if customer_ids is None else frozenset(customer_ids),
        )

    def has_permission(self, resource: str, action: str) -> bool:
        """Whether the actor may perform action on resource."""
        return (
            WILDCARD in self.permissions
            or f"{resource}:{action}" in self.permissions
            or f"{resource}:{WILDCARD}" in self.permissions
        )

    def require(self, resource: str, action: str) -> None:
        """Raise PermissionDeniedError unless has_permission()."""
        if not self.has_permission(resource, action):
            raise PermissionDeniedError(resource, action)

    def scoped_customer_ids(self) -> FrozenSet[UUID] | None:
        """Visible customer IDs, None meaning unrestricted."""
        return self.customer_ids

    def can_see_customer(self, customer_id: UUID) -> bool:
        return self.customer_ids is None or customer_id in self.customer_ids
