"""Role capabilities as fixed (resource, action) pairs.

Roles are resolved once into a frozenset of ``Capability`` members; checks are
plain set membership.
"""

from enum import Enum

from app.enums import Role

__all__ = ["Capability", "ROLE_CAPABILITIES", "capabilities_for", "has_capability"]


class Capability(Enum):
    LINKS_READ = ("links", "read")
    LINKS_WRITE = ("links", "write")
    ANALYTICS_READ = ("analytics", "read")
    ANALYTICS_PRUNE = ("analytics", "prune")
    USAGE_READ = ("usage", "read")

    @property
    def resource(self) -> str:
        return self.value[0]

    @property
    def action(self) -> str:
        return self.value[1]


_USER_CAPABILITIES = frozenset(
    {
        Capability.LINKS_READ,
        Capability.LINKS_WRITE,
        Capability.ANALYTICS_READ,
        Capability.USAGE_READ,
    }
)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.USER: _USER_CAPABILITIES,
    Role.ADMIN: frozenset(Capability),
}


def capabilities_for(role: str) -> frozenset[Capability]:
    try:
        return ROLE_CAPABILITIES[Role(role)]
    except ValueError:
        return frozenset()


def has_capability(role: str, capability: Capability) -> bool:
    return capability in capabilities_for(role)
