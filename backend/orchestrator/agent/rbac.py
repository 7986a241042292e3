"""Role-Based Access Control for the orchestration API."""
from enum import Enum


class Role(str, Enum):
    """Available user roles."""
    ADMIN = "admin"
    MEMBER = "member"


class Permission(str, Enum):
    """Available permissions."""
    PROCESS_INPUT = "process_input"
    READ_TASKS = "read_tasks"
    APPROVE_DECISIONS = "approve_decisions"  # Approve, reject, cancel, retry tasks
    MANAGE_CONFIG = "manage_config"  # Agent configuration and users


# Role to permissions mapping
ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.ADMIN: {
        Permission.PROCESS_INPUT,
        Permission.READ_TASKS,
        Permission.APPROVE_DECISIONS,
        Permission.MANAGE_CONFIG,
    },
    Role.MEMBER: {Permission.PROCESS_INPUT, Permission.READ_TASKS},
}


def has_permission(role: str, permission: Permission) -> bool:
    """Check if a role has a specific permission.

    Args:
        role: The user's role as a string.
        permission: The permission to check.

    Returns:
        True if the role has the permission, False otherwise.
    """
    try:
        role_enum = Role(role)
        return permission in ROLE_PERMISSIONS.get(role_enum, set())
    except ValueError:
        return False
