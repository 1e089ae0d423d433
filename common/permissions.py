import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_ROLES = {User.Role.OWNER, User.Role.MANAGER, User.Role.CASHIER, User.Role.KITCHEN}

ROLE_CAPABILITY_MATRIX = {
    "catalog.view": ALL_ROLES,
    "orders.create": {User.Role.CASHIER, User.Role.MANAGER, User.Role.OWNER},
    "orders.view": ALL_ROLES,
    "orders.status.update": ALL_ROLES,
    "kitchen.view": ALL_ROLES,
    "dashboard.view": {User.Role.MANAGER, User.Role.OWNER},
    "inventory.view": {User.Role.CASHIER, User.Role.MANAGER, User.Role.OWNER},
    "inventory.manage": {User.Role.MANAGER, User.Role.OWNER},
    "inventory.delete": {User.Role.OWNER},
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.OWNER
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.MANAGER
    return User.Role.CASHIER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
