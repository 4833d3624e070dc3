# hm_lab/common/permissions.py

from __future__ import annotations

from typing import Set

from rest_framework.permissions import BasePermission, SAFE_METHODS

# Group/role names (Django auth Group names)
ROLE_ADMIN = "ADMIN"
ROLE_DOCTOR = "DOCTOR"
ROLE_LAB = "LAB"
ROLE_BILLING = "BILLING"
ROLE_PATIENT = "PATIENT"
ROLE_READONLY = "READONLY"

ALL_ROLES = (ROLE_ADMIN, ROLE_DOCTOR, ROLE_LAB, ROLE_BILLING, ROLE_PATIENT, ROLE_READONLY)

STAFF_ROLES = {ROLE_ADMIN, ROLE_DOCTOR, ROLE_LAB, ROLE_BILLING, ROLE_READONLY}


def user_roles(user) -> Set[str]:
    """
    Resolve roles from Django groups.

    - Superuser is treated as ADMIN.
    - Authenticated users without groups are READONLY.
    """
    roles: Set[str] = set()

    if not user or not getattr(user, "is_authenticated", False):
        return roles

    if getattr(user, "is_superuser", False):
        roles.add(ROLE_ADMIN)
        return roles

    if hasattr(user, "groups"):
        roles.update(user.groups.values_list("name", flat=True))

    if not roles:
        roles.add(ROLE_READONLY)

    return roles


def is_admin(user) -> bool:
    return ROLE_ADMIN in user_roles(user)


class BaseRolePermission(BasePermission):
    """
    Role-based access control keyed by viewset action.

    - ADMIN bypass.
    - Unknown SAFE actions fall back to list/retrieve.
    - Unknown unsafe actions are denied.
    """
    message = "You do not have permission to perform this action."

    allowed_roles_per_action = {
        "list": STAFF_ROLES,
        "retrieve": STAFF_ROLES,
        "create": {ROLE_ADMIN},
        "update": {ROLE_ADMIN},
        "partial_update": {ROLE_ADMIN},
        "destroy": {ROLE_ADMIN},
    }

    def _infer_action(self, request, view) -> str | None:
        action = getattr(view, "action", None)
        if action:
            return action

        kwargs = getattr(view, "kwargs", {}) or {}
        is_detail = "pk" in kwargs or "id" in kwargs

        method = request.method.upper()
        if method in ("GET", "HEAD", "OPTIONS"):
            return "retrieve" if is_detail else "list"
        if method == "POST":
            return "create"
        if method == "PUT":
            return "update"
        if method == "PATCH":
            return "partial_update"
        if method == "DELETE":
            return "destroy"
        return None

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not getattr(user, "is_authenticated", False):
            return False

        roles = user_roles(user)

        if ROLE_ADMIN in roles:
            return True

        action = self._infer_action(request, view)
        allowed = self.allowed_roles_per_action.get(action)

        if allowed is None and request.method in SAFE_METHODS:
            kwargs = getattr(view, "kwargs", {}) or {}
            is_detail = "pk" in kwargs or "id" in kwargs
            allowed = self.allowed_roles_per_action.get("retrieve" if is_detail else "list")

        if allowed is not None:
            return bool(roles & allowed)

        return False

    def has_object_permission(self, request, view, obj) -> bool:
        return self.has_permission(request, view)


class LabTestCatalogPermission(BaseRolePermission):
    """Catalog is readable by everyone signed in; edits are ADMIN only."""
    allowed_roles_per_action = {
        "list": set(ALL_ROLES),
        "retrieve": set(ALL_ROLES),
        "categories": set(ALL_ROLES),
        "create": {ROLE_ADMIN},
        "update": {ROLE_ADMIN},
        "partial_update": {ROLE_ADMIN},
        "destroy": {ROLE_ADMIN},
    }


class LabOrderPermission(BaseRolePermission):
    allowed_roles_per_action = {
        "list": set(ALL_ROLES),
        "retrieve": set(ALL_ROLES),
        "create": {ROLE_ADMIN, ROLE_DOCTOR, ROLE_PATIENT},
        "pending_approval": {ROLE_ADMIN, ROLE_LAB},
        "approve": {ROLE_ADMIN},
        "selection": {ROLE_ADMIN, ROLE_PATIENT},
        "cancel": {ROLE_ADMIN, ROLE_PATIENT},
    }


class LabPaymentPermission(BaseRolePermission):
    allowed_roles_per_action = {
        "list": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "retrieve": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "create": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "gateway": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "execute": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "query": {ROLE_ADMIN, ROLE_BILLING, ROLE_PATIENT},
        "complete": {ROLE_ADMIN, ROLE_BILLING},
        "admin_batch": {ROLE_ADMIN, ROLE_BILLING},
        "refund": {ROLE_ADMIN},
    }


class LabAdminPaymentPermission(BaseRolePermission):
    """Counter payments (cash, card, bank) recorded as completed by staff."""
    allowed_roles_per_action = {
        "create": {ROLE_ADMIN, ROLE_BILLING},
    }


class LabFulfillmentPermission(BaseRolePermission):
    allowed_roles_per_action = {
        "retrieve": {ROLE_ADMIN, ROLE_LAB, ROLE_DOCTOR, ROLE_BILLING, ROLE_READONLY},
        "approve": {ROLE_ADMIN},
        "sample_processing": {ROLE_ADMIN, ROLE_LAB},
        "sample_taken": {ROLE_ADMIN, ROLE_LAB},
        "reports": {ROLE_ADMIN, ROLE_LAB},
        "remove_report": {ROLE_ADMIN, ROLE_LAB},
        "confirm": {ROLE_ADMIN, ROLE_LAB},
        "revert": {ROLE_ADMIN},
        "selection": {ROLE_ADMIN, ROLE_PATIENT},
        "cancel": {ROLE_ADMIN, ROLE_PATIENT},
    }
