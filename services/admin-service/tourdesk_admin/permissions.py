"""
Role -> permission table used to gate admin actions.

The table is data (admins edit it from the settings screen), with one fixed
rule: ADMIN always keeps canManageSettings, otherwise an admin could lock every
admin out of the settings screen.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping

from .errors import ValidationError

Role = Literal["ADMIN", "TOUR_OPERATOR", "CUSTOMER"]

ROLES: tuple[str, ...] = ("ADMIN", "TOUR_OPERATOR", "CUSTOMER")

PERMISSIONS: tuple[str, ...] = (
    "canManageUsers",
    "canManagePackages",
    "canManageDepartures",
    "canManageOperators",
    "canViewReports",
    "canProcessRefunds",
    "canModerateReviews",
    "canManageSettings",
    "canDeleteBookings",
    "canOverridePrices",
)

LOCKED: frozenset[tuple[str, str]] = frozenset({("ADMIN", "canManageSettings")})

DEFAULT_PERMISSIONS: dict[str, dict[str, bool]] = {
    "ADMIN": {p: True for p in PERMISSIONS},
    "TOUR_OPERATOR": {
        "canManageUsers": False,
        "canManagePackages": True,  # own packages only, enforced by the backend
        "canManageDepartures": True,
        "canManageOperators": False,
        "canViewReports": True,
        "canProcessRefunds": False,
        "canModerateReviews": False,
        "canManageSettings": False,
        "canDeleteBookings": False,
        "canOverridePrices": True,
    },
    "CUSTOMER": {p: False for p in PERMISSIONS},
}


def normalize_role(role: str | None) -> str:
    r = (role or "").strip().upper()
    # tokens issued by the marketplace use "operator" for tour operators
    if r == "OPERATOR":
        return "TOUR_OPERATOR"
    return r


@dataclass(frozen=True)
class PermissionMatrix:
    table: Mapping[str, Mapping[str, bool]]

    @classmethod
    def defaults(cls) -> "PermissionMatrix":
        return cls.from_document(DEFAULT_PERMISSIONS)

    @classmethod
    def from_document(cls, doc: Mapping[str, Mapping[str, bool]] | None) -> "PermissionMatrix":
        doc = doc or {}
        table: dict[str, Mapping[str, bool]] = {}
        for role in ROLES:
            row = {**DEFAULT_PERMISSIONS[role], **{k: bool(v) for k, v in (doc.get(role) or {}).items() if k in PERMISSIONS}}
            for locked_role, perm in LOCKED:
                if locked_role == role:
                    row[perm] = True
            table[role] = MappingProxyType(row)
        return cls(table=MappingProxyType(table))

    def to_document(self) -> dict[str, dict[str, bool]]:
        return {role: dict(row) for role, row in self.table.items()}

    def is_permitted(self, role: str | None, permission: str) -> bool:
        row = self.table.get(normalize_role(role))
        if row is None:
            return False
        return bool(row.get(permission, False))

    def toggle(self, role: str, permission: str) -> tuple["PermissionMatrix", bool]:
        """
        Flip one flag. Returns the new matrix and whether anything changed.

        Locked flags are left untouched and reported as unchanged.
        """
        role = normalize_role(role)
        if role not in self.table or permission not in PERMISSIONS:
            raise ValidationError("Unknown role or permission", {"permission": f"{role}.{permission}"})
        if (role, permission) in LOCKED:
            return self, False
        doc = self.to_document()
        doc[role][permission] = not doc[role][permission]
        return PermissionMatrix.from_document(doc), True


def validate_permissions(doc: Mapping[str, Mapping[str, object]] | None) -> None:
    errors: dict[str, str] = {}
    for role, row in (doc or {}).items():
        if role not in ROLES:
            errors[f"role_{role}"] = "Unknown role"
            continue
        if not isinstance(row, Mapping):
            errors[f"role_{role}"] = "Permissions must be an object"
            continue
        for perm, value in row.items():
            if perm not in PERMISSIONS:
                errors[f"{role}.{perm}"] = "Unknown permission"
            elif not isinstance(value, bool):
                errors[f"{role}.{perm}"] = "Permission value must be true or false"
    if errors:
        raise ValidationError("Invalid permissions", errors)
