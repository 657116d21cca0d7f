import pytest

from tourdesk_admin.errors import ValidationError
from tourdesk_admin.permissions import PermissionMatrix, validate_permissions


def test_default_table_lookup():
    m = PermissionMatrix.defaults()
    assert m.is_permitted("ADMIN", "canProcessRefunds")
    assert m.is_permitted("TOUR_OPERATOR", "canManagePackages")
    assert m.is_permitted("operator", "canOverridePrices")
    assert not m.is_permitted("TOUR_OPERATOR", "canProcessRefunds")
    assert not m.is_permitted("CUSTOMER", "canViewReports")
    assert not m.is_permitted("GUEST", "canViewReports")
    assert not m.is_permitted("ADMIN", "canFlyToTheMoon")


def test_admin_settings_permission_cannot_be_revoked():
    m = PermissionMatrix.defaults()
    before = m.to_document()
    toggled, changed = m.toggle("ADMIN", "canManageSettings")
    assert changed is False
    assert toggled.to_document() == before
    assert toggled.is_permitted("ADMIN", "canManageSettings")


def test_toggle_flips_one_flag_without_mutating_original():
    m = PermissionMatrix.defaults()
    toggled, changed = m.toggle("TOUR_OPERATOR", "canProcessRefunds")
    assert changed is True
    assert toggled.is_permitted("TOUR_OPERATOR", "canProcessRefunds")
    assert not m.is_permitted("TOUR_OPERATOR", "canProcessRefunds")

    back, _ = toggled.toggle("TOUR_OPERATOR", "canProcessRefunds")
    assert back.to_document() == m.to_document()


def test_loading_a_document_restores_locked_flag():
    doc = PermissionMatrix.defaults().to_document()
    doc["ADMIN"]["canManageSettings"] = False
    assert PermissionMatrix.from_document(doc).is_permitted("ADMIN", "canManageSettings")


def test_toggle_unknown_permission_rejected():
    with pytest.raises(ValidationError):
        PermissionMatrix.defaults().toggle("ADMIN", "canDance")


def test_validate_permissions():
    validate_permissions(PermissionMatrix.defaults().to_document())
    with pytest.raises(ValidationError) as exc:
        validate_permissions({"ROOT": {}, "ADMIN": {"canDance": True, "canManageUsers": "yes"}})
    assert set(exc.value.errors) == {"role_ROOT", "ADMIN.canDance", "ADMIN.canManageUsers"}
