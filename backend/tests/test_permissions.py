from loginguard.core.permissions import has_permission, normalize_role


def test_normalize_role_unknown_defaults_to_viewer():
    assert normalize_role("unknown-role") == "viewer"
    assert normalize_role(None) == "viewer"
    assert normalize_role(" Root-Admin ") == "root-admin"


def test_has_permission_matrix_basics():
    assert has_permission("security-admin", "blocklist.manage") is True
    assert has_permission("security-admin", "settings.manage") is False
    assert has_permission("root-admin", "settings.manage") is True
    assert has_permission("auditor", "activity.view") is True
    assert has_permission("auditor", "geo.manage") is False
    assert has_permission("viewer", "activity.view") is False
