"""
Authorization engine tests.

Focus:
    - Admin supremacy and the override map replacing role defaults
    - Fail-closed behaviour for missing profiles, unknown roles and junk input
    - Expired guests losing every permission and route
    - Route table, home routes and the role-change shape check
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from backend.identity_access import authorization as authz
from backend.identity_access.domain import (
    ADMIN,
    ALL_PERMISSIONS,
    ALLOWED_ROLES,
    DEFAULT_ROLE_PERMISSIONS,
    GUEST,
    INSTRUCTOR,
    PARTNER_INSTRUCTOR,
    STUDENT,
    Permission,
    Role,
)
from backend.identity_access.profiles import UserProfile

from backend.tests.utils.clock import T0


def _profile(role, **fields) -> UserProfile:
    return UserProfile(id="u-1", email="u@example.org", role=role, **fields)


@pytest.mark.parametrize("permission", sorted(ALL_PERMISSIONS))
def test_admin_holds_every_catalog_permission(permission):
    assert authz.has_permission(_profile(ADMIN), permission)


def test_admin_ignores_a_stored_permission_map():
    admin = _profile(ADMIN, permissions={"manage_users": False})
    assert authz.has_permission(admin, "manage_users")


def test_null_profile_denies_everything():
    assert not authz.has_permission(None, "view_courses")
    assert not authz.has_role(None, STUDENT)
    assert not authz.has_any_permission(None, ["view_courses"])
    assert not authz.has_all_permissions(None, ["view_courses"])
    assert not authz.can_access_route(None, "/dashboard")
    assert authz.home_route_for(None) == authz.LOGIN_ROUTE


@pytest.mark.parametrize("role", [None, "", "superuser", 7])
def test_unknown_or_missing_role_denies(role):
    profile = _profile(role)
    assert not authz.has_permission(profile, "view_courses")
    assert not authz.can_access_route(profile, "/dashboard")
    assert authz.home_route_for(profile) == authz.LOGIN_ROUTE


@pytest.mark.parametrize("permission", [None, "", "not_a_permission", 3, ["view_courses"], {"x": 1}])
def test_junk_permission_is_denied_not_raised(permission):
    assert not authz.has_permission(_profile(STUDENT), permission)


def test_role_defaults_apply_without_a_map():
    student = _profile(STUDENT)
    assert authz.has_permission(student, "view_courses")
    assert authz.has_permission(student, Permission.VIEW_OWN_GRADES)
    assert not authz.has_permission(student, "create_courses")


def test_permission_map_replaces_defaults():
    partner = _profile(PARTNER_INSTRUCTOR, permissions={"view_courses": True})
    assert authz.has_permission(partner, "view_courses")
    # Defaults are not merged in once a map exists.
    assert not authz.has_permission(partner, "provide_feedback")


def test_permission_map_requires_exact_true():
    partner = _profile(
        PARTNER_INSTRUCTOR,
        permissions={"view_courses": "yes", "send_messages": 1, "provide_feedback": False},
    )
    assert not authz.has_permission(partner, "view_courses")
    assert not authz.has_permission(partner, "send_messages")
    assert not authz.has_permission(partner, "provide_feedback")


def test_empty_permission_map_grants_nothing():
    assert not authz.has_permission(_profile(GUEST, permissions={}), "view_courses")


def test_malformed_permission_map_fails_closed():
    assert not authz.has_permission(_profile(GUEST, permissions=["view_courses"]), "view_courses")


def test_any_and_all_permissions():
    student = _profile(STUDENT)
    assert authz.has_any_permission(student, ["create_courses", "view_courses"])
    assert not authz.has_any_permission(student, [])
    assert authz.has_all_permissions(student, ["view_courses", "enroll_courses"])
    assert not authz.has_all_permissions(student, ["view_courses", "create_courses"])
    assert authz.has_all_permissions(student, [])
    assert not authz.has_all_permissions(student, None)
    assert not authz.has_any_permission(student, None)


def test_has_role_accepts_enum_members():
    assert authz.has_role(_profile(Role.INSTRUCTOR), INSTRUCTOR)
    assert authz.has_role(_profile(INSTRUCTOR), Role.INSTRUCTOR)
    assert not authz.has_role(_profile(INSTRUCTOR), ADMIN)


def test_expired_guest_is_denied_permissions_and_routes():
    guest = _profile(
        GUEST,
        institution_id="inst-1",
        guest_access_expiry=T0,
        permissions={"view_courses": True},
    )
    before = T0 - timedelta(seconds=1)
    assert authz.has_permission(guest, "view_courses", before)
    assert authz.can_access_route(guest, "/guest/dashboard", before)
    # now == expiry counts as expired
    assert not authz.has_permission(guest, "view_courses", T0)
    assert not authz.can_access_route(guest, "/guest/dashboard", T0)
    assert not authz.can_access_route(guest, "/courses", T0 + timedelta(days=1))


def test_guest_without_expiry_is_not_expired():
    guest = _profile(GUEST, institution_id="inst-1")
    assert authz.has_permission(guest, "preview_all_courses", T0)


@pytest.mark.parametrize(
    "role,path,allowed",
    [
        (ADMIN, "/admin/users", True),
        (INSTRUCTOR, "/admin/users", False),
        (INSTRUCTOR, "/instructor/courses", True),
        (STUDENT, "/instructor/courses", False),
        (PARTNER_INSTRUCTOR, "/partner-instructor", True),
        (PARTNER_INSTRUCTOR, "/student/courses", True),
        (GUEST, "/student/courses", False),
        (GUEST, "/guest/dashboard", True),
        (STUDENT, "/guest/dashboard", False),
        (STUDENT, "/dashboard", True),
        (GUEST, "/courses/42", True),
        (STUDENT, "/analytics", False),
        (GUEST, "/analytics", True),
        (INSTRUCTOR, "/settings", False),
        (STUDENT, "/help", True),
    ],
)
def test_route_table(role, path, allowed):
    assert authz.can_access_route(_profile(role), path, T0) is allowed


def test_custom_route_table():
    rules = (authz.RouteRule("/reports", frozenset({INSTRUCTOR})),)
    assert authz.can_access_route(_profile(INSTRUCTOR), "/reports/q1", routes=rules)
    assert not authz.can_access_route(_profile(STUDENT), "/reports/q1", routes=rules)
    assert authz.can_access_route(_profile(STUDENT), "/admin", routes=rules)


def test_non_string_path_is_denied():
    assert not authz.can_access_route(_profile(ADMIN), None)


@pytest.mark.parametrize(
    "role,route",
    [
        (ADMIN, "/admin/analytics"),
        (INSTRUCTOR, "/instructor/analytics"),
        (PARTNER_INSTRUCTOR, "/partner-instructor"),
        (GUEST, "/guest/dashboard"),
        (STUDENT, "/student/analytics"),
    ],
)
def test_home_routes(role, route):
    assert authz.home_route_for(_profile(role)) == route


def test_role_change_shape_check():
    non_admin = sorted(ALLOWED_ROLES - {ADMIN})
    for src in non_admin:
        for dst in non_admin:
            assert authz.is_valid_role_change(src, dst)
    for other in sorted(ALLOWED_ROLES):
        assert not authz.is_valid_role_change(ADMIN, other)
        assert not authz.is_valid_role_change(other, ADMIN)


@pytest.mark.parametrize(
    "src,dst",
    [("student", "wizard"), ("wizard", "student"), (None, "student"), ("student", None), ([], "student")],
)
def test_role_change_rejects_unknown_roles(src, dst):
    assert not authz.is_valid_role_change(src, dst)


def test_can_manage_user():
    admin = _profile(ADMIN)
    instructor = _profile(INSTRUCTOR)
    partner = _profile(PARTNER_INSTRUCTOR)
    student = _profile(STUDENT, institution_id="inst-1")
    guest = _profile(GUEST, institution_id="inst-1")
    other_guest = _profile(GUEST, institution_id="inst-2")

    assert authz.can_manage_user(admin, instructor)
    assert authz.can_manage_user(instructor, partner)
    assert not authz.can_manage_user(instructor, admin)
    assert authz.can_manage_user(partner, student)
    assert not authz.can_manage_user(partner, instructor)
    assert authz.can_manage_user(guest, student)
    assert not authz.can_manage_user(other_guest, student)
    assert not authz.can_manage_user(student, student)
    assert not authz.can_manage_user(None, student)


def test_defaults_table_is_consistent_with_queries():
    for role, perms in DEFAULT_ROLE_PERMISSIONS.items():
        profile = _profile(role)
        for perm in perms:
            assert authz.has_permission(profile, perm, T0)
