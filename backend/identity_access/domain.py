"""
Identity domain constants: roles, permissions and default permission sets.

Why:
- Centralize allowed roles and permissions to avoid drift between tools,
  services and the session layer.
- Keep terms aligned with the glossary (role, permission, bootstrap bundle).

Behavior:
- Pure lookups over module-level data; nothing here performs I/O.
- Admin's default set is derived from the full catalog so a new permission is
  granted to admins automatically.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Mapping, Tuple


class Role(str, Enum):
    """Coarse-grained actor categories."""

    STUDENT = "student"
    INSTRUCTOR = "instructor"
    PARTNER_INSTRUCTOR = "partner_instructor"
    GUEST = "guest"
    ADMIN = "admin"


STUDENT = Role.STUDENT.value
INSTRUCTOR = Role.INSTRUCTOR.value
PARTNER_INSTRUCTOR = Role.PARTNER_INSTRUCTOR.value
GUEST = Role.GUEST.value
ADMIN = Role.ADMIN.value

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset(r.value for r in Role)

# Roles whose profiles carry a per-subject permission map and an institution.
OVERRIDE_ROLES = frozenset({PARTNER_INSTRUCTOR, GUEST})


class Permission(str, Enum):
    """Capability flags. Flags, not resources."""

    # Student
    VIEW_COURSES = "view_courses"
    ENROLL_COURSES = "enroll_courses"
    SUBMIT_ASSESSMENTS = "submit_assessments"
    VIEW_OWN_PROGRESS = "view_own_progress"
    VIEW_OWN_GRADES = "view_own_grades"

    # Partner instructor (limited)
    VIEW_ASSIGNED_COURSES = "view_assigned_courses"
    VIEW_ASSIGNED_STUDENTS_COUNT = "view_assigned_students_count"
    GRADE_ASSIGNED_ASSESSMENTS = "grade_assigned_assessments"
    PROVIDE_FEEDBACK = "provide_feedback"
    SEND_MESSAGES = "send_messages"
    CREATE_ANNOUNCEMENTS = "create_announcements"
    VIEW_COURSE_CONTENT = "view_course_content"

    # Institution-scoped (partner instructors and guests)
    VIEW_INSTITUTION_STUDENTS = "view_institution_students"
    VIEW_INSTITUTION_PROGRESS = "view_institution_progress"
    EXPORT_INSTITUTION_DATA = "export_institution_data"

    # Guest
    VIEW_ALL_STUDENTS_INSTITUTION = "view_all_students_institution"
    VIEW_ALL_INSTRUCTORS_INSTITUTION = "view_all_instructors_institution"
    MANAGE_STUDENT_ASSIGNMENTS = "manage_student_assignments"
    CREATE_INSTITUTION_ASSESSMENTS = "create_institution_assessments"
    PREVIEW_ALL_COURSES = "preview_all_courses"
    CREATE_INSTITUTION_ANNOUNCEMENTS = "create_institution_announcements"
    VIEW_INSTITUTION_ANALYTICS = "view_institution_analytics"

    # Instructor
    CREATE_COURSES = "create_courses"
    EDIT_OWN_COURSES = "edit_own_courses"
    DELETE_OWN_COURSES = "delete_own_courses"
    VIEW_ALL_STUDENTS = "view_all_students"
    VIEW_ASSIGNED_STUDENTS = "view_assigned_students"
    VIEW_STUDENT_PROGRESS = "view_student_progress"
    CREATE_ASSESSMENTS = "create_assessments"
    GRADE_ALL_ASSESSMENTS = "grade_all_assessments"
    MANAGE_PARTNER_INSTRUCTORS = "manage_partner_instructors"
    VIEW_COURSE_ANALYTICS = "view_course_analytics"
    MANAGE_ENROLLMENTS = "manage_enrollments"
    UPLOAD_MATERIALS = "upload_materials"
    ASSIGN_PARTNER_INSTRUCTORS = "assign_partner_instructors"

    # Admin
    MANAGE_USERS = "manage_users"
    MANAGE_ROLES = "manage_roles"
    MANAGE_ALL_COURSES = "manage_all_courses"
    MANAGE_ALL_ASSESSMENTS = "manage_all_assessments"
    VIEW_PLATFORM_ANALYTICS = "view_platform_analytics"
    MANAGE_SYSTEM_SETTINGS = "manage_system_settings"
    MANAGE_DEVICE_RESTRICTIONS = "manage_device_restrictions"
    MANAGE_GUEST_ACCOUNTS = "manage_guest_accounts"
    OVERRIDE_RESTRICTIONS = "override_restrictions"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_GUEST_ACCESS = "manage_guest_access"


ALL_PERMISSIONS: FrozenSet[str] = frozenset(p.value for p in Permission)

_P = Permission

_INSTITUTION_SCOPED = frozenset(
    {
        _P.VIEW_INSTITUTION_STUDENTS.value,
        _P.VIEW_INSTITUTION_PROGRESS.value,
        _P.EXPORT_INSTITUTION_DATA.value,
    }
)

DEFAULT_ROLE_PERMISSIONS: Mapping[str, FrozenSet[str]] = {
    STUDENT: frozenset(
        p.value
        for p in (
            _P.VIEW_COURSES,
            _P.ENROLL_COURSES,
            _P.SUBMIT_ASSESSMENTS,
            _P.VIEW_OWN_PROGRESS,
            _P.VIEW_OWN_GRADES,
        )
    ),
    PARTNER_INSTRUCTOR: frozenset(
        p.value
        for p in (
            _P.VIEW_COURSES,
            _P.VIEW_COURSE_CONTENT,
            _P.VIEW_ASSIGNED_COURSES,
            _P.VIEW_ASSIGNED_STUDENTS_COUNT,
            _P.GRADE_ASSIGNED_ASSESSMENTS,
            _P.PROVIDE_FEEDBACK,
            _P.SEND_MESSAGES,
            _P.CREATE_ANNOUNCEMENTS,
        )
    ),
    GUEST: frozenset(
        p.value
        for p in (
            _P.VIEW_ALL_STUDENTS_INSTITUTION,
            _P.VIEW_ALL_INSTRUCTORS_INSTITUTION,
            _P.MANAGE_STUDENT_ASSIGNMENTS,
            _P.CREATE_INSTITUTION_ASSESSMENTS,
            _P.PREVIEW_ALL_COURSES,
            _P.CREATE_INSTITUTION_ANNOUNCEMENTS,
            _P.VIEW_INSTITUTION_ANALYTICS,
            _P.VIEW_COURSES,
            _P.VIEW_COURSE_CONTENT,
            _P.SEND_MESSAGES,
        )
    ),
    INSTRUCTOR: frozenset(
        p.value
        for p in (
            _P.VIEW_COURSES,
            _P.ENROLL_COURSES,
            _P.SUBMIT_ASSESSMENTS,
            _P.VIEW_OWN_PROGRESS,
            _P.VIEW_COURSE_CONTENT,
            _P.VIEW_ASSIGNED_STUDENTS,
            _P.GRADE_ASSIGNED_ASSESSMENTS,
            _P.PROVIDE_FEEDBACK,
            _P.SEND_MESSAGES,
            _P.CREATE_ANNOUNCEMENTS,
            _P.CREATE_COURSES,
            _P.EDIT_OWN_COURSES,
            _P.DELETE_OWN_COURSES,
            _P.VIEW_ALL_STUDENTS,
            _P.VIEW_STUDENT_PROGRESS,
            _P.CREATE_ASSESSMENTS,
            _P.GRADE_ALL_ASSESSMENTS,
            _P.MANAGE_PARTNER_INSTRUCTORS,
            _P.VIEW_COURSE_ANALYTICS,
            _P.MANAGE_ENROLLMENTS,
            _P.UPLOAD_MATERIALS,
            _P.ASSIGN_PARTNER_INSTRUCTORS,
        )
    ),
    ADMIN: ALL_PERMISSIONS,
}

# Keys a stored permission map may carry, per override role.
ASSIGNABLE_PERMISSIONS: Mapping[str, FrozenSet[str]] = {
    PARTNER_INSTRUCTOR: DEFAULT_ROLE_PERMISSIONS[PARTNER_INSTRUCTOR] | _INSTITUTION_SCOPED,
    GUEST: DEFAULT_ROLE_PERMISSIONS[GUEST] | _INSTITUTION_SCOPED,
}


def _bundle(defaults: FrozenSet[str], extra: Mapping[str, bool]) -> Dict[str, bool]:
    out = {p: True for p in sorted(defaults)}
    out.update(extra)
    return out


def partner_instructor_bootstrap() -> Dict[str, bool]:
    """Return a fresh copy of the partner-instructor starter bundle."""
    return _bundle(
        DEFAULT_ROLE_PERMISSIONS[PARTNER_INSTRUCTOR],
        {
            _P.VIEW_INSTITUTION_STUDENTS.value: True,
            _P.VIEW_INSTITUTION_PROGRESS.value: True,
            _P.EXPORT_INSTITUTION_DATA.value: False,
        },
    )


def guest_bootstrap() -> Dict[str, bool]:
    """Return a fresh copy of the guest starter bundle (institution-management oriented)."""
    return _bundle(DEFAULT_ROLE_PERMISSIONS[GUEST], {p: True for p in sorted(_INSTITUTION_SCOPED)})


def as_value(item: object) -> object:
    """Unwrap enum members to their plain string value; pass anything else through."""
    return item.value if isinstance(item, Enum) else item


def default_permissions_for(role: object) -> FrozenSet[str]:
    """Return the role's default permission set; empty for unknown roles."""
    role = as_value(role)
    if not isinstance(role, str):
        return frozenset()
    return DEFAULT_ROLE_PERMISSIONS.get(role, frozenset())


_DISPLAY_NAMES = {
    STUDENT: "Student",
    INSTRUCTOR: "Instructor",
    PARTNER_INSTRUCTOR: "Partner Instructor",
    GUEST: "Guest",
    ADMIN: "Admin",
}

_DESCRIPTIONS = {
    STUDENT: "Can view enrolled courses, submit assignments, and track progress",
    INSTRUCTOR: "Can create and manage courses, partner instructors, and all content",
    PARTNER_INSTRUCTOR: "Can view assigned student counts and grade assignments",
    GUEST: "Can view institution members and create temporary assessments",
    ADMIN: "Has full system access and can manage all users and settings",
}

_HIERARCHY: Mapping[str, Tuple[str, ...]] = {
    ADMIN: (ADMIN, INSTRUCTOR, PARTNER_INSTRUCTOR, GUEST, STUDENT),
    INSTRUCTOR: (INSTRUCTOR, PARTNER_INSTRUCTOR, GUEST, STUDENT),
    PARTNER_INSTRUCTOR: (PARTNER_INSTRUCTOR, STUDENT),
    GUEST: (GUEST, STUDENT),
    STUDENT: (STUDENT,),
}


def role_display_name(role: str) -> str:
    return _DISPLAY_NAMES.get(as_value(role), as_value(role))


def role_description(role: str) -> str:
    return _DESCRIPTIONS.get(as_value(role), "")


def role_hierarchy(role: str) -> Tuple[str, ...]:
    """Roles subsumed by `role` (itself first). Unknown roles subsume nothing."""
    return _HIERARCHY.get(as_value(role), ())


__all__ = [
    "Role",
    "Permission",
    "STUDENT",
    "INSTRUCTOR",
    "PARTNER_INSTRUCTOR",
    "GUEST",
    "ADMIN",
    "ALLOWED_ROLES",
    "OVERRIDE_ROLES",
    "ALL_PERMISSIONS",
    "DEFAULT_ROLE_PERMISSIONS",
    "ASSIGNABLE_PERMISSIONS",
    "as_value",
    "default_permissions_for",
    "partner_instructor_bootstrap",
    "guest_bootstrap",
    "role_display_name",
    "role_description",
    "role_hierarchy",
]
