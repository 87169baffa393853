"""Packaging sanity checks for import paths.

Ensures the namespace packages resolve the same way for an editable install
and for local test runs from a plain checkout.
"""
from importlib import import_module

import pytest


@pytest.mark.parametrize(
    "name",
    [
        "backend.identity_access.domain",
        "backend.identity_access.authorization",
        "backend.identity_access.guest_access",
        "backend.identity_access.transitions",
        "backend.identity_access.audit",
        "backend.identity_access.service",
        "backend.identity_access.session",
        "backend.identity_access.stores",
        "backend.identity_access.stores_db",
    ],
)
def test_import_identity_access_modules(name):
    assert import_module(name) is not None


def test_cli_entry_point_is_a_click_group():
    mod = import_module("backend.tools.access_admin")
    assert set(mod.cli.commands) >= {"init-schema", "provision-admin", "history", "verify-audit"}
