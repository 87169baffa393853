"""Command line entry point for operating the access core.

Why:
    Admin is outside the role transition graph, so the first administrator
    (and any later one) must be provisioned out of band. The CLI also creates
    the schema and lets operators read and verify a subject's audit trail
    without going through the application.
"""
from __future__ import annotations

import os
import sys

import click

from backend.identity_access import stores_db
from backend.identity_access.audit import Actor, AuditLogWriter, AuditType, render_history, verify_digest
from backend.identity_access.config import load_access_config
from backend.identity_access.domain import ADMIN, OVERRIDE_ROLES
from backend.identity_access.errors import AccessError
from backend.identity_access.guest_access import utcnow
from backend.identity_access.profiles import UserProfile
from backend.identity_access.service import mask_email


SYSTEM_ACTOR = Actor(id="system", email="system@coursegate.local")


def _should_load_dotenv() -> bool:
    """Load a local .env unless running under pytest or opted out via COURSEGATE_ENABLE_DOTENV."""
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("COURSEGATE_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


def _profile_store(dsn: str | None):
    return stores_db.DBProfileStore(dsn)


def _audit_store(dsn: str | None):
    return stores_db.DBAuditStore(dsn)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--db-dsn", required=False, help="Profile store DSN (defaults to IDENTITY_DATABASE_URL / DATABASE_URL).")
@click.option("--audit-dsn", required=False, help="Audit store DSN (defaults to AUDIT_DATABASE_URL, then the profile DSN).")
@click.pass_context
def cli(ctx: click.Context, db_dsn: str | None, audit_dsn: str | None) -> None:
    """Operate profiles and the audit trail of the access core."""
    if _should_load_dotenv():
        from dotenv import load_dotenv

        load_dotenv()
    try:
        cfg = load_access_config()
    except ValueError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        raise click.Abort() from exc
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["db_dsn"] = db_dsn or cfg.profiles_dsn
    ctx.obj["audit_dsn"] = audit_dsn or os.getenv("AUDIT_DATABASE_URL") or ctx.obj["db_dsn"]


@cli.command("init-schema")
@click.pass_context
def init_schema(ctx: click.Context) -> None:
    """Create the profile and audit tables and the append-only trigger."""
    try:
        stores_db.ensure_schema(ctx.obj["db_dsn"])
        if ctx.obj["audit_dsn"] and ctx.obj["audit_dsn"] != ctx.obj["db_dsn"]:
            stores_db.ensure_schema(ctx.obj["audit_dsn"])
    except Exception as exc:
        click.echo(f"Schema setup failed: {exc.__class__.__name__}", err=True)
        raise click.Abort() from exc
    click.echo("Schema ready.")


@cli.command("provision-admin")
@click.option("--profile-id", required=True, help="Subject id of the account to promote.")
@click.option("--email", required=True, help="Email address recorded on the profile.")
@click.option(
    "--reason",
    default=None,
    help="Audit reason. Given for an existing admin, re-records the ROLE_CHANGE entry.",
)
@click.pass_context
def provision_admin(ctx: click.Context, profile_id: str, email: str, reason: str | None) -> None:
    """Make PROFILE_ID an administrator and record the change in the audit trail.

    Behaviour:
        - Creates the profile when it does not exist yet.
        - Clears any permission map and guest window; admin uses the full
          catalog regardless. A partner instructor or guest also loses its
          institution binding, recorded as INSTITUTION_REMOVED.
        - Appends a ROLE_CHANGE entry attributed to the system actor.
        - For an existing admin, does nothing unless --reason is given, in
          which case only the ROLE_CHANGE entry is appended. This recovers a
          run whose profile write landed but whose audit append failed.
    """
    profiles = _profile_store(ctx.obj["db_dsn"])
    writer = AuditLogWriter(_audit_store(ctx.obj["audit_dsn"]))
    now = utcnow()
    obligations = []
    try:
        existing = profiles.get(profile_id)
        if existing is not None and existing.role == ADMIN:
            if reason is None:
                click.echo(f"{profile_id} ({mask_email(existing.email)}) is already an admin.")
                return
            old_role = ADMIN
        elif existing is None:
            old_role = None
            profiles.create(UserProfile(id=profile_id, email=email, role=ADMIN, updated_at=now))
        else:
            old_role = existing.role
            patch = {"role": ADMIN, "email": email, "permissions": None, "guest_access_expiry": None, "updated_at": now}
            if old_role in OVERRIDE_ROLES and existing.institution_id:
                patch["institution_id"] = None
                obligations.append((AuditType.INSTITUTION_REMOVED, {"institution_id": existing.institution_id}))
            profiles.update(profile_id, patch)
    except AccessError as exc:
        click.echo(f"Provisioning failed: {exc.code}", err=True)
        raise click.Abort() from exc

    reason = reason or "Provisioned administrator"
    try:
        entry_id = writer.record(
            AuditType.ROLE_CHANGE,
            SYSTEM_ACTOR,
            target_user_id=profile_id,
            target_user_email=email,
            payload={"old_role": old_role, "new_role": ADMIN},
            reason=reason,
        )
        for kind, payload in obligations:
            writer.record(
                kind,
                SYSTEM_ACTOR,
                target_user_id=profile_id,
                target_user_email=email,
                payload=payload,
                reason=reason,
            )
    except AccessError as exc:
        click.echo(
            f"Profile {profile_id} is now an admin but the audit append failed ({exc.code}). "
            "Re-run with --reason to record the ROLE_CHANGE entry.",
            err=True,
        )
        raise click.Abort() from exc
    click.echo(f"Provisioned {profile_id} ({mask_email(email)}) as admin; audit entry {entry_id}.")


@cli.command("history")
@click.option("--user-id", required=False, help="Limit to one subject (default: all subjects).")
@click.option("--type", "kind", type=click.Choice([t.value for t in AuditType]), required=False)
@click.option("--limit", type=click.IntRange(1, 1000), default=100, show_default=True)
@click.pass_context
def history(ctx: click.Context, user_id: str | None, kind: str | None, limit: int) -> None:
    """Print audit entries in server-timestamp order."""
    writer = AuditLogWriter(_audit_store(ctx.obj["audit_dsn"]))
    entries = writer.history(user_id, type=kind, limit=limit)
    if not entries:
        click.echo("No audit entries.")
        return
    for line in render_history(entries):
        click.echo(line)


@cli.command("verify-audit")
@click.option("--user-id", required=False, help="Limit to one subject (default: all subjects).")
@click.option("--limit", type=click.IntRange(1, 1000), default=1000, show_default=True)
@click.pass_context
def verify_audit(ctx: click.Context, user_id: str | None, limit: int) -> None:
    """Recompute entry digests and exit non-zero when any stored entry was altered."""
    writer = AuditLogWriter(_audit_store(ctx.obj["audit_dsn"]))
    entries = writer.history(user_id, limit=limit)
    bad = [e for e in entries if not verify_digest(e)]
    for entry in bad:
        click.echo(f"Digest mismatch: {entry.id} ({entry.type.value})", err=True)
    click.echo(f"Checked {len(entries)} entries, {len(bad)} mismatched.")
    if bad:
        ctx.exit(1)


if __name__ == "__main__":  # pragma: no cover
    cli()
