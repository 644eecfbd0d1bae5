"""CLI entry point for Sift, the per-user email keep/delete rule engine.

Commands:
    sift rule       — add/remove/update/clear/get a rule from an observed email
    sift criteria   — operate on one dimension of the rule set directly
    sift emails     — ingest pending emails
    sift evaluate   — reset and re-evaluate pending emails
    sift summary    — per-action counts over the pending batch
    sift preview    — deletion candidates for a delete action
    sift stats      — rule-set statistics
    sift audit      — recent audit entries
    sift purge      — remove a user's rules and pending emails
"""

import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import click
from pydantic import ValidationError

from sift.config import DB_PATH, DEFAULT_USER_EMAIL, PREVIEW_LIMIT
from sift.errors import SiftError
from sift.schemas.criteria import (
    RULE_ACTIONS,
    CriteriaView,
    Dimension,
    ModifyResult,
    Operation,
    RuleLevel,
)

logger = logging.getLogger("sift")

_ACTION_CHOICES = [a.value for a in RULE_ACTIONS]
_OPERATION_CHOICES = [o.value for o in Operation]


def _open():
    from sift.store.database import Database

    return Database(DB_PATH)


def _user(ctx: click.Context) -> str:
    user = ctx.obj["user"]
    if not user:
        click.echo("Error: No user given. Pass --user or set SIFT_USER_EMAIL.", err=True)
        sys.exit(1)
    return user


def _render_view(view: CriteriaView) -> None:
    entry = view.entry
    if entry is not None:
        default = entry.default_action.value if entry.default_action else "-"
        click.echo(f"  {entry.key_type.value}: {entry.key_value} (default: {default})")
    if view.subdomain_count:
        click.echo(f"  Subdomains ({view.subdomain_count}):")
        for sub in view.subdomains:
            default = sub.default_action.value if sub.default_action else "-"
            count = view.subdomain_pattern_counts.get(sub.key_value, 0)
            click.echo(f"    {sub.key_value}  default={default}  patterns={count}")
    if view.patterns:
        click.echo(f"  Subject patterns ({len(view.patterns)}):")
        for p in view.patterns:
            click.echo(f"    [{p.action.value}] '{p.pattern}'")
    if view.email_patterns:
        click.echo(f"  Email patterns ({len(view.email_patterns)}):")
        for ep in view.email_patterns:
            click.echo(f"    [{ep.direction.value}/{ep.action.value}] {ep.email}")


def _report(result: ModifyResult) -> None:
    """Print a ModifyResult; exit non-zero on failure."""
    if not result.success:
        code = result.code.value if result.code else "error"
        click.echo(f"Error ({code}): {result.message}", err=True)
        sys.exit(1)
    click.echo(result.message)
    if result.data is not None:
        _render_view(result.data)
    if result.audit_id is not None:
        click.echo(f"  (audit #{result.audit_id})")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option("--user", "-u", default=None, help="Acting user's email (defaults to SIFT_USER_EMAIL).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, user: str | None) -> None:
    """Sift — per-user rules that decide which emails to keep or delete."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.ensure_object(dict)
    ctx.obj["user"] = (user or DEFAULT_USER_EMAIL or "").strip().lower()


# ------------------------------------------------------------------
# sift rule
# ------------------------------------------------------------------


@cli.command()
@click.argument("operation", type=click.Choice(_OPERATION_CHOICES, case_sensitive=False))
@click.option("--from", "from_email", required=True, help="Sender address of the observed email.")
@click.option("--to", "to_email", default="", help="Recipient address of the observed email.")
@click.option("--subject", default="", help="Subject of the observed email.")
@click.option(
    "--level",
    type=click.Choice([lv.value for lv in RuleLevel], case_sensitive=False),
    default=RuleLevel.DOMAIN.value,
    show_default=True,
    help="Granularity of the rule.",
)
@click.option("--action", "-a", type=click.Choice(_ACTION_CHOICES), default=None, help="Rule action.")
@click.option("--pattern", "subject_pattern", default=None, help="Subject substring to match.")
@click.option("--old-action", type=click.Choice(_ACTION_CHOICES), default=None, help="Pattern action to update.")
@click.pass_context
def rule(
    ctx: click.Context,
    operation: str,
    from_email: str,
    to_email: str,
    subject: str,
    level: str,
    action: str | None,
    subject_pattern: str | None,
    old_action: str | None,
) -> None:
    """Change or inspect a rule using the fields of an observed email."""
    from sift.pipelines import modify_criteria
    from sift.store.rules import RuleStore

    user = _user(ctx)
    with _open() as db:
        result = modify_criteria(
            RuleStore(db),
            operation=operation,
            level=level,
            user_email=user,
            from_email=from_email,
            to_email=to_email,
            subject=subject,
            action=action,
            subject_pattern=subject_pattern,
            old_action=old_action,
        )
    _report(result)


# ------------------------------------------------------------------
# sift criteria
# ------------------------------------------------------------------


@cli.command()
@click.argument("operation", type=click.Choice(_OPERATION_CHOICES, case_sensitive=False))
@click.argument("dimension", type=click.Choice([d.value for d in Dimension], case_sensitive=False))
@click.option("--key", "key_value", default=None, help="Domain, subdomain, address or pattern.")
@click.option("--action", "-a", type=click.Choice(_ACTION_CHOICES), default=None, help="Rule action.")
@click.option("--parent-domain", default=None, help="Owning primary domain.")
@click.option("--parent-subdomain", default=None, help="Owning subdomain (subject patterns).")
@click.option("--old-action", type=click.Choice(_ACTION_CHOICES), default=None, help="Pattern action to update.")
@click.pass_context
def criteria(
    ctx: click.Context,
    operation: str,
    dimension: str,
    key_value: str | None,
    action: str | None,
    parent_domain: str | None,
    parent_subdomain: str | None,
    old_action: str | None,
) -> None:
    """Operate on one dimension of the rule set directly."""
    from sift.store.rules import RuleStore

    user = _user(ctx)
    with _open() as db:
        result = RuleStore(db).modify(
            operation,
            dimension,
            user_email=user,
            key_value=key_value,
            action=action,
            parent_domain=parent_domain,
            parent_subdomain=parent_subdomain,
            old_action=old_action,
        )
    _report(result)


# ------------------------------------------------------------------
# sift emails
# ------------------------------------------------------------------


@cli.group()
def emails() -> None:
    """Manage the pending-email batch."""


@emails.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_emails(ctx: click.Context, path: Path) -> None:
    """Ingest a JSON list of emails into the pending batch.

    Each item needs ``email_id`` and ``from_email``; ``to_email``,
    ``subject``, ``email_date`` and ``user_email`` are optional.
    """
    from sift.schemas.pending import PendingEmail
    from sift.store.pending import PendingEmailStore

    user = ctx.obj["user"]
    try:
        raw = json.loads(path.read_text())
        items = [
            PendingEmail.model_validate({"user_email": user, **item}) for item in raw
        ]
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        click.echo(f"Error: Could not read {path}: {exc}", err=True)
        sys.exit(1)

    try:
        with _open() as db:
            count = PendingEmailStore(db).add(items)
    except SiftError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Imported {count} email(s).")


# ------------------------------------------------------------------
# sift evaluate
# ------------------------------------------------------------------


@cli.command()
@click.option("--all-users", is_flag=True, help="Evaluate every user with pending mail.")
@click.pass_context
def evaluate(ctx: click.Context, all_users: bool) -> None:
    """Reset and re-evaluate pending emails against the current rules."""
    from sift.pipelines import evaluate_all_users, evaluate_pending_emails
    from sift.store.pending import PendingEmailStore
    from sift.store.rules import RuleStore

    with _open() as db:
        rules, pending = RuleStore(db), PendingEmailStore(db)
        try:
            if all_users:
                results = evaluate_all_users(rules, pending, on_progress=click.echo)
            else:
                results = [evaluate_pending_emails(rules, pending, _user(ctx))]
        except SiftError as exc:
            click.echo(f"Error ({exc.code.value}): {exc}", err=True)
            sys.exit(1)

    if not results:
        click.echo("No pending emails.")
        return
    failed = False
    for result in results:
        if not result.success:
            code = result.code.value if result.code else "error"
            click.echo(f"Error ({code}): {result.user_email}: {result.message}", err=True)
            failed = True
            continue
        counts = ", ".join(f"{k}: {v}" for k, v in result.summary.items() if v)
        click.echo(f"{result.user_email}: {result.total} email(s) evaluated ({counts or 'none'})")
    if failed:
        sys.exit(1)


# ------------------------------------------------------------------
# sift summary / preview
# ------------------------------------------------------------------


@cli.command()
@click.pass_context
def summary(ctx: click.Context) -> None:
    """Show per-action counts with oldest and newest dates."""
    from sift.store.pending import PendingEmailStore

    user = _user(ctx)
    with _open() as db:
        rows = PendingEmailStore(db).summary(user)

    if not rows:
        click.echo("No evaluated emails.")
        return
    click.echo(f"Action summary for {user}")
    for row in rows:
        oldest = row.oldest_date.date().isoformat() if row.oldest_date else "-"
        newest = row.newest_date.date().isoformat() if row.newest_date else "-"
        click.echo(f"  {row.action.value:<11} {row.count:>6}  {oldest} .. {newest}")


@cli.command()
@click.option(
    "--action", "-a",
    type=click.Choice([a for a in _ACTION_CHOICES if a != "keep"]),
    default="delete",
    show_default=True,
    help="Delete action to preview.",
)
@click.option("--min-age-days", default=0, show_default=True, help="Only emails at least this old.")
@click.option("--limit", "-n", default=None, type=int, help="Max matches to list.")
@click.pass_context
def preview(ctx: click.Context, action: str, min_age_days: int, limit: int | None) -> None:
    """List emails a delete action would remove."""
    from sift.store.pending import PendingEmailStore

    user = _user(ctx)
    with _open() as db:
        result = PendingEmailStore(db).preview(
            user, action, min_age_days, limit=limit or PREVIEW_LIMIT
        )

    click.echo(
        f"{result.match_count} email(s) match {result.action.value} "
        f"(older than {result.min_age_days} day(s)); {result.skipped_count} too recent."
    )
    for m in result.matches:
        date = m.email_date.date().isoformat() if m.email_date else "-"
        click.echo(f"  {date}  {m.from_email:<40} {m.subject[:60]}  [{m.matched_rule}]")


# ------------------------------------------------------------------
# sift stats / audit
# ------------------------------------------------------------------


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show rule-set statistics."""
    from sift.store.rules import RuleStore

    user = _user(ctx)
    with _open() as db:
        s = RuleStore(db).stats(user)

    click.echo(f"Rule statistics for {s.user_email}")
    click.echo(f"  Criteria entries:       {s.total_entries}")
    for action, count in s.with_default.items():
        click.echo(f"  Default {action + ':':<15} {count}")
    click.echo(f"  With subject patterns:  {s.with_subject_patterns}")
    click.echo(f"  Subdomains:             {s.subdomains}")
    click.echo(f"  With email patterns:    {s.with_email_patterns}")


@cli.command()
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
@click.option("--limit", "-n", default=50, show_default=True, help="Max entries to show.")
@click.pass_context
def audit(ctx: click.Context, hours: int, limit: int) -> None:
    """Show recent audit entries."""
    from sift.audit.logger import AuditLog

    user = _user(ctx)
    since = datetime.now(UTC) - timedelta(hours=hours)
    with _open() as db:
        entries = AuditLog(db).read_entries(user, since=since, limit=limit)

    if not entries:
        click.echo("No audit entries during this period.")
        return
    for e in entries:
        op = e.details.get("operation", "")
        dim = e.details.get("dimension", "")
        click.echo(
            f"  #{e.id} {e.created_at:%Y-%m-%d %H:%M:%S} {e.action_type.value:<6} "
            f"{e.table_name:<14} {op} {dim} {e.domain or ''}".rstrip()
        )


# ------------------------------------------------------------------
# sift purge
# ------------------------------------------------------------------


@cli.command()
@click.confirmation_option(prompt="Remove all rules and pending emails for this user?")
@click.pass_context
def purge(ctx: click.Context) -> None:
    """Remove every rule and pending email the user owns."""
    from sift.pipelines import purge_user_data
    from sift.store.pending import PendingEmailStore
    from sift.store.rules import RuleStore

    user = _user(ctx)
    with _open() as db:
        result = purge_user_data(RuleStore(db), PendingEmailStore(db), user)
    _report(result)
