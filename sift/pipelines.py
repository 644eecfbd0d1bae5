"""Pipeline handlers: the two external entry points plus batch helpers.

Each handler encapsulates a complete unit of work and returns a typed
result. The CLI calls these handlers; nothing else drives the stores.
"""

import logging
from collections.abc import Callable

from sift.errors import PersistenceError, RuleValidationError, SiftError
from sift.evaluator import evaluate
from sift.schemas.criteria import Action, ModifyResult, Operation, RuleLevel
from sift.schemas.pending import EvaluationResult
from sift.store.pending import SUMMARY_ORDER, PendingEmailStore
from sift.store.rules import RuleStore

logger = logging.getLogger(__name__)


def _shared_db(rule_store: RuleStore, pending_store: PendingEmailStore):
    if rule_store.db is not pending_store.db:
        raise ValueError("Rule store and pending store must share one Database")
    return rule_store.db


def _require_user(user_email: str) -> str:
    user = (user_email or "").strip().lower()
    if not user:
        raise RuleValidationError(
            "UserEmail is required. Multi-user isolation requires a valid user email."
        )
    return user


def modify_criteria(
    store: RuleStore,
    *,
    operation: str | Operation,
    level: str | RuleLevel,
    user_email: str,
    from_email: str,
    to_email: str = "",
    subject: str = "",
    action: str | Action | None = None,
    subject_pattern: str | None = None,
    old_action: str | Action | None = None,
) -> ModifyResult:
    """Create, change, remove or inspect a rule from an observed email.

    The caller supplies only the raw fields of the email and its intent;
    the store decides which node of the rule tree is affected.
    """
    return store.apply_intent(
        operation,
        level=level,
        user_email=user_email,
        from_email=from_email,
        to_email=to_email,
        subject=subject,
        action=action,
        subject_pattern=subject_pattern,
        old_action=old_action,
    )


def evaluate_pending_emails(
    rule_store: RuleStore,
    pending_store: PendingEmailStore,
    user_email: str,
) -> EvaluationResult:
    """Reset and re-evaluate a user's whole pending batch.

    Flow:
    1. Snapshot the user's rule set.
    2. Clear every previous decision.
    3. Evaluate all pending emails against the snapshot.
    4. Write the decisions back.

    All four steps share one transaction, so a concurrent rule change lands
    either before or after the run, never in the middle.

    Never raises for expected failures: a blank ``user_email`` or a database
    error comes back as a failed EvaluationResult with ``code`` set, and
    nothing is written.
    """
    try:
        user = _require_user(user_email)
        db = _shared_db(rule_store, pending_store)

        with db.transaction():
            rules = rule_store.load_rule_set(user)
            pending_store.reset_actions(user)
            emails = pending_store.list_emails(user)
            results = evaluate(rules, emails)
            pending_store.save_results(results)
    except PersistenceError as exc:
        logger.exception("EvaluatePendingEmails failed for %s", user_email)
        return _failed_evaluation(user_email, exc)
    except SiftError as exc:
        logger.warning("EvaluatePendingEmails rejected: %s", exc)
        return _failed_evaluation(user_email, exc)

    summary = {a.value: 0 for a in SUMMARY_ORDER}
    for email in results:
        summary[email.action.value] += 1

    logger.info(
        "Evaluated %d pending email(s) for %s: %s",
        len(results),
        user,
        ", ".join(f"{k}={v}" for k, v in summary.items() if v),
    )
    return EvaluationResult(
        user_email=user,
        message=f"Evaluated {len(results)} pending email(s)",
        total=len(results),
        summary=summary,
    )


def _failed_evaluation(user_email: str, exc: SiftError) -> EvaluationResult:
    return EvaluationResult(
        user_email=(user_email or "").strip().lower(),
        success=False,
        message=str(exc),
        code=exc.code,
    )


def evaluate_all_users(
    rule_store: RuleStore,
    pending_store: PendingEmailStore,
    *,
    on_progress: Callable[[str], None] | None = None,
) -> list[EvaluationResult]:
    """Evaluate every user that has pending mail, one transaction each.

    A failing user is reported in its own result; the remaining users are
    still evaluated.
    """
    results = []
    for user in pending_store.users_with_pending():
        result = evaluate_pending_emails(rule_store, pending_store, user)
        if on_progress:
            if result.success:
                on_progress(f"{user}: {result.total} evaluated")
            else:
                on_progress(f"{user}: failed ({result.code.value})")
        results.append(result)
    return results


def purge_user_data(
    rule_store: RuleStore,
    pending_store: PendingEmailStore,
    user_email: str,
) -> ModifyResult:
    """Remove a user's rules and pending emails in one transaction.

    Writes a single audit entry; earlier audit entries are kept. Failures
    come back as a failed ModifyResult and leave everything in place.
    """
    try:
        user = _require_user(user_email)
        db = _shared_db(rule_store, pending_store)

        with db.transaction():
            cleared = pending_store.clear(user)
            result = rule_store.purge_user(user, pending_removed=cleared)
    except PersistenceError as exc:
        logger.exception("Purge failed for %s", user_email)
        return ModifyResult(success=False, message=str(exc), code=exc.code)
    except SiftError as exc:
        logger.warning("Purge rejected: %s", exc)
        return ModifyResult(success=False, message=str(exc), code=exc.code)
    return result
