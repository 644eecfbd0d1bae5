"""Rule store: the only writer of the criteria, patterns and email_patterns tables.

Every mutation runs in one transaction together with exactly one audit row.
Callers either address the rule tree directly (``modify``, by dimension) or
hand over the raw fields of an observed email plus their intent
(``apply_intent`` / ``add_rule``); in the latter case the store alone decides
which kind of node the rule belongs to.
"""

import logging
import sqlite3
from typing import Any

from sift.audit.logger import AuditLog
from sift.domain_parser import is_valid_address, parse_email_domain, primary_domain_of
from sift.errors import PersistenceError, RuleNotFoundError, RuleValidationError, SiftError
from sift.schemas.audit import AuditActionType
from sift.schemas.criteria import (
    EMAIL_PATTERN_ACTIONS,
    RULE_ACTIONS,
    Action,
    CriteriaEntry,
    CriteriaStats,
    CriteriaView,
    Dimension,
    Direction,
    EmailPattern,
    KeyType,
    ModifyResult,
    Operation,
    Pattern,
    RuleLevel,
    RuleSet,
    RuleTarget,
)
from sift.store.database import Database

logger = logging.getLogger(__name__)

_SELECT_ENTRY = "SELECT * FROM criteria WHERE key_value = ? AND key_type = ? AND user_email = ?"
_SELECT_CHILDREN = (
    "SELECT * FROM criteria WHERE parent_id = ? AND user_email = ? ORDER BY key_value"
)
_INSERT_ENTRY = """
INSERT INTO criteria (key_value, key_type, parent_id, default_action, user_email)
VALUES (?, ?, ?, ?, ?)
"""
_UPDATE_DEFAULT = "UPDATE criteria SET default_action = ? WHERE id = ? AND user_email = ?"

_SELECT_PATTERNS = "SELECT * FROM patterns WHERE criteria_id = ? ORDER BY id"
_INSERT_PATTERN = "INSERT INTO patterns (criteria_id, pattern, action) VALUES (?, ?, ?)"

_SELECT_EMAIL_PATTERNS = "SELECT * FROM email_patterns WHERE criteria_id = ? ORDER BY id"
_INSERT_EMAIL_PATTERN = """
INSERT INTO email_patterns (criteria_id, direction, action, email) VALUES (?, ?, ?, ?)
"""

_SELECT_USER_ENTRIES = "SELECT * FROM criteria WHERE user_email = ? ORDER BY id"
_SELECT_USER_PATTERNS = """
SELECT p.* FROM patterns p
JOIN criteria c ON p.criteria_id = c.id
WHERE c.user_email = ?
ORDER BY p.id
"""
_SELECT_USER_EMAIL_PATTERNS = """
SELECT ep.* FROM email_patterns ep
JOIN criteria c ON ep.criteria_id = c.id
WHERE c.user_email = ?
ORDER BY ep.id
"""


# ------------------------------------------------------------------
# Input normalization
# ------------------------------------------------------------------


def _norm(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def _norm_pattern(value: str | None) -> str | None:
    # Surrounding spaces are part of a substring match; only case folds.
    if value is None or not value.strip():
        return None
    return value.lower()


def _parse_enum(enum_cls, value, field: str, *, upper: bool = False):
    if isinstance(value, enum_cls):
        return value
    raw = (value or "").strip()
    raw = raw.upper() if upper else raw.lower()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RuleValidationError(f"Invalid {field} '{value}'. Must be one of: {allowed}") from None


def _parse_action(value: str | Action | None, field: str = "action") -> Action | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    action = _parse_enum(Action, value, field)
    if action not in RULE_ACTIONS:
        allowed = ", ".join(a.value for a in RULE_ACTIONS)
        raise RuleValidationError(f"Invalid {field} '{value}'. Must be one of: {allowed}")
    return action


def _require_action(action: Action | None, operation: Operation) -> Action:
    if action is None:
        raise RuleValidationError(f"An action is required for {operation.value}")
    return action


def _require_user(user_email: str | None) -> str:
    user = _norm(user_email)
    if not user:
        raise RuleValidationError(
            "UserEmail is required. Multi-user isolation requires a valid user email."
        )
    return user


def _require_address(value: str | None, field: str) -> str:
    address = _norm(value)
    if not address or not is_valid_address(address):
        raise RuleValidationError(f"Invalid {field}: '{value or ''}' is not an email address")
    return address


def _require_domain(value: str | None, field: str) -> str:
    domain = _norm(value)
    if domain:
        domain = domain.strip(".")
    if not domain or "@" in domain or "." not in domain or " " in domain:
        raise RuleValidationError(f"Invalid {field}: '{value or ''}' is not a domain")
    return domain


def _require_primary_domain(value: str | None, field: str) -> str:
    domain = _require_domain(value, field)
    if primary_domain_of(domain) != domain:
        raise RuleValidationError(
            f"Invalid {field}: '{domain}' is a subdomain of {primary_domain_of(domain)}"
        )
    return domain


def _resolve_subdomain(key: str | None, parent_domain: str | None) -> tuple[str, str]:
    """Return (full subdomain, primary domain) for a subdomain key.

    The key may be the full host name or a bare label relative to
    ``parent_domain``.
    """
    label = _norm(key)
    if not label:
        raise RuleValidationError("A subdomain key is required")
    label = label.strip(".")

    if parent_domain:
        parent = _require_primary_domain(parent_domain, "parent_domain")
        if label == parent:
            raise RuleValidationError(f"'{label}' is a domain, not a subdomain")
        full = label if label.endswith("." + parent) else f"{label}.{parent}"
    else:
        full = _require_domain(label, "subdomain")
        parent = primary_domain_of(full)

    if full == parent or primary_domain_of(full) != parent:
        raise RuleValidationError(f"'{full}' is not a subdomain of '{parent}'")
    return full, parent


# ------------------------------------------------------------------
# Row helpers
# ------------------------------------------------------------------


def _row_to_entry(row: sqlite3.Row) -> CriteriaEntry:
    return CriteriaEntry.model_validate(dict(row))


def _row_to_pattern(row: sqlite3.Row) -> Pattern:
    return Pattern.model_validate(dict(row))


def _row_to_email_pattern(row: sqlite3.Row) -> EmailPattern:
    return EmailPattern.model_validate(dict(row))


def _dump(model) -> dict[str, Any] | None:
    return model.model_dump(mode="json") if model is not None else None


class RuleStore:
    """Per-user rule tree backed by SQLite.

    Usage::

        store = RuleStore(db)
        result = store.add_rule(
            from_email="noreply@custcomm.icicibank.com",
            to_email="me@gmail.com",
            subject="Join our webinar",
            level="subdomain",
            action="delete",
            subject_pattern="webinar",
            user_email="me@gmail.com",
        )
        rules = store.load_rule_set("me@gmail.com")
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._audit = AuditLog(db)

    @property
    def db(self) -> Database:
        return self._db

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    # ------------------------------------------------------------------
    # Raw-field interface
    # ------------------------------------------------------------------

    def resolve_intent(
        self,
        level: str | RuleLevel,
        from_email: str,
        to_email: str = "",
        subject_pattern: str | None = None,
    ) -> RuleTarget:
        """Classify an observed email plus the caller's chosen level.

        Raises:
            RuleValidationError: For an unknown level or malformed address.
        """
        lvl = _parse_enum(RuleLevel, level, "level")
        pattern = _norm_pattern(subject_pattern)

        if lvl is RuleLevel.TO_EMAIL:
            to_address = _require_address(to_email, "to_email")
            if pattern:
                raise RuleValidationError("Subject patterns cannot be attached at to_email level")
            return RuleTarget(
                dimension=Dimension.TO_EMAIL,
                key_value=to_address,
                parent_domain=parse_email_domain(to_address).primary_domain,
            )

        from_address = _require_address(from_email, "from_email")
        if lvl is RuleLevel.FROM_EMAIL:
            if pattern:
                raise RuleValidationError(
                    "Subject patterns cannot be attached at from_email level"
                )
            return RuleTarget(dimension=Dimension.EMAIL, key_value=from_address)

        parsed = parse_email_domain(from_address)
        if lvl is RuleLevel.SUBDOMAIN and parsed.has_subdomain:
            if pattern:
                return RuleTarget(
                    dimension=Dimension.SUBJECT,
                    key_value=pattern,
                    parent_domain=parsed.primary_domain,
                    parent_subdomain=parsed.full_domain,
                )
            return RuleTarget(
                dimension=Dimension.SUBDOMAIN,
                key_value=parsed.full_domain,
                parent_domain=parsed.primary_domain,
            )

        # Domain level, or a subdomain request for an address that has none.
        if pattern:
            return RuleTarget(
                dimension=Dimension.SUBJECT,
                key_value=pattern,
                parent_domain=parsed.primary_domain,
            )
        return RuleTarget(dimension=Dimension.DOMAIN, key_value=parsed.primary_domain)

    def apply_intent(
        self,
        operation: str | Operation,
        *,
        level: str | RuleLevel,
        user_email: str,
        from_email: str,
        to_email: str = "",
        subject: str = "",
        action: str | Action | None = None,
        subject_pattern: str | None = None,
        old_action: str | Action | None = None,
    ) -> ModifyResult:
        """Run any operation addressed by raw email fields rather than by dimension."""
        try:
            target = self.resolve_intent(level, from_email, to_email, subject_pattern)
        except RuleValidationError as exc:
            logger.warning("Rejected %s request: %s", operation, exc)
            return ModifyResult(success=False, message=str(exc), code=exc.code)

        return self.modify(
            operation,
            target.dimension,
            user_email=user_email,
            key_value=target.key_value,
            action=action,
            parent_domain=target.parent_domain,
            parent_subdomain=target.parent_subdomain,
            old_action=old_action,
            context={
                "level": str(level),
                "from_email": from_email,
                "to_email": to_email,
                "subject": subject,
            },
        )

    def add_rule(
        self,
        *,
        from_email: str,
        to_email: str,
        subject: str,
        level: str | RuleLevel,
        action: str | Action,
        user_email: str,
        subject_pattern: str | None = None,
    ) -> ModifyResult:
        """ADD a rule from the raw fields of an observed email."""
        return self.apply_intent(
            Operation.ADD,
            level=level,
            user_email=user_email,
            from_email=from_email,
            to_email=to_email,
            subject=subject,
            action=action,
            subject_pattern=subject_pattern,
        )

    # ------------------------------------------------------------------
    # Dimension interface
    # ------------------------------------------------------------------

    def modify(
        self,
        operation: str | Operation,
        dimension: str | Dimension,
        *,
        user_email: str,
        key_value: str | None = None,
        action: str | Action | None = None,
        parent_domain: str | None = None,
        parent_subdomain: str | None = None,
        old_action: str | Action | None = None,
        context: dict[str, Any] | None = None,
    ) -> ModifyResult:
        """Apply one operation to one dimension of a user's rule set.

        Never raises for expected failures: validation problems, missing
        rules on UPDATE/GET and database errors come back as a failed
        ModifyResult with ``code`` set.
        """
        try:
            op = _parse_enum(Operation, operation, "operation", upper=True)
            dim = _parse_enum(Dimension, dimension, "dimension")
            req = _Request(
                op=op,
                user=_require_user(user_email),
                key=_norm_pattern(key_value) if dim is Dimension.SUBJECT else _norm(key_value),
                action=_parse_action(action),
                parent_domain=_norm(parent_domain),
                parent_subdomain=_norm(parent_subdomain),
                old_action=_parse_action(old_action, "old_action"),
                context=context,
            )
            if op in (Operation.ADD, Operation.UPDATE):
                _require_action(req.action, op)

            if op is Operation.GET:
                with self._db.reading() as conn:
                    return self._get(conn, dim, req)

            handler = {
                Dimension.DOMAIN: self._modify_domain,
                Dimension.SUBDOMAIN: self._modify_subdomain,
                Dimension.EMAIL: self._modify_email,
                Dimension.SUBJECT: self._modify_subject,
                Dimension.FROM_EMAIL: self._modify_email_pattern,
                Dimension.TO_EMAIL: self._modify_email_pattern,
            }[dim]
            with self._db.transaction() as conn:
                result = handler(conn, dim, req)
        except PersistenceError as exc:
            logger.exception("ModifyCriteria %s %s failed for %s", operation, dimension, user_email)
            return ModifyResult(success=False, message=str(exc), code=exc.code)
        except SiftError as exc:
            logger.warning("ModifyCriteria %s %s rejected: %s", operation, dimension, exc)
            return ModifyResult(success=False, message=str(exc), code=exc.code)

        logger.info("ModifyCriteria %s %s [%s]: %s", op.value, dim.value, req.user, result.message)
        return result

    # --- domain ---

    def _modify_domain(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        key = _require_primary_domain(req.key, "domain")
        entry = self._find_entry(conn, req.user, key, KeyType.DOMAIN)
        return self._modify_entry(conn, dim, req, KeyType.DOMAIN, key, entry, domain=key)

    # --- subdomain ---

    def _modify_subdomain(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        full, primary = _resolve_subdomain(req.key, req.parent_domain)
        entry = self._find_entry(conn, req.user, full, KeyType.SUBDOMAIN)
        return self._modify_entry(conn, dim, req, KeyType.SUBDOMAIN, full, entry, domain=primary)

    # --- exact sender address ---

    def _modify_email(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        key = _require_address(req.key, "email")
        entry = self._find_entry(conn, req.user, key, KeyType.EMAIL)
        return self._modify_entry(conn, dim, req, KeyType.EMAIL, key, entry, domain=key)

    def _modify_entry(
        self,
        conn,
        dim: Dimension,
        req: "_Request",
        key_type: KeyType,
        key: str,
        entry: CriteriaEntry | None,
        *,
        domain: str,
    ) -> ModifyResult:
        """Shared ADD/REMOVE/UPDATE/CLEAR logic for criteria entries."""
        label = f"{key_type.value} {key}"

        if req.op is Operation.ADD:
            created: list[CriteriaEntry] = []
            if entry is None:
                if key_type is KeyType.SUBDOMAIN:
                    entry = self._ensure_subdomain(conn, req.user, key, domain, created, req.action)
                else:
                    entry = self._create_entry(conn, req.user, key, key_type, None, req.action)
                    created.append(entry)
                audit_id = self._log(
                    req,
                    dim,
                    AuditActionType.INSERT,
                    "criteria",
                    entry.id,
                    domain,
                    before=None,
                    after=_dump(entry),
                    created=[_dump(e) for e in created],
                )
                return ModifyResult(
                    success=True,
                    message=f"Added {req.action.value} rule for {label}",
                    record_id=entry.id,
                    audit_id=audit_id,
                )
            if entry.default_action == req.action:
                return ModifyResult(
                    success=True,
                    message=f"Rule already exists: {req.action.value} for {label}",
                    record_id=entry.id,
                )
            updated = self._set_default(conn, entry, req.action)
            audit_id = self._log(
                req, dim, AuditActionType.UPDATE, "criteria", entry.id, domain,
                before=_dump(entry), after=_dump(updated), existed=True,
            )
            return ModifyResult(
                success=True,
                message=f"Updated {req.action.value} rule for {label}",
                record_id=entry.id,
                audit_id=audit_id,
            )

        if req.op is Operation.UPDATE:
            if entry is None:
                raise RuleNotFoundError(f"Rule not found: {label}")
            old = entry.default_action.value if entry.default_action else "null"
            if entry.default_action == req.action:
                return ModifyResult(
                    success=True,
                    message=f"No change: {label} is already {req.action.value}",
                    record_id=entry.id,
                )
            updated = self._set_default(conn, entry, req.action)
            audit_id = self._log(
                req, dim, AuditActionType.UPDATE, "criteria", entry.id, domain,
                before=_dump(entry), after=_dump(updated),
                old_action=old, new_action=req.action.value,
            )
            return ModifyResult(
                success=True,
                message=f"Updated {label} from {old} to {req.action.value}",
                record_id=entry.id,
                audit_id=audit_id,
            )

        # REMOVE / CLEAR
        if entry is None:
            return ModifyResult(success=True, message=f"{label.capitalize()} not found")
        removed = self._delete_cascade(conn, entry)
        audit_id = self._log(
            req, dim, AuditActionType.DELETE, "criteria", entry.id, domain,
            before=_dump(entry), after=None, removed=removed,
        )
        if req.op is Operation.CLEAR:
            message = f"Cleared all rules for {label}"
        elif key_type is KeyType.DOMAIN:
            message = (
                f"Removed {label} and {removed['subdomains']} subdomains, "
                f"{removed['patterns']} patterns"
            )
        else:
            message = f"Removed {label}"
        return ModifyResult(success=True, message=message, audit_id=audit_id)

    # --- subject patterns ---

    def _modify_subject(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        if req.op is not Operation.CLEAR and not req.key:
            raise RuleValidationError("A subject pattern is required")
        created: list[CriteriaEntry] = []
        scope, domain = self._pattern_scope(
            conn, req, create=req.op is Operation.ADD, created=created
        )
        if scope is None:
            if req.op is Operation.UPDATE:
                raise RuleNotFoundError(f"Rule not found: pattern '{req.key}' (no such parent)")
            return ModifyResult(success=True, message=f"Pattern '{req.key or ''}' not found")

        existing = [_row_to_pattern(r) for r in conn.execute(_SELECT_PATTERNS, (scope.id,))]

        if req.op is Operation.ADD:
            for p in existing:
                if p.pattern == req.key and p.action == req.action:
                    return ModifyResult(
                        success=True,
                        message=f"Pattern '{req.key}' already exists for {req.action.value}",
                        record_id=p.id,
                    )
            cursor = conn.execute(_INSERT_PATTERN, (scope.id, req.key, req.action.value))
            pattern = Pattern(
                id=cursor.lastrowid, criteria_id=scope.id, pattern=req.key, action=req.action
            )
            audit_id = self._log(
                req, dim, AuditActionType.INSERT, "patterns", pattern.id, domain,
                before=None, after=_dump(pattern), created=[_dump(e) for e in created],
            )
            return ModifyResult(
                success=True,
                message=f"Added {req.action.value} pattern '{req.key}' for {scope.key_value}",
                record_id=pattern.id,
                audit_id=audit_id,
            )

        if req.op is Operation.UPDATE:
            candidates = [
                p
                for p in existing
                if p.pattern == req.key and (req.old_action is None or p.action == req.old_action)
            ]
            if not candidates:
                suffix = f" with action {req.old_action.value}" if req.old_action else ""
                raise RuleNotFoundError(f"Rule not found: pattern '{req.key}'{suffix}")
            pattern = candidates[0]
            if pattern.action == req.action:
                return ModifyResult(
                    success=True,
                    message=f"No change: pattern '{req.key}' is already {req.action.value}",
                    record_id=pattern.id,
                )
            duplicate = next(
                (p for p in existing if p.pattern == req.key and p.action == req.action), None
            )
            if duplicate is not None:
                # The target (pattern, action) row already exists; fold into it.
                conn.execute("DELETE FROM patterns WHERE id = ?", (pattern.id,))
                after = duplicate
            else:
                conn.execute(
                    "UPDATE patterns SET action = ? WHERE id = ?", (req.action.value, pattern.id)
                )
                after = pattern.model_copy(update={"action": req.action})
            audit_id = self._log(
                req, dim, AuditActionType.UPDATE, "patterns", after.id, domain,
                before=_dump(pattern), after=_dump(after),
                old_action=pattern.action.value, new_action=req.action.value,
            )
            return ModifyResult(
                success=True,
                message=(
                    f"Updated pattern '{req.key}' from {pattern.action.value} "
                    f"to {req.action.value}"
                ),
                record_id=after.id,
                audit_id=audit_id,
            )

        # REMOVE / CLEAR
        doomed = [
            p
            for p in existing
            if (req.key is None or p.pattern == req.key)
            and (req.action is None or p.action == req.action)
        ]
        if not doomed:
            return ModifyResult(success=True, message=f"Pattern '{req.key or ''}' not found")
        conn.executemany("DELETE FROM patterns WHERE id = ?", [(p.id,) for p in doomed])
        audit_id = self._log(
            req, dim, AuditActionType.DELETE, "patterns", None, domain,
            before=[_dump(p) for p in doomed], after=None, count=len(doomed),
        )
        if req.op is Operation.CLEAR:
            message = f"Cleared {len(doomed)} pattern(s) from {scope.key_value}"
        else:
            message = f"Removed {len(doomed)} pattern(s) '{req.key}'"
        return ModifyResult(success=True, message=message, audit_id=audit_id)

    def _pattern_scope(
        self, conn, req: "_Request", *, create: bool, created: list[CriteriaEntry]
    ) -> tuple[CriteriaEntry | None, str]:
        """Find (or, for ADD, build) the entry a subject pattern hangs off."""
        if not req.parent_domain:
            raise RuleValidationError("parent_domain is required for subject patterns")
        primary = _require_primary_domain(req.parent_domain, "parent_domain")

        if req.parent_subdomain:
            full, primary = _resolve_subdomain(req.parent_subdomain, primary)
            if create:
                return self._ensure_subdomain(conn, req.user, full, primary, created), primary
            return self._find_entry(conn, req.user, full, KeyType.SUBDOMAIN), primary

        if create:
            return self._ensure_domain(conn, req.user, primary, created), primary
        return self._find_entry(conn, req.user, primary, KeyType.DOMAIN), primary

    # --- from/to email patterns ---

    def _modify_email_pattern(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        direction = Direction.FROM if dim is Dimension.FROM_EMAIL else Direction.TO
        address = None
        if req.op is not Operation.CLEAR or req.key:
            address = _require_address(req.key, dim.value)
        if req.action is not None and req.action not in EMAIL_PATTERN_ACTIONS:
            raise RuleValidationError(
                f"Invalid action '{req.action.value}' for {dim.value}. Must be: keep, delete"
            )

        if req.parent_domain:
            primary = _require_primary_domain(req.parent_domain, "parent_domain")
        elif address:
            primary = parse_email_domain(address).primary_domain
        else:
            raise RuleValidationError(f"parent_domain is required to clear {dim.value} rules")

        created: list[CriteriaEntry] = []
        if req.op is Operation.ADD:
            scope = self._ensure_domain(conn, req.user, primary, created)
        else:
            scope = self._find_entry(conn, req.user, primary, KeyType.DOMAIN)

        label = f"{dim.value} rule for {address}"
        if scope is None:
            if req.op is Operation.UPDATE:
                raise RuleNotFoundError(f"Rule not found: {label}")
            return ModifyResult(success=True, message=f"{label.capitalize()} not found")

        existing = [
            ep
            for ep in (
                _row_to_email_pattern(r) for r in conn.execute(_SELECT_EMAIL_PATTERNS, (scope.id,))
            )
            if ep.direction is direction
        ]
        current = next((ep for ep in existing if ep.email == address), None)

        if req.op is Operation.ADD:
            if current is None:
                cursor = conn.execute(
                    _INSERT_EMAIL_PATTERN,
                    (scope.id, direction.value, req.action.value, address),
                )
                pattern = EmailPattern(
                    id=cursor.lastrowid,
                    criteria_id=scope.id,
                    direction=direction,
                    action=req.action,
                    email=address,
                )
                audit_id = self._log(
                    req, dim, AuditActionType.INSERT, "email_patterns", pattern.id, primary,
                    before=None, after=_dump(pattern), created=[_dump(e) for e in created],
                )
                return ModifyResult(
                    success=True,
                    message=f"Added {req.action.value} rule for emails {direction.value} {address}",
                    record_id=pattern.id,
                    audit_id=audit_id,
                )
            if current.action == req.action:
                return ModifyResult(
                    success=True,
                    message=f"Rule already exists: {req.action.value} {label}",
                    record_id=current.id,
                )
            return self._update_email_pattern(conn, dim, req, current, primary, label, existed=True)

        if req.op is Operation.UPDATE:
            if current is None:
                raise RuleNotFoundError(f"Rule not found: {label}")
            if current.action == req.action:
                return ModifyResult(
                    success=True,
                    message=f"No change: {label} is already {req.action.value}",
                    record_id=current.id,
                )
            return self._update_email_pattern(conn, dim, req, current, primary, label)

        # REMOVE / CLEAR
        doomed = existing if address is None else [ep for ep in existing if ep.email == address]
        if not doomed:
            return ModifyResult(success=True, message=f"{label.capitalize()} not found")
        conn.executemany("DELETE FROM email_patterns WHERE id = ?", [(ep.id,) for ep in doomed])
        audit_id = self._log(
            req, dim, AuditActionType.DELETE, "email_patterns", None, primary,
            before=[_dump(ep) for ep in doomed], after=None, count=len(doomed),
        )
        if address is None:
            message = f"Cleared {len(doomed)} {dim.value} rule(s) from {primary}"
        else:
            message = f"Removed {label}"
        return ModifyResult(success=True, message=message, audit_id=audit_id)

    def _update_email_pattern(
        self,
        conn,
        dim: Dimension,
        req: "_Request",
        current: EmailPattern,
        primary: str,
        label: str,
        *,
        existed: bool = False,
    ) -> ModifyResult:
        conn.execute(
            "UPDATE email_patterns SET action = ? WHERE id = ?", (req.action.value, current.id)
        )
        updated = current.model_copy(update={"action": req.action})
        extra: dict[str, Any] = {"existed": True} if existed else {}
        audit_id = self._log(
            req, dim, AuditActionType.UPDATE, "email_patterns", current.id, primary,
            before=_dump(current), after=_dump(updated),
            old_action=current.action.value, new_action=req.action.value, **extra,
        )
        return ModifyResult(
            success=True,
            message=f"Updated {label} from {current.action.value} to {req.action.value}",
            record_id=current.id,
            audit_id=audit_id,
        )

    # ------------------------------------------------------------------
    # GET
    # ------------------------------------------------------------------

    def _get(self, conn, dim: Dimension, req: "_Request") -> ModifyResult:
        if dim is Dimension.DOMAIN:
            key = _require_primary_domain(req.key, "domain")
            entry = self._find_entry(conn, req.user, key, KeyType.DOMAIN)
            if entry is None:
                raise RuleNotFoundError(f"Rule not found: domain {key}")
            view = self._view(conn, entry)
            return self._found(view, entry.id)

        if dim is Dimension.SUBDOMAIN:
            if req.key is None:
                parent_key = _require_primary_domain(req.parent_domain, "parent_domain")
                parent = self._find_entry(conn, req.user, parent_key, KeyType.DOMAIN)
                if parent is None:
                    raise RuleNotFoundError(f"Rule not found: domain {parent_key}")
                view = self._view(conn, parent)
                return self._found(
                    CriteriaView(
                        entry=parent,
                        subdomains=view.subdomains,
                        subdomain_count=view.subdomain_count,
                        subdomain_pattern_counts=view.subdomain_pattern_counts,
                    ),
                    parent.id,
                )
            full, _primary = _resolve_subdomain(req.key, req.parent_domain)
            entry = self._find_entry(conn, req.user, full, KeyType.SUBDOMAIN)
            if entry is None:
                raise RuleNotFoundError(f"Rule not found: subdomain {full}")
            return self._found(self._view(conn, entry), entry.id)

        if dim is Dimension.EMAIL:
            key = _require_address(req.key, "email")
            entry = self._find_entry(conn, req.user, key, KeyType.EMAIL)
            if entry is None:
                raise RuleNotFoundError(f"Rule not found: email {key}")
            return self._found(CriteriaView(entry=entry), entry.id)

        if dim is Dimension.SUBJECT:
            scope, _domain = self._pattern_scope(conn, req, create=False, created=[])
            if scope is None:
                raise RuleNotFoundError("Rule not found: no such parent domain/subdomain")
            patterns = [_row_to_pattern(r) for r in conn.execute(_SELECT_PATTERNS, (scope.id,))]
            if req.key is not None:
                patterns = [p for p in patterns if p.pattern == req.key]
                if not patterns:
                    raise RuleNotFoundError(f"Rule not found: pattern '{req.key}'")
            return self._found(
                CriteriaView(entry=scope, patterns=patterns, pattern_count=len(patterns)),
                scope.id,
            )

        # FROM_EMAIL / TO_EMAIL
        direction = Direction.FROM if dim is Dimension.FROM_EMAIL else Direction.TO
        address = _require_address(req.key, dim.value) if req.key else None
        if req.parent_domain:
            primary = _require_primary_domain(req.parent_domain, "parent_domain")
        elif address:
            primary = parse_email_domain(address).primary_domain
        else:
            raise RuleValidationError(f"parent_domain is required to list {dim.value} rules")
        scope = self._find_entry(conn, req.user, primary, KeyType.DOMAIN)
        if scope is None:
            raise RuleNotFoundError(f"Rule not found: domain {primary}")
        patterns = [
            ep
            for ep in (
                _row_to_email_pattern(r) for r in conn.execute(_SELECT_EMAIL_PATTERNS, (scope.id,))
            )
            if ep.direction is direction and (address is None or ep.email == address)
        ]
        if address is not None and not patterns:
            raise RuleNotFoundError(f"Rule not found: {dim.value} rule for {address}")
        return self._found(
            CriteriaView(entry=scope, email_patterns=patterns, email_pattern_count=len(patterns)),
            scope.id,
        )

    @staticmethod
    def _found(view: CriteriaView, record_id: int) -> ModifyResult:
        return ModifyResult(
            success=True, message="Query completed", record_id=record_id, data=view
        )

    def _view(self, conn, entry: CriteriaEntry) -> CriteriaView:
        children = [
            _row_to_entry(r) for r in conn.execute(_SELECT_CHILDREN, (entry.id, entry.user_email))
        ]
        patterns = [_row_to_pattern(r) for r in conn.execute(_SELECT_PATTERNS, (entry.id,))]
        email_patterns = [
            _row_to_email_pattern(r) for r in conn.execute(_SELECT_EMAIL_PATTERNS, (entry.id,))
        ]
        child_counts = {
            child.key_value: conn.execute(
                "SELECT COUNT(*) FROM patterns WHERE criteria_id = ?", (child.id,)
            ).fetchone()[0]
            for child in children
        }
        return CriteriaView(
            entry=entry,
            subdomains=children,
            patterns=patterns,
            email_patterns=email_patterns,
            subdomain_count=len(children),
            pattern_count=len(patterns),
            email_pattern_count=len(email_patterns),
            subdomain_pattern_counts=child_counts,
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def load_rule_set(self, user_email: str) -> RuleSet:
        """Snapshot every rule a user owns."""
        user = _require_user(user_email)
        with self._db.reading() as conn:
            entries = [_row_to_entry(r) for r in conn.execute(_SELECT_USER_ENTRIES, (user,))]
            patterns = [_row_to_pattern(r) for r in conn.execute(_SELECT_USER_PATTERNS, (user,))]
            email_patterns = [
                _row_to_email_pattern(r)
                for r in conn.execute(_SELECT_USER_EMAIL_PATTERNS, (user,))
            ]
        return RuleSet(
            user_email=user,
            entries=entries,
            patterns=patterns,
            email_patterns=email_patterns,
        )

    def stats(self, user_email: str) -> CriteriaStats:
        rules = self.load_rule_set(user_email)
        with_default = {a.value: 0 for a in RULE_ACTIONS}
        for entry in rules.entries:
            if entry.default_action is not None:
                with_default[entry.default_action.value] += 1
        return CriteriaStats(
            user_email=rules.user_email,
            total_entries=len(rules.entries),
            with_default=with_default,
            with_subject_patterns=len({p.criteria_id for p in rules.patterns}),
            subdomains=sum(1 for e in rules.entries if e.key_type is KeyType.SUBDOMAIN),
            with_email_patterns=len({ep.criteria_id for ep in rules.email_patterns}),
        )

    def purge_user(self, user_email: str, *, pending_removed: int = 0) -> ModifyResult:
        """Delete every rule a user owns, recording one audit entry.

        ``pending_removed`` is the number of pending emails the caller
        already cleared in the same transaction; it is folded into the audit
        entry. Audit rows themselves are kept.
        """
        try:
            user = _require_user(user_email)
            with self._db.transaction() as conn:
                roots = [
                    _row_to_entry(r)
                    for r in conn.execute(
                        "SELECT * FROM criteria WHERE user_email = ? AND parent_id IS NULL",
                        (user,),
                    )
                ]
                totals = {
                    "entries": 0,
                    "subdomains": 0,
                    "patterns": 0,
                    "email_patterns": 0,
                    "pending_emails": pending_removed,
                }
                for entry in roots:
                    removed = self._delete_cascade(conn, entry)
                    totals["entries"] += 1
                    for k in ("subdomains", "patterns", "email_patterns"):
                        totals[k] += removed[k]
                if not roots and not pending_removed:
                    return ModifyResult(success=True, message=f"Nothing to purge for {user}")
                audit_id = self._audit.log_mutation(
                    user_email=user,
                    action_type=AuditActionType.DELETE,
                    table_name="criteria",
                    record_id=None,
                    domain=None,
                    details={"operation": "PURGE", "removed": totals},
                )
        except PersistenceError as exc:
            logger.exception("Purge failed for %s", user_email)
            return ModifyResult(success=False, message=str(exc), code=exc.code)
        except SiftError as exc:
            return ModifyResult(success=False, message=str(exc), code=exc.code)

        logger.info("Purged rules for %s: %s", user, totals)
        return ModifyResult(
            success=True,
            message=(
                f"Removed {totals['entries'] + totals['subdomains']} criteria, "
                f"{totals['patterns']} patterns, {totals['email_patterns']} email patterns, "
                f"{totals['pending_emails']} pending emails"
            ),
            audit_id=audit_id,
        )

    # ------------------------------------------------------------------
    # Tree primitives (always called inside a transaction)
    # ------------------------------------------------------------------

    def _find_entry(self, conn, user: str, key: str, key_type: KeyType) -> CriteriaEntry | None:
        row = conn.execute(_SELECT_ENTRY, (key, key_type.value, user)).fetchone()
        return _row_to_entry(row) if row else None

    def _create_entry(
        self,
        conn,
        user: str,
        key: str,
        key_type: KeyType,
        parent_id: int | None,
        default_action: Action | None,
    ) -> CriteriaEntry:
        cursor = conn.execute(
            _INSERT_ENTRY,
            (
                key,
                key_type.value,
                parent_id,
                default_action.value if default_action else None,
                user,
            ),
        )
        logger.debug("Created %s entry %s (id=%d) for %s", key_type.value, key, cursor.lastrowid, user)
        return CriteriaEntry(
            id=cursor.lastrowid,
            key_value=key,
            key_type=key_type,
            parent_id=parent_id,
            default_action=default_action,
            user_email=user,
        )

    def _ensure_domain(
        self, conn, user: str, domain: str, created: list[CriteriaEntry]
    ) -> CriteriaEntry:
        entry = self._find_entry(conn, user, domain, KeyType.DOMAIN)
        if entry is None:
            entry = self._create_entry(conn, user, domain, KeyType.DOMAIN, None, None)
            created.append(entry)
        return entry

    def _ensure_subdomain(
        self,
        conn,
        user: str,
        full: str,
        primary: str,
        created: list[CriteriaEntry],
        default_action: Action | None = None,
    ) -> CriteriaEntry:
        """Parent domain first, then the subdomain linked to it."""
        parent = self._ensure_domain(conn, user, primary, created)
        entry = self._find_entry(conn, user, full, KeyType.SUBDOMAIN)
        if entry is None:
            entry = self._create_entry(
                conn, user, full, KeyType.SUBDOMAIN, parent.id, default_action
            )
            created.append(entry)
        return entry

    def _set_default(self, conn, entry: CriteriaEntry, action: Action) -> CriteriaEntry:
        conn.execute(_UPDATE_DEFAULT, (action.value, entry.id, entry.user_email))
        return entry.model_copy(update={"default_action": action})

    def _delete_cascade(self, conn, entry: CriteriaEntry) -> dict[str, int]:
        """Delete an entry and everything below it, children first."""
        removed = {"subdomains": 0, "patterns": 0, "email_patterns": 0}
        for row in conn.execute(_SELECT_CHILDREN, (entry.id, entry.user_email)).fetchall():
            child_removed = self._delete_cascade(conn, _row_to_entry(row))
            removed["subdomains"] += 1 + child_removed["subdomains"]
            removed["patterns"] += child_removed["patterns"]
            removed["email_patterns"] += child_removed["email_patterns"]
        removed["patterns"] += conn.execute(
            "DELETE FROM patterns WHERE criteria_id = ?", (entry.id,)
        ).rowcount
        removed["email_patterns"] += conn.execute(
            "DELETE FROM email_patterns WHERE criteria_id = ?", (entry.id,)
        ).rowcount
        conn.execute(
            "DELETE FROM criteria WHERE id = ? AND user_email = ?", (entry.id, entry.user_email)
        )
        return removed

    def _log(
        self,
        req: "_Request",
        dim: Dimension,
        action_type: AuditActionType,
        table_name: str,
        record_id: int | None,
        domain: str | None,
        *,
        before: Any,
        after: Any,
        **extra: Any,
    ) -> int:
        details: dict[str, Any] = {
            "operation": req.op.value,
            "dimension": dim.value,
            "action": req.action.value if req.action else None,
            "before": before,
            "after": after,
        }
        details.update(extra)
        if req.context:
            details["source"] = req.context
        return self._audit.log_mutation(
            user_email=req.user,
            action_type=action_type,
            table_name=table_name,
            record_id=record_id,
            domain=domain,
            details=details,
        )


class _Request:
    """Normalized arguments of one modify() call."""

    __slots__ = (
        "op", "user", "key", "action", "parent_domain", "parent_subdomain", "old_action", "context",
    )

    def __init__(
        self,
        *,
        op: Operation,
        user: str,
        key: str | None,
        action: Action | None,
        parent_domain: str | None,
        parent_subdomain: str | None,
        old_action: Action | None,
        context: dict[str, Any] | None,
    ) -> None:
        self.op = op
        self.user = user
        self.key = key
        self.action = action
        self.parent_domain = parent_domain
        self.parent_subdomain = parent_subdomain
        self.old_action = old_action
        self.context = context
