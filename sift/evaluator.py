"""Priority-ladder evaluation of pending emails against a rule set.

Pure: no I/O, no mutation of the inputs. The first matching level wins:

    1   exact sender entry default          email_key.default
    2-3 from-address patterns (keep, delete) fromEmails.keep / fromEmails.delete
    4-5 to-address patterns (keep, delete)   toEmails.keep / toEmails.delete
    6-9 subject patterns by action           pattern.keep ... pattern.delete_10d
    10  subdomain entry default              subdomain.default
    11  domain entry default                 domain.default
    12  nothing matched                      none -> undecided
"""

import logging
from collections import defaultdict
from collections.abc import Iterable

from sift.domain_parser import parse_email_domain
from sift.schemas.criteria import (
    Action,
    CriteriaEntry,
    Direction,
    EmailPattern,
    KeyType,
    Pattern,
    RuleSet,
)
from sift.schemas.pending import MatchedRule, PendingEmail

logger = logging.getLogger(__name__)

_SUBJECT_LEVELS = (
    (6, Action.KEEP),
    (7, Action.DELETE),
    (8, Action.DELETE_1D),
    (9, Action.DELETE_10D),
)


class _RuleIndex:
    """Lookup tables over a RuleSet, built once per evaluation run."""

    def __init__(self, rules: RuleSet) -> None:
        self.entries: dict[tuple[KeyType, str], CriteriaEntry] = {
            (e.key_type, e.key_value): e for e in rules.entries
        }
        self.patterns: dict[int, list[Pattern]] = defaultdict(list)
        for p in sorted(rules.patterns, key=lambda p: p.id):
            self.patterns[p.criteria_id].append(p)
        self.email_patterns: dict[int, list[EmailPattern]] = defaultdict(list)
        for ep in sorted(rules.email_patterns, key=lambda ep: ep.id):
            self.email_patterns[ep.criteria_id].append(ep)

    def entry(self, key_type: KeyType, key: str | None) -> CriteriaEntry | None:
        if not key:
            return None
        return self.entries.get((key_type, key))

    def address_match(
        self,
        anchors: Iterable[CriteriaEntry | None],
        direction: Direction,
        action: Action,
        address: str,
    ) -> EmailPattern | None:
        candidates = [
            ep
            for anchor in anchors
            if anchor is not None
            for ep in self.email_patterns.get(anchor.id, ())
            if ep.direction is direction and ep.action is action and ep.email == address
        ]
        return min(candidates, key=lambda ep: ep.id, default=None)

    def subject_match(
        self, scope: CriteriaEntry | None, action: Action, subject: str
    ) -> Pattern | None:
        if scope is None:
            return None
        for p in self.patterns.get(scope.id, ()):
            if p.action is action and p.pattern.lower() in subject:
                return p
        return None


def _decide(index: _RuleIndex, email: PendingEmail) -> tuple[Action, MatchedRule]:
    from_email = email.from_email.strip().lower()
    to_email = email.to_email.strip().lower()
    subject = email.subject.lower()
    sender = parse_email_domain(from_email)

    domain_entry = index.entry(KeyType.DOMAIN, sender.primary_domain)
    sub_entry = (
        index.entry(KeyType.SUBDOMAIN, sender.full_domain) if sender.has_subdomain else None
    )

    # 1
    email_entry = index.entry(KeyType.EMAIL, from_email)
    if email_entry is not None and email_entry.default_action is not None:
        return email_entry.default_action, MatchedRule(
            level=1, rule="email_key.default", key=from_email
        )

    # 2-3
    if from_email:
        for level, action in ((2, Action.KEEP), (3, Action.DELETE)):
            if index.address_match((sub_entry, domain_entry), Direction.FROM, action, from_email):
                return action, MatchedRule(
                    level=level, rule=f"fromEmails.{action.value}", key=from_email
                )

    # 4-5
    if to_email:
        recipient_entry = index.entry(
            KeyType.DOMAIN, parse_email_domain(to_email).primary_domain
        )
        anchors = (sub_entry, domain_entry, recipient_entry)
        for level, action in ((4, Action.KEEP), (5, Action.DELETE)):
            if index.address_match(anchors, Direction.TO, action, to_email):
                return action, MatchedRule(
                    level=level, rule=f"toEmails.{action.value}", key=to_email
                )

    # 6-9
    scope = sub_entry if sub_entry is not None else domain_entry
    for level, action in _SUBJECT_LEVELS:
        pattern = index.subject_match(scope, action, subject)
        if pattern is not None:
            return action, MatchedRule(
                level=level, rule=f"pattern.{action.value}", key=pattern.pattern
            )

    # 10-11
    if sub_entry is not None and sub_entry.default_action is not None:
        return sub_entry.default_action, MatchedRule(
            level=10, rule="subdomain.default", key=sub_entry.key_value
        )
    if domain_entry is not None and domain_entry.default_action is not None:
        return domain_entry.default_action, MatchedRule(
            level=11, rule="domain.default", key=domain_entry.key_value
        )

    return Action.UNDECIDED, MatchedRule(level=12, rule="none")


def evaluate(rules: RuleSet, emails: Iterable[PendingEmail]) -> list[PendingEmail]:
    """Classify each email; returns new objects carrying action and matched rule.

    Any action already present on the inputs is ignored.
    """
    index = _RuleIndex(rules)
    results = []
    for email in emails:
        action, matched = _decide(index, email)
        results.append(email.model_copy(update={"action": action, "matched_rule": matched}))
    logger.debug("Evaluated %d email(s) for %s", len(results), rules.user_email)
    return results
