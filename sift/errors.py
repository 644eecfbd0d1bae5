"""Exception hierarchy for the rule store.

The store raises these internally; ``RuleStore.modify`` turns them into a
failed ModifyResult carrying the matching ErrorCode.
"""

from sift.schemas.criteria import ErrorCode


class SiftError(Exception):
    code: ErrorCode


class RuleValidationError(SiftError):
    """Malformed input, rejected before anything is written."""

    code = ErrorCode.VALIDATION_ERROR


class RuleNotFoundError(SiftError):
    code = ErrorCode.NOT_FOUND


class PersistenceError(SiftError):
    """The underlying database failed; the transaction was rolled back."""

    code = ErrorCode.PERSISTENCE_ERROR
