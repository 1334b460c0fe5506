"""
Error Kinds Module

Typed errors raised by the banking core. Every error is returned to the
immediate caller; the presentation layer decides how to render it.
"""

from typing import List, Optional


class BankingError(Exception):
    """Base class for all errors raised by the banking core"""

    kind = "BankingError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BankingError):
    """Referenced account or loan does not exist"""

    kind = "NotFound"


class DuplicateKeyError(BankingError):
    """Account number already in use"""

    kind = "DuplicateKey"


class InvalidInputError(BankingError, ValueError):
    """Malformed or out-of-range input"""

    kind = "InvalidInput"


class InsufficientFundsError(BankingError):
    """Withdrawal larger than the available balance"""

    kind = "InsufficientFunds"


class InvalidStateError(BankingError):
    """Illegal state transition, e.g. approving a loan that is not pending"""

    kind = "InvalidState"


class PermissionDeniedError(BankingError, PermissionError):
    """Role is not allowed to perform the operation"""

    kind = "PermissionDenied"


class PersistenceFailure(BankingError):
    """
    Durable write failed.

    When raised after an in-memory mutation has been applied, ``committed``
    is True and ``result`` holds what the operation would have returned.
    The mutation stays in memory until the next successful save.
    """

    kind = "PersistenceFailure"

    def __init__(self, message: str, committed: bool = False, result: object = None):
        super().__init__(message)
        self.committed = committed
        self.result = result


class ApprovalConflict(BankingError):
    """
    Non-fatal signal: the applicant already holds an approved loan.

    Nothing was changed. Re-issue the approval with ``confirm=True`` to
    commit the transition anyway.
    """

    kind = "ApprovalConflict"

    def __init__(self, message: str, loan_id: str, approved_loan_ids: Optional[List[str]] = None):
        super().__init__(message)
        self.loan_id = loan_id
        self.approved_loan_ids = approved_loan_ids or []


class AuthenticationFailed(BankingError):
    """Credentials could not be verified"""

    kind = "AuthFailure"
