"""
Loan Module

Handles loan applications and the approval state machine:

    PENDING --approve--> APPROVED
    PENDING --reject---> REJECTED

A loan leaves PENDING exactly once. After that its status never changes;
only a rejection note may be appended to its purpose.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from enum import Enum
import threading
import uuid

from .accounts import AccountStore, Amount, to_amount
from .errors import (
    ApprovalConflict, DuplicateKeyError, InvalidInputError, InvalidStateError,
    NotFoundError
)
from .rbac import Identity


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class SubmitterKind(Enum):
    """Who submitted the application"""
    EMPLOYEE = "Employee"
    USER = "User"


REJECTION_NOTE_SEPARATOR = " | Rejection note: "


@dataclass
class Loan:
    """Loan application with its current status"""
    loan_id: str
    applicant_acc_no: str
    amount: Decimal
    term_months: int
    purpose: str
    status: LoanStatus
    applied_by: SubmitterKind
    applied_by_id: str

    @property
    def is_pending(self) -> bool:
        return self.status == LoanStatus.PENDING

    @property
    def is_outstanding(self) -> bool:
        """Pending or approved: still a claim on the applicant's account"""
        return self.status in (LoanStatus.PENDING, LoanStatus.APPROVED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for snapshot storage"""
        return {
            'loan_id': self.loan_id,
            'applicant_acc_no': self.applicant_acc_no,
            'amount': str(self.amount),
            'term_months': self.term_months,
            'purpose': self.purpose,
            'status': self.status.value,
            'applied_by': self.applied_by.value,
            'applied_by_id': self.applied_by_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create Loan from a snapshot dictionary"""
        return cls(
            loan_id=data['loan_id'],
            applicant_acc_no=data['applicant_acc_no'],
            amount=to_amount(data['amount']),
            term_months=int(data['term_months']),
            purpose=data.get('purpose', ""),
            status=LoanStatus(data['status']),
            applied_by=SubmitterKind(data['applied_by']),
            applied_by_id=data['applied_by_id'],
        )


def generate_loan_id(prefix: str = "LN-") -> str:
    """``LN-`` followed by 8 upper-case hex characters"""
    return f"{prefix}{uuid.uuid4().hex[:8].upper()}"


class LoanStore:
    """
    Loan applications in insertion order, with the approval state machine.

    Applicant accounts are checked against ``accounts`` at application time
    only; later account deletion is handled by the caller's delete policy.
    """

    def __init__(
        self,
        accounts: AccountStore,
        loans: Optional[Iterable[Loan]] = None,
        id_prefix: str = "LN-",
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.accounts = accounts
        self.id_prefix = id_prefix
        self._id_factory = id_factory or (lambda: generate_loan_id(self.id_prefix))
        self._loans: Dict[str, Loan] = {}
        self._lock = threading.RLock()
        if loans:
            self.replace_all(loans)

    def apply(
        self,
        applicant_acc_no: str,
        amount: Amount,
        term: int,
        purpose: str,
        applied_by: SubmitterKind,
        applied_by_id: str
    ) -> Loan:
        """
        Submit a loan application

        Args:
            applicant_acc_no: Account of the borrower, must exist
            amount: Requested amount, > 0
            term: Term in whole months, > 0
            purpose: Free text
            applied_by: Employee or User submission
            applied_by_id: Employee id, or the applicant's own account number

        Returns:
            The new loan in PENDING state
        """
        applicant_acc_no = (applicant_acc_no or "").strip()
        if not applicant_acc_no:
            raise InvalidInputError("Applicant account number is required")
        if not self.accounts.exists(applicant_acc_no):
            raise NotFoundError(f"Applicant account {applicant_acc_no} not found")

        value = to_amount(amount)
        term_months = self._parse_term(term)
        if value <= 0 or term_months <= 0:
            raise InvalidInputError("Invalid amount or term")

        with self._lock:
            loan_id = self._id_factory()
            while loan_id in self._loans:
                loan_id = self._id_factory()

            loan = Loan(
                loan_id=loan_id,
                applicant_acc_no=applicant_acc_no,
                amount=value,
                term_months=term_months,
                purpose=(purpose or "").strip(),
                status=LoanStatus.PENDING,
                applied_by=applied_by,
                applied_by_id=applied_by_id,
            )
            self._loans[loan_id] = loan

        return loan

    def approve(self, loan_id: str, confirm: bool = False) -> Loan:
        """
        Move a pending loan to APPROVED.

        Raises:
            NotFoundError: unknown loan
            InvalidStateError: loan is not pending
            ApprovalConflict: applicant already holds an approved loan and
                ``confirm`` is False; nothing is changed
        """
        with self._lock:
            loan = self._require_pending(loan_id, "approved")

            approved = [
                other.loan_id for other in self._loans.values()
                if other.applicant_acc_no == loan.applicant_acc_no
                and other.status == LoanStatus.APPROVED
            ]
            if approved and not confirm:
                raise ApprovalConflict(
                    f"Applicant {loan.applicant_acc_no} already has an approved loan",
                    loan_id=loan.loan_id,
                    approved_loan_ids=approved
                )

            loan.status = LoanStatus.APPROVED
            return loan

    def reject(self, loan_id: str, note: Optional[str] = None) -> Loan:
        """Move a pending loan to REJECTED, appending an optional note to its purpose"""
        with self._lock:
            loan = self._require_pending(loan_id, "rejected")
            loan.status = LoanStatus.REJECTED
            if note and note.strip():
                loan.purpose += REJECTION_NOTE_SEPARATOR + note.strip()
            return loan

    def get(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            return self._loans.get(loan_id)

    def list_all(self) -> List[Loan]:
        """All loans in insertion order"""
        with self._lock:
            return list(self._loans.values())

    def list_for(self, identity: Identity) -> List[Loan]:
        """
        Loans visible to an identity: admins see everything, employees what
        they submitted, users what they applied for.
        """
        if identity.is_admin:
            return self.list_all()
        if identity.is_employee:
            return [
                loan for loan in self.list_all()
                if loan.applied_by == SubmitterKind.EMPLOYEE
                and loan.applied_by_id == identity.id
            ]
        return [loan for loan in self.list_all() if loan.applicant_acc_no == identity.id]

    def loans_for_account(self, acc_no: str) -> List[Loan]:
        return [loan for loan in self.list_all() if loan.applicant_acc_no == acc_no]

    def outstanding_for_account(self, acc_no: str) -> List[Loan]:
        """Pending or approved loans naming the account as applicant"""
        return [loan for loan in self.loans_for_account(acc_no) if loan.is_outstanding]

    def replace_all(self, loans: Iterable[Loan]) -> None:
        """Replace the whole collection, e.g. after loading a snapshot"""
        fresh: Dict[str, Loan] = {}
        for loan in loans:
            if loan.loan_id in fresh:
                raise DuplicateKeyError(f"Loan {loan.loan_id} already exists")
            if not loan.amount.is_finite() or loan.amount <= 0 or loan.term_months <= 0:
                raise InvalidInputError(f"Loan {loan.loan_id} has an invalid amount or term")
            fresh[loan.loan_id] = loan
        with self._lock:
            self._loans = fresh

    def _require_pending(self, loan_id: str, verb: str) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        if not loan.is_pending:
            raise InvalidStateError(
                f"Only pending loans can be {verb}; {loan_id} is {loan.status.value}"
            )
        return loan

    @staticmethod
    def _parse_term(term: Any) -> int:
        if isinstance(term, bool):
            raise InvalidInputError(f"Invalid term: {term!r}")
        if isinstance(term, int):
            return term
        try:
            return int(str(term).strip())
        except ValueError as e:
            raise InvalidInputError(f"Invalid term: {term!r}") from e

    def __len__(self) -> int:
        return len(self._loans)
