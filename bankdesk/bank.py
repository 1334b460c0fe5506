"""
Bank Service Module

Facade the presentation layer calls into. Every operation follows the same
write path:

    1. AuthorizationGuard.check(actor, operation)   -> PermissionDenied, nothing changed
    2. store mutation                               -> typed error, nothing changed
    3. AuditLog.append(...)                          (fsynced)
    4. PersistenceManager.save() when autosave is on

A failure in step 3 or 4 raises PersistenceFailure with committed=True: the
mutation stays in memory and is written by the next successful save.
"""

from decimal import Decimal
from pathlib import Path
from typing import List, Optional, TypeVar, Union

from .accounts import Account, AccountStore, AccountType, Amount, BalanceChange
from .audit import AuditAction, AuditLog, AuditLogEntry
from .auth import AuthenticationProvider, ConfiguredAuthenticationProvider, Credentials
from .config import BankDeskConfig, get_config
from .errors import InvalidInputError, InvalidStateError, PersistenceFailure
from .loans import Loan, LoanStatus, LoanStore, SubmitterKind
from .logging_config import get_logger, log_action, setup_logging
from .persistence import LoadReport, PersistenceManager, create_storage
from .rbac import AuthorizationGuard, Identity, Operation


T = TypeVar("T")

DELETE_POLICY_BLOCK = "block"
DELETE_POLICY_ORPHAN = "orphan"


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


class BankService:
    """
    Account and loan operations for an authenticated actor.

    Stores are explicit instances, never module globals, so independent
    services can run side by side (e.g. in parallel tests).
    """

    def __init__(
        self,
        accounts: AccountStore,
        loans: LoanStore,
        audit: AuditLog,
        persistence: PersistenceManager,
        guard: Optional[AuthorizationGuard] = None,
        authenticator: Optional[AuthenticationProvider] = None,
        autosave: bool = True,
        delete_policy: str = DELETE_POLICY_BLOCK
    ):
        if delete_policy not in (DELETE_POLICY_BLOCK, DELETE_POLICY_ORPHAN):
            raise ValueError(f"Unknown account delete policy: {delete_policy}")
        self.accounts = accounts
        self.loans = loans
        self.audit = audit
        self.persistence = persistence
        self.guard = guard or AuthorizationGuard()
        self.authenticator = authenticator
        self.autosave = autosave
        self.delete_policy = delete_policy
        self.last_load_report: Optional[LoadReport] = None
        self.logger = get_logger("bankdesk.bank")

    @classmethod
    def from_config(cls, config: Optional[BankDeskConfig] = None,
                    configure_logging: bool = True) -> 'BankService':
        """Build the full service from configuration and load snapshots"""
        config = config or get_config()
        if configure_logging:
            setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

        accounts = AccountStore()
        loans = LoanStore(accounts, id_prefix=config.loan_id_prefix)
        audit_path = Path(config.data_dir) / config.audit_log_file if config.audit_log_file else None
        if audit_path:
            audit_path.parent.mkdir(parents=True, exist_ok=True)

        service = cls(
            accounts=accounts,
            loans=loans,
            audit=AuditLog(audit_path),
            persistence=PersistenceManager(
                create_storage(config), accounts, loans,
                accounts_collection=config.accounts_collection,
                loans_collection=config.loans_collection
            ),
            authenticator=ConfiguredAuthenticationProvider(config, accounts),
            autosave=config.autosave,
            delete_policy=config.account_delete_policy
        )
        service.load()
        return service

    # Session

    def login(self, credentials: Credentials) -> Identity:
        """Verify credentials through the configured provider"""
        if self.authenticator is None:
            raise RuntimeError("No authentication provider configured")
        return self.authenticator.verify(credentials)

    def load(self) -> LoadReport:
        """Load snapshots into the stores; degrades to empty on corruption"""
        self.last_load_report = self.persistence.load()
        return self.last_load_report

    def save(self, actor: Identity) -> None:
        """Explicit full snapshot save"""
        self.guard.check(actor, Operation.SAVE_SNAPSHOT)
        self.persistence.save()

    def shutdown(self) -> None:
        """Graceful shutdown: save snapshots and release the backend"""
        try:
            self.persistence.save()
        finally:
            self.persistence.close()

    # Accounts

    def create_account(
        self,
        actor: Identity,
        acc_no: str,
        name: str,
        gender: str,
        mobile: str,
        account_type: Union[AccountType, str],
        balance: Amount
    ) -> Account:
        self.guard.check(actor, Operation.CREATE_ACCOUNT)
        account = self.accounts.create(acc_no, name, gender, mobile, account_type, balance)

        if actor.is_employee:
            text = (f"{AuditAction.ACCOUNT_ADDED_BY_EMPLOYEE.value}: Account {account.acc_no} "
                    f"({account.name}) created by {actor.id} with balance {_money(account.balance)}")
        else:
            text = (f"{AuditAction.ACCOUNT_ADDED.value}: Account {account.acc_no} "
                    f"({account.name}) created by ADMIN with balance {_money(account.balance)}")

        self._log(actor, "Account created", "create_account", f"account:{account.acc_no}")
        return self._record(text, account)

    def delete_account(self, actor: Identity, acc_no: str) -> Account:
        """
        Delete an account.

        With the ``block`` policy an account that still has pending or
        approved loans cannot be deleted (InvalidStateError). With
        ``orphan`` it is deleted and the loans are kept as they are.
        """
        self.guard.check(actor, Operation.DELETE_ACCOUNT)
        acc_no = (acc_no or "").strip()
        outstanding = self.loans.outstanding_for_account(acc_no) if self.accounts.exists(acc_no) else []

        if outstanding and self.delete_policy == DELETE_POLICY_BLOCK:
            ids = ", ".join(loan.loan_id for loan in outstanding)
            raise InvalidStateError(f"Account {acc_no} has outstanding loans: {ids}")

        account = self.accounts.delete(acc_no)
        if outstanding:
            log_action(
                self.logger, "warning", "Account deleted with outstanding loans",
                actor=actor.label, action="delete_account", resource=f"account:{acc_no}",
                extra={"orphaned_loans": [loan.loan_id for loan in outstanding]}
            )

        text = (f"{AuditAction.ACCOUNT_DELETED.value}: Account {account.acc_no} "
                f"({account.name}) removed by ADMIN")
        self._log(actor, "Account deleted", "delete_account", f"account:{acc_no}")
        return self._record(text, account)

    def deposit(self, actor: Identity, acc_no: str, amount: Amount) -> BalanceChange:
        self.guard.check(actor, Operation.DEPOSIT, acc_no)
        change = self.accounts.deposit(acc_no, amount)
        text = (f"{AuditAction.DEPOSIT.value} by {actor.label}: {_money(change.amount)} to {change.acc_no} "
                f"({_money(change.old_balance)} -> {_money(change.new_balance)})")
        self._log(actor, "Deposit", "deposit", f"account:{change.acc_no}",
                  {"amount": str(change.amount), "balance": str(change.new_balance)})
        return self._record(text, change)

    def withdraw(self, actor: Identity, acc_no: str, amount: Amount) -> BalanceChange:
        self.guard.check(actor, Operation.WITHDRAW, acc_no)
        change = self.accounts.withdraw(acc_no, amount)
        text = (f"{AuditAction.WITHDRAW.value} by {actor.label}: {_money(change.amount)} from {change.acc_no} "
                f"({_money(change.old_balance)} -> {_money(change.new_balance)})")
        self._log(actor, "Withdrawal", "withdraw", f"account:{change.acc_no}",
                  {"amount": str(change.amount), "balance": str(change.new_balance)})
        return self._record(text, change)

    def find_account(self, actor: Identity, acc_no: str) -> Optional[Account]:
        self.guard.check(actor, Operation.VIEW_ACCOUNT, acc_no)
        return self.accounts.find(acc_no)

    def my_account(self, actor: Identity) -> Optional[Account]:
        """A user's own account"""
        if not actor.is_user:
            raise InvalidInputError("Only customer identities own an account")
        return self.find_account(actor, actor.id)

    def list_accounts(self, actor: Identity) -> List[Account]:
        self.guard.check(actor, Operation.VIEW_ALL_ACCOUNTS)
        return self.accounts.list_all()

    # Loans

    def apply_loan(self, actor: Identity, applicant_acc_no: str, amount: Amount,
                   term: int, purpose: str = "") -> Loan:
        """
        Submit a loan application. Employees (and admins) submit on behalf
        of a customer; users only for their own account.
        """
        self.guard.check(actor, Operation.APPLY_LOAN, applicant_acc_no)
        if actor.is_user:
            applied_by, applied_by_id = SubmitterKind.USER, actor.id
        else:
            applied_by, applied_by_id = SubmitterKind.EMPLOYEE, actor.id

        loan = self.loans.apply(applicant_acc_no, amount, term, purpose, applied_by, applied_by_id)
        text = (f"{AuditAction.LOAN_APPLIED.value}: {loan.loan_id} applied by "
                f"{applied_by.value.upper()}({applied_by_id}) for {_money(loan.amount)} "
                f"term {loan.term_months}")
        self._log(actor, "Loan applied", "apply_loan", f"loan:{loan.loan_id}",
                  {"applicant": loan.applicant_acc_no, "amount": str(loan.amount)})
        return self._record(text, loan)

    def approve_loan(self, actor: Identity, loan_id: str, confirm: bool = False) -> Loan:
        """
        Approve a pending loan. Raises ApprovalConflict (nothing changed)
        when the applicant already holds an approved loan, unless
        ``confirm`` is True.
        """
        self.guard.check(actor, Operation.APPROVE_LOAN)
        loan = self.loans.approve(loan_id, confirm=confirm)
        text = f"{AuditAction.LOAN_APPROVED.value}: {loan.loan_id} approved by ADMIN"
        overridden = [
            other.loan_id for other in self.loans.loans_for_account(loan.applicant_acc_no)
            if other.status == LoanStatus.APPROVED and other.loan_id != loan.loan_id
        ]
        if overridden:
            text += f" (confirmed over existing approved loan {', '.join(overridden)})"
        self._log(actor, "Loan approved", "approve_loan", f"loan:{loan.loan_id}")
        return self._record(text, loan)

    def reject_loan(self, actor: Identity, loan_id: str, note: Optional[str] = None) -> Loan:
        self.guard.check(actor, Operation.REJECT_LOAN)
        loan = self.loans.reject(loan_id, note)
        text = f"{AuditAction.LOAN_REJECTED.value}: {loan.loan_id} rejected by ADMIN ({note or ''})"
        self._log(actor, "Loan rejected", "reject_loan", f"loan:{loan.loan_id}")
        return self._record(text, loan)

    def list_loans(self, actor: Identity) -> List[Loan]:
        self.guard.check(actor, Operation.VIEW_LOANS)
        return self.loans.list_for(actor)

    # Audit log

    def audit_entries(self, actor: Identity) -> List[AuditLogEntry]:
        self.guard.check(actor, Operation.VIEW_AUDIT_LOG)
        return self.audit.entries()

    def clear_audit_log(self, actor: Identity) -> int:
        """Irreversibly truncate the audit log; returns entries removed"""
        self.guard.check(actor, Operation.CLEAR_AUDIT_LOG)
        removed = self.audit.clear()
        self._log(actor, "Audit log cleared", "clear_audit_log", "audit_log", {"removed": removed})
        return removed

    # Internals

    def _record(self, text: str, result: T) -> T:
        """Audit, then autosave; failures never undo the committed mutation"""
        failure: Optional[PersistenceFailure] = None

        try:
            self.audit.append(text)
        except PersistenceFailure as e:
            failure = e

        if self.autosave:
            try:
                self.persistence.save()
            except PersistenceFailure as e:
                failure = failure or e

        if failure is not None:
            raise PersistenceFailure(failure.message, committed=True, result=result) from failure
        return result

    def _log(self, actor: Identity, message: str, action: str, resource: str,
             extra: Optional[dict] = None) -> None:
        log_action(self.logger, "info", message, actor=actor.label,
                   action=action, resource=resource, extra=extra)
