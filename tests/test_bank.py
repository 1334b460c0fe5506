"""
Integration tests for the BankService facade

Tests the full write path (authorization, mutation, audit, autosave) for
every role, the delete policy for accounts with loans, and recovery from
persistence failures.
"""

import pytest
from decimal import Decimal

from bankdesk.accounts import AccountStore
from bankdesk.audit import AuditLog
from bankdesk.auth import Credentials
from bankdesk.bank import BankService
from bankdesk.config import BankDeskConfig
from bankdesk.errors import (
    ApprovalConflict, InsufficientFundsError, InvalidInputError, InvalidStateError,
    NotFoundError, PermissionDeniedError, PersistenceFailure
)
from bankdesk.loans import LoanStatus, LoanStore, SubmitterKind
from bankdesk.persistence import PersistenceManager
from bankdesk.rbac import Identity, Role
from bankdesk.storage import InMemorySnapshotStorage


ADMIN = Identity.admin()
EMPLOYEE = Identity.employee("employee1")
ALICE = Identity.user("A1")
BOB = Identity.user("B2")


def build_service(storage=None, audit=None, **kwargs) -> BankService:
    accounts = AccountStore()
    loans = LoanStore(accounts)
    return BankService(
        accounts=accounts,
        loans=loans,
        audit=audit if audit is not None else AuditLog(),
        persistence=PersistenceManager(storage or InMemorySnapshotStorage(), accounts, loans),
        **kwargs
    )


@pytest.fixture
def storage():
    return InMemorySnapshotStorage()


@pytest.fixture
def bank(storage):
    """Service with Alice's account, autosaving to in-memory storage"""
    bank = build_service(storage)
    bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100.0)
    return bank


def audit_texts(bank: BankService):
    return [entry.text for entry in bank.audit_entries(ADMIN)]


class TestScenarios:
    """End-to-end scenarios"""

    def test_deposit_then_overdraw(self, bank):
        change = bank.deposit(ADMIN, "A1", 50)
        assert change.new_balance == Decimal("150.0")

        with pytest.raises(InsufficientFundsError):
            bank.withdraw(ADMIN, "A1", 200)

        assert bank.find_account(ADMIN, "A1").balance == Decimal("150.0")

    def test_apply_approve_approve_again(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 1000, 12, "car")
        assert loan.status == LoanStatus.PENDING

        assert bank.approve_loan(ADMIN, loan.loan_id).status == LoanStatus.APPROVED

        with pytest.raises(InvalidStateError):
            bank.approve_loan(ADMIN, loan.loan_id)

    def test_employee_cannot_delete(self, bank):
        before = [a.to_dict() for a in bank.list_accounts(ADMIN)]
        log_size = len(bank.audit)

        with pytest.raises(PermissionDeniedError):
            bank.delete_account(EMPLOYEE, "A1")

        assert [a.to_dict() for a in bank.list_accounts(ADMIN)] == before
        assert len(bank.audit) == log_size


class TestAccountOperations:
    """Test account operations and their audit lines"""

    def test_admin_create_audit_line(self, bank):
        assert audit_texts(bank) == ["ADD: Account A1 (Alice) created by ADMIN with balance 100.00"]

    def test_employee_create_audit_line(self, bank):
        bank.create_account(EMPLOYEE, "B2", "Bob", "M", "556", "Current", "20.5")
        assert audit_texts(bank)[-1] == "EMP-ADD: Account B2 (Bob) created by employee1 with balance 20.50"

    def test_user_cannot_create(self, bank):
        with pytest.raises(PermissionDeniedError):
            bank.create_account(ALICE, "B2", "Bob", "M", "556", "Current", 1)
        assert bank.find_account(ADMIN, "B2") is None

    def test_deposit_and_withdraw_audit_lines(self, bank):
        bank.deposit(EMPLOYEE, "A1", 50)
        bank.withdraw(ALICE, "A1", "20")
        assert audit_texts(bank)[-2:] == [
            "DEPOSIT by EMP:employee1: 50.00 to A1 (100.00 -> 150.00)",
            "WITHDRAW by USER:A1: 20.00 from A1 (150.00 -> 130.00)",
        ]

    def test_user_limited_to_own_account(self, bank):
        bank.create_account(ADMIN, "B2", "Bob", "M", "556", "Current", 10)

        with pytest.raises(PermissionDeniedError):
            bank.deposit(ALICE, "B2", 5)
        with pytest.raises(PermissionDeniedError):
            bank.withdraw(ALICE, "B2", 5)
        with pytest.raises(PermissionDeniedError):
            bank.find_account(ALICE, "B2")

        assert bank.find_account(ADMIN, "B2").balance == Decimal("10")

    def test_failed_operation_is_not_audited(self, bank):
        with pytest.raises(InsufficientFundsError):
            bank.withdraw(ADMIN, "A1", 1000)
        with pytest.raises(InvalidInputError):
            bank.deposit(ADMIN, "A1", 0)
        with pytest.raises(NotFoundError):
            bank.deposit(ADMIN, "ZZ", 1)
        assert len(audit_texts(bank)) == 1

    def test_view_permissions(self, bank):
        assert bank.my_account(ALICE).acc_no == "A1"
        assert bank.find_account(EMPLOYEE, "A1").name == "Alice"
        assert bank.find_account(EMPLOYEE, "missing") is None
        with pytest.raises(PermissionDeniedError):
            bank.list_accounts(EMPLOYEE)
        with pytest.raises(PermissionDeniedError):
            bank.list_accounts(ALICE)

    def test_my_account_requires_user(self, bank):
        with pytest.raises(InvalidInputError):
            bank.my_account(ADMIN)

    def test_delete_account(self, bank):
        removed = bank.delete_account(ADMIN, "A1")
        assert removed.acc_no == "A1"
        assert bank.list_accounts(ADMIN) == []
        assert audit_texts(bank)[-1] == "DELETE: Account A1 (Alice) removed by ADMIN"

    def test_delete_missing_account(self, bank):
        with pytest.raises(NotFoundError):
            bank.delete_account(ADMIN, "ZZ")


class TestDeletePolicy:
    """Test deletion of accounts that still have loans"""

    def test_block_policy(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "")

        with pytest.raises(InvalidStateError, match=loan.loan_id):
            bank.delete_account(ADMIN, "A1")
        assert bank.find_account(ADMIN, "A1") is not None

    def test_block_policy_ignores_rejected_loans(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "")
        bank.reject_loan(ADMIN, loan.loan_id)

        bank.delete_account(ADMIN, "A1")
        assert bank.find_account(ADMIN, "A1") is None

    def test_orphan_policy(self, storage):
        bank = build_service(storage, delete_policy="orphan")
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "")
        bank.approve_loan(ADMIN, loan.loan_id)

        bank.delete_account(ADMIN, "A1")

        assert bank.find_account(ADMIN, "A1") is None
        assert bank.list_loans(ADMIN) == [loan]

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            build_service(delete_policy="cascade")


class TestLoanOperations:
    """Test loan operations through the facade"""

    def test_submitter_recorded_per_role(self, bank):
        by_user = bank.apply_loan(ALICE, "A1", 100, 1, "")
        by_emp = bank.apply_loan(EMPLOYEE, "A1", 200, 2, "")
        by_admin = bank.apply_loan(ADMIN, "A1", 300, 3, "")

        assert (by_user.applied_by, by_user.applied_by_id) == (SubmitterKind.USER, "A1")
        assert (by_emp.applied_by, by_emp.applied_by_id) == (SubmitterKind.EMPLOYEE, "employee1")
        assert (by_admin.applied_by, by_admin.applied_by_id) == (SubmitterKind.EMPLOYEE, "ADMIN")

    def test_apply_audit_line(self, bank):
        loan = bank.apply_loan(EMPLOYEE, "A1", "1000", 12, "car")
        assert audit_texts(bank)[-1] == (
            f"LOAN_APPLY: {loan.loan_id} applied by EMPLOYEE(employee1) for 1000.00 term 12"
        )

    def test_user_cannot_apply_for_others(self, bank):
        bank.create_account(ADMIN, "B2", "Bob", "M", "556", "Current", 10)
        with pytest.raises(PermissionDeniedError):
            bank.apply_loan(ALICE, "B2", 100, 1, "")
        assert bank.list_loans(ADMIN) == []

    def test_only_admin_decides(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "")
        for actor in (EMPLOYEE, ALICE):
            with pytest.raises(PermissionDeniedError):
                bank.approve_loan(actor, loan.loan_id)
            with pytest.raises(PermissionDeniedError):
                bank.reject_loan(actor, loan.loan_id)
        assert loan.status == LoanStatus.PENDING

    def test_reject_with_note(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "tv")
        bank.reject_loan(ADMIN, loan.loan_id, "no income")

        assert loan.purpose == "tv | Rejection note: no income"
        assert audit_texts(bank)[-1] == f"LOAN_REJECT: {loan.loan_id} rejected by ADMIN (no income)"

    def test_reject_without_note_audit_line(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "tv")
        bank.reject_loan(ADMIN, loan.loan_id)
        assert audit_texts(bank)[-1] == f"LOAN_REJECT: {loan.loan_id} rejected by ADMIN ()"

    def test_second_approval_needs_confirmation(self, bank):
        first = bank.apply_loan(ALICE, "A1", 100, 1, "")
        second = bank.apply_loan(ALICE, "A1", 200, 2, "")
        bank.approve_loan(ADMIN, first.loan_id)
        log_size = len(bank.audit)

        with pytest.raises(ApprovalConflict):
            bank.approve_loan(ADMIN, second.loan_id)
        assert second.status == LoanStatus.PENDING
        assert len(bank.audit) == log_size

        bank.approve_loan(ADMIN, second.loan_id, confirm=True)
        assert second.status == LoanStatus.APPROVED
        assert audit_texts(bank)[-1] == (
            f"LOAN_APPROVE: {second.loan_id} approved by ADMIN "
            f"(confirmed over existing approved loan {first.loan_id})"
        )

    def test_plain_approval_audit_line(self, bank):
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "")
        bank.approve_loan(ADMIN, loan.loan_id, confirm=True)
        assert audit_texts(bank)[-1] == f"LOAN_APPROVE: {loan.loan_id} approved by ADMIN"

    def test_list_loans_per_role(self, bank):
        bank.create_account(ADMIN, "B2", "Bob", "M", "556", "Current", 10)
        mine = bank.apply_loan(ALICE, "A1", 100, 1, "")
        submitted = bank.apply_loan(EMPLOYEE, "B2", 200, 2, "")

        assert bank.list_loans(ADMIN) == [mine, submitted]
        assert bank.list_loans(EMPLOYEE) == [submitted]
        assert bank.list_loans(ALICE) == [mine]
        assert bank.list_loans(BOB) == [submitted]


class TestAuditLogAccess:
    """Test viewing and clearing the audit log"""

    def test_only_admin_views_or_clears(self, bank):
        for actor in (EMPLOYEE, ALICE):
            with pytest.raises(PermissionDeniedError):
                bank.audit_entries(actor)
            with pytest.raises(PermissionDeniedError):
                bank.clear_audit_log(actor)
        assert len(bank.audit) == 1

    def test_clear(self, bank):
        bank.deposit(ADMIN, "A1", 1)
        assert bank.clear_audit_log(ADMIN) == 2
        assert bank.audit_entries(ADMIN) == []


class TestPersistence:
    """Test autosave, explicit save, and failure handling"""

    def test_autosave_after_each_mutation(self, bank, storage):
        bank.deposit(ADMIN, "A1", 50)
        assert storage.read("accounts")[0]["balance"] == "150.0"

    def test_no_autosave(self, storage):
        bank = build_service(storage, autosave=False)
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        assert storage.read("accounts") is None

        bank.save(ADMIN)
        assert storage.read("accounts")[0]["acc_no"] == "A1"

    def test_only_admin_saves(self, bank):
        with pytest.raises(PermissionDeniedError):
            bank.save(EMPLOYEE)

    def test_state_survives_restart(self, bank, storage):
        loan = bank.apply_loan(ALICE, "A1", 1000, 12, "car")
        bank.approve_loan(ADMIN, loan.loan_id)
        bank.withdraw(ALICE, "A1", "0.01")

        restarted = build_service(storage)
        report = restarted.load()

        assert report.clean
        assert restarted.find_account(ADMIN, "A1").balance == Decimal("99.99")
        assert restarted.list_loans(ALICE)[0].status == LoanStatus.APPROVED

    def test_save_failure_keeps_committed_mutation(self):
        class BrokenStorage(InMemorySnapshotStorage):
            fail = False

            def write(self, collection, records):
                if self.fail:
                    raise OSError("read-only file system")
                super().write(collection, records)

        storage = BrokenStorage()
        bank = build_service(storage)
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        storage.fail = True

        with pytest.raises(PersistenceFailure) as excinfo:
            bank.deposit(ADMIN, "A1", 50)

        assert excinfo.value.committed
        assert excinfo.value.result.new_balance == Decimal("150")
        assert bank.find_account(ADMIN, "A1").balance == Decimal("150")
        # The audit line is written even though the snapshot failed
        assert audit_texts(bank)[-1].startswith("DEPOSIT by ADMIN: 50.00 to A1")

        storage.fail = False
        bank.save(ADMIN)
        assert storage.read("accounts")[0]["balance"] == "150"

    def test_audit_log_file_written_independently(self, tmp_path, storage):
        bank = build_service(storage, audit=AuditLog(tmp_path / "bank_changes.log"), autosave=False)
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)

        # No snapshot yet, but the trail is on disk
        assert storage.read("accounts") is None
        assert "ADD: Account A1" in (tmp_path / "bank_changes.log").read_text()

    def test_multiline_note_reloads_as_one_entry(self, tmp_path, storage):
        log_path = tmp_path / "bank_changes.log"
        bank = build_service(storage, audit=AuditLog(log_path))
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        loan = bank.apply_loan(ALICE, "A1", 100, 1, "tv")
        bank.reject_loan(ADMIN, loan.loan_id, "bad\ncredit")

        reloaded = AuditLog(log_path).entries()

        assert len(reloaded) == len(bank.audit) == 3
        assert reloaded[-1].text == f"LOAN_REJECT: {loan.loan_id} rejected by ADMIN (bad credit)"
        assert all(entry.timestamp is not None for entry in reloaded)

    def test_shutdown_saves(self, storage):
        bank = build_service(storage, autosave=False)
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        bank.shutdown()
        assert storage.read("accounts")[0]["acc_no"] == "A1"


class TestFromConfig:
    """Test building the service from configuration"""

    def test_json_backend_round_trip(self, tmp_path):
        config = BankDeskConfig(data_dir=str(tmp_path), storage_backend="json")
        bank = BankService.from_config(config, configure_logging=False)
        bank.create_account(ADMIN, "A1", "Alice", "F", "555", "Savings", 100)
        bank.shutdown()

        assert (tmp_path / "accounts.json").exists()
        assert (tmp_path / "loans.json").exists()
        assert (tmp_path / "bank_changes.log").exists()

        reopened = BankService.from_config(config, configure_logging=False)
        assert reopened.last_load_report.accounts_loaded == 1
        assert len(reopened.audit_entries(ADMIN)) == 1

    def test_login_through_configured_provider(self, tmp_path):
        config = BankDeskConfig(data_dir=str(tmp_path), storage_backend="memory",
                                audit_log_file=None, admin_password="pw")
        bank = BankService.from_config(config, configure_logging=False)

        admin = bank.login(Credentials(Role.ADMIN, secret="pw"))
        bank.create_account(admin, "A1", "Alice", "F", "555", "Savings", 100)

        assert bank.login(Credentials(Role.USER, "A1")) == ALICE
        assert bank.login(Credentials(Role.EMPLOYEE, "employee1", "emp123")) == EMPLOYEE

    def test_login_without_provider(self):
        with pytest.raises(RuntimeError):
            build_service().login(Credentials(Role.ADMIN, secret="x"))

    def test_corrupt_snapshot_at_startup(self, tmp_path):
        (tmp_path / "accounts.json").write_text("{broken")
        config = BankDeskConfig(data_dir=str(tmp_path), storage_backend="json")

        bank = BankService.from_config(config, configure_logging=False)

        assert not bank.last_load_report.clean
        assert bank.list_accounts(ADMIN) == []
