"""
Persistence Module

Loads and saves the account and loan collections as whole snapshots.

Loading is forgiving: a missing snapshot starts an empty collection and a
corrupt one is reported as a warning and also starts empty. Saving is
strict: any failure raises PersistenceFailure and leaves the in-memory
stores as they were.
"""

from dataclasses import dataclass, field
from decimal import InvalidOperation
from pathlib import Path
from typing import Callable, List, TypeVar

from .accounts import Account, AccountStore
from .config import BankDeskConfig
from .errors import BankingError, PersistenceFailure
from .loans import Loan, LoanStore
from .logging_config import get_logger, log_action
from .storage import (
    CorruptSnapshotError, InMemorySnapshotStorage, JSONFileSnapshotStorage,
    SnapshotStorage, SQLiteSnapshotStorage
)


T = TypeVar("T")


@dataclass
class LoadReport:
    """What load() found"""
    accounts_loaded: int = 0
    loans_loaded: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


class PersistenceManager:
    """Durable load/save of the AccountStore and LoanStore"""

    def __init__(
        self,
        storage: SnapshotStorage,
        accounts: AccountStore,
        loans: LoanStore,
        accounts_collection: str = "accounts",
        loans_collection: str = "loans"
    ):
        self.storage = storage
        self.accounts = accounts
        self.loans = loans
        self.accounts_collection = accounts_collection
        self.loans_collection = loans_collection
        self.logger = get_logger("bankdesk.persistence")

    def load(self) -> LoadReport:
        """
        Replace both stores with the stored snapshots. Never raises.
        """
        report = LoadReport()

        accounts = self._read(self.accounts_collection, Account.from_dict, report)
        try:
            self.accounts.replace_all(accounts)
        except (BankingError, InvalidOperation) as e:
            self._degrade(self.accounts_collection, str(e), report)
            accounts = []
            self.accounts.replace_all(accounts)
        report.accounts_loaded = len(accounts)

        loans = self._read(self.loans_collection, Loan.from_dict, report)
        try:
            self.loans.replace_all(loans)
        except (BankingError, InvalidOperation) as e:
            self._degrade(self.loans_collection, str(e), report)
            loans = []
            self.loans.replace_all(loans)
        report.loans_loaded = len(loans)

        log_action(
            self.logger, "info", "Snapshots loaded", action="load",
            extra={
                "accounts": report.accounts_loaded,
                "loans": report.loans_loaded,
                "warnings": len(report.warnings)
            }
        )
        return report

    def save(self) -> None:
        """
        Write both collections.

        Raises:
            PersistenceFailure: a backend write failed; in-memory state is
                untouched and the previous snapshot of that collection is
                left in place where the backend allows it
        """
        accounts = [account.to_dict() for account in self.accounts.list_all()]
        loans = [loan.to_dict() for loan in self.loans.list_all()]

        for collection, records in (
            (self.accounts_collection, accounts),
            (self.loans_collection, loans),
        ):
            try:
                self.storage.write(collection, records)
            except Exception as e:
                self.logger.error(f"Failed to save {collection}: {e}")
                raise PersistenceFailure(f"Failed to save {collection}: {e}") from e

        log_action(
            self.logger, "info", "Snapshots saved", action="save",
            extra={"accounts": len(accounts), "loans": len(loans)}
        )

    def close(self) -> None:
        self.storage.close()

    def _read(self, collection: str, parse: Callable[[dict], T], report: LoadReport) -> List[T]:
        try:
            records = self.storage.read(collection)
        except CorruptSnapshotError as e:
            self._degrade(collection, e.reason, report)
            return []
        except Exception as e:
            self._degrade(collection, f"unreadable ({e})", report)
            return []

        if records is None:
            self.logger.info(f"No {collection} snapshot found, starting empty")
            return []

        try:
            return [parse(record) for record in records]
        except (KeyError, ValueError, TypeError, InvalidOperation) as e:
            self._degrade(collection, f"bad record ({e!r})", report)
            return []

    def _degrade(self, collection: str, reason: str, report: LoadReport) -> None:
        message = f"{collection} snapshot is corrupt, starting with empty list: {reason}"
        report.warnings.append(message)
        self.logger.warning(message)


def create_storage(config: BankDeskConfig) -> SnapshotStorage:
    """Build the snapshot backend selected in configuration"""
    backend = config.storage_backend.lower()
    if backend == "json":
        return JSONFileSnapshotStorage(config.data_dir)
    if backend == "sqlite":
        data_dir = Path(config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return SQLiteSnapshotStorage(data_dir / config.sqlite_filename)
    if backend == "memory":
        return InMemorySnapshotStorage()
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
