"""
Audit Trail Module

Append-only change log. Every state change in the system is written here,
one human-readable line per entry:

    2026-10-18 14:02:11 - DEPOSIT by ADMIN: 50.00 to A1 (100.00 -> 150.00)

Appends are synchronous: the line is flushed and fsynced before append()
returns, independently of snapshot saves, so the trail survives a crash
between a mutation and the next snapshot.
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .errors import PersistenceFailure
from .logging_config import get_logger


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SEPARATOR = " - "


class AuditAction(Enum):
    """Canonical prefixes of audit log lines"""
    ACCOUNT_ADDED = "ADD"
    ACCOUNT_ADDED_BY_EMPLOYEE = "EMP-ADD"
    ACCOUNT_DELETED = "DELETE"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    LOAN_APPLIED = "LOAN_APPLY"
    LOAN_APPROVED = "LOAN_APPROVE"
    LOAN_REJECTED = "LOAN_REJECT"


@dataclass(frozen=True)
class AuditLogEntry:
    """Single immutable audit log line"""
    timestamp: Optional[datetime]
    text: str

    def to_line(self) -> str:
        """Render as ``<timestamp> - <text>``"""
        stamp = self.timestamp.strftime(TIMESTAMP_FORMAT) if self.timestamp else ""
        return f"{stamp}{SEPARATOR}{self.text}"

    @classmethod
    def from_line(cls, line: str) -> 'AuditLogEntry':
        """
        Parse a log line. Lines that do not start with a timestamp are kept
        whole as text with no timestamp.
        """
        line = line.rstrip("\r\n")
        stamp, sep, text = line.partition(SEPARATOR)
        if sep:
            try:
                return cls(datetime.strptime(stamp, TIMESTAMP_FORMAT), text)
            except ValueError:
                pass
        return cls(None, line)


class AuditLog:
    """
    Ordered, durable audit log.

    With ``path=None`` the log lives only in memory.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()
        self.logger = get_logger("bankdesk.audit")
        self._load()

    def _load(self) -> None:
        """Read existing entries from the log file"""
        if not self.path or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                self._entries = [AuditLogEntry.from_line(line) for line in fh if line.strip()]
        except (OSError, UnicodeDecodeError) as e:
            self.logger.warning(f"Could not read audit log {self.path}: {e}")
            self._entries = []

    def append(self, text: str, timestamp: Optional[datetime] = None) -> AuditLogEntry:
        """
        Timestamp and append an entry. Line breaks inside ``text`` are
        collapsed to single spaces so every entry stays on one line.

        Raises:
            PersistenceFailure: the line could not be written durably; the
                entry is not added to the in-memory log either
        """
        text = " ".join(part for part in text.splitlines() if part)
        entry = AuditLogEntry(timestamp or datetime.now().replace(microsecond=0), text)

        with self._lock:
            if self.path:
                try:
                    with open(self.path, "a", encoding="utf-8") as fh:
                        fh.write(entry.to_line() + "\n")
                        fh.flush()
                        os.fsync(fh.fileno())
                except OSError as e:
                    self.logger.error(f"Failed to write audit log {self.path}: {e}")
                    raise PersistenceFailure(f"Failed to write audit log: {e}") from e
            self._entries.append(entry)

        return entry

    def entries(self) -> List[AuditLogEntry]:
        """All entries in insertion order"""
        with self._lock:
            return list(self._entries)

    def lines(self) -> List[str]:
        """All entries rendered as log lines"""
        return [entry.to_line() for entry in self.entries()]

    def clear(self) -> int:
        """
        Irreversibly truncate the whole log.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = len(self._entries)
            if self.path:
                try:
                    self.path.unlink(missing_ok=True)
                except OSError as e:
                    raise PersistenceFailure(f"Failed to clear audit log: {e}") from e
            self._entries = []

        self.logger.warning(f"Audit log cleared ({removed} entries removed)")
        return removed

    def __len__(self) -> int:
        return len(self._entries)
