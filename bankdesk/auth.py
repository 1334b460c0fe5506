"""
Authentication Module

Credential verification lives behind the AuthenticationProvider capability
so that secrets and the login flow stay out of the banking core. The
presentation layer collects credentials, calls verify(), and passes the
resulting Identity into every BankService operation.
"""

import hashlib
import hmac
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .accounts import AccountStore
from .config import BankDeskConfig
from .errors import AuthenticationFailed
from .logging_config import get_logger, log_action
from .rbac import Identity, Role


@dataclass(frozen=True)
class Credentials:
    """
    Login attempt.

    ``identifier`` is unused for admins, the employee id for employees, and
    the account number for users. Users log in without a secret.
    """
    role: Role
    identifier: str = ""
    secret: Optional[str] = None


class AuthenticationProvider(ABC):
    """Verifies credentials and yields an Identity"""

    @abstractmethod
    def verify(self, credentials: Credentials) -> Identity:
        """
        Raises:
            AuthenticationFailed: credentials do not match
        """
        pass


def _hash_secret(secret: str, salt: str) -> str:
    """Salted SHA-256 digest of a secret"""
    return hashlib.sha256((secret + salt).encode()).hexdigest()


class ConfiguredAuthenticationProvider(AuthenticationProvider):
    """
    One admin password and one employee id/password from configuration;
    users identify by an existing account number.

    Secrets are kept only as salted digests and compared in constant time.
    """

    def __init__(self, config: BankDeskConfig, accounts: AccountStore):
        self.accounts = accounts
        self.employee_id = config.employee_id
        self._salt = secrets.token_hex(16)
        self._admin_digest = _hash_secret(config.admin_password, self._salt)
        self._employee_digest = _hash_secret(config.employee_password, self._salt)
        self.logger = get_logger("bankdesk.auth")

    def verify(self, credentials: Credentials) -> Identity:
        identifier = (credentials.identifier or "").strip()

        if credentials.role == Role.ADMIN:
            if self._matches(credentials.secret, self._admin_digest):
                return self._success(Identity.admin())
            self._fail(credentials, "Incorrect password")

        if credentials.role == Role.EMPLOYEE:
            id_ok = hmac.compare_digest(identifier.encode(), self.employee_id.encode())
            secret_ok = self._matches(credentials.secret, self._employee_digest)
            if id_ok and secret_ok:
                return self._success(Identity.employee(self.employee_id))
            self._fail(credentials, "Incorrect employee ID or password")

        if not identifier or not self.accounts.exists(identifier):
            self._fail(credentials, "Account not found")
        return self._success(Identity.user(identifier))

    def _matches(self, secret: Optional[str], digest: str) -> bool:
        if secret is None:
            return False
        return hmac.compare_digest(_hash_secret(secret, self._salt), digest)

    def _success(self, identity: Identity) -> Identity:
        log_action(self.logger, "info", "Login succeeded",
                   actor=identity.label, action="login")
        return identity

    def _fail(self, credentials: Credentials, reason: str) -> None:
        log_action(self.logger, "warning", f"Login failed: {reason}",
                   actor=credentials.identifier or credentials.role.value, action="login")
        raise AuthenticationFailed(reason)
